"""
asgi.py -- Application assembly for the OIDC login service.

This is the ONLY file that imports both api/main.py and web/routes.py. It
mounts the browser-facing OIDC routes onto the API app.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app
from web.routes import router as web_router

app.include_router(web_router, tags=["OIDC"])
