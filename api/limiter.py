"""
api/limiter.py -- Shared slowapi rate limiter instance.

Imported by api/main.py (to mount as middleware) and api/routes/v1/auth.py
(to apply the login limit with @limiter.limit()). A single shared instance
keeps one in-memory counter store for the whole process; separate instances
per module would never trigger.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")

# Read once so the decorator argument is a plain string at import time.
LOGIN_RATE_LIMIT = get_settings().login_rate_limit
CALLBACK_RATE_LIMIT = get_settings().callback_rate_limit
