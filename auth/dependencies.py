"""
auth/dependencies.py -- FastAPI Depends() helpers for the current session.

try_get_current_account() is the soft variant (returns None on failure).
get_current_account() wraps it and raises HTTP 401 if unauthenticated.
get_request_context() builds the RequestContext the login flow receives:
the current account plus the one-shot flow markers stored in the Starlette
session by /auth/oidc/verify and /auth/oidc/connect. Markers are popped so
they apply to exactly one callback.

Layer rule: no imports from web/ or loginflow/.
  auth/dependencies.py may import from fastapi because this module is part of
  the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.models import LocalAccount, RequestContext
from auth.tokens import SESSION_COOKIE, decode_access_token

# Starlette session keys for the one-shot flow markers.
VERIFICATION_ONLY_KEY = "oidc_justevent"
CONNECT_ONLY_KEY = "oidc_connectiononly"


def try_get_current_account(request: Request) -> LocalAccount | None:
    """Authenticate the request via the session cookie or a Bearer header.

    Returns the active LocalAccount on success, None on any failure.
    """
    token: str | None = request.cookies.get(SESSION_COOKIE)
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:]
    if not token:
        return None

    payload = decode_access_token(token)
    if payload is None:
        return None
    account = request.app.state.accounts.get_by_id(payload["user_id"])
    if account is None or not account.is_active:
        return None
    return account


def get_current_account(request: Request) -> LocalAccount:
    """Require authentication. Raises HTTP 401 if the request is not authenticated."""
    account = try_get_current_account(request)
    if account is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return account


def get_request_context(request: Request) -> RequestContext:
    """Build the explicit per-request context for the login flow.

    The flow markers are popped only by a callback (a request carrying
    state). A bare start leaves them for the callback they were set for.
    """
    account = try_get_current_account(request)
    if not request.query_params.get("state"):
        return RequestContext(account=account)
    session = request.session
    return RequestContext(
        account=account,
        verification_only=bool(session.pop(VERIFICATION_ONLY_KEY, False)),
        connect_only=bool(session.pop(CONNECT_ONLY_KEY, False)),
    )
