"""
api/routes/v1/auth.py -- Local session endpoints.

Routes:
  POST /api/v1/auth/login   -- password login for local ("manual") accounts; sets JWT cookie
  POST /api/v1/auth/logout  -- clears cookie; 200
  GET  /api/v1/auth/me      -- current account info (requires auth)

A local session is what the OIDC linking path starts from: a user logged in
with a password visits /auth/oidc/ and their account is migrated to (or
connected with) the identity provider.

Security:
  [H2] POST /login is rate-limited per IP (Settings.login_rate_limit).
  [C1] authenticate_password() provides timing equalization -- use it, never inline.
  [M5] Cache-Control: no-store on login responses.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import LOGIN_RATE_LIMIT, limiter
from api.models import LoginRequest, LoginResponse, MeResponse
from auth.dependencies import get_current_account
from auth.models import LocalAccount
from auth.store import AccountStore
from auth.tokens import SESSION_COOKIE, authenticate_password, create_access_token, set_auth_cookie
from core.config import get_settings

router = APIRouter()


@limiter.limit(LOGIN_RATE_LIMIT)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with username and password; set JWT cookie.

    Returns the same generic error for wrong username and wrong password
    ("bad_credentials") to avoid leaking username existence information.
    """
    accounts: AccountStore = request.app.state.accounts
    account = authenticate_password(accounts, body.username, body.password)
    if account is None:
        resp = JSONResponse(
            status_code=401,
            content={"error": {"code": "bad_credentials", "message": "Invalid username or password."}},
        )
        resp.headers["Cache-Control"] = "no-store"  # [M5]
        return resp

    accounts.complete_session(account)
    token = create_access_token(account)
    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            access_token=token,
            token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
            expires_in=get_settings().token_expire_seconds,
            username=account.username,
            auth_method=account.auth_method,
        ).model_dump(),
    )
    set_auth_cookie(resp, token)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.post("/auth/logout")
async def logout() -> JSONResponse:
    """Clear the JWT cookie and end the session."""
    resp = JSONResponse(content={"message": "Logged out."})
    resp.delete_cookie(SESSION_COOKIE)
    return resp


@router.get("/auth/me", response_model=MeResponse)
def me(current_account: LocalAccount = Depends(get_current_account)) -> MeResponse:
    """Return identity information for the currently authenticated account."""
    return MeResponse(
        user_id=current_account.id,
        username=current_account.username,
        auth_method=current_account.auth_method,
        last_login=current_account.last_login,
    )
