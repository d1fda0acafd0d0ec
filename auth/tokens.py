"""
auth/tokens.py -- Session JWT, password hashing, and the session cookie.

Security design decisions:
  JWT: python-jose with HS256. Tokens are signed with SECRET_KEY and carry
       user_id, username, auth_method, and expiry. Verification returns None
       on any failure -- the route layer turns that into a 401.

  Passwords: bcrypt, used directly. Local ("manual") accounts keep a bcrypt
       hash; when such an account migrates to OIDC the hash is preserved in
       its PrevLoginRecord. _DUMMY_HASH equalizes login timing so response
       time does not reveal whether a username exists [C1].

  SECRET_KEY: sourced from core.config.get_settings(), which validates it at
       startup (dev auto-generation, production refusal, 32-char minimum).

Layer rule: no imports from api/, web/, or loginflow/. Import from core/
is allowed.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import bcrypt
from jose import JWTError, jwt

from core.config import get_settings

if TYPE_CHECKING:
    from auth.models import LocalAccount
    from auth.store import AccountStore

logger = logging.getLogger("oidclogin.auth")

_settings = get_settings()

_ALGORITHM = "HS256"

SESSION_COOKIE = "access_token"

# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password."""
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


_DUMMY_HASH: str = hash_password("oidclogin_timing_dummy")


def authenticate_password(store: AccountStore, username: str, password: str) -> LocalAccount | None:
    """Authenticate a local password login with timing equalization [C1].

    Accounts that have switched to OIDC no longer accept their old password;
    their hash lives on only in the PrevLoginRecord.
    """
    account = store.get_by_username(username)
    if account is None or account.hashed_password is None or account.auth_method != "manual":
        verify_password(password, _DUMMY_HASH)
        return None
    if not verify_password(password, account.hashed_password):
        return None
    if not account.is_active:
        return None
    return account


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


def create_access_token(account: LocalAccount, expire_seconds: int = 0) -> str:
    """Encode a signed session JWT for account."""
    duration = expire_seconds if expire_seconds > 0 else _settings.token_expire_seconds
    expire = datetime.now(timezone.utc) + timedelta(seconds=duration)
    payload = {
        "sub": account.username,
        "user_id": account.id,
        "auth_method": account.auth_method,
        "exp": expire,
    }
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def decode_access_token(token: str) -> dict | None:
    """Decode and verify a session JWT. Returns the payload dict or None on any failure."""
    try:
        payload = jwt.decode(token, _settings.secret_key, algorithms=[_ALGORITHM])
    except JWTError:
        return None
    if "user_id" not in payload:
        return None
    return payload


# ---------------------------------------------------------------------------
# Cookie helper
# ---------------------------------------------------------------------------


def set_auth_cookie(response, token: str, expire_seconds: int = 0) -> None:
    """Write the session JWT as an httpOnly, samesite=lax cookie on the response."""
    duration = expire_seconds if expire_seconds > 0 else _settings.token_expire_seconds
    response.set_cookie(
        SESSION_COOKIE,
        value=token,
        httponly=True,
        samesite="lax",
        secure=_settings.secure_cookies,
        max_age=duration,
    )
