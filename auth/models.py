"""
auth/models.py -- Domain dataclasses for the OIDC login flow.

Pattern: Data class (pure data container, zero logic). Stores and the
loginflow/ package do the work; these classes only own domain shape.

Layer rule: no imports from api/, web/, core/, or loginflow/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

# Auth method value written to LocalAccount.auth_method once an account is
# switched to (or provisioned for) the external identity provider.
OIDC_AUTH_METHOD = "oidc"


@dataclass
class LocalAccount:
    """A local application account.

    auth_method is "manual" for password accounts and "oidc" once the account
    has been migrated to (or provisioned by) the identity provider.
    hashed_password is None for OIDC-provisioned accounts.
    """

    username: str
    auth_method: str = "manual"
    id: int | None = None
    hashed_password: str | None = None
    is_active: bool = True
    created_at: str | None = None
    last_login: str | None = None


@dataclass
class StateMetadata:
    """Typed payload persisted alongside an AuthState.

    redirect      -- where to send the browser after a link (migration) flow
    connect_only  -- link the identity without switching the primary auth method
    verification_only -- confirm the identity and emit user_authed, change nothing
    force_flow    -- name of the login flow that issued the request
    extra         -- string-keyed extension values, kept for forward compatibility
    """

    redirect: str | None = None
    connect_only: bool = False
    verification_only: bool = False
    force_flow: str | None = None
    extra: dict[str, str] = field(default_factory=dict)


@dataclass
class AuthState:
    """Anti-replay record written before the IdP round-trip, consumed once on callback."""

    state: str
    nonce: str
    metadata: StateMetadata = field(default_factory=StateMetadata)
    created_at: str | None = None
    id: int | None = None


@dataclass
class TokenSet:
    """The fields of a token-endpoint response this service consumes."""

    access_token: str | None = None
    refresh_token: str | None = None
    id_token: str | None = None
    token_type: str | None = None
    scope: str | None = None
    expires_at: int | None = None  # unix seconds

    @classmethod
    def from_response(cls, data: dict[str, Any]) -> TokenSet:
        expires_at = data.get("expires_at")
        return cls(
            access_token=data.get("access_token"),
            refresh_token=data.get("refresh_token"),
            id_token=data.get("id_token"),
            token_type=data.get("token_type"),
            scope=data.get("scope"),
            expires_at=int(expires_at) if expires_at is not None else None,
        )


@dataclass
class IdentityClaims:
    """Verified claims from an ID token. Read-only, scoped to one callback.

    unique_id is the provider's stable identifier for the person: the "oid"
    claim when the provider issues one (Azure AD), otherwise "sub".
    username_hint is the provider-specific principal name ("upn").
    """

    subject: str
    unique_id: str
    nonce: str | None = None
    issued_at: int | None = None
    expires_at: int | None = None
    username_hint: str | None = None
    email: str | None = None
    tenant_id: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class TokenRecord:
    """Binding between one external identity and one local account.

    external_id is unique: exactly one live record per identity. Token fields
    are overwritten (rotated) on every repeat login, so the record always holds
    the most recent exchange.
    """

    external_id: str
    username: str
    oidc_username: str | None = None  # upn or subject, display only
    raw_auth_code: str | None = None
    access_token: str | None = None
    refresh_token: str | None = None
    id_token: str | None = None
    scope: str | None = None
    expires_at: int | None = None
    updated_at: str | None = None
    id: int | None = None


@dataclass
class PrevLoginRecord:
    """Backup of an account's auth method taken the first time it switches to OIDC.

    Written at most once per account -- a later switch must never overwrite the
    true original method.
    """

    user_id: int
    method: str
    password: str | None = None  # previous credential reference (password hash)
    id: int | None = None


@dataclass
class PendingMatch:
    """A manual identity-to-account match staged by an administrator.

    While completed is False, a fresh login whose candidate username equals
    candidate_username is held back for manual resolution.
    """

    candidate_username: str
    user_id: int
    completed: bool = False
    id: int | None = None


@dataclass
class RequestContext:
    """Everything a flow needs to know about the incoming request.

    Built once per request by auth/dependencies.py and passed explicitly into
    every component call -- nothing reads the current session from shared state.
    """

    account: LocalAccount | None = None
    verification_only: bool = False  # identity confirmation only, no login
    connect_only: bool = False  # link without switching auth method


class FlowOutcome(str, Enum):
    AUTH_REDIRECT = "auth_redirect"
    IDENTITY_VERIFIED = "identity_verified"
    MIGRATED = "migrated"
    LOGGED_IN = "logged_in"


@dataclass
class FlowResult:
    """Terminal result of one pass through a login flow."""

    outcome: FlowOutcome
    redirect_url: str | None = None
    account: LocalAccount | None = None
    event_payload: dict[str, Any] | None = None  # set for IDENTITY_VERIFIED
