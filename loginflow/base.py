"""
loginflow/base.py -- Shared interface for login flows and their collaborators.

Each grant-type flow is an interchangeable strategy implementing LoginFlow
(initiate / handle_callback). The active flow is picked by name from
Settings.login_flow through the registry in loginflow/__init__.py -- not by
subclassing a shared base with flow-specific overrides.

The collaborator protocols below are the narrow seams the flow depends on.
The concrete implementations live in auth/ (authlib client, python-jose
verifier, SQLAlchemy stores); tests substitute in-memory fakes.

Layer rule: loginflow/ may import from auth/ and core/, never from api/ or web/.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Protocol

from auth.events import EventSink
from auth.models import FlowResult, IdentityClaims, LocalAccount, PrevLoginRecord, RequestContext, StateMetadata
from auth.restrictions import Restrictions
from auth.state_store import StateStore
from auth.token_store import TokenRecordStore

# ---------------------------------------------------------------------------
# Collaborator protocols
# ---------------------------------------------------------------------------


class IdentityProvider(Protocol):
    def build_authorization_url(
        self, prompt_login: bool, state: str, nonce: str, extra_params: dict[str, str] | None = None
    ) -> str: ...

    def exchange_token(self, code: str) -> dict[str, Any]: ...

    def fetch_userinfo(self, access_token: str | None) -> dict[str, Any]: ...


class TokenVerifier(Protocol):
    def verify(self, raw_token: str, expected_nonce: str) -> IdentityClaims: ...


class Accounts(Protocol):
    def get_by_username(self, username: str) -> LocalAccount | None: ...

    def get_by_id(self, user_id: int) -> LocalAccount | None: ...

    def exists(self, username: str) -> bool: ...

    def provision(self, username: str) -> LocalAccount: ...

    def authenticate(self, username: str, auth_code: str) -> LocalAccount | None: ...

    def complete_session(self, account: LocalAccount) -> LocalAccount: ...

    def switch_auth_method(self, user_id: int, method: str) -> None: ...

    def save_prev_login(self, record: PrevLoginRecord) -> bool: ...


class PendingMatchFinder(Protocol):
    def find(self, candidate_username: str) -> dict | None: ...


@dataclass
class FlowServices:
    """Everything a flow talks to, assembled once at startup."""

    idp: IdentityProvider
    verifier: TokenVerifier
    states: StateStore
    tokens: TokenRecordStore
    accounts: Accounts
    pending: PendingMatchFinder
    events: EventSink
    restrictions: Restrictions
    allow_account_creation: bool = True
    post_login_url: str = "/"
    post_link_url: str = "/auth/oidc/ucp"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def safe_redirect(target: str | None, default: str) -> str:
    """Accept only server-local paths as redirect targets. [C2]

    "/foo" is accepted; "https://evil.example" and "//evil.example" fall back
    to default, so persisted metadata can never turn into an open redirect.
    """
    if target and target.startswith("/") and not target.startswith("//"):
        return target
    return default


def _flag(params: Mapping[str, Any], name: str) -> bool:
    return str(params.get(name, "")).strip().lower() in ("1", "true", "yes", "on")


# ---------------------------------------------------------------------------
# Strategy interface
# ---------------------------------------------------------------------------


class LoginFlow(ABC):
    """One grant-type flow: start an authorization request, finish it on callback."""

    name: str = ""

    def __init__(self, services: FlowServices) -> None:
        self.services = services

    @abstractmethod
    def initiate(
        self,
        context: RequestContext,
        prompt_login: bool = False,
        metadata: StateMetadata | None = None,
        extra_params: dict[str, str] | None = None,
    ) -> FlowResult:
        """Start an authorization request; the result carries the IdP redirect."""

    @abstractmethod
    def handle_callback(self, context: RequestContext, params: Mapping[str, Any]) -> FlowResult:
        """Finish an authorization request from the IdP's callback parameters."""

    def handle_redirect(self, context: RequestContext, params: Mapping[str, Any]) -> FlowResult:
        """Entry point for the redirect endpoint.

        A request carrying a state value is the IdP's callback. Anything else is
        a fresh login request: promptlogin=1 forces re-authentication and
        promptaconsent=1 asks the provider for administrator consent.
        """
        if params.get("state"):
            return self.handle_callback(context, params)
        extra_params: dict[str, str] = {}
        if _flag(params, "promptaconsent"):
            extra_params["prompt"] = "admin_consent"
        return self.initiate(
            context,
            prompt_login=_flag(params, "promptlogin"),
            metadata=StateMetadata(force_flow=self.name),
            extra_params=extra_params,
        )
