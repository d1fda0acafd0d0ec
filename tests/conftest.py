"""
tests/conftest.py -- Shared test fixtures for the OIDC login service.

This module provides:
  - engine: an isolated in-memory auth database per test
  - idp / verifier / events: stand-ins for the identity provider boundary
  - services / flow: a real AuthCodeFlow wired to the fakes and real stores
  - web_client: TestClient over the assembled ASGI app with a patched lifespan

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

ID tokens are real JWTs signed with HS256 and a shared test secret, so the
flow tests run through the production IdTokenVerifier (signature, audience,
issuer, nonce) rather than a mock of it.

The DEBUG env var must be set before any auth module import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import asyncio
import os
import time
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from urllib.parse import parse_qs, urlencode, urlparse

# CRITICAL: Set these before any auth/core import -- get_settings() is cached
# on first use and the rate limits are read at import time.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("ALLOWED_HOSTS", "testserver,localhost")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")
os.environ.setdefault("CALLBACK_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient
from jose import jwt

from asgi import app
from auth.idtoken import IdTokenVerifier
from auth.models import LocalAccount
from auth.restrictions import Restrictions
from auth.schema import create_auth_engine
from auth.state_store import StateStore
from auth.store import AccountStore, PendingMatchStore
from auth.token_store import TokenRecordStore
from auth.tokens import hash_password
from loginflow.authcode import AuthCodeFlow
from loginflow.base import FlowServices

CLIENT_ID = "test-client"
ISSUER = "https://idp.example.test"
SIGNING_SECRET = "test-signing-secret-0123456789abcdef"


# ---------------------------------------------------------------------------
# Identity provider fakes
# ---------------------------------------------------------------------------


def make_id_token(nonce: str | None, sub: str = "subject-1", audience: str = CLIENT_ID, **claims) -> str:
    """Mint an HS256 ID token the test verifier accepts."""
    now = int(time.time())
    payload = {"iss": ISSUER, "aud": audience, "sub": sub, "iat": now, "exp": now + 300}
    if nonce is not None:
        payload["nonce"] = nonce
    payload.update({k: v for k, v in claims.items() if v is not None})
    return jwt.encode(payload, SIGNING_SECRET, algorithm="HS256")


class FakeIdentityProvider:
    """Records authorization requests and mints a token response per code.

    claims        -- extra ID token claims for the next exchange (sub, oid, upn, ...)
    nonce         -- nonce to embed; defaults to the nonce of the latest request
    omit_id_token -- simulate a provider that returns no ID token
    """

    def __init__(self) -> None:
        self.requests: list[dict] = []
        self.exchanged: list[str] = []
        self.userinfo: dict = {}
        self.userinfo_calls = 0
        self.claims: dict = {"sub": "subject-1"}
        self.nonce: str | None = None
        self.omit_id_token = False

    def build_authorization_url(self, prompt_login, state, nonce, extra_params=None) -> str:
        params = {"client_id": CLIENT_ID, "response_type": "code", "state": state, "nonce": nonce}
        if prompt_login:
            params["prompt"] = "login"
        params.update(extra_params or {})
        self.requests.append({"prompt_login": prompt_login, "state": state, "nonce": nonce, "extra": extra_params})
        return f"{ISSUER}/authorize?{urlencode(params)}"

    def exchange_token(self, code: str) -> dict:
        self.exchanged.append(code)
        response = {
            "access_token": f"access-{code}",
            "refresh_token": f"refresh-{code}",
            "token_type": "Bearer",
            "scope": "openid profile email",
            "expires_at": int(time.time()) + 3600,
        }
        if not self.omit_id_token:
            nonce = self.nonce if self.nonce is not None else self.requests[-1]["nonce"]
            response["id_token"] = make_id_token(nonce, **self.claims)
        return response

    def fetch_userinfo(self, access_token) -> dict:
        self.userinfo_calls += 1
        return dict(self.userinfo)

    @property
    def last_state(self) -> str:
        return self.requests[-1]["state"]


class ListEventSink:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict]] = []

    def emit(self, kind: str, payload: dict) -> None:
        self.events.append((kind, payload))

    def kinds(self) -> list[str]:
        return [kind for kind, _ in self.events]


def query_of(url: str) -> dict[str, str]:
    return {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}


# ---------------------------------------------------------------------------
# Unit fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def engine():
    url = f"sqlite:///file:test_auth_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"
    eng = create_auth_engine(url)
    yield eng
    eng.dispose()


@pytest.fixture()
def idp() -> FakeIdentityProvider:
    return FakeIdentityProvider()


@pytest.fixture()
def verifier() -> IdTokenVerifier:
    return IdTokenVerifier(client_id=CLIENT_ID, keys=SIGNING_SECRET, issuer=ISSUER, algorithms=["HS256"])


@pytest.fixture()
def events() -> ListEventSink:
    return ListEventSink()


@pytest.fixture()
def services(engine, idp, verifier, events) -> FlowServices:
    return FlowServices(
        idp=idp,
        verifier=verifier,
        states=StateStore(engine, ttl_seconds=600),
        tokens=TokenRecordStore(engine),
        accounts=AccountStore(engine),
        pending=PendingMatchStore(engine),
        events=events,
        restrictions=Restrictions(),
    )


@pytest.fixture()
def flow(services) -> AuthCodeFlow:
    return AuthCodeFlow(services)


@pytest.fixture()
def manual_account(services) -> LocalAccount:
    """A local password account named alice."""
    services.accounts.create_user(LocalAccount(username="alice", hashed_password=hash_password("alicepass123")))
    return services.accounts.get_by_username("alice")


# ---------------------------------------------------------------------------
# Integration fixture
# ---------------------------------------------------------------------------


def _patch_lifespan(services: FlowServices, oidc_enabled: bool = True):
    """Return an async context manager that replaces the real lifespan.

    Wires the test flow and stores into app.state so routes see the isolated
    test DB and the fake identity provider rather than a real one.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.login_flow = AuthCodeFlow(services)
        app.state.accounts = services.accounts
        app.state.token_store = services.tokens
        app.state.oidc_enabled = oidc_enabled
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture()
def web_client(services) -> Generator[TestClient, None, None]:
    """TestClient with follow_redirects=False over the assembled app.

    follow_redirects=False is essential: the tests assert on redirect
    locations (the IdP authorize URL, the post-login page), which are
    invisible once the client follows them.
    """
    app.router.lifespan_context = _patch_lifespan(services)
    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as client:
        yield client


@pytest.fixture()
def disabled_client(services) -> Generator[TestClient, None, None]:
    app.router.lifespan_context = _patch_lifespan(services, oidc_enabled=False)
    with TestClient(app, follow_redirects=False) as client:
        yield client
