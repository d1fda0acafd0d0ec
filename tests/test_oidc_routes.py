"""
tests/test_oidc_routes.py -- Integration tests for the browser-facing OIDC routes.

These tests drive web/routes.py through the real ASGI stack (middleware,
session cookie, exception handlers) using the web_client fixture with
follow_redirects=False, and assert on Location headers and cookies directly.
The identity provider is FakeIdentityProvider from conftest.py.

Coverage:
  - GET /auth/oidc/ without state redirects to the provider
  - callback logs a fresh identity in and sets the session cookie
  - flow failures render the JSON error envelope with no-store
  - a password session migrates to OIDC and lands on /auth/oidc/ucp
  - /auth/oidc/connect and /auth/oidc/verify honour their one-shot markers
  - routes refuse to run when no provider is configured
"""

from __future__ import annotations

from conftest import ISSUER, query_of
from fastapi.testclient import TestClient

from auth.models import LocalAccount
from auth.tokens import SESSION_COOKIE, hash_password


def _begin(client: TestClient, path: str = "/auth/oidc/") -> str:
    resp = client.get(path)
    assert resp.status_code == 302
    location = resp.headers["location"]
    assert location.startswith(f"{ISSUER}/authorize")
    return query_of(location)["state"]


def _password_login(client: TestClient, services, username: str = "alice") -> None:
    services.accounts.create_user(LocalAccount(username=username, hashed_password=hash_password("password1234")))
    resp = client.post("/api/v1/auth/login", json={"username": username, "password": "password1234"})
    assert resp.status_code == 200


class TestLoginRoute:
    def test_no_state_redirects_to_provider(self, web_client: TestClient) -> None:
        resp = web_client.get("/auth/oidc/?promptlogin=1")
        assert resp.status_code == 302
        query = query_of(resp.headers["location"])
        assert query["prompt"] == "login"
        assert query["state"] != query["nonce"]

    def test_callback_logs_in_fresh_identity(self, web_client: TestClient, idp, services) -> None:
        idp.claims = {"sub": "sub-web", "upn": "webuser@example.com"}
        state = _begin(web_client)

        resp = web_client.get(f"/auth/oidc/?code=web-code&state={state}")

        assert resp.status_code == 302
        assert resp.headers["location"] == "/"
        assert resp.headers["cache-control"] == "no-store"
        assert SESSION_COOKIE in resp.cookies
        me = web_client.get("/api/v1/auth/me").json()
        assert me["username"] == "webuser@example.com"
        assert me["auth_method"] == "oidc"

    def test_unknown_state_renders_error(self, web_client: TestClient) -> None:
        resp = web_client.get("/auth/oidc/?code=abc&state=S1")
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "unknown_state"
        assert resp.headers["cache-control"] == "no-store"

    def test_replayed_callback_is_rejected(self, web_client: TestClient) -> None:
        state = _begin(web_client)
        assert web_client.get(f"/auth/oidc/?code=c1&state={state}").status_code == 302
        resp = web_client.get(f"/auth/oidc/?code=c2&state={state}")
        assert resp.json()["error"]["code"] == "unknown_state"

    def test_nonce_mismatch_renders_error(self, web_client: TestClient, idp) -> None:
        state = _begin(web_client)
        idp.nonce = "forged"
        resp = web_client.get(f"/auth/oidc/?code=c1&state={state}")
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "nonce_mismatch"

    def test_pending_match_names_the_account(self, web_client: TestClient, idp, services) -> None:
        uid = services.accounts.create_user(LocalAccount(username="legacy"))
        services.pending.stage("jdoe@example.com", uid)
        idp.claims = {"sub": "sub-j", "upn": "jdoe@example.com"}

        resp = web_client.get(f"/auth/oidc/?code=c1&state={_begin(web_client)}")
        assert resp.status_code == 409
        assert resp.json()["error"] == {
            "code": "pending_match",
            "message": "This identity has been matched to an existing account and needs to be confirmed.",
            "detail": "legacy",
        }


class TestLinkingRoutes:
    def test_password_session_migrates(self, web_client: TestClient, idp, services) -> None:
        _password_login(web_client, services)
        idp.claims = {"sub": "sub-alice", "upn": "alice@example.com"}

        resp = web_client.get(f"/auth/oidc/?code=c1&state={_begin(web_client)}")

        assert resp.status_code == 302
        assert resp.headers["location"] == "/auth/oidc/ucp"
        status = web_client.get("/auth/oidc/ucp").json()
        assert status["connected"] is True
        assert status["auth_method"] == "oidc"
        assert status["oidc_username"] == "alice@example.com"

    def test_connect_keeps_password_login(self, web_client: TestClient, idp, services) -> None:
        _password_login(web_client, services)
        state = _begin(web_client, "/auth/oidc/connect")

        resp = web_client.get(f"/auth/oidc/?code=c1&state={state}")

        assert resp.headers["location"] == "/auth/oidc/ucp"
        status = web_client.get("/auth/oidc/ucp").json()
        assert status["connected"] is True
        assert status["auth_method"] == "manual"
        assert services.accounts.get_prev_login(services.accounts.get_by_username("alice").id) is None

    def test_verify_changes_nothing(self, web_client: TestClient, idp, services, events) -> None:
        _password_login(web_client, services)
        state = _begin(web_client, "/auth/oidc/verify")

        resp = web_client.get(f"/auth/oidc/?code=c1&state={state}")

        assert resp.status_code == 200
        assert resp.json() == {"status": "verified"}
        assert events.kinds() == ["user_authed"]
        assert services.tokens.list_all() == []

    def test_verify_marker_applies_once(self, web_client: TestClient, idp, services) -> None:
        _password_login(web_client, services)
        web_client.get(f"/auth/oidc/?code=c1&state={_begin(web_client, '/auth/oidc/verify')}")

        resp = web_client.get(f"/auth/oidc/?code=c2&state={_begin(web_client)}")
        assert resp.status_code == 302
        assert resp.headers["location"] == "/auth/oidc/ucp"

    def test_verify_survives_interleaved_start(self, web_client: TestClient, idp, services, events) -> None:
        _password_login(web_client, services)
        state = _begin(web_client, "/auth/oidc/verify")
        _begin(web_client)

        resp = web_client.get(f"/auth/oidc/?code=c1&state={state}")

        assert resp.status_code == 200
        assert resp.json() == {"status": "verified"}
        assert events.kinds() == ["user_authed"]
        assert services.tokens.list_all() == []
        account = services.accounts.get_by_username("alice")
        assert account.auth_method == "manual"
        assert services.accounts.get_prev_login(account.id) is None

    def test_connect_requires_session(self, web_client: TestClient) -> None:
        resp = web_client.get("/auth/oidc/connect")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_ucp_without_connection(self, web_client: TestClient, services) -> None:
        _password_login(web_client, services)
        status = web_client.get("/auth/oidc/ucp").json()
        assert status == {
            "username": "alice",
            "auth_method": "manual",
            "connected": False,
            "oidc_username": None,
            "updated_at": None,
        }


class TestProviderDisabled:
    def test_refuses_to_start(self, disabled_client: TestClient) -> None:
        resp = disabled_client.get("/auth/oidc/")
        assert resp.status_code == 503
        assert resp.json()["error"]["code"] == "oidc_disabled"
