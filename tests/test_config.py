"""
tests/test_config.py -- Unit tests for core/config.py.

Settings is instantiated directly so each test sees its own values; the
cached get_settings() singleton is left alone.
"""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from core.config import Settings

_KEY = "k" * 32


class TestSecretKey:
    def test_debug_generates_key(self) -> None:
        assert len(Settings(debug=True, secret_key="").secret_key) >= 32

    def test_production_requires_key(self) -> None:
        with pytest.raises(ValidationError):
            Settings(debug=False, secret_key="")

    def test_short_key_rejected(self) -> None:
        with pytest.raises(ValidationError):
            Settings(debug=True, secret_key="short")


class TestProvider:
    def test_unconfigured_by_default(self) -> None:
        assert Settings(secret_key=_KEY).oidc_configured is False

    def test_client_id_without_endpoints_rejected(self) -> None:
        with pytest.raises(ValidationError):
            Settings(secret_key=_KEY, oidc_client_id="client", oidc_client_secret="secret")

    def test_complete_provider(self) -> None:
        settings = Settings(
            secret_key=_KEY,
            oidc_client_id="client",
            oidc_client_secret="secret",
            oidc_authorization_endpoint="https://idp/authorize",
            oidc_token_endpoint="https://idp/token",
            oidc_jwks_uri="https://idp/jwks",
        )
        assert settings.oidc_configured is True
        assert settings.login_flow == "authcode"

    def test_unknown_flow_rejected(self) -> None:
        with pytest.raises(ValidationError):
            Settings(secret_key=_KEY, login_flow="implicit")


class TestLists:
    def test_comma_separated_env(self, monkeypatch) -> None:
        monkeypatch.setenv("ALLOWED_EMAIL_DOMAINS", "example.com, corp.example ,")
        monkeypatch.setenv("OIDC_ID_TOKEN_ALGORITHMS", "RS256,ES256")
        settings = Settings(secret_key=_KEY)
        assert settings.allowed_email_domains == ["example.com", "corp.example"]
        assert settings.oidc_id_token_algorithms == ["RS256", "ES256"]
