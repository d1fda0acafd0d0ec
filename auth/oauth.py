"""
auth/oauth.py -- Authlib client for the OpenID Connect provider.

IdentityProviderClient is the only code that talks HTTP to the identity
provider. It wraps authlib's requests-based OAuth2Session:

  build_authorization_url -- the browser redirect for the authorization request
  exchange_token          -- authorization code -> token set (id_token included)
  fetch_userinfo          -- access token -> userinfo claims

Boundary policy:
  Every call carries Settings.http_timeout_seconds. Userinfo GETs are retried
  on connection failures and 5xx responses at most Settings.http_retries
  times with exponential backoff. The token POST carries a single-use
  authorization code, so it is retried only when the connection could not be
  established; a read failure or any status response ends the exchange.

  Transport and protocol failures surface as IdentityProviderError. The flow
  does not retry them.

Layer rule: no imports from api/, web/, or loginflow/. Import from core/
is allowed -- core/ is the kernel layer.
"""

from __future__ import annotations

import logging
from typing import Any

import requests
from authlib.integrations.requests_client import OAuth2Session, OAuthError
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from auth.errors import IdentityProviderError
from core.config import Settings

logger = logging.getLogger("oidclogin.auth.oauth")


class IdentityProviderClient:
    """Synchronous OIDC client bound to one configured provider."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        authorization_endpoint: str,
        token_endpoint: str,
        redirect_uri: str,
        userinfo_endpoint: str = "",
        scope: str = "openid profile email",
        timeout: float = 10.0,
        retries: int = 2,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.authorization_endpoint = authorization_endpoint
        self.token_endpoint = token_endpoint
        self.userinfo_endpoint = userinfo_endpoint
        self.redirect_uri = redirect_uri
        self.scope = scope
        self.timeout = timeout
        self.retries = retries

    @classmethod
    def from_settings(cls, settings: Settings) -> IdentityProviderClient:
        return cls(
            client_id=settings.oidc_client_id,
            client_secret=settings.oidc_client_secret,
            authorization_endpoint=settings.oidc_authorization_endpoint,
            token_endpoint=settings.oidc_token_endpoint,
            userinfo_endpoint=settings.oidc_userinfo_endpoint,
            redirect_uri=settings.oidc_redirect_uri,
            scope=settings.oidc_scope,
            timeout=settings.http_timeout_seconds,
            retries=settings.http_retries,
        )

    def _session(self, token: dict | None = None, resend: bool = True) -> OAuth2Session:
        """Build a session; resend=False limits retries to connection failures."""
        session = OAuth2Session(
            client_id=self.client_id,
            client_secret=self.client_secret,
            scope=self.scope,
            redirect_uri=self.redirect_uri,
            token=token,
        )
        if resend:
            retry = Retry(
                total=self.retries,
                backoff_factor=0.5,
                status_forcelist=(500, 502, 503, 504),
                allowed_methods=frozenset({"GET"}),
                raise_on_status=False,
            )
        else:
            retry = Retry(
                total=self.retries,
                connect=self.retries,
                read=0,
                backoff_factor=0.5,
                status_forcelist=(),
                allowed_methods=frozenset(),
                raise_on_status=False,
            )
        session.mount("https://", HTTPAdapter(max_retries=retry))
        session.mount("http://", HTTPAdapter(max_retries=retry))
        session.max_redirects = 3
        return session

    # ------------------------------------------------------------------
    # Authorization request
    # ------------------------------------------------------------------

    def build_authorization_url(
        self,
        prompt_login: bool,
        state: str,
        nonce: str,
        extra_params: dict[str, str] | None = None,
    ) -> str:
        """Return the authorization endpoint URL for one login attempt.

        The URL carries client_id, response_type=code, redirect_uri, scope,
        state, nonce, prompt=login when re-authentication is forced, and any
        provider-specific extra parameters (e.g. prompt=admin_consent, which
        takes precedence over prompt=login).
        """
        params: dict[str, str] = {"nonce": nonce}
        if prompt_login:
            params["prompt"] = "login"
        params.update(extra_params or {})
        with self._session() as session:
            url, _ = session.create_authorization_url(self.authorization_endpoint, state=state, **params)
        return url

    # ------------------------------------------------------------------
    # Token endpoint
    # ------------------------------------------------------------------

    def exchange_token(self, code: str) -> dict[str, Any]:
        """Exchange an authorization code for the provider's token response.

        Raises:
            IdentityProviderError: On network failure or an OAuth error response.
        """
        try:
            with self._session(resend=False) as session:
                token = session.fetch_token(
                    self.token_endpoint,
                    grant_type="authorization_code",
                    code=code,
                    timeout=self.timeout,
                )
        except OAuthError as exc:
            logger.warning("Token endpoint rejected the authorization code: %s", exc.error)
            raise IdentityProviderError("The identity provider rejected the authorization code.") from exc
        except (requests.RequestException, ValueError) as exc:
            logger.exception("Token request to %s failed", self.token_endpoint)
            raise IdentityProviderError() from exc
        return dict(token)

    # ------------------------------------------------------------------
    # Userinfo endpoint
    # ------------------------------------------------------------------

    def fetch_userinfo(self, access_token: str | None) -> dict[str, Any]:
        """Return userinfo claims, normalized so "username" is always present when derivable.

        Providers rarely return a "username" claim; preferred_username, then
        email, then sub stand in for it. Returns {} when no userinfo endpoint is
        configured or no access token was issued.
        """
        if not self.userinfo_endpoint or not access_token:
            return {}
        token = {"access_token": access_token, "token_type": "Bearer"}
        try:
            with self._session(token=token) as session:
                resp = session.get(self.userinfo_endpoint, timeout=self.timeout)
                resp.raise_for_status()
                info = resp.json()
        except (requests.RequestException, ValueError) as exc:
            logger.exception("Userinfo request to %s failed", self.userinfo_endpoint)
            raise IdentityProviderError() from exc
        if not isinstance(info, dict):
            raise IdentityProviderError("The identity provider returned malformed userinfo.")
        if not info.get("username"):
            info["username"] = info.get("preferred_username") or info.get("email") or info.get("sub")
        return info
