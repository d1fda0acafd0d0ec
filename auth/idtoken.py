"""
auth/idtoken.py -- ID token verification (python-jose).

IdTokenVerifier.verify() decodes the provider's ID token, checks its
signature against the provider's JWKS, validates exp / iat / aud / iss, and
then compares the embedded nonce with the nonce stored for this login attempt.

  [N1] The nonce comparison is exact and constant-time. A token minted for a
       different login attempt is rejected with NonceMismatch even when every
       other claim is valid.

JWKS handling: keys are fetched lazily from oidc_jwks_uri and cached for the
process lifetime. When a signature check fails against cached keys the JWKS
is fetched once more before giving up -- the provider may have rotated keys.

Layer rule: no imports from api/, web/, or loginflow/. Import from core/
is allowed.
"""

from __future__ import annotations

import hmac
import logging
from typing import Any

import requests
from jose import JWTError, jwt

from auth.errors import IdentityProviderError, InvalidIdToken, NonceMismatch
from auth.models import IdentityClaims
from core.config import Settings

logger = logging.getLogger("oidclogin.auth.idtoken")


class IdTokenVerifier:
    """Verify ID tokens for one client against one provider's keys.

    keys may be given directly (a JWK, a JWKS dict, or a shared secret for
    HS* algorithms); otherwise they are fetched from jwks_uri.
    """

    def __init__(
        self,
        client_id: str,
        keys: Any = None,
        jwks_uri: str = "",
        issuer: str = "",
        algorithms: list[str] | None = None,
        timeout: float = 10.0,
    ) -> None:
        self.client_id = client_id
        self.jwks_uri = jwks_uri
        self.issuer = issuer
        self.algorithms = algorithms or ["RS256"]
        self.timeout = timeout
        self._keys = keys

    @classmethod
    def from_settings(cls, settings: Settings) -> IdTokenVerifier:
        return cls(
            client_id=settings.oidc_client_id,
            jwks_uri=settings.oidc_jwks_uri,
            issuer=settings.oidc_issuer,
            algorithms=settings.oidc_id_token_algorithms,
            timeout=settings.http_timeout_seconds,
        )

    def _fetch_jwks(self) -> dict:
        if not self.jwks_uri:
            raise IdentityProviderError("No JWKS URI is configured for ID token verification.")
        try:
            resp = requests.get(self.jwks_uri, timeout=self.timeout)
            resp.raise_for_status()
            jwks = resp.json()
        except (requests.RequestException, ValueError) as exc:
            logger.exception("JWKS fetch from %s failed", self.jwks_uri)
            raise IdentityProviderError() from exc
        logger.info("Loaded %d signing key(s) from %s", len(jwks.get("keys", [])), self.jwks_uri)
        return jwks

    def _decode(self, raw_token: str, keys: Any) -> dict[str, Any]:
        return jwt.decode(
            raw_token,
            keys,
            algorithms=self.algorithms,
            audience=self.client_id,
            issuer=self.issuer or None,
            options={"verify_at_hash": False},
        )

    def verify(self, raw_token: str, expected_nonce: str) -> IdentityClaims:
        """Decode and verify raw_token; return its claims.

        Raises:
            InvalidIdToken: Bad signature, expired, wrong audience/issuer, no subject.
            NonceMismatch:  The token's nonce is not the one stored for this attempt [N1].
        """
        refetched = False
        if self._keys is None:
            self._keys = self._fetch_jwks()
            refetched = True
        try:
            try:
                claims = self._decode(raw_token, self._keys)
            except JWTError:
                if refetched or not self.jwks_uri:
                    raise
                self._keys = self._fetch_jwks()
                claims = self._decode(raw_token, self._keys)
        except JWTError as exc:
            logger.warning("ID token rejected: %s", exc)
            raise InvalidIdToken() from exc

        token_nonce = claims.get("nonce")
        if not isinstance(token_nonce, str) or not hmac.compare_digest(token_nonce, expected_nonce):
            logger.warning("ID token nonce does not match the stored nonce")
            raise NonceMismatch()

        subject = claims.get("sub")
        if not subject:
            raise InvalidIdToken("The ID token has no subject.")
        return IdentityClaims(
            subject=str(subject),
            unique_id=str(claims.get("oid") or subject),
            nonce=token_nonce,
            issued_at=claims.get("iat"),
            expires_at=claims.get("exp"),
            username_hint=claims.get("upn"),
            email=claims.get("email"),
            tenant_id=claims.get("tid"),
            raw=claims,
        )
