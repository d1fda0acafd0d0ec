"""
loginflow/resolver.py -- Resolve a verified identity to a local login session.

Returning identity: reuse the bound username and rotate the token record.

First-time identity: the candidate username is the provider's principal name
(upn claim) when present, otherwise the userinfo username, otherwise the
external id itself. A staged manual match for the candidate stops the login
with PendingExternalMatch before anything is written. Otherwise the identity
is bound to the candidate username.

Then the account must exist -- it is provisioned when configuration allows --
and must pass the local handshake (auth method is OIDC and its token record
holds this callback's code) before the session is completed.
"""

from __future__ import annotations

import logging

from auth.errors import LoginFailed, NoAccountProvisioning, PendingExternalMatch, TokenRecordConflict
from auth.events import USER_LOGIN_FAILED, emit_event
from auth.models import IdentityClaims, LocalAccount, TokenSet
from loginflow.base import FlowServices

logger = logging.getLogger("oidclogin.flow.resolver")


class AccountResolver:
    def __init__(self, services: FlowServices) -> None:
        self.services = services

    def candidate_username(self, external_id: str, claims: IdentityClaims, userinfo: dict) -> str:
        return claims.username_hint or userinfo.get("username") or external_id

    def resolve(self, external_id: str, code: str, tokens: TokenSet, claims: IdentityClaims) -> LocalAccount:
        services = self.services

        record = services.tokens.get_by_external_id(external_id)
        if record is not None:
            username = record.username
            services.tokens.rotate(record.id, code, tokens)
        else:
            userinfo = services.idp.fetch_userinfo(tokens.access_token)
            username = self.candidate_username(external_id, claims, userinfo)
            matched = services.pending.find(username)
            if matched:
                logger.info("Login for %r held back by a pending manual match", username)
                raise PendingExternalMatch(matched)
            try:
                services.tokens.create(
                    external_id,
                    username,
                    code,
                    tokens,
                    oidc_username=claims.username_hint or claims.subject,
                )
            except TokenRecordConflict:
                # Concurrent first login for the same identity: keep the winner's binding.
                winner = services.tokens.get_by_external_id(external_id)
                if winner is None:
                    raise
                username = winner.username
                services.tokens.rotate(winner.id, code, tokens)

        if not services.accounts.exists(username):
            if services.allow_account_creation:
                services.accounts.provision(username)
            else:
                emit_event(services.events, USER_LOGIN_FAILED, {"username": username, "reason": "no_user"})
                raise NoAccountProvisioning()

        account = services.accounts.authenticate(username, code)
        if account is None:
            logger.warning("Local authentication handshake rejected %r", username)
            raise LoginFailed()
        return services.accounts.complete_session(account)
