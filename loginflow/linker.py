"""
loginflow/linker.py -- Link a verified identity to the account of the current session.

Decision table (first match wins):

  identity already bound
    bound account no longer exists   -> drop the stale record, continue below
    bound to the current account     -> rotate tokens; switch auth method
                                        unless connect-only
    bound to another account         -> IdentityAlreadyConnectedToDifferentAccount
  current account bound to this identity
                                     -> rotate tokens (bound concurrently)
  current account bound to another identity
                                     -> AccountAlreadyConnected
  otherwise                          -> fetch userinfo, create the binding,
                                        emit user_connected; unless connect-only,
                                        back up the previous auth method once and
                                        switch the account to OIDC

Conflict failures happen before any write, so neither account's binding changes.
"""

from __future__ import annotations

import logging

from auth.errors import AccountAlreadyConnected, IdentityAlreadyConnectedToDifferentAccount, TokenRecordConflict
from auth.events import USER_CONNECTED, emit_event
from auth.models import OIDC_AUTH_METHOD, IdentityClaims, LocalAccount, PrevLoginRecord, TokenRecord, TokenSet
from loginflow.base import FlowServices

logger = logging.getLogger("oidclogin.flow.linker")


class AccountLinker:
    def __init__(self, services: FlowServices) -> None:
        self.services = services

    def link(
        self,
        external_id: str,
        code: str,
        tokens: TokenSet,
        claims: IdentityClaims,
        account: LocalAccount,
        connect_only: bool = False,
    ) -> LocalAccount:
        """Bind external_id to account. Returns the account as stored afterwards."""
        services = self.services

        record = services.tokens.get_by_external_id(external_id)
        if record is not None:
            if services.accounts.get_by_username(record.username) is None:
                logger.info("Removing token record %s bound to missing account %r", record.id, record.username)
                services.tokens.delete(record.id)
            elif record.username == account.username:
                return self._refresh(record, code, tokens, account, connect_only)
            else:
                raise IdentityAlreadyConnectedToDifferentAccount()

        by_username = services.tokens.get_by_username(account.username)
        if by_username is not None:
            # Mirrors the identity lookup above; reached only when another
            # callback bound this identity to the account between the two reads.
            if by_username.external_id == external_id:
                return self._refresh(by_username, code, tokens, account, connect_only)
            raise AccountAlreadyConnected()

        userinfo = services.idp.fetch_userinfo(tokens.access_token)
        try:
            services.tokens.create(
                external_id,
                account.username,
                code,
                tokens,
                oidc_username=claims.username_hint or claims.subject,
            )
        except TokenRecordConflict:
            # Another callback bound this identity between our read and insert.
            winner = services.tokens.get_by_external_id(external_id)
            if winner is None or winner.username != account.username:
                raise IdentityAlreadyConnectedToDifferentAccount() from None
            return self._refresh(winner, code, tokens, account, connect_only)

        emit_event(
            services.events,
            USER_CONNECTED,
            {
                "user_id": account.id,
                "username": account.username,
                "external_id": external_id,
                "userinfo_username": userinfo.get("username"),
            },
        )

        if not connect_only:
            if account.auth_method != OIDC_AUTH_METHOD:
                services.accounts.save_prev_login(
                    PrevLoginRecord(user_id=account.id, method=account.auth_method, password=account.hashed_password)
                )
            services.accounts.switch_auth_method(account.id, OIDC_AUTH_METHOD)
        return services.accounts.get_by_id(account.id) or account

    def _refresh(
        self,
        record: TokenRecord,
        code: str,
        tokens: TokenSet,
        account: LocalAccount,
        connect_only: bool,
    ) -> LocalAccount:
        """Idempotent path: the identity is already bound to this account."""
        services = self.services
        if not connect_only and account.auth_method != OIDC_AUTH_METHOD:
            services.accounts.switch_auth_method(account.id, OIDC_AUTH_METHOD)
        services.tokens.rotate(record.id, code, tokens)
        return services.accounts.get_by_id(account.id) or account
