"""
loginflow/authcode.py -- OAuth 2.0 authorization-code flow for OpenID Connect.

AuthRequestInitiator starts a login attempt: fresh state + nonce, one AuthState
record, and the provider's authorization URL.

CallbackHandler finishes it. The callback passes through these stages in
order; any failure aborts the flow with a LoginFlowError:

  Validating           code present, state present, AuthState consumed
  ExchangingToken      code -> token set; an id_token is required
  VerifyingAssertion   signature, claims and nonce
  CheckingRestrictions configured allow-lists
  Dispatching          first matching branch wins:
      EventCapture     verification-only request: emit user_authed, no mutation
      Migrating        logged-in account and (identity unbound, or account not
                       yet on OIDC): AccountLinker, redirect to the link page
      LoggingIn        otherwise: AccountResolver, redirect to post-login URL

Sequencing notes:
  The AuthState is consumed before the token exchange and is not restored if a
  later stage fails. Single use is the stronger guarantee; the user restarts
  the login instead.

  On the linking path the auth-method switch and previous-login backup are
  written inside AccountLinker, before the redirect, and on the login path
  account provisioning precedes the local handshake. Neither is rolled back
  if a later step fails.
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import Mapping
from typing import Any

from auth.errors import (
    MissingAuthCode,
    MissingIdToken,
    MissingState,
    RestrictionFailed,
    UnknownOrExpiredState,
)
from auth.events import USER_AUTHED, emit_event
from auth.models import (
    OIDC_AUTH_METHOD,
    AuthState,
    FlowOutcome,
    FlowResult,
    RequestContext,
    StateMetadata,
    TokenSet,
)
from loginflow.base import FlowServices, LoginFlow, safe_redirect
from loginflow.linker import AccountLinker
from loginflow.resolver import AccountResolver

logger = logging.getLogger("oidclogin.flow.authcode")


class AuthRequestInitiator:
    def __init__(self, services: FlowServices) -> None:
        self.services = services

    def initiate(
        self,
        prompt_login: bool = False,
        metadata: StateMetadata | None = None,
        extra_params: dict[str, str] | None = None,
    ) -> str:
        """Persist a new AuthState and return the authorization URL to redirect to."""
        state = secrets.token_urlsafe(32)
        nonce = secrets.token_urlsafe(32)
        self.services.states.create(AuthState(state=state, nonce=nonce, metadata=metadata or StateMetadata()))
        logger.debug("Authorization request initiated (prompt_login=%s)", prompt_login)
        return self.services.idp.build_authorization_url(prompt_login, state, nonce, extra_params or {})


class CallbackHandler:
    def __init__(self, services: FlowServices, linker: AccountLinker, resolver: AccountResolver) -> None:
        self.services = services
        self.linker = linker
        self.resolver = resolver

    def handle(self, context: RequestContext, params: Mapping[str, Any]) -> FlowResult:
        services = self.services

        # Validating
        code = params.get("code")
        if not code:
            raise MissingAuthCode()
        state = params.get("state")
        if not state:
            raise MissingState()
        auth_state = services.states.consume(state)
        if auth_state is None:
            logger.warning("Callback with unknown or expired state")
            raise UnknownOrExpiredState()
        metadata = auth_state.metadata

        # ExchangingToken
        token_response = services.idp.exchange_token(code)
        id_token = token_response.get("id_token")
        if not id_token:
            raise MissingIdToken()
        tokens = TokenSet.from_response(token_response)

        # VerifyingAssertion
        claims = services.verifier.verify(id_token, auth_state.nonce)

        # CheckingRestrictions
        if not services.restrictions.check(claims):
            logger.warning("Identity %s prevented from logging in by restrictions", claims.unique_id)
            raise RestrictionFailed()

        # Dispatching
        if context.verification_only or metadata.verification_only:
            payload = {"authparams": dict(params), "tokenparams": dict(token_response)}
            emit_event(services.events, USER_AUTHED, payload)
            logger.info("Identity %s verified (verification only)", claims.unique_id)
            return FlowResult(outcome=FlowOutcome.IDENTITY_VERIFIED, event_payload=payload)

        account = context.account
        if account is not None:
            record = services.tokens.get_by_external_id(claims.unique_id)
            if record is None or account.auth_method != OIDC_AUTH_METHOD:
                connect_only = context.connect_only or metadata.connect_only
                linked = self.linker.link(claims.unique_id, code, tokens, claims, account, connect_only)
                logger.info(
                    "Identity %s linked to %r (connect_only=%s)", claims.unique_id, account.username, connect_only
                )
                return FlowResult(
                    outcome=FlowOutcome.MIGRATED,
                    redirect_url=safe_redirect(metadata.redirect, services.post_link_url),
                    account=linked,
                )

        logged_in = self.resolver.resolve(claims.unique_id, code, tokens, claims)
        logger.info("Identity %s logged in as %r", claims.unique_id, logged_in.username)
        return FlowResult(outcome=FlowOutcome.LOGGED_IN, redirect_url=services.post_login_url, account=logged_in)


class AuthCodeFlow(LoginFlow):
    """Authorization-code grant: the only flow this service ships."""

    name = "authcode"

    def __init__(self, services: FlowServices) -> None:
        super().__init__(services)
        self.initiator = AuthRequestInitiator(services)
        self.callback = CallbackHandler(
            services,
            linker=AccountLinker(services),
            resolver=AccountResolver(services),
        )

    def initiate(
        self,
        context: RequestContext,
        prompt_login: bool = False,
        metadata: StateMetadata | None = None,
        extra_params: dict[str, str] | None = None,
    ) -> FlowResult:
        url = self.initiator.initiate(prompt_login, metadata, extra_params)
        return FlowResult(outcome=FlowOutcome.AUTH_REDIRECT, redirect_url=url)

    def handle_callback(self, context: RequestContext, params: Mapping[str, Any]) -> FlowResult:
        return self.callback.handle(context, params)
