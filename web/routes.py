"""
web/routes.py -- Browser-facing OpenID Connect redirect routes.

These routes drive the browser through the identity provider round-trip.
They share app.state with the API routes (same engine, stores, login flow)
and answer with redirects; failures propagate as LoginFlowError and are
rendered by the handler registered in api/main.py.

Layer rule: web/ may import the shared limiter and transport models from
api/, never api/main.py itself (asgi.py joins the two).

Route registration order matters: the fixed sub-paths (connect, verify, ucp)
are registered before the bare /auth/oidc/ endpoint.

Routes:
  GET /auth/oidc/connect  -- logged-in account: link an identity without
                             switching its auth method (connect-only)
  GET /auth/oidc/verify   -- logged-in account: confirm the identity only,
                             no login and no account change
  GET /auth/oidc/ucp      -- current account's connection status (JSON)
  GET /auth/oidc/         -- starts a login (no state) or handles the IdP
                             callback (code + state)
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse, RedirectResponse

from api.limiter import CALLBACK_RATE_LIMIT, limiter
from api.models import ConnectionResponse
from auth.dependencies import CONNECT_ONLY_KEY, VERIFICATION_ONLY_KEY, get_current_account, get_request_context
from auth.models import FlowOutcome, FlowResult, LocalAccount, RequestContext, StateMetadata
from auth.tokens import create_access_token, set_auth_cookie

logger = logging.getLogger("oidclogin.web")

router = APIRouter()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _require_oidc(request: Request) -> None:
    if not getattr(request.app.state, "oidc_enabled", False):
        logger.warning("OIDC request to %s while no provider is configured", request.url.path)
        raise HTTPException(
            status_code=503,
            detail={"code": "oidc_disabled", "message": "OpenID Connect login is not configured."},
        )


def _to_response(result: FlowResult) -> JSONResponse | RedirectResponse:
    """Turn a terminal flow result into the browser response.

    A login and a migration both (re)issue the session cookie: after a
    migration the account's auth method has changed and the JWT carries it.
    """
    if result.outcome is FlowOutcome.IDENTITY_VERIFIED:
        resp = JSONResponse(content={"status": "verified"})
        resp.headers["Cache-Control"] = "no-store"
        return resp

    resp = RedirectResponse(result.redirect_url or "/", status_code=302)
    if result.outcome in (FlowOutcome.LOGGED_IN, FlowOutcome.MIGRATED) and result.account is not None:
        set_auth_cookie(resp, create_access_token(result.account))
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# OIDC routes
# ---------------------------------------------------------------------------


@router.get("/auth/oidc/connect")
def oidc_connect(request: Request, account: LocalAccount = Depends(get_current_account)) -> RedirectResponse:
    """Start a connect-only authorization request for the logged-in account."""
    _require_oidc(request)
    flow = request.app.state.login_flow
    request.session[CONNECT_ONLY_KEY] = True
    metadata = StateMetadata(connect_only=True, redirect=flow.services.post_link_url, force_flow=flow.name)
    result = flow.initiate(RequestContext(account=account), metadata=metadata)
    return _to_response(result)


@router.get("/auth/oidc/verify")
def oidc_verify(request: Request, account: LocalAccount = Depends(get_current_account)) -> RedirectResponse:
    """Start a verification-only round trip; the callback emits user_authed and stops."""
    _require_oidc(request)
    flow = request.app.state.login_flow
    request.session[VERIFICATION_ONLY_KEY] = True
    metadata = StateMetadata(verification_only=True, force_flow=flow.name)
    result = flow.initiate(RequestContext(account=account), prompt_login=True, metadata=metadata)
    return _to_response(result)


@router.get("/auth/oidc/ucp", response_model=ConnectionResponse)
def oidc_connection_status(
    request: Request,
    account: LocalAccount = Depends(get_current_account),
) -> ConnectionResponse:
    """Report whether the logged-in account is bound to an external identity."""
    record = request.app.state.token_store.get_by_username(account.username)
    return ConnectionResponse(
        username=account.username,
        auth_method=account.auth_method,
        connected=record is not None,
        oidc_username=record.oidc_username if record else None,
        updated_at=record.updated_at if record else None,
    )


@limiter.limit(CALLBACK_RATE_LIMIT)
@router.get("/auth/oidc/")
def oidc_redirect(request: Request) -> RedirectResponse:
    """Single redirect endpoint registered with the identity provider.

    Query parameters:
      code, state     -- the provider's callback
      promptlogin     -- 1 forces re-authentication at the provider
      promptaconsent  -- 1 requests administrator consent
    """
    _require_oidc(request)
    context = get_request_context(request)
    result = request.app.state.login_flow.handle_redirect(context, dict(request.query_params))
    return _to_response(result)
