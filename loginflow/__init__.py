"""loginflow/ -- OIDC login flows and the registry that selects one by name.

Layer rule: loginflow/ imports from auth/ and core/. api/ and web/ import
from loginflow/, not the other way around.
"""

from __future__ import annotations

from sqlalchemy.engine import Engine

from auth.events import EventSink, LoggingEventSink
from auth.idtoken import IdTokenVerifier
from auth.oauth import IdentityProviderClient
from auth.restrictions import Restrictions
from auth.state_store import StateStore
from auth.store import AccountStore, PendingMatchStore
from auth.token_store import TokenRecordStore
from core.config import Settings
from loginflow.authcode import AuthCodeFlow
from loginflow.base import FlowServices, LoginFlow

_FLOWS: dict[str, type[LoginFlow]] = {
    AuthCodeFlow.name: AuthCodeFlow,
}


def get_login_flow(name: str, services: FlowServices) -> LoginFlow:
    """Instantiate the flow registered under name. Raises ValueError for unknown names."""
    try:
        flow_cls = _FLOWS[name]
    except KeyError:
        raise ValueError(f"Unknown login flow: {name!r}") from None
    return flow_cls(services)


def build_services(settings: Settings, engine: Engine, events: EventSink | None = None) -> FlowServices:
    """Assemble the production collaborators for the configured provider."""
    return FlowServices(
        idp=IdentityProviderClient.from_settings(settings),
        verifier=IdTokenVerifier.from_settings(settings),
        states=StateStore(engine, ttl_seconds=settings.state_ttl_seconds),
        tokens=TokenRecordStore(engine),
        accounts=AccountStore(engine),
        pending=PendingMatchStore(engine),
        events=events or LoggingEventSink(),
        restrictions=Restrictions.from_settings(settings),
        allow_account_creation=settings.allow_account_creation,
        post_login_url=settings.post_login_url,
        post_link_url=settings.post_link_url,
    )
