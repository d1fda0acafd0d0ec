"""
auth/state_store.py -- Single-use anti-replay records for the authorization request.

Pattern: Repository + Data Mapper (same as auth/store.py).

Replay protection depends on one property: consume() locates and deletes a
record in ONE statement (DELETE ... RETURNING). A select followed by a
separate delete would leave a window in which two concurrent callbacks carrying
the same state could both be accepted.

Expired records are consumed like any other and then reported as missing, so
an expired state can never be retried. purge_expired() trims records whose
browser round-trip was abandoned.

Layer rule: no imports from api/, web/, core/, or loginflow/.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict
from datetime import datetime, timedelta, timezone

from sqlalchemy import func, select
from sqlalchemy.engine import Engine

from auth.models import AuthState, StateMetadata
from auth.schema import auth_states

logger = logging.getLogger("oidclogin.auth.state_store")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def encode_metadata(metadata: StateMetadata) -> str:
    return json.dumps(asdict(metadata))


def decode_metadata(raw: str | None) -> StateMetadata:
    """Decode a persisted metadata payload.

    Anything malformed -- invalid JSON, a non-object payload, wrongly typed
    fields -- degrades to an empty StateMetadata. Only the known fields are
    read; nothing is deserialized into arbitrary objects.
    """
    if not raw:
        return StateMetadata()
    try:
        data = json.loads(raw)
    except ValueError:
        logger.warning("Discarding malformed auth state metadata")
        return StateMetadata()
    if not isinstance(data, dict):
        return StateMetadata()

    redirect = data.get("redirect")
    force_flow = data.get("force_flow")
    extra = data.get("extra") or {}
    if not isinstance(extra, dict):
        extra = {}
    return StateMetadata(
        redirect=redirect if isinstance(redirect, str) else None,
        connect_only=data.get("connect_only") is True,
        verification_only=data.get("verification_only") is True,
        force_flow=force_flow if isinstance(force_flow, str) else None,
        extra={str(k): str(v) for k, v in extra.items()},
    )


class StateStore:
    """Persists AuthState records and consumes each one exactly once.

    Usage:
        states = StateStore(engine, ttl_seconds=600)
        states.create(AuthState(state=s, nonce=n))
        record = states.consume(s)      # AuthState or None
        record = states.consume(s)      # always None now
    """

    def __init__(self, engine: Engine, ttl_seconds: int = 600) -> None:
        self.engine = engine
        self.ttl_seconds = ttl_seconds

    def create(self, auth_state: AuthState) -> int:
        """Insert a new AuthState and return its ID.

        Raises sqlalchemy.exc.IntegrityError if the state token already exists.
        """
        created_at = _now().isoformat()
        with self.engine.begin() as conn:
            result = conn.execute(
                auth_states.insert().values(
                    state=auth_state.state,
                    nonce=auth_state.nonce,
                    additional_data=encode_metadata(auth_state.metadata),
                    created_at=created_at,
                )
            )
        auth_state.created_at = created_at
        auth_state.id = result.inserted_primary_key[0]
        return auth_state.id

    def consume(self, state: str) -> AuthState | None:
        """Atomically fetch-and-delete the record for state.

        Returns None when no record exists, when it was already consumed, or
        when it is older than ttl_seconds (the expired record is still deleted).
        """
        with self.engine.begin() as conn:
            row = conn.execute(
                auth_states.delete()
                .where(auth_states.c.state == state)
                .returning(
                    auth_states.c.id,
                    auth_states.c.state,
                    auth_states.c.nonce,
                    auth_states.c.additional_data,
                    auth_states.c.created_at,
                )
            ).fetchone()
        if row is None:
            return None
        if self._is_expired(row.created_at):
            logger.info("Rejected expired auth state (id=%s)", row.id)
            return None
        return _row_to_auth_state(row)

    def purge_expired(self) -> int:
        """Delete all records older than ttl_seconds. Returns number of rows removed."""
        cutoff = (_now() - timedelta(seconds=self.ttl_seconds)).isoformat()
        with self.engine.begin() as conn:
            result = conn.execute(auth_states.delete().where(auth_states.c.created_at < cutoff))
        return result.rowcount

    def count(self) -> int:
        with self.engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(auth_states)).scalar() or 0

    def _is_expired(self, created_at: str) -> bool:
        created = datetime.fromisoformat(created_at)
        if created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)
        return _now() - created > timedelta(seconds=self.ttl_seconds)


def _row_to_auth_state(row) -> AuthState:
    return AuthState(
        id=row.id,
        state=row.state,
        nonce=row.nonce,
        metadata=decode_metadata(row.additional_data),
        created_at=row.created_at,
    )
