"""
auth/token_store.py -- Persistence for identity-to-account token bindings.

Pattern: Repository + Data Mapper.

One live TokenRecord per external identity, enforced by UNIQUE(external_id).
create() turns the constraint violation into TokenRecordConflict so callers can
re-read and rotate instead of producing a duplicate. rotate() overwrites the
token fields on every repeat login -- the record always reflects the most
recent code exchange.

The username index is a secondary lookup path. Callers that find a record by
username must compare its external_id with the identity they hold.

Layer rule: no imports from api/, web/, core/, or loginflow/.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.errors import TokenRecordConflict
from auth.models import TokenRecord, TokenSet
from auth.schema import token_records


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _token_values(raw_auth_code: str | None, tokens: TokenSet) -> dict:
    return {
        "raw_auth_code": raw_auth_code,
        "access_token": tokens.access_token,
        "refresh_token": tokens.refresh_token,
        "id_token": tokens.id_token,
        "scope": tokens.scope,
        "expires_at": tokens.expires_at,
        "updated_at": _now_iso(),
    }


class TokenRecordStore:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def create(
        self,
        external_id: str,
        username: str,
        raw_auth_code: str | None,
        tokens: TokenSet,
        oidc_username: str | None = None,
    ) -> TokenRecord:
        """Insert a new binding and return it.

        Raises TokenRecordConflict if a record for external_id already exists.
        Callers are expected to look the identity up first; the constraint only
        catches the concurrent-first-login race.
        """
        values = _token_values(raw_auth_code, tokens)
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    token_records.insert().values(
                        external_id=external_id,
                        username=username,
                        oidc_username=oidc_username,
                        **values,
                    )
                )
        except IntegrityError as exc:
            raise TokenRecordConflict(external_id) from exc
        return TokenRecord(
            id=result.inserted_primary_key[0],
            external_id=external_id,
            username=username,
            oidc_username=oidc_username,
            **values,
        )

    def rotate(self, record_id: int, raw_auth_code: str | None, tokens: TokenSet) -> bool:
        """Overwrite the token fields and timestamp of an existing record.

        Returns True if a row was updated, False if record_id was not found.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                token_records.update()
                .where(token_records.c.id == record_id)
                .values(**_token_values(raw_auth_code, tokens))
            )
        return result.rowcount > 0

    def get_by_external_id(self, external_id: str) -> TokenRecord | None:
        with self.engine.connect() as conn:
            row = conn.execute(token_records.select().where(token_records.c.external_id == external_id)).fetchone()
        return _row_to_token_record(row) if row is not None else None

    def get_by_username(self, username: str) -> TokenRecord | None:
        """Secondary lookup by local username. Returns the oldest record if several exist."""
        with self.engine.connect() as conn:
            row = conn.execute(
                token_records.select().where(token_records.c.username == username).order_by(token_records.c.id)
            ).fetchone()
        return _row_to_token_record(row) if row is not None else None

    def get_by_id(self, record_id: int) -> TokenRecord | None:
        with self.engine.connect() as conn:
            row = conn.execute(token_records.select().where(token_records.c.id == record_id)).fetchone()
        return _row_to_token_record(row) if row is not None else None

    def delete(self, record_id: int) -> bool:
        """Remove a record whose target account no longer exists."""
        with self.engine.begin() as conn:
            result = conn.execute(token_records.delete().where(token_records.c.id == record_id))
        return result.rowcount > 0

    def list_all(self) -> list[TokenRecord]:
        with self.engine.connect() as conn:
            rows = conn.execute(token_records.select().order_by(token_records.c.id)).fetchall()
        return [_row_to_token_record(r) for r in rows]


def _row_to_token_record(row) -> TokenRecord:
    return TokenRecord(
        id=row.id,
        external_id=row.external_id,
        username=row.username,
        oidc_username=row.oidc_username,
        raw_auth_code=row.raw_auth_code,
        access_token=row.access_token,
        refresh_token=row.refresh_token,
        id_token=row.id_token,
        scope=row.scope,
        expires_at=row.expires_at,
        updated_at=row.updated_at,
    )
