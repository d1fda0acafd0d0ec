"""
auth/store.py -- SQLAlchemy Core persistence for local accounts.

Pattern: Repository + Data Mapper (the flow code never touches SQL directly).
AccountStore owns users and prev_logins; PendingMatchStore owns the staged
manual matches consulted before a brand-new identity is bound to a username.

Security:
  All queries use bound parameters. No f-strings in SQL.

  authenticate() is the local half of the login handshake: an account only
  authenticates when it uses the OIDC auth method AND its token record holds
  the exact authorization code that was just exchanged. A stale or foreign
  code can never open a session.

Layer rule: no imports from api/, web/, core/, or loginflow/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.models import OIDC_AUTH_METHOD, LocalAccount, PendingMatch, PrevLoginRecord
from auth.schema import pending_matches, prev_logins, token_records, users

logger = logging.getLogger("oidclogin.auth.store")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class AccountStore:
    """Repository for LocalAccount and PrevLoginRecord entities.

    Usage:
        accounts = AccountStore(engine)
        accounts.create_user(LocalAccount(username="alice", hashed_password=hash_password("secret")))
        account = accounts.get_by_username("alice")
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    # ------------------------------------------------------------------
    # Account queries
    # ------------------------------------------------------------------

    def create_user(self, account: LocalAccount) -> int:
        """Insert a new account and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the username already exists.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                users.insert().values(
                    username=account.username,
                    auth_method=account.auth_method,
                    hashed_password=account.hashed_password,
                    is_active=1 if account.is_active else 0,
                    created_at=_now_iso(),
                )
            )
        return result.inserted_primary_key[0]

    def get_by_username(self, username: str) -> LocalAccount | None:
        """Look up an account by exact username (case-sensitive). Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(users.select().where(users.c.username == username)).fetchone()
        return _row_to_account(row) if row is not None else None

    def get_by_id(self, user_id: int) -> LocalAccount | None:
        with self.engine.connect() as conn:
            row = conn.execute(users.select().where(users.c.id == user_id)).fetchone()
        return _row_to_account(row) if row is not None else None

    def exists(self, username: str) -> bool:
        return self.get_by_username(username) is not None

    def provision(self, username: str) -> LocalAccount:
        """Create an OIDC-only account for a first-time identity.

        A concurrent callback may have provisioned the same username a moment
        earlier; the existing account is returned in that case.
        """
        try:
            self.create_user(LocalAccount(username=username, auth_method=OIDC_AUTH_METHOD))
            logger.info("Provisioned account %r", username)
        except IntegrityError:
            logger.info("Account %r was provisioned concurrently", username)
        account = self.get_by_username(username)
        if account is None:
            raise RuntimeError(f"Account {username!r} not found after provisioning")
        return account

    def switch_auth_method(self, user_id: int, method: str) -> None:
        with self.engine.begin() as conn:
            conn.execute(users.update().where(users.c.id == user_id).values(auth_method=method))

    # ------------------------------------------------------------------
    # Session handshake
    # ------------------------------------------------------------------

    def authenticate(self, username: str, auth_code: str) -> LocalAccount | None:
        """Return the account when username may log in with auth_code, else None."""
        account = self.get_by_username(username)
        if account is None or not account.is_active or account.auth_method != OIDC_AUTH_METHOD:
            return None
        with self.engine.connect() as conn:
            row = conn.execute(
                token_records.select().where(
                    (token_records.c.username == username) & (token_records.c.raw_auth_code == auth_code)
                )
            ).fetchone()
        return account if row is not None else None

    def complete_session(self, account: LocalAccount) -> LocalAccount:
        """Stamp last_login. The caller turns the returned account into a session cookie."""
        stamp = _now_iso()
        with self.engine.begin() as conn:
            conn.execute(users.update().where(users.c.id == account.id).values(last_login=stamp))
        account.last_login = stamp
        return account

    # ------------------------------------------------------------------
    # Previous login method backup
    # ------------------------------------------------------------------

    def save_prev_login(self, record: PrevLoginRecord) -> bool:
        """Store the pre-switch auth method. Never overwrites an existing backup.

        Returns True if the record was written, False if one already existed.
        """
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    prev_logins.insert().values(
                        user_id=record.user_id,
                        method=record.method,
                        password=record.password,
                    )
                )
        except IntegrityError:
            return False
        return True

    def get_prev_login(self, user_id: int) -> PrevLoginRecord | None:
        with self.engine.connect() as conn:
            row = conn.execute(prev_logins.select().where(prev_logins.c.user_id == user_id)).fetchone()
        if row is None:
            return None
        return PrevLoginRecord(id=row.id, user_id=row.user_id, method=row.method, password=row.password)

    def close(self) -> None:
        self.engine.dispose()


class PendingMatchStore:
    """Staged manual matches between a candidate username and an existing account."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def stage(self, candidate_username: str, user_id: int) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(
                pending_matches.insert().values(candidate_username=candidate_username, user_id=user_id, completed=0)
            )
        return result.inserted_primary_key[0]

    def complete(self, match_id: int) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(pending_matches.update().where(pending_matches.c.id == match_id).values(completed=1))
        return result.rowcount > 0

    def find(self, candidate_username: str) -> dict | None:
        """Return a reference to the matched account, or None.

        A match only counts while it is open and the matched account has not
        been connected to an identity yet; once the account has a token record
        the match is considered resolved.
        """
        with self.engine.connect() as conn:
            match_row = conn.execute(
                pending_matches.select()
                .where((pending_matches.c.candidate_username == candidate_username) & (pending_matches.c.completed == 0))
                .order_by(pending_matches.c.id)
            ).fetchone()
            if match_row is None:
                return None
            user_row = conn.execute(users.select().where(users.c.id == match_row.user_id)).fetchone()
            if user_row is None:
                return None
            connected = conn.execute(
                token_records.select().where(token_records.c.username == user_row.username)
            ).fetchone()
        if connected is not None:
            return None
        match = _row_to_pending_match(match_row)
        return {
            "match_id": match.id,
            "user_id": user_row.id,
            "username": user_row.username,
            "candidate_username": match.candidate_username,
        }


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_account(row) -> LocalAccount:
    return LocalAccount(
        id=row.id,
        username=row.username,
        auth_method=row.auth_method,
        hashed_password=row.hashed_password,
        is_active=bool(row.is_active),
        created_at=row.created_at,
        last_login=row.last_login,
    )


def _row_to_pending_match(row) -> PendingMatch:
    return PendingMatch(
        id=row.id,
        candidate_username=row.candidate_username,
        user_id=row.user_id,
        completed=bool(row.completed),
    )
