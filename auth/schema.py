"""
auth/schema.py -- SQLAlchemy Core schema and engine factory for auth entities.

All auth tables live in one database so the state, token, and account stores
can share a single Engine. Stores receive the Engine; they never build their
own.

Constraints that carry correctness:
  auth_states.state UNIQUE      -- one record per state token; consumption is
                                   a single DELETE ... RETURNING statement.
  token_records.external_id UNIQUE
                                -- one live binding per external identity.
                                   Two concurrent first logins race on this
                                   constraint; the loser re-reads and rotates.
  prev_logins.user_id UNIQUE    -- at most one backup per account.

Layer rule: no imports from api/, web/, core/, or loginflow/.
"""

from __future__ import annotations

from sqlalchemy import Column, Index, Integer, MetaData, String, Table, Text, create_engine, event
from sqlalchemy.engine import Engine

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("auth_method", String(30), nullable=False, server_default="manual"),
    Column("hashed_password", Text),  # NULL for OIDC-provisioned users
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
    Column("last_login", String(32)),
)

auth_states = Table(
    "auth_states",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("state", String(128), nullable=False, unique=True),
    Column("nonce", String(128), nullable=False),
    Column("additional_data", Text),  # JSON-encoded StateMetadata
    Column("created_at", String(32), nullable=False),
    Index("idx_auth_states_created_at", "created_at"),
)

token_records = Table(
    "token_records",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("external_id", String(255), nullable=False, unique=True),
    Column("username", String(255), nullable=False),
    Column("oidc_username", String(255)),
    Column("raw_auth_code", Text),
    Column("access_token", Text),
    Column("refresh_token", Text),
    Column("id_token", Text),
    Column("scope", Text),
    Column("expires_at", Integer),
    Column("updated_at", String(32), nullable=False),
    Index("idx_token_records_username", "username"),
)

prev_logins = Table(
    "prev_logins",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, unique=True),
    Column("method", String(30), nullable=False),
    Column("password", Text),
)

pending_matches = Table(
    "pending_matches",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("candidate_username", String(255), nullable=False),
    Column("user_id", Integer, nullable=False),
    Column("completed", Integer, nullable=False, server_default="0"),
    Index("idx_pending_matches_candidate", "candidate_username"),
)


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode; set per-connection because PRAGMAs are not pooled."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def create_auth_engine(db_url: str) -> Engine:
    """Create the Engine for the auth database and make sure every table exists."""
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    metadata.create_all(engine)
    return engine
