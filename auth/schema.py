"""
auth/schema.py -- SQLAlchemy Core schema and engine factory for WebAuth.

Three tables, one engine. UserStore, TokenStore and EventJournal each own
their table but share the engine created here so that a single SQLite file
(or a single named in-memory DB in tests) backs the whole app.

Timestamps are stored as ISO 8601 UTC strings with fixed microsecond
precision. Because the format is fixed width and always "+00:00", string
comparison in SQL orders them the same way datetime comparison would.

Username width: the users.username column is limited to 10 octets (UTF-8
bytes, not characters). The CHECK constraint makes an over-long name a
storage-level IntegrityError rather than a silently truncated row.

Layer rule: no imports from api/, web/, core/, mail/, or sse/.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
)
from sqlalchemy.engine import Engine

USERNAME_MAX_OCTETS = 10

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("username", String(USERNAME_MAX_OCTETS), primary_key=True),
    Column("hashed_password", Text, nullable=False),
    Column("full_name", Text, nullable=False, server_default=""),
    Column("email", String(255), nullable=False, unique=True),
    Column("admin", Boolean, nullable=False, server_default="0"),
    Column("confirmed", Boolean, nullable=False, server_default="0"),
    Column("created", String(32), nullable=False),
    CheckConstraint(
        f"length(CAST(username AS BLOB)) <= {USERNAME_MAX_OCTETS}",
        name="ck_users_username_octets",
    ),
)

tokens = Table(
    "tokens",
    metadata,
    Column("hashed_value", String(64), primary_key=True),  # SHA-256 hex
    Column("expires", String(32), nullable=False),
    Column("kind", String(16), nullable=False),
    Column(
        "username",
        String(USERNAME_MAX_OCTETS),
        ForeignKey("users.username", ondelete="CASCADE"),
        nullable=False,
    ),
)

events = Table(
    "events",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(10), nullable=False),
    Column("success", Boolean, nullable=False),
    Column("username", String(USERNAME_MAX_OCTETS), nullable=False, server_default=""),
    Column("message", Text, nullable=False, server_default=""),
    Column("created", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# Connection pragmas
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL and foreign keys on every new SQLite connection.

    SQLite PRAGMAs are per-connection and are not inherited from the pool,
    so they are applied on each connect event.
    """
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_db_engine(db_url: str) -> Engine:
    """Create the engine, register pragmas and create missing tables."""
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_sqlite_pragmas)
    metadata.create_all(engine)
    return engine


# ---------------------------------------------------------------------------
# Timestamp helpers
# ---------------------------------------------------------------------------


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_db_time(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db_time(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)
