"""
auth/events.py -- Append-only audit journal of authentication events.

Every security-relevant decision (login, logout, register, token issue,
password reset, confirmation) is recorded with its outcome. The journal is
best effort: write() raises a WriteEventError subclass on failure and the
caller logs it and carries on, because losing an audit row is less bad than
failing the user's request.

Messages are free text chosen by the caller and must never contain a
password or a plaintext token.

Layer rule: no imports from api/, web/, core/, mail/, or sse/.
"""

from __future__ import annotations

import logging

from sqlalchemy import desc, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from auth.errors import WriteEventDBNil, WriteEventFailed
from auth.models import Event, EventName
from auth.schema import events, from_db_time, to_db_time, utcnow

logger = logging.getLogger("webauth.events")


class EventJournal:
    def __init__(self, engine: Engine | None) -> None:
        self.engine = engine

    def write(self, name: EventName, success: bool, username: str, message: str) -> None:
        if self.engine is None:
            raise WriteEventDBNil()
        stmt = events.insert().values(
            name=EventName(name).value,
            success=success,
            username=username,
            message=message,
            created=to_db_time(utcnow()),
        )
        try:
            with self.engine.connect() as conn:
                result = conn.execute(stmt)
                conn.commit()
        except SQLAlchemyError as exc:
            raise WriteEventFailed(str(exc)) from exc
        if result.rowcount != 1:
            raise WriteEventFailed(f"inserted {result.rowcount} rows")

    def list_events(self, limit: int = 500) -> list[Event]:
        """Return the most recent events, newest first."""
        if self.engine is None:
            return []
        stmt = select(events).order_by(desc(events.c.created), desc(events.c.id)).limit(limit)
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [
            Event(
                name=r.name,
                success=bool(r.success),
                username=r.username,
                message=r.message,
                created=from_db_time(r.created),
            )
            for r in rows
        ]
