"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores own the SQL;
routes and templates consume these shapes.

The hashed password is deliberately absent from User: nothing outside
auth/store.py ever needs it, so it never reaches a template or a log line.

Layer rule: no imports from api/, web/, core/, mail/, or sse/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class TokenKind(str, Enum):
    session = "session"
    reset = "reset"
    confirm = "confirm"


class EventName(str, Enum):
    """Journal event names. Each value fits the 10-octet name column."""

    login = "login"
    logout = "logout"
    register = "register"
    save_token = "save_token"
    reset_pass = "reset_pass"
    confirmed = "confirmed"


@dataclass
class User:
    """Public view of a user row plus read-side login telemetry.

    An empty username means "no user" (anonymous request).
    last_login_result is "success", "failure" or "" when there is no history.
    """

    username: str = ""
    full_name: str = ""
    email: str = ""
    is_admin: bool = False
    confirmed: bool = False
    created: datetime | None = None
    last_login_time: datetime | None = None
    last_login_result: str = ""

    @property
    def is_authenticated(self) -> bool:
        return bool(self.username)


@dataclass
class Token:
    """A freshly issued token. value is the plaintext and is never persisted."""

    kind: TokenKind
    value: str = ""
    expires: datetime | None = None


@dataclass
class Event:
    name: str
    success: bool
    username: str
    message: str
    created: datetime | None = None


@dataclass
class LastLogin:
    time: datetime | None = None
    result: str = ""
