"""
auth/session.py -- Session cookie helpers and cookie-to-user resolution.

Cookie attributes: Secure, HttpOnly, SameSite=Strict on every write and on
the deletion cookie, so browsers match and replace the same cookie. Expires
is set only when the user ticked "remember me"; otherwise the browser drops
the cookie when it closes. The server-side expiry is enforced regardless.

Layer rule: no imports from api/, web/, core/, mail/, or sse/.
"""

from __future__ import annotations

from typing import NamedTuple

from starlette.responses import Response

from auth.errors import UserSessionExpired, UserSessionNotFound
from auth.models import Token, User
from auth.store import UserStore

SESSION_COOKIE = "session"


class SessionLookup(NamedTuple):
    user: User
    # True when the browser holds a cookie that no longer maps to a session.
    stale: bool


def set_session_cookie(response: Response, token: Token, remember: bool) -> None:
    response.set_cookie(
        SESSION_COOKIE,
        token.value,
        expires=token.expires if remember else None,
        path="/",
        secure=True,
        httponly=True,
        samesite="strict",
    )


def delete_session_cookie(response: Response) -> None:
    response.delete_cookie(
        SESSION_COOKIE,
        path="/",
        secure=True,
        httponly=True,
        samesite="strict",
    )


def user_from_session_token(store: UserStore, value: str | None) -> SessionLookup:
    """Resolve a cookie value; missing or dead sessions yield the empty user.

    Any other failure (storage error) propagates to the caller.
    """
    if not value:
        return SessionLookup(User(), False)
    try:
        return SessionLookup(store.user_by_session_token(value), False)
    except (UserSessionNotFound, UserSessionExpired):
        return SessionLookup(User(), True)
