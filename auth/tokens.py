"""
auth/tokens.py -- Opaque token issuance, lookup and single-use removal.

Security design decisions:
  Tokens are random bytes from secrets.token_bytes(), URL-safe base64
  encoded. The plaintext is handed to the caller exactly once (cookie value
  or emailed link) and never stored. The tokens table holds only the full
  SHA-256 hex digest, which is also the primary key, so lookup is a single
  indexed equality match and nothing can be enumerated by prefix.

  SHA-256 rather than bcrypt: tokens carry 96-256 bits of entropy, so a
  slow KDF adds cost without adding security.

  Expiry is an absolute UTC timestamp fixed at issue time. An expired row is
  deleted the first time it is looked up; purge_expired() sweeps the rest.

  Rows are inserted with INSERT ... SELECT FROM users so a token can only be
  created for a user that exists at insertion time.

Token kinds and defaults live in one table (token_specs) so sizes, lifetimes
and cookie names are not scattered across the routes.

Layer rule: imports core/ for settings only. No imports from api/, web/, mail/, sse/.
"""

from __future__ import annotations

import base64
import hashlib
import logging
import secrets
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy import delete, literal, select
from sqlalchemy.engine import Engine

from auth.errors import (
    ConfirmTokenExpired,
    InvalidTokenSize,
    ResetTokenExpired,
    TokenNotFound,
    UserNotFound,
    UserSessionExpired,
)
from auth.models import Token, TokenKind
from auth.schema import from_db_time, to_db_time, tokens, users, utcnow
from core.config import Settings, get_settings

logger = logging.getLogger("webauth.tokens")

# ---------------------------------------------------------------------------
# Kind table
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TokenSpec:
    size: int  # bytes of entropy before encoding
    lifetime: timedelta
    cookie: str | None = None


def token_specs(settings: Settings | None = None) -> dict[TokenKind, TokenSpec]:
    """Return the default (size, lifetime, cookie) for every token kind."""
    settings = settings or get_settings()
    return {
        TokenKind.session: TokenSpec(32, timedelta(seconds=settings.session_expires_seconds), "session"),
        TokenKind.reset: TokenSpec(12, timedelta(seconds=settings.reset_expires_seconds)),
        TokenKind.confirm: TokenSpec(12, timedelta(seconds=settings.confirm_expires_seconds)),
    }


_EXPIRED_ERRORS: dict[TokenKind, type[Exception]] = {
    TokenKind.session: UserSessionExpired,
    TokenKind.reset: ResetTokenExpired,
    TokenKind.confirm: ConfirmTokenExpired,
}

# ---------------------------------------------------------------------------
# Value helpers
# ---------------------------------------------------------------------------


def generate_token(size: int) -> str:
    """Return size random bytes as URL-safe base64 (padded)."""
    if size <= 0:
        raise InvalidTokenSize(f"token size must be positive, got {size}")
    return base64.urlsafe_b64encode(secrets.token_bytes(size)).decode("ascii")


def hash_token(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class TokenStore:
    """Sole owner of the tokens table.

    Usage:
        store = TokenStore(engine)
        token = store.create(TokenKind.reset, "alice")
        username = store.lookup_username(TokenKind.reset, token.value)
        store.remove(TokenKind.reset, token.value)
    """

    def __init__(self, engine: Engine, specs: dict[TokenKind, TokenSpec] | None = None) -> None:
        self.engine = engine
        self.specs = specs or token_specs()

    def create(
        self,
        kind: TokenKind,
        username: str,
        size: int | None = None,
        duration: timedelta | None = None,
    ) -> Token:
        """Issue a token for username and return its plaintext and expiry.

        An empty username is a successful no-op that returns an empty Token,
        which lets the forgot flow run the same code path for unknown emails.
        """
        spec = self.specs[kind]
        if size is None:
            size = spec.size
        if size <= 0:
            raise InvalidTokenSize(f"token size must be positive, got {size}")
        if not username:
            return Token(kind=kind)

        value = generate_token(size)
        expires = utcnow() + (spec.lifetime if duration is None else duration)
        source = select(
            literal(hash_token(value)),
            literal(to_db_time(expires)),
            literal(kind.value),
            users.c.username,
        ).where(users.c.username == username)
        stmt = tokens.insert().from_select(["hashed_value", "expires", "kind", "username"], source)
        with self.engine.connect() as conn:
            result = conn.execute(stmt)
            conn.commit()
        if result.rowcount != 1:
            raise UserNotFound(username)
        return Token(kind=kind, value=value, expires=expires)

    def lookup_username(self, kind: TokenKind, value: str) -> str:
        """Return the owner of a live token.

        Raises UserNotFound when no row matches. An expired row is deleted
        and the kind-specific expiry error is raised.
        """
        hashed = hash_token(value)
        match = (tokens.c.hashed_value == hashed) & (tokens.c.kind == kind.value)
        with self.engine.connect() as conn:
            row = conn.execute(select(tokens.c.username, tokens.c.expires).where(match)).first()
            if row is None:
                raise UserNotFound()
            if from_db_time(row.expires) <= utcnow():
                conn.execute(delete(tokens).where(match))
                conn.commit()
                raise _EXPIRED_ERRORS[kind]()
        return row.username

    def remove(self, kind: TokenKind, value: str) -> None:
        """Delete exactly one token; TokenNotFound if it was already gone."""
        stmt = delete(tokens).where((tokens.c.hashed_value == hash_token(value)) & (tokens.c.kind == kind.value))
        with self.engine.connect() as conn:
            result = conn.execute(stmt)
            conn.commit()
        if result.rowcount != 1:
            raise TokenNotFound()

    def purge_expired(self) -> int:
        """Delete every expired token and return how many were removed."""
        stmt = delete(tokens).where(tokens.c.expires <= to_db_time(utcnow()))
        with self.engine.connect() as conn:
            result = conn.execute(stmt)
            conn.commit()
        if result.rowcount:
            logger.info("Purged %d expired tokens", result.rowcount)
        return result.rowcount
