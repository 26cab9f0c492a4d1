"""
auth/errors.py -- Exception taxonomy for the authentication core.

Stores raise these; the web layer maps them to user-facing messages.
Anything that is not an AuthError (SQLAlchemyError, bcrypt's ValueError on a
malformed hash) is an internal failure and ends up as a 500.

Layer rule: no imports from api/, web/, core/, mail/, or sse/.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for expected authentication outcomes."""


class UserNotFound(AuthError):
    """No user (or no token owner) matched the lookup."""


class IncorrectPassword(AuthError):
    """The password did not verify against the stored hash."""


class UserSessionNotFound(AuthError):
    """No session token row matched the cookie value."""


class UserSessionExpired(AuthError):
    """The session token exists but its expiry has passed."""


class ResetTokenExpired(AuthError):
    pass


class ConfirmTokenExpired(AuthError):
    pass


class TokenNotFound(AuthError):
    """remove() matched no row; the token was already consumed or never existed."""


class UserAlreadyConfirmed(AuthError):
    pass


class InvalidTokenSize(AuthError, ValueError):
    """Token entropy must be at least one byte."""


class WriteEventError(AuthError):
    """Base class for journal failures. Callers log these and carry on."""


class WriteEventDBNil(WriteEventError):
    """The journal was constructed without a database engine."""


class WriteEventFailed(WriteEventError):
    """The insert raised or did not add exactly one row."""
