"""
auth/passwords.py -- Password hashing and verification.

bcrypt, used directly (no passlib wrapper). Each hash embeds its own random
salt and cost factor, so verify_password() needs nothing but the stored
string. The cost factor for new hashes comes from BCRYPT_ROUNDS.

bcrypt only reads the first 72 bytes of input and bcrypt 4.x+ raises on
anything longer. The encoded password is therefore cut at 72 bytes on both
the hash and the verify side so the two always agree.

Never log a password or a hash.

Layer rule: imports core/ for settings only. No imports from api/, web/, mail/, sse/.
"""

from __future__ import annotations

import bcrypt

from auth.errors import IncorrectPassword
from core.config import get_settings

_BCRYPT_MAX_BYTES = 72


def _encode(plain: str) -> bytes:
    return plain.encode("utf-8")[:_BCRYPT_MAX_BYTES]


def hash_password(plain: str) -> str:
    """Return a salted bcrypt hash of the plaintext password."""
    salt = bcrypt.gensalt(rounds=get_settings().bcrypt_rounds)
    return bcrypt.hashpw(_encode(plain), salt).decode("utf-8")


def verify_password(hashed: str, plain: str) -> None:
    """Raise IncorrectPassword unless plain matches hashed.

    A malformed hash makes bcrypt raise ValueError; that is a data problem,
    not a wrong password, so it propagates unchanged.
    """
    if not bcrypt.checkpw(_encode(plain), hashed.encode("utf-8")):
        raise IncorrectPassword()


# Verified against when the username does not exist so that the response
# time of a failed login does not reveal whether the account exists.
DUMMY_HASH: str = hash_password("webauth_timing_dummy")
