"""
core/request_id.py -- Per-process request id generator.

Ids are a random four-letter prefix chosen at startup followed by an eight
digit upper-case hex counter, e.g. "qkzv0000002A". The prefix keeps ids from
different processes apart in aggregated logs; the counter keeps them unique
within one process. The counter wraps at 2**32 like any fixed-width counter.

Layer rule: core/ is the kernel. No imports from api/, web/, auth/, mail/, sse/.
"""

from __future__ import annotations

import itertools
import secrets
import string
import threading

PREFIX_LENGTH = 4


class RequestIdGenerator:
    """Thread-safe source of request ids."""

    def __init__(self, prefix: str | None = None) -> None:
        if prefix is None:
            prefix = "".join(secrets.choice(string.ascii_lowercase) for _ in range(PREFIX_LENGTH))
        self.prefix = prefix
        self._counter = itertools.count(1)
        self._lock = threading.Lock()

    def next_id(self) -> str:
        with self._lock:
            value = next(self._counter)
        return f"{self.prefix}{value & 0xFFFFFFFF:08X}"
