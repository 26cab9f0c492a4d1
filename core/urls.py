"""
core/urls.py -- Validation of untrusted post-login redirect targets.

Only server-local paths are accepted. Everything else (absolute URLs,
scheme-relative URLs, backslashes, control characters, raw whitespace) is
refused and the caller falls back to "/".

Validation order:
  1. Reject the raw string on backslash, control character, whitespace,
     or a leading "//".
  2. Split; reject if a scheme or network location is present.
  3. Percent-decode the path exactly once and re-check the decoded form.
  4. Require a leading "/" and canonicalise "." and ".." segments.
  5. Re-encode the path and reattach the query and fragment unchanged.

The output is a fixed point: local_redirect(local_redirect(x).safe) returns
the same safe value whenever the first call succeeded.

Layer rule: core/ is the kernel. No imports from api/, web/, auth/, mail/, sse/.
"""

from __future__ import annotations

import unicodedata
from typing import NamedTuple
from urllib.parse import quote, unquote, urlsplit

# RFC 3986 pchar minus "%" so a decoded literal "%" is encoded again.
_PATH_SAFE = "/-._~!$&'()*+,;=:@"


class LocalRedirect(NamedTuple):
    ok: bool
    safe: str


_REJECTED = LocalRedirect(False, "")


def _has_control(value: str) -> bool:
    return any(unicodedata.category(ch) == "Cc" for ch in value)


def _canonical_path(path: str) -> str:
    """Resolve "." and ".." segments and collapse empty ones.

    ".." above the root stays at the root, the same way a browser resolves it.
    """
    segments: list[str] = []
    for part in path.split("/"):
        if part in ("", "."):
            continue
        if part == "..":
            if segments:
                segments.pop()
            continue
        segments.append(part)
    canonical = "/" + "/".join(segments)
    if segments and path.endswith("/"):
        canonical += "/"
    return canonical


def local_redirect(target: str | None) -> LocalRedirect:
    """Return (ok, safe) for an untrusted redirect target."""
    if not target:
        return _REJECTED
    if "\\" in target or _has_control(target) or any(ch.isspace() for ch in target):
        return _REJECTED
    if target.startswith("//"):
        return _REJECTED

    parts = urlsplit(target)
    if parts.scheme or parts.netloc:
        return _REJECTED

    path = unquote(parts.path)
    if "\\" in path or _has_control(path):
        return _REJECTED
    if not path.startswith("/"):
        return _REJECTED

    safe = quote(_canonical_path(path), safe=_PATH_SAFE)
    if parts.query:
        safe += "?" + parts.query
    if parts.fragment:
        safe += "#" + parts.fragment
    return LocalRedirect(True, safe)
