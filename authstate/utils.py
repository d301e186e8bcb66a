"""
authstate.utils
---------------
Small helpers for base64 handling, timestamps and SQL identifiers.
"""

from __future__ import annotations
import base64, binascii, time, re

_IDENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def b64e(b: bytes) -> str:
    return base64.b64encode(b).decode("ascii")


def b64d(s: str) -> bytes:
    # Accepts unpadded and url-safe input as written by other clients
    s = s.strip().replace("-", "+").replace("_", "/")
    s += "=" * (-len(s) % 4)
    try:
        return base64.b64decode(s.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError) as exc:
        raise ValueError(f"invalid base64 payload: {exc}") from exc


def b64url_e(b: bytes) -> str:
    return base64.urlsafe_b64encode(b).decode("ascii").rstrip("=")


def compact_ts() -> str:
    return time.strftime("%Y%m%d%H%M%S", time.gmtime())


def is_identifier(name: str) -> bool:
    """True when `name` is safe to interpolate as an SQL table name."""
    return bool(name) and bool(_IDENT_RE.match(name))


def chunked(items, size: int):
    items = list(items)
    for i in range(0, len(items), size):
        yield items[i:i + size]
