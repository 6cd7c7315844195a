"""
ID generation and timestamp utilities (stdlib-only).

- **generate_id():** Time-sortable unique IDs (26-char ULID, Crockford base32)
- **utc_now():** Timezone-aware UTC datetime
- **to_iso8601() / from_iso8601():** Safe serialization round-trip

Execution, template and workflow ids all come from ``generate_id`` so that
listing them by id also lists them by creation time.
"""

from __future__ import annotations

import random
import time
from datetime import UTC, datetime


def utc_now() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(UTC)


def generate_id() -> str:
    """Generate a ULID (Universally Unique Lexicographically Sortable Identifier).

    48 bits of millisecond timestamp followed by 80 bits of randomness,
    encoded as 26 characters.
    """
    timestamp_ms = int(time.time() * 1000)
    randomness = random.getrandbits(80)
    return _encode_base32(timestamp_ms, 10) + _encode_base32(randomness, 16)


def to_iso8601(dt: datetime | None) -> str | None:
    """Convert datetime to ISO 8601 string."""
    if dt is None:
        return None
    return dt.isoformat()


def from_iso8601(s: str | None) -> datetime | None:
    """Parse ISO 8601 string to datetime (a trailing ``Z`` is accepted)."""
    if s is None:
        return None
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    return datetime.fromisoformat(s)


# Crockford's base32 alphabet
_ENCODING = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
_ENCODING_LEN = len(_ENCODING)


def _encode_base32(value: int, length: int) -> str:
    """Encode integer to base32 string of fixed length."""
    result = []
    for _ in range(length):
        result.append(_ENCODING[value % _ENCODING_LEN])
        value //= _ENCODING_LEN
    return "".join(reversed(result))
