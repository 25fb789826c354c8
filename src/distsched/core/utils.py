from __future__ import annotations

"""
distsched.core.utils
====================

Low-level helpers with **no external dependencies**:
- Compact JSON (de)serialization helpers for bus payloads.
- Jitter and bounded exponential backoff for transport retries.
- Correlation id generator.
"""

import json
import uuid
from secrets import randbelow
from typing import Any


def dumps(x: Any) -> bytes:
    """
    Compact JSON dump to UTF-8 bytes (ensure_ascii=False, no spaces).
    Used as the Kafka value serializer.
    """
    return json.dumps(x, ensure_ascii=False, separators=(",", ":")).encode("utf-8")


def loads(b: bytes | str) -> Any:
    """Inverse of dumps(): parse UTF-8 JSON bytes back to Python objects."""
    if isinstance(b, (bytes, bytearray)):
        b = b.decode("utf-8")
    return json.loads(b)


def encode_key(key: str | None) -> bytes | None:
    return key.encode("utf-8") if key is not None else None


def jitter_ms(base_ms: int, *, pct: float = 0.20, floor_ms: int = 0) -> int:
    """
    Apply symmetric jitter around base value:
        result = base_ms + delta, where delta in [-base_ms*pct, +base_ms*pct]

    Examples:
        jitter_ms(1000) -> value in [800..1200] by default
        jitter_ms(1000, pct=0.5) -> [500..1500]
    """
    if base_ms <= 0 or pct <= 0:
        return max(floor_ms, base_ms)
    span = int(base_ms * pct)
    delta = randbelow(2 * span + 1) - span
    return max(floor_ms, base_ms + delta)


def backoff_ms(attempt: int, *, min_ms: int, max_ms: int) -> int:
    """
    Exponential backoff clamped to [min_ms, max_ms] with light jitter.
    `attempt` starts at 1 for the first retry.
    """
    raw = min(max_ms, max(min_ms, (2 ** max(0, attempt - 1)) * min_ms))
    return min(max_ms, jitter_ms(raw, floor_ms=min_ms))


def new_correlation_id() -> str:
    """Fresh correlation id for one outbound request (uuid4 hex)."""
    return uuid.uuid4().hex
