"""Shared utilities for the storygraph package.

Small coercion helpers used when reading untrusted synthesis payloads and
configuration values, plus the timestamp helpers shared by the DB and the
job guard.
"""

import re
import time
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any


# ---------------------------------------------------------------------------
# ValidationResult -- outcome of checking an untrusted payload.
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ValidationResult:
    ok: bool
    errors: list[str]


# ---------------------------------------------------------------------------
# Coercion helpers
# ---------------------------------------------------------------------------

def is_non_empty_str(v: Any) -> bool:
    return isinstance(v, str) and v.strip() != ""


def as_int(v: Any) -> int | None:
    if isinstance(v, bool):
        return None
    if isinstance(v, int):
        return v
    if isinstance(v, float) and v.is_integer():
        return int(v)
    if isinstance(v, str) and v.strip().isdigit():
        try:
            return int(v.strip())
        except ValueError:
            return None
    return None


def as_float(v: Any) -> float | None:
    if isinstance(v, bool):
        return None
    if isinstance(v, (int, float)):
        return float(v)
    if isinstance(v, str) and v.strip():
        try:
            return float(v.strip())
        except ValueError:
            return None
    return None


def clamp(v: float, lo: float, hi: float) -> float:
    return float(max(lo, min(hi, v)))


# ---------------------------------------------------------------------------
# Time helpers
# ---------------------------------------------------------------------------

def utc_now_ts() -> int:
    return int(time.time())


def utc_iso(ts: float | None = None) -> str:
    # ISO-ish string, stable and readable in logs.
    t = time.time() if ts is None else float(ts)
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(t))


def parse_iso_time(value: str | None) -> float | None:
    """Parse an ISO 8601 string to a Unix timestamp with sub-second precision (naive values are UTC)."""
    if not isinstance(value, str) or not value.strip():
        return None
    s = value.strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.timestamp()


def parse_iso_ts(value: str | None) -> int | None:
    """Whole-second form of ``parse_iso_time``, as stored in ``*_ts`` columns."""
    ts = parse_iso_time(value)
    return int(ts) if ts is not None else None


_SLUG_RE = re.compile(r"[^a-zA-Z0-9]+")


def slugify(text: str, *, max_len: int = 80) -> str:
    s = _SLUG_RE.sub("-", text or "").strip("-").lower()
    if len(s) > max_len:
        s = s[:max_len].rstrip("-")
    return s or "story"
