from __future__ import annotations

import os
from datetime import datetime, timezone

# Fixed-width UTC format; the store compares these strings lexically.
_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def now_iso() -> str:
    """
    Current UTC instant as a fixed-width ISO-8601 string with 'Z' suffix.
    """
    return to_iso(datetime.now(timezone.utc))


def to_iso(dt: datetime) -> str:
    """Render an aware (or naive-as-UTC) datetime in the canonical store format."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime(_TS_FORMAT)


def parse_iso(value: str) -> datetime:
    """
    Parse an ISO-8601 timestamp. A trailing 'Z' is accepted; naive values are
    taken as UTC. Raises ValueError on anything unparseable.
    """
    s = str(value or "").strip()
    if not s:
        raise ValueError("empty timestamp")
    if s.endswith(("Z", "z")):
        s = s[:-1] + "+00:00"
    dt = datetime.fromisoformat(s)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def clamp(text: str, limit: int) -> str:
    """Trim surrounding whitespace and cut to at most `limit` characters."""
    return text.strip()[:limit].strip()


def getenv_str(name: str, default: str | None = None) -> str | None:
    """
    Typed wrapper for environment access.
    """
    val = os.getenv(name)
    return val if val is not None else default
