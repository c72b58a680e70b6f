# service/logging_utils.py
"""
Append-only JSONL logs shared by the service and its modules.

One file per day and kind, $LOG_DIR/<prefix>-YYYY-MM-DD.jsonl. The environment
is read on every write so tests (and `run`) can redirect output:

    LOG_DIR                 /app/local/logs
    ACTIVITY_LOG_PREFIX     activity
    ERROR_LOG_PREFIX        error
    ACTIVITY_LOG_MAX_BYTES  0 (no size rotation)

Values under secret-looking keys are masked before anything reaches disk.
Webhook URLs count as secrets: n8n puts the token in the path.
"""

from __future__ import annotations

import contextlib
import datetime as _dt
import json
import os
import socket
from typing import Any

REDACTED = "***REDACTED***"

_SECRET_KEY_PARTS = (
    "password",
    "token",
    "apikey",
    "api_key",
    "secret",
    "authorization",
    "cookie",
    "webhook_url",
)

_HOST = socket.gethostname()


def write_activity_log(record: dict[str, Any]) -> None:
    """Append one activity record. Never mutates `record`; raises on I/O failure."""
    _append(_path("ACTIVITY_LOG_PREFIX", "activity"), record)


def write_error_log(record: dict[str, Any]) -> None:
    _append(_path("ERROR_LOG_PREFIX", "error"), record)


def get_activity_log_path() -> str:
    return _path("ACTIVITY_LOG_PREFIX", "activity")


def redacted(value: Any) -> Any:
    """Deep copy of `value` with secret-looking keys and bearer credentials masked."""
    if isinstance(value, dict):
        return {k: REDACTED if _is_secret_key(k) else redacted(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [redacted(v) for v in value]
    if isinstance(value, str) and value[:7].lower() == "bearer ":
        return f"Bearer {REDACTED}"
    return value


def _is_secret_key(key: Any) -> bool:
    return isinstance(key, str) and any(part in key.lower() for part in _SECRET_KEY_PARTS)


def _path(prefix_env: str, default_prefix: str) -> str:
    directory = os.getenv("LOG_DIR", "/app/local/logs")
    prefix = os.getenv(prefix_env, default_prefix)
    return os.path.join(directory, f"{prefix}-{_dt.date.today().isoformat()}.jsonl")


def _rotate(path: str) -> None:
    try:
        limit = int(os.getenv("ACTIVITY_LOG_MAX_BYTES", "0"))
    except ValueError:
        limit = 0
    if limit <= 0:
        return
    with contextlib.suppress(FileNotFoundError):
        if os.path.getsize(path) >= limit:
            os.replace(path, f"{path}.{_dt.datetime.now():%Y%m%d-%H%M%S}")


def _append(path: str, record: dict[str, Any]) -> None:
    os.makedirs(os.path.dirname(path), exist_ok=True)
    _rotate(path)

    line = redacted(record)
    line["_meta"] = {**(line.get("_meta") or {}), "host": _HOST, "pid": os.getpid()}
    data = json.dumps(line, ensure_ascii=False, separators=(",", ":"), default=str) + "\n"

    # one write() on an O_APPEND fd keeps concurrent writers' lines whole
    fd = os.open(path, os.O_CREAT | os.O_APPEND | os.O_WRONLY, 0o644)
    try:
        os.write(fd, data.encode("utf-8"))
    finally:
        os.close(fd)
