# service/runner.py
"""
Run one module entrypoint and record the outcome.

The scheduler and the CLI both come through run_module_once(). Job kwargs
arrive as loosely typed config values (strings from --kwargs, YAML scalars,
env indirections) and are coerced here before module.run(**kwargs).
"""

from __future__ import annotations

import importlib
import json
import logging
import os
import re
import time
import uuid
from collections.abc import Callable, Mapping
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from datetime import datetime, timezone
from typing import Any

from service.logging_utils import write_activity_log

log = logging.getLogger(__name__)

_TRUE = frozenset({"true", "yes", "on"})
_FALSE = frozenset({"false", "no", "off"})
_NUMBER = re.compile(r"^-?\d+(\.\d+)?$")


class ModuleTimeout(TimeoutError):
    """The module's run() did not return within timeout_sec."""


def run_module_once(
    module: str,
    kwargs: Mapping[str, Any] | None = None,
    trigger_type: str = "scheduled",
    job_context: Mapping[str, Any] | None = None,
    timeout_sec: int | None = None,
) -> tuple[dict[str, Any] | None, str]:
    """
    Import `module`, call its run(**kwargs) once, and write one activity record.

    Returns:
        (meta_or_none, run_id)
    Raises:
        Whatever the module raised (after it is logged), ModuleTimeout, or
        AttributeError if the module has no callable `run`.
    """
    run_id = uuid.uuid4().hex
    entry = _load_entrypoint(module)
    kw = _coerce_kwargs(kwargs)
    record: dict[str, Any] = {
        "run_id": run_id,
        "module": module,
        "trigger_type": trigger_type,
        "started_at": _utc_now(),
        "context": dict(job_context or {}),
        "kwargs": kw,
    }

    t0 = time.monotonic()
    try:
        meta = _as_meta(_invoke(entry, kw, timeout_sec))
    except Exception as e:
        _record(record, t0, ok=False, message=str(e), error_type=type(e).__name__)
        raise

    _record(record, t0, ok=True, message=str((meta or {}).get("message", "OK")), meta=meta or {})
    return meta, run_id


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def _load_entrypoint(module_path: str) -> Callable[..., Any]:
    mod = importlib.import_module(module_path)
    entry = getattr(mod, "run", None)
    if not callable(entry):
        raise AttributeError(f"Module {module_path!r} has no callable run(**kwargs).")
    return entry


def _invoke(entry: Callable[..., Any], kw: dict[str, Any], timeout_sec: int | None) -> Any:
    if not timeout_sec:
        return entry(**kw)
    # A timed-out sync pass keeps running in the worker; its cursor lease
    # still blocks overlapping passes until it finishes or expires.
    pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="runner")
    try:
        return pool.submit(entry, **kw).result(timeout=timeout_sec)
    except FutureTimeout as e:
        raise ModuleTimeout(f"run() did not finish within {timeout_sec}s") from e
    finally:
        pool.shutdown(wait=False)


def _as_meta(value: Any) -> dict[str, Any] | None:
    """Modules may return None, a meta dict (ideally with 'message'), or a plain message."""
    if value is None or isinstance(value, dict):
        return value
    if isinstance(value, str):
        return {"message": value}
    raise TypeError(f"run() must return None, dict or str (got {type(value).__name__})")


def _coerce_kwargs(kwargs: Mapping[str, Any] | None) -> dict[str, Any]:
    """
    - `<name>_env: VAR` becomes `<name>: os.getenv(VAR, "")`
      (e.g. webhook_url_env=N8N_WEBHOOK_URL keeps the URL out of config files)
    - string values are coerced: JSON objects/arrays, true/false/yes/no/on/off,
      plain integers and decimals; everything else stays a string
    """
    out: dict[str, Any] = {}
    for key, value in (kwargs or {}).items():
        if isinstance(key, str) and key.endswith("_env") and isinstance(value, str):
            out[key[: -len("_env")]] = os.getenv(value.strip(), "")
        else:
            out[key] = _coerce_value(value)
    return out


def _coerce_value(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    s = value.strip()
    if s and s[0] in "{[" and s[-1] in "}]":
        try:
            return json.loads(s)
        except json.JSONDecodeError:
            pass
    low = s.lower()
    if low in _TRUE:
        return True
    if low in _FALSE:
        return False
    if _NUMBER.match(s):
        return float(s) if "." in s else int(s)
    return s


def _record(record: dict[str, Any], t0: float, **fields: Any) -> None:
    record.update(fields)
    record["duration_ms"] = int((time.monotonic() - t0) * 1000)
    record["ts"] = _utc_now()
    try:
        write_activity_log(record)
    except (OSError, TypeError, ValueError) as e:
        log.warning("activity log write failed for run %s: %s", record.get("run_id"), e)
