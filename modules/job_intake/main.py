from __future__ import annotations

from typing import Any

from .lib.config import ConfigError, Settings
from .lib.logging_bridge import activity as log_activity
from .lib.sync import SyncCursorManager

OPS = ("sync", "redeliver", "status")


def run(**kwargs: Any) -> dict[str, Any]:
    """
    Entry point for the 'job_intake' module (scheduler/runner).

    Accepts kwargs, including:
      op: str = "sync"            # sync | redeliver | status
      source: str | None          # sync only: restrict to one source
      since: str | None           # sync only: ISO-8601 lower bound override
      limit: int = 100            # redeliver only

      # Settings overrides (otherwise taken from the environment):
      sqlite_path, webhook_url, webhook_timeout, cursor_key, sync_lease_seconds

    Returns:
      dict meta with a 'message' key; runner logs it. Errors propagate.
    """
    op = str(kwargs.pop("op", "sync") or "sync").strip().lower()
    if op not in OPS:
        raise ConfigError(f"Unknown job_intake op {op!r}; expected one of {', '.join(OPS)}.")

    source = kwargs.pop("source", None)
    since = kwargs.pop("since", None)
    limit = int(kwargs.pop("limit", 100) or 100)

    settings = Settings.from_env_and_kwargs(kwargs)
    with SyncCursorManager(settings) as manager:
        return _run_op(manager, op, source=source, since=since, limit=limit)


def _run_op(manager: SyncCursorManager, op: str, *, source: Any, since: Any, limit: int) -> dict[str, Any]:
    settings = manager.settings
    log_activity({
        "component": "job_intake.main",
        "op": "start",
        "task": op,
        "cursor_key": manager.key,
        "forwarding": settings.forwarding_enabled,
    })

    if op == "status":
        status = manager.status().as_dict()
        return {"message": f"{status['pending']} job(s) pending", **status}

    if op == "redeliver":
        out = manager.redeliver_failures(limit=limit).as_dict()
        return {"message": f"Redelivered {out['delivered']} job(s)", **out}

    result = manager.run_sync_pass(source=source, since=since)
    return result.as_dict()
