# service/scheduler.py
"""
APScheduler wiring for the service.

Every configured job calls runner.run_module_once() on its trigger. A typical
config runs `modules.job_intake` with op=sync every few minutes and op=redeliver
less often. A sync pass rejected because another instance holds the cursor
lease is recorded as "skipped", not as an error.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import pytz
from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from modules.job_intake.lib.sync import SyncInProgressError

from . import config_schema, runner
from .logging_utils import write_activity_log

LOG = logging.getLogger(__name__)

_INTERVAL_FIELDS = frozenset({"weeks", "days", "hours", "minutes", "seconds", "jitter"})
_CRON_FIELDS = frozenset({"second", "minute", "hour", "day", "day_of_week", "month"})


@dataclass(frozen=True)
class ScheduledJob:
    id: str
    module: str
    trigger: Any  # apscheduler BaseTrigger
    kwargs: dict[str, Any] = field(default_factory=dict)
    timeout_sec: int | None = None
    max_instances: int = 1
    summary: str | None = None

    @classmethod
    def from_config(cls, raw: dict[str, Any], tz) -> ScheduledJob:
        module = str(raw.get("module") or "").strip()
        if not module:
            raise ValueError("job has no module")
        return cls(
            id=str(raw.get("id") or module),
            module=module,
            trigger=build_trigger(raw.get("trigger") or {}, tz),
            kwargs=dict(raw.get("kwargs") or {}),
            timeout_sec=int(raw["timeout_sec"]) if raw.get("timeout_sec") else None,
            max_instances=int(raw.get("max_instances") or 1),
            summary=raw.get("summary"),
        )


class ServiceScheduler:
    """Lifecycle handle the CLI holds while `serve` runs."""

    def __init__(self, scheduler: BackgroundScheduler) -> None:
        self._scheduler = scheduler
        self._done = threading.Event()

    def job_ids(self) -> list[str]:
        return [job.id for job in self._scheduler.get_jobs()]

    def stop(self) -> None:
        if self._scheduler.running:
            LOG.info("Stopping scheduler")
            # in-flight passes finish on their own and release their lease
            self._scheduler.shutdown(wait=False)
        self._done.set()

    def join(self, timeout: float | None = None) -> bool:
        return self._done.wait(timeout=timeout)


def start(config_path: str | None = None) -> ServiceScheduler:
    """
    Load the service config, register its jobs and start a BackgroundScheduler.
    Jobs whose trigger cannot be built are logged and left out. Jobs for
    modules.job_intake run with the config's intake block under their kwargs.
    """
    cfg = config_schema.load_config(config_path)
    tz = _resolve_timezone(cfg.get("timezone"))

    scheduler = BackgroundScheduler(
        timezone=tz,
        job_defaults={"coalesce": True, "max_instances": 1},
        executors={"default": ThreadPoolExecutor(4)},
        jobstores={"default": MemoryJobStore()},
    )
    for raw in cfg.get("jobs", []):
        try:
            job = ScheduledJob.from_config({**raw, "kwargs": config_schema.job_kwargs(cfg, raw)}, tz)
        except (TypeError, ValueError) as e:
            LOG.error("Job %r not scheduled: %s", raw.get("id") or raw.get("module"), e)
            continue
        register(scheduler, job)

    scheduler.start()
    LOG.info("Scheduler running %d job(s) in %s", len(scheduler.get_jobs()), tz)
    return ServiceScheduler(scheduler)


def register(scheduler: BackgroundScheduler, job: ScheduledJob) -> None:
    scheduler.add_job(
        func=_job_callable(job),
        trigger=job.trigger,
        id=job.id,
        max_instances=job.max_instances,
        replace_existing=True,
    )
    LOG.info("Scheduled %s -> %s (%s)", job.id, job.module, job.trigger)


def build_trigger(spec: dict[str, Any], tz) -> Any:
    """
    {"interval": {"minutes": 15, "jitter": 30}}
    {"cron": "*/15 * * * *"}
    {"cron": {"minute": "0,30", "hour": "8-18", "day_of_week": "mon-fri"}}

    Raises ValueError on anything else.
    """
    if not isinstance(spec, dict):
        raise ValueError("trigger must be an object")
    kinds = [k for k in ("interval", "cron") if spec.get(k) is not None]
    if len(kinds) != 1:
        raise ValueError("trigger needs exactly one of 'interval' or 'cron'")
    if kinds[0] == "interval":
        return _interval_trigger(spec["interval"], tz)
    return _cron_trigger(spec["cron"], tz)


# ---- Helpers ----------------------------------------------------------------


def _resolve_timezone(name: str | None):
    # APScheduler 3.x works with pytz zones
    try:
        return pytz.timezone(name or "UTC")
    except pytz.UnknownTimeZoneError:
        LOG.warning("Unknown timezone %r; using UTC", name)
        return pytz.UTC


def _interval_trigger(spec: Any, tz) -> IntervalTrigger:
    if not isinstance(spec, dict):
        raise ValueError("interval must be an object of time fields")
    unknown = set(spec) - _INTERVAL_FIELDS
    if unknown:
        raise ValueError(f"unsupported interval field(s): {sorted(unknown)}")
    try:
        parts = {k: int(v) for k, v in spec.items()}
    except (TypeError, ValueError) as e:
        raise ValueError("interval fields must be integers") from e
    if min(parts.values(), default=0) < 0:
        raise ValueError("interval fields cannot be negative")
    jitter = parts.pop("jitter", 0)
    if not any(parts.values()):
        raise ValueError("interval must be longer than zero")
    return IntervalTrigger(timezone=tz, jitter=jitter or None, **{k: v for k, v in parts.items() if v})


def _cron_trigger(spec: Any, tz) -> CronTrigger:
    if isinstance(spec, str):
        if len(spec.split()) != 5:
            raise ValueError(f"crontab needs 5 fields: {spec!r}")
        return CronTrigger.from_crontab(spec, timezone=tz)
    if not isinstance(spec, dict):
        raise ValueError("cron must be a crontab string or an object")
    unknown = set(spec) - _CRON_FIELDS
    if unknown:
        raise ValueError(f"unsupported cron field(s): {sorted(unknown)}")
    fields = {"second": 0, "minute": 0, **spec}
    return CronTrigger(timezone=tz, **fields)


def _job_callable(job: ScheduledJob) -> Callable[[], None]:
    def _fire() -> None:
        started = time.monotonic()
        try:
            meta, _ = runner.run_module_once(
                job.module,
                kwargs=dict(job.kwargs),
                trigger_type="scheduled",
                job_context={"job_id": job.id, "fired_at": datetime.now(timezone.utc).isoformat()},
                timeout_sec=job.timeout_sec,
            )
        except SyncInProgressError as e:
            LOG.info("%s skipped: %s", job.id, e)
            _record_fire(job, "skipped", started, str(e))
        except Exception as e:
            LOG.exception("%s failed", job.id)
            _record_fire(job, "error", started, str(e))
        else:
            message = (meta or {}).get("message", "OK")
            LOG.info("%s finished: %s", job.id, message)
            _record_fire(job, "ok", started, message)

    return _fire


def _record_fire(job: ScheduledJob, status: str, started: float, message: str) -> None:
    try:
        write_activity_log({
            "ts": datetime.now(timezone.utc).isoformat(),
            "source": "scheduler",
            "event": "job_fire",
            "job_id": job.id,
            "module": job.module,
            "status": status,
            "message": message,
            "duration_ms": int((time.monotonic() - started) * 1000),
            "summary": job.summary,
        })
    except OSError:
        LOG.debug("activity log write failed for %s", job.id, exc_info=True)
