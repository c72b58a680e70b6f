"""
Request-level operations returning response envelopes.

Every function returns a dict with an explicit ``success`` flag. Client errors
carry ``error`` + ``details``; store failures carry ``error`` + ``message``.
Webhook forwarding outcomes are reported alongside data and never turn an
ingestion into a failure.
"""

from __future__ import annotations

from typing import Any

from . import db, intake, logging_bridge
from .config import ConfigError, Settings
from .forwarder import WebhookForwarder
from .normalize import ValidationError
from .sync import SyncCursorManager, SyncInProgressError


def submit_job(settings: Settings, payload: Any, forwarder: WebhookForwarder | None = None) -> dict[str, Any]:
    try:
        res = intake.ingest_one(settings, payload, forwarder=forwarder)
    except ValidationError as e:
        return _invalid(e)
    except db.StorageError as e:
        return _failure("Failed to save job", e, op="submit_job")
    return {
        "success": True,
        "outcome": res.outcome,
        "data": res.posting,
        "forwarded": res.forwarded,
    }


def submit_batch(settings: Settings, payload: Any, forwarder: WebhookForwarder | None = None) -> dict[str, Any]:
    """
    Admission rules: a list of 1..settings.batch_max_items records. Items are
    then validated one by one inside the batch.
    """
    jobs = payload.get("jobs") if isinstance(payload, dict) else payload
    if not isinstance(jobs, list):
        return _invalid(ValidationError(['"jobs" must be an array']))
    if not 1 <= len(jobs) <= settings.batch_max_items:
        return _invalid(
            ValidationError([f'"jobs" must contain between 1 and {settings.batch_max_items} items'])
        )

    try:
        db.ping(settings.sqlite_path)
    except db.StorageError as e:
        return _failure("Failed to save jobs", e, op="submit_batch")

    summary = intake.ingest_batch(settings, jobs, forwarder=forwarder)
    return {"success": True, "data": summary.as_dict()}


def list_jobs(
    settings: Settings,
    *,
    source: str | None = None,
    company: str | None = None,
    search: str | None = None,
    limit: int = 50,
    offset: int = 0,
    sort: str = "-scraped_at",
) -> dict[str, Any]:
    try:
        rows, total = db.list_postings(
            settings.sqlite_path,
            source=source,
            company=company,
            search=search,
            limit=int(limit),
            offset=int(offset),
            sort=sort,
        )
    except ValueError as e:
        return _invalid(ValidationError([str(e)]))
    except db.StorageError as e:
        return _failure("Failed to fetch jobs", e, op="list_jobs")
    return {
        "success": True,
        "data": rows,
        "pagination": {"total": total, "limit": int(limit), "offset": int(offset)},
    }


def job_stats(settings: Settings) -> dict[str, Any]:
    try:
        stats = db.source_stats(settings.sqlite_path)
    except db.StorageError as e:
        return _failure("Failed to fetch stats", e, op="job_stats")
    return {"success": True, "data": stats}


def delete_job(settings: Settings, posting_id: Any) -> dict[str, Any]:
    try:
        pid = int(posting_id)
    except (TypeError, ValueError):
        return _invalid(ValidationError([f'"id" must be an integer (got {posting_id!r})']))
    try:
        db.delete_posting(settings.sqlite_path, pid)
    except db.NotFoundError:
        return {"success": False, "error": "Job not found", "not_found": True}
    except db.StorageError as e:
        return _failure("Failed to delete job", e, op="delete_job")

    logging_bridge.activity({"component": "job_intake.api", "op": "delete_job", "id": pid})
    return {"success": True, "message": "Job deleted successfully"}


def trigger_sync(
    settings: Settings,
    *,
    source: str | None = None,
    since: str | None = None,
    forwarder: WebhookForwarder | None = None,
) -> dict[str, Any]:
    try:
        with SyncCursorManager(settings, forwarder=forwarder) as manager:
            result = manager.run_sync_pass(source=source, since=since)
    except ValidationError as e:
        return _invalid(e)
    except ConfigError as e:
        return {"success": False, "error": "Sync not configured", "message": str(e)}
    except SyncInProgressError as e:
        return {"success": False, "error": "Sync already in progress", "message": str(e)}
    except db.StorageError as e:
        return _failure("Failed to sync jobs", e, op="trigger_sync")
    return {"success": True, "message": result.message, "data": result.as_dict()}


def sync_status(settings: Settings) -> dict[str, Any]:
    try:
        with SyncCursorManager(settings) as manager:
            status = manager.status()
    except db.StorageError as e:
        return _failure("Failed to get sync status", e, op="sync_status")
    return {"success": True, "data": status.as_dict()}


def delivery_failures(settings: Settings, limit: int = 100) -> dict[str, Any]:
    try:
        with SyncCursorManager(settings) as manager:
            rows = manager.failed_deliveries(limit=int(limit))
    except db.StorageError as e:
        return _failure("Failed to list delivery failures", e, op="delivery_failures")
    return {"success": True, "data": rows}


def redeliver(settings: Settings, limit: int = 100, forwarder: WebhookForwarder | None = None) -> dict[str, Any]:
    try:
        with SyncCursorManager(settings, forwarder=forwarder) as manager:
            result = manager.redeliver_failures(limit=int(limit))
    except ConfigError as e:
        return {"success": False, "error": "Sync not configured", "message": str(e)}
    except db.StorageError as e:
        return _failure("Failed to redeliver jobs", e, op="redeliver")
    return {"success": True, "data": result.as_dict()}


# ---- envelopes -------------------------------------------------------------


def _invalid(e: ValidationError) -> dict[str, Any]:
    return {"success": False, "error": "Validation failed", "details": list(e.errors)}


def _failure(error: str, e: Exception, *, op: str) -> dict[str, Any]:
    logging_bridge.error({"component": "job_intake.api", "op": op, "error": repr(e)})
    return {"success": False, "error": error, "message": str(e)}
