"""
Ingestion of raw candidate records: normalize, upsert by job_url, forward new ones.

Features:
  - Per-item failure isolation in batches (ValidationError / StorageError are
    recorded, the rest of the batch continues)
  - Sequential processing; summary outcomes follow input order
  - Only rows resolved as "created" are forwarded; updates are not re-notified
  - Dependency injection of the forwarder for testability
"""

from __future__ import annotations

import contextlib
import time
from collections.abc import Iterator, Sequence
from typing import Any

from . import db, logging_bridge
from .config import Settings
from .forwarder import WebhookForwarder
from .models import CREATED, BatchFailure, BatchSummary, IngestResult
from .normalize import ValidationError, normalize_posting


def ingest_one(
    settings: Settings,
    raw: Any,
    forwarder: WebhookForwarder | None = None,
) -> IngestResult:
    """
    Normalize and upsert a single record.

    Raises:
        ValidationError if the record is invalid (nothing is written).
        StorageError if the upsert fails.
    """
    with _forwarder(settings, forwarder) as fwd:
        return _ingest_one(settings, raw, fwd)


def _ingest_one(settings: Settings, raw: Any, fwd: WebhookForwarder) -> IngestResult:
    posting = normalize_posting(raw)
    outcome, stored = db.upsert_posting(settings.sqlite_path, posting)

    forwarded = None
    if outcome == CREATED:
        forwarded = fwd.forward(stored).as_flag()

    logging_bridge.activity({
        "component": "job_intake.intake",
        "op": "ingest_one",
        "outcome": outcome,
        "source": stored["source"],
        "job_url": stored["job_url"],
        "forwarded": forwarded,
    })
    return IngestResult(outcome=outcome, posting=stored, forwarded=forwarded)


def ingest_batch(
    settings: Settings,
    raws: Sequence[Any],
    forwarder: WebhookForwarder | None = None,
) -> BatchSummary:
    """
    Run every element through normalize + upsert, isolating failures.

    Returns:
        BatchSummary with created + updated + failed == len(raws).
    """
    with _forwarder(settings, forwarder) as fwd:
        return _ingest_batch(settings, raws, fwd)


def _ingest_batch(settings: Settings, raws: Sequence[Any], fwd: WebhookForwarder) -> BatchSummary:
    start_ns = time.perf_counter_ns()
    summary = BatchSummary()
    forwarded_ok = 0
    forward_failed = 0

    for index, raw in enumerate(raws):
        try:
            posting = normalize_posting(raw)
            outcome, stored = db.upsert_posting(settings.sqlite_path, posting)
        except (ValidationError, db.StorageError) as e:
            summary.failed += 1
            summary.outcomes.append("failed")
            summary.errors.append(BatchFailure(index=index, job_url=_job_url_of(raw), error=str(e)))
            continue

        summary.outcomes.append(outcome)
        if outcome == CREATED:
            summary.created += 1
            flag = fwd.forward(stored).as_flag()
            if flag is True:
                forwarded_ok += 1
            elif flag is False:
                forward_failed += 1
        else:
            summary.updated += 1

    logging_bridge.activity({
        "component": "job_intake.intake",
        "op": "ingest_batch",
        "size": len(raws),
        "created": summary.created,
        "updated": summary.updated,
        "failed": summary.failed,
        "forwarded": forwarded_ok,
        "forward_failed": forward_failed,
        "total_us": int((time.perf_counter_ns() - start_ns) // 1000),
    })
    return summary


@contextlib.contextmanager
def _forwarder(settings: Settings, injected: WebhookForwarder | None) -> Iterator[WebhookForwarder]:
    # injected forwarders belong to the caller; ours are closed here
    if injected is not None:
        yield injected
        return
    fwd = WebhookForwarder.from_settings(settings)
    try:
        yield fwd
    finally:
        fwd.close()


def _job_url_of(raw: Any) -> str | None:
    """Best-effort identifying key for an item that may not have validated."""
    if isinstance(raw, dict):
        url = raw.get("job_url")
        if isinstance(url, str) and url.strip():
            return url.strip()
    return None
