"""
Incremental webhook sync driven by a persisted cursor.

Cursor lifecycle per key:
  uninitialized -> initialized (first status()/run_sync_pass(), defaults stored)
                -> advanced (every pass that found at least one candidate)

Passes on the same key are serialized through a lease column on the cursor
row, so overlapping passes from other threads or processes are rejected
instead of racing on last_sync_at.
"""

from __future__ import annotations

import time
import uuid
from typing import Any

from . import db, logging_bridge
from .config import ConfigError, Settings
from .forwarder import WebhookForwarder
from .models import RedeliveryResult, SyncCursor, SyncPassResult, SyncStatus
from .normalize import ValidationError
from .utils import now_iso, parse_iso, to_iso


class SyncInProgressError(RuntimeError):
    """Another pass currently holds the lease for this cursor key."""


class SyncCursorManager:
    def __init__(
        self,
        settings: Settings,
        forwarder: WebhookForwarder | None = None,
        key: str | None = None,
    ):
        self.settings = settings
        self._owns_forwarder = forwarder is None
        self.forwarder = forwarder or WebhookForwarder.from_settings(settings)
        self.key = key or settings.cursor_key

    def close(self) -> None:
        """Close the forwarder if this manager created it."""
        if self._owns_forwarder:
            self.forwarder.close()

    def __enter__(self) -> SyncCursorManager:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    # ---- read side ----------------------------------------------------------

    def cursor(self) -> SyncCursor:
        return SyncCursor.from_row(db.ensure_cursor(self.settings.sqlite_path, self.key))

    def backlog(self, source: str | None = None) -> int:
        """Postings ingested after the cursor boundary (all of them if never synced)."""
        cur = self.cursor()
        return db.count_since(self.settings.sqlite_path, cur.last_sync_at, source)

    def status(self) -> SyncStatus:
        cur = self.cursor()
        return SyncStatus(
            last_sync_at=cur.last_sync_at,
            last_sync_count=cur.last_sync_count,
            total_synced=cur.total_synced,
            pending=db.count_since(self.settings.sqlite_path, cur.last_sync_at),
        )

    def failed_deliveries(self, limit: int = 100) -> list[dict[str, Any]]:
        return db.list_delivery_failures(self.settings.sqlite_path, self.key, limit)

    # ---- write side ---------------------------------------------------------

    def run_sync_pass(self, source: str | None = None, since: str | None = None) -> SyncPassResult:
        """
        Forward every posting newer than the boundary, then advance the cursor once.

        Args:
            source: optional source filter
            since: optional ISO-8601 override for the lower bound

        Raises:
            ConfigError if no webhook is configured.
            ValidationError if `since` is not a timestamp.
            SyncInProgressError if another pass holds the lease.
            StorageError on store failures (the lease is released).
        """
        if not self.forwarder.configured:
            raise ConfigError("No webhook configured; set JOB_INTAKE_WEBHOOK_URL to enable sync.")
        since_override = _normalize_since(since)
        source_key = source.strip().lower() if source and source.strip() else None

        owner = uuid.uuid4().hex
        path = self.settings.sqlite_path
        if not db.acquire_sync_lease(path, self.key, owner, self.settings.sync_lease_seconds):
            raise SyncInProgressError(f"A sync pass for {self.key!r} is already running.")

        start_ns = time.perf_counter_ns()
        started_at = now_iso()
        completed = False
        try:
            cur = self.cursor()
            bound = since_override or cur.last_sync_at
            candidates = db.fetch_since(path, bound, source_key)

            if not candidates:
                logging_bridge.activity({
                    "component": "job_intake.sync",
                    "op": "noop",
                    "key": self.key,
                    "since": bound,
                    "source": source_key,
                })
                return SyncPassResult(
                    noop=True,
                    since=bound,
                    last_sync_at=cur.last_sync_at,
                    total_synced=cur.total_synced,
                )

            delivered = 0
            failed = 0
            for posting in candidates:
                result = self.forwarder.forward(posting)
                if result.delivered:
                    delivered += 1
                    continue
                failed += 1
                db.record_delivery_failure(path, self.key, posting["id"], posting["job_url"], result.error)

            row, held = db.complete_sync_pass(path, self.key, owner, started_at, delivered)
            completed = True
            if not held:
                logging_bridge.error({
                    "component": "job_intake.sync",
                    "op": "lease_lost",
                    "key": self.key,
                    "lease_seconds": self.settings.sync_lease_seconds,
                })

            after = SyncCursor.from_row(row)
            logging_bridge.activity({
                "component": "job_intake.sync",
                "op": "pass",
                "key": self.key,
                "since": bound,
                "source": source_key,
                "candidates": len(candidates),
                "delivered": delivered,
                "failed": failed,
                "last_sync_at": after.last_sync_at,
                "total_synced": after.total_synced,
                "total_us": int((time.perf_counter_ns() - start_ns) // 1000),
            })
            return SyncPassResult(
                synced=delivered,
                failed=failed,
                total=len(candidates),
                since=bound,
                last_sync_at=after.last_sync_at,
                total_synced=after.total_synced,
            )
        finally:
            if not completed:
                db.release_sync_lease(path, self.key, owner)

    def redeliver_failures(self, limit: int = 100) -> RedeliveryResult:
        """
        Retry postings recorded in the delivery ledger. Successes are cleared,
        failures refresh their entry, deleted postings are dropped. The cursor
        and its counters are never touched here.
        """
        if not self.forwarder.configured:
            raise ConfigError("No webhook configured; set JOB_INTAKE_WEBHOOK_URL to enable redelivery.")

        path = self.settings.sqlite_path
        out = RedeliveryResult()
        for entry in db.list_delivery_failures(path, self.key, limit):
            posting = db.get_posting(path, entry["posting_id"])
            if posting is None:
                db.clear_delivery_failure(path, entry["id"])
                out.dropped += 1
                continue
            result = self.forwarder.forward(posting)
            if result.delivered:
                db.clear_delivery_failure(path, entry["id"])
                out.delivered += 1
            else:
                db.record_delivery_failure(path, self.key, posting["id"], posting["job_url"], result.error)
                out.failed += 1

        logging_bridge.activity({
            "component": "job_intake.sync",
            "op": "redeliver",
            "key": self.key,
            **out.as_dict(),
        })
        return out


def _normalize_since(since: str | None) -> str | None:
    if since is None or not str(since).strip():
        return None
    try:
        return to_iso(parse_iso(str(since)))
    except ValueError as e:
        raise ValidationError([f'"since" must be an ISO-8601 timestamp (got {since!r})']) from e
