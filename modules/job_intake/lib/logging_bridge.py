"""Structured activity/error records for job_intake, written to the service JSONL logs."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from service import logging_utils

_LOG = logging.getLogger("job_intake")


def activity(record: dict[str, Any]) -> None:
    _emit(logging_utils.write_activity_log, logging.INFO, record)


def error(record: dict[str, Any]) -> None:
    _emit(logging_utils.write_error_log, logging.ERROR, record)


def _emit(writer, level: int, record: dict[str, Any]) -> None:
    payload = {"ts": datetime.now(timezone.utc).isoformat(), **record}
    try:
        writer(payload)
    except (OSError, TypeError, ValueError):
        # sink failures never propagate to ingestion or sync
        _LOG.log(level, "log sink unavailable: %s", logging_utils.redacted(payload), exc_info=True)
