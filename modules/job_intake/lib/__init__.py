# modules/job_intake/lib/__init__.py
from __future__ import annotations

# Re-export commonly-used types for convenience
from .config import ConfigError, Settings
from .db import NotFoundError, StorageError
from .forwarder import ForwardOutcome, ForwardResult, WebhookForwarder
from .intake import ingest_batch, ingest_one
from .models import SOURCES, BatchSummary, IngestResult, SyncPassResult
from .normalize import ValidationError, normalize_posting
from .sync import SyncCursorManager, SyncInProgressError

__all__ = [
    "SOURCES",
    "BatchSummary",
    "ConfigError",
    "ForwardOutcome",
    "ForwardResult",
    "IngestResult",
    "NotFoundError",
    "Settings",
    "StorageError",
    "SyncCursorManager",
    "SyncInProgressError",
    "SyncPassResult",
    "ValidationError",
    "WebhookForwarder",
    "ingest_batch",
    "ingest_one",
    "normalize_posting",
]
