from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any

# Closed set of origin systems; anything else is rejected by the normalizer.
SOURCES: tuple[str, ...] = ("stackoverflow", "ycombinator", "wellfound", "monster", "linkedin")

LOCATION_NOT_SPECIFIED = "Not specified"

CREATED = "created"
UPDATED = "updated"


@dataclass(frozen=True)
class BatchFailure:
    """One rejected batch item: its position, dedup key (if it had one) and why."""

    index: int
    job_url: str | None
    error: str


@dataclass
class IngestResult:
    """
    Outcome of ingesting one record.
    - outcome: "created" or "updated"
    - posting: the stored row after the upsert
    - forwarded: True/False when a delivery was attempted, None when not applicable
    """

    outcome: str
    posting: dict[str, Any]
    forwarded: bool | None = None


@dataclass
class BatchSummary:
    """
    Itemized result of a batch; created + updated + failed == len(input).
    `outcomes` mirrors input order: "created", "updated" or "failed".
    """

    created: int = 0
    updated: int = 0
    failed: int = 0
    errors: list[BatchFailure] = field(default_factory=list)
    outcomes: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.created + self.updated + self.failed

    def as_dict(self) -> dict[str, Any]:
        return {
            "created": self.created,
            "updated": self.updated,
            "failed": self.failed,
            "errors": [asdict(e) for e in self.errors],
            "outcomes": list(self.outcomes),
        }


@dataclass(frozen=True)
class SyncCursor:
    key: str
    last_sync_at: str | None = None
    last_sync_count: int = 0
    total_synced: int = 0

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> SyncCursor:
        return cls(
            key=row["key"],
            last_sync_at=row.get("last_sync_at"),
            last_sync_count=int(row.get("last_sync_count") or 0),
            total_synced=int(row.get("total_synced") or 0),
        )


@dataclass(frozen=True)
class SyncStatus:
    last_sync_at: str | None
    last_sync_count: int
    total_synced: int
    pending: int

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SyncPassResult:
    """
    Result of one sync pass. `noop` means no candidates were found and the
    cursor was left untouched.
    """

    synced: int = 0
    failed: int = 0
    total: int = 0
    noop: bool = False
    since: str | None = None
    last_sync_at: str | None = None
    total_synced: int = 0

    @property
    def message(self) -> str:
        if self.noop:
            return "No new jobs to sync"
        return f"Synced {self.synced} jobs"

    def as_dict(self) -> dict[str, Any]:
        out = asdict(self)
        out["message"] = self.message
        return out


@dataclass
class RedeliveryResult:
    delivered: int = 0
    failed: int = 0
    dropped: int = 0

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)
