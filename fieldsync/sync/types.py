from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any


@dataclass(frozen=True, slots=True)
class SyncStatus:
    pending_edits: int
    pending_photos: int
    failed_edits: int
    failed_photos: int
    is_online: bool
    is_syncing: bool
    last_sync_at: datetime | None
    reauthentication_required: bool

    @property
    def has_pending_items(self) -> bool:
        return self.pending_edits > 0 or self.pending_photos > 0


@dataclass(frozen=True, slots=True)
class DrainReport:
    started_at: datetime
    finished_at: datetime
    skipped_reason: str | None = None
    aborted_reason: str | None = None
    completed_edits: int = 0
    failed_edits: int = 0
    deferred_edits: int = 0
    completed_uploads: int = 0
    failed_uploads: int = 0
    deferred_uploads: int = 0
    stopped: bool = False

    @property
    def reauthentication_required(self) -> bool:
        return self.aborted_reason == "auth"

    @property
    def ran(self) -> bool:
        return self.skipped_reason is None


def status_to_dict(status: SyncStatus) -> dict[str, Any]:
    return {
        "pending_edits": status.pending_edits,
        "pending_photos": status.pending_photos,
        "failed_edits": status.failed_edits,
        "failed_photos": status.failed_photos,
        "is_online": status.is_online,
        "is_syncing": status.is_syncing,
        "last_sync_at": status.last_sync_at,
        "reauthentication_required": status.reauthentication_required,
    }


def report_to_dict(report: DrainReport) -> dict[str, Any]:
    return {
        "started_at": report.started_at,
        "finished_at": report.finished_at,
        "skipped_reason": report.skipped_reason,
        "aborted_reason": report.aborted_reason,
        "completed_edits": report.completed_edits,
        "failed_edits": report.failed_edits,
        "deferred_edits": report.deferred_edits,
        "completed_uploads": report.completed_uploads,
        "failed_uploads": report.failed_uploads,
        "deferred_uploads": report.deferred_uploads,
        "stopped": report.stopped,
    }
