from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel


class SyncStatusResponse(BaseModel):
    pending_edits: int
    pending_photos: int
    failed_edits: int
    failed_photos: int
    is_online: bool
    is_syncing: bool
    last_sync_at: datetime | None
    reauthentication_required: bool


class DrainReportResponse(BaseModel):
    started_at: datetime
    finished_at: datetime
    skipped_reason: str | None
    aborted_reason: str | None
    completed_edits: int
    failed_edits: int
    deferred_edits: int
    completed_uploads: int
    failed_uploads: int
    deferred_uploads: int
    stopped: bool


class RequeueResponse(BaseModel):
    edits: int
    uploads: int


class DiagnosticsResponse(BaseModel):
    status: SyncStatusResponse
    connectivity: dict[str, Any]
    storage: dict[str, int]
    edits: list[dict[str, Any]]
    uploads: list[dict[str, Any]]
    last_report: DrainReportResponse | None
    job_cache: dict[str, int]
    page_cache: list[dict[str, Any]]
    active_technician_id: str | None
