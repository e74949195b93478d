from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel


class JobListResponse(BaseModel):
    technician_id: str
    scope: str
    items: list[dict[str, Any]]


class TechnicianCacheStatusResponse(BaseModel):
    technician_id: str
    last_sync_at: datetime | None
    today_jobs_count: int
    total_cached_jobs: int
    is_online: bool
    last_offline_update_at: datetime | None
