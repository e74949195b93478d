from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class VisitRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    route: str = Field(min_length=1, max_length=2048)
    title: str = Field(default="", max_length=512)


class CachedPageResponse(BaseModel):
    route: str
    title: str
    cached_at: datetime
    is_technician_page: bool
    is_job_detail_page: bool
    has_content: bool


class NavigationDecisionResponse(BaseModel):
    target: str
    destination: str | None
    blocked: bool
    reason: str | None
