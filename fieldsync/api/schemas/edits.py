from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class FieldEditRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    fields: dict[str, Any] = Field(min_length=1)


class QueuedEditResponse(BaseModel):
    id: str
    job_id: str
    kind: str
