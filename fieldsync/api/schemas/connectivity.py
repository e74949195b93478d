from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict


class PlatformStatusRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    online: bool


class ConnectivityResponse(BaseModel):
    is_online: bool
    is_local_network: bool
    last_online_at: datetime | None
    last_probe_at: datetime | None
