from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends

from fieldsync.api.deps import get_runtime
from fieldsync.offline.runtime import OfflineRuntime

router = APIRouter(tags=["health"])


@router.get("/health")
def get_health(runtime: OfflineRuntime = Depends(get_runtime)) -> dict[str, object]:
    settings = runtime.settings
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.environment,
        "is_online": runtime.connectivity.is_online,
        "timestamp": datetime.now(tz=timezone.utc),
    }
