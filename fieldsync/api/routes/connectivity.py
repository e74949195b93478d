from __future__ import annotations

from fastapi import APIRouter, Depends

from fieldsync.api.deps import get_runtime
from fieldsync.api.schemas.connectivity import ConnectivityResponse, PlatformStatusRequest
from fieldsync.connectivity.detector import ConnectivityStatus
from fieldsync.offline.runtime import OfflineRuntime

router = APIRouter(prefix="/connectivity", tags=["connectivity"])


def _status_response(connectivity: ConnectivityStatus) -> ConnectivityResponse:
    return ConnectivityResponse(
        is_online=connectivity.is_online,
        is_local_network=connectivity.is_local_network,
        last_online_at=connectivity.last_online_at,
        last_probe_at=connectivity.last_probe_at,
    )


@router.get("", response_model=ConnectivityResponse)
def get_connectivity(runtime: OfflineRuntime = Depends(get_runtime)) -> ConnectivityResponse:
    return _status_response(runtime.connectivity.status)


@router.post("", response_model=ConnectivityResponse)
async def report_platform_status(
    request: PlatformStatusRequest,
    runtime: OfflineRuntime = Depends(get_runtime),
) -> ConnectivityResponse:
    """Accept the host platform's online/offline signal. Online is confirmed by probing first."""
    return _status_response(await runtime.connectivity.report_platform_status(request.online))
