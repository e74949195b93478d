from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status

from fieldsync.api.deps import get_runtime
from fieldsync.api.schemas.sync import DiagnosticsResponse, DrainReportResponse, RequeueResponse, SyncStatusResponse
from fieldsync.core.errors import StorageError
from fieldsync.offline.runtime import OfflineRuntime
from fieldsync.sync.types import report_to_dict, status_to_dict

router = APIRouter(prefix="/sync", tags=["sync"])


@router.get("/status", response_model=SyncStatusResponse)
async def get_sync_status(runtime: OfflineRuntime = Depends(get_runtime)) -> SyncStatusResponse:
    try:
        sync_status = await runtime.facade.get_sync_status()
    except StorageError as exc:
        raise HTTPException(status_code=status.HTTP_507_INSUFFICIENT_STORAGE, detail=str(exc)) from exc
    return SyncStatusResponse.model_validate(status_to_dict(sync_status))


@router.post("/now", response_model=DrainReportResponse)
async def sync_now(runtime: OfflineRuntime = Depends(get_runtime)) -> DrainReportResponse:
    try:
        report = await runtime.facade.sync_now()
    except StorageError as exc:
        raise HTTPException(status_code=status.HTTP_507_INSUFFICIENT_STORAGE, detail=str(exc)) from exc
    if report.reauthentication_required:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Re-authentication required")
    return DrainReportResponse.model_validate(report_to_dict(report))


@router.post("/retry-failed", response_model=RequeueResponse)
async def retry_failed(runtime: OfflineRuntime = Depends(get_runtime)) -> RequeueResponse:
    result = await runtime.orchestrator.retry_failed()
    return RequeueResponse(edits=result.edits, uploads=result.uploads)


@router.delete("/failed", response_model=RequeueResponse)
async def purge_failed(runtime: OfflineRuntime = Depends(get_runtime)) -> RequeueResponse:
    result = await runtime.orchestrator.purge_failed()
    return RequeueResponse(edits=result.edits, uploads=result.uploads)


@router.get("/diagnostics", response_model=DiagnosticsResponse)
async def get_diagnostics(runtime: OfflineRuntime = Depends(get_runtime)) -> dict[str, Any]:
    return await runtime.diagnostics()
