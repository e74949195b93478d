from __future__ import annotations

from typing import Any, Literal

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile, status

from fieldsync.api.deps import get_runtime
from fieldsync.api.schemas.edits import FieldEditRequest, QueuedEditResponse
from fieldsync.api.schemas.jobs import JobListResponse, TechnicianCacheStatusResponse
from fieldsync.cache.jobs import status_to_dict
from fieldsync.core.errors import (
    AuthError,
    JobNotCachedError,
    NetworkError,
    StorageError,
    ValidationError,
)
from fieldsync.db.models import EditKind
from fieldsync.edits.types import PhotoFile
from fieldsync.offline.runtime import OfflineRuntime

router = APIRouter(tags=["jobs"])


@router.post(
    "/jobs/{job_id}/edits",
    response_model=QueuedEditResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def queue_field_edit(
    job_id: str,
    request: FieldEditRequest,
    runtime: OfflineRuntime = Depends(get_runtime),
) -> QueuedEditResponse:
    try:
        edit_id = await runtime.facade.queue_field_edit(job_id, request.fields)
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except StorageError as exc:
        raise HTTPException(status_code=status.HTTP_507_INSUFFICIENT_STORAGE, detail=str(exc)) from exc
    return QueuedEditResponse(id=edit_id, job_id=job_id, kind=EditKind.FIELD_UPDATE.value)


@router.post(
    "/jobs/{job_id}/photos",
    response_model=QueuedEditResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def queue_photo_upload(
    job_id: str,
    file: UploadFile = File(...),
    caption: str | None = Form(default=None),
    is_primary: bool = Form(default=False),
    runtime: OfflineRuntime = Depends(get_runtime),
) -> QueuedEditResponse:
    photo = PhotoFile(
        name=file.filename or "photo",
        content_type=file.content_type or "application/octet-stream",
        data=await file.read(),
    )
    try:
        upload_id = await runtime.facade.queue_photo_upload(job_id, photo, caption=caption, is_primary=is_primary)
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except StorageError as exc:
        raise HTTPException(status_code=status.HTTP_507_INSUFFICIENT_STORAGE, detail=str(exc)) from exc
    return QueuedEditResponse(id=upload_id, job_id=job_id, kind=EditKind.PHOTO_UPLOAD.value)


@router.delete(
    "/jobs/{job_id}/photos/{photo_id}",
    response_model=QueuedEditResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def queue_photo_delete(
    job_id: str,
    photo_id: str,
    runtime: OfflineRuntime = Depends(get_runtime),
) -> QueuedEditResponse:
    try:
        edit_id = await runtime.facade.queue_photo_delete(job_id, photo_id)
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except StorageError as exc:
        raise HTTPException(status_code=status.HTTP_507_INSUFFICIENT_STORAGE, detail=str(exc)) from exc
    return QueuedEditResponse(id=edit_id, job_id=job_id, kind=EditKind.PHOTO_DELETE.value)


@router.get("/jobs/{job_id}")
async def get_job(job_id: str, runtime: OfflineRuntime = Depends(get_runtime)) -> dict[str, Any]:
    try:
        merged = await runtime.facade.get_job(job_id)
    except JobNotCachedError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return merged.to_wire()


@router.get("/technicians/{technician_id}/jobs", response_model=JobListResponse)
async def list_technician_jobs(
    technician_id: str,
    scope: Literal["today", "all"] = Query(default="today"),
    runtime: OfflineRuntime = Depends(get_runtime),
) -> JobListResponse:
    merged = await runtime.facade.get_jobs(technician_id, today_only=scope == "today")
    return JobListResponse(technician_id=technician_id, scope=scope, items=[job.to_wire() for job in merged])


@router.post("/technicians/{technician_id}/jobs/refresh", response_model=TechnicianCacheStatusResponse)
async def refresh_technician_jobs(
    technician_id: str,
    runtime: OfflineRuntime = Depends(get_runtime),
) -> TechnicianCacheStatusResponse:
    try:
        cache_status = await runtime.refresh_jobs(technician_id)
    except AuthError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)) from exc
    except NetworkError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    runtime.set_active_technician(technician_id)
    return TechnicianCacheStatusResponse.model_validate(status_to_dict(cache_status))
