from __future__ import annotations

import inspect
import json
import logging
import time
from collections.abc import Mapping
from typing import Any
from uuid import uuid4

from sqlalchemy import delete, func, select, update

from fieldsync.core.config import Settings
from fieldsync.core.errors import InvalidEditStateError, ValidationError
from fieldsync.core.timeutil import coerce_utc, utc_now
from fieldsync.db.models import (
    EditKind,
    EditStatus,
    QueuedEditRecord,
    QueuedPhotoUploadRecord,
    UploadStatus,
)
from fieldsync.db.session import StoreDatabase
from fieldsync.edits.types import (
    PhotoFile,
    QueueCounts,
    QueuedEdit,
    QueuedPhotoUpload,
    QueueListener,
    RequeueResult,
    StorageSummary,
)

logger = logging.getLogger(__name__)

RESERVED_FIELD_KEYS = frozenset({"offlineUpdate", "timestamp"})
MAX_CAPTION_LENGTH = 2000

ALLOWED_EDIT_TRANSITIONS: dict[EditStatus, set[EditStatus]] = {
    EditStatus.PENDING: {EditStatus.IN_FLIGHT},
    EditStatus.IN_FLIGHT: {EditStatus.PENDING, EditStatus.COMPLETED, EditStatus.FAILED},
    EditStatus.FAILED: {EditStatus.PENDING},
    EditStatus.COMPLETED: set(),
}

ALLOWED_UPLOAD_TRANSITIONS: dict[UploadStatus, set[UploadStatus]] = {
    UploadStatus.PENDING: {UploadStatus.UPLOADING},
    UploadStatus.UPLOADING: {UploadStatus.PENDING, UploadStatus.COMPLETED, UploadStatus.FAILED},
    UploadStatus.FAILED: {UploadStatus.PENDING},
    UploadStatus.COMPLETED: set(),
}


def _validate_job_id(job_id: Any) -> str:
    if not isinstance(job_id, str) or not job_id.strip():
        raise ValidationError("job_id must be a non-empty string")
    return job_id.strip()


def _validate_fields(fields: Any) -> dict[str, Any]:
    if not isinstance(fields, Mapping):
        raise ValidationError("fields must be a mapping of field name to value")
    if not fields:
        raise ValidationError("fields cannot be empty")

    normalized: dict[str, Any] = {}
    for key, value in fields.items():
        if not isinstance(key, str) or not key.strip():
            raise ValidationError("field names must be non-empty strings")
        if key in RESERVED_FIELD_KEYS:
            raise ValidationError(f"field name is reserved for sync metadata: {key}")
        normalized[key] = value

    try:
        json.dumps(normalized, allow_nan=False)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"field values must be JSON serialisable: {exc}") from exc
    return normalized


class EditQueueService:
    """Durable queue of field edits, photo deletions and photo uploads.

    Records keep their enqueue order through ``created_at_ns``, a per-store
    strictly increasing nanosecond stamp that survives restarts.
    """

    def __init__(self, settings: Settings, database: StoreDatabase):
        self._settings = settings
        self._database = database
        self._last_created_at_ns = 0
        self._listeners: list[QueueListener] = []

    async def init(self) -> None:
        await self._database.init()
        async with self._database.session() as session:
            edit_max = await session.scalar(select(func.max(QueuedEditRecord.created_at_ns)))
            upload_max = await session.scalar(select(func.max(QueuedPhotoUploadRecord.created_at_ns)))
        self._last_created_at_ns = max(edit_max or 0, upload_max or 0)
        recovered = await self.recover_interrupted()
        if recovered:
            logger.warning("Recovered %d queue records interrupted mid-sync", recovered)

    async def dispose(self) -> None:
        await self._database.dispose()

    def _next_created_at_ns(self) -> int:
        value = max(time.time_ns(), self._last_created_at_ns + 1)
        self._last_created_at_ns = value
        return value

    def add_change_listener(self, listener: QueueListener) -> None:
        self._listeners.append(listener)

    def remove_change_listener(self, listener: QueueListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def _notify(self) -> None:
        if not self._listeners:
            return
        counts = await self.counts()
        for listener in list(self._listeners):
            try:
                result = listener(counts)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Queue change listener failed")

    # Enqueue

    async def enqueue_field_edit(self, job_id: str, fields: Mapping[str, Any]) -> str:
        return await self._enqueue_edit(_validate_job_id(job_id), EditKind.FIELD_UPDATE, _validate_fields(fields))

    async def enqueue_photo_delete(self, job_id: str, photo_id: str) -> str:
        if not isinstance(photo_id, str) or not photo_id.strip():
            raise ValidationError("photo_id must be a non-empty string")
        return await self._enqueue_edit(_validate_job_id(job_id), EditKind.PHOTO_DELETE, {"photoId": photo_id.strip()})

    async def _enqueue_edit(self, job_id: str, kind: EditKind, payload: dict[str, Any]) -> str:
        edit_id = str(uuid4())
        async with self._database.transaction() as session:
            session.add(
                QueuedEditRecord(
                    id=edit_id,
                    job_id=job_id,
                    kind=kind,
                    payload=payload,
                    status=EditStatus.PENDING,
                    created_at_ns=self._next_created_at_ns(),
                    created_at=utc_now(),
                    retry_count=0,
                    max_retries=self._settings.max_retries,
                )
            )
        logger.info("Queued %s edit %s for job %s", kind.value, edit_id, job_id)
        await self._notify()
        return edit_id

    async def enqueue_photo_upload(
        self,
        job_id: str,
        photo: PhotoFile,
        caption: str | None = None,
        is_primary: bool = False,
    ) -> str:
        normalized_job_id = _validate_job_id(job_id)
        if not isinstance(photo, PhotoFile):
            raise ValidationError("photo must be a PhotoFile")
        if not photo.name.strip():
            raise ValidationError("photo file name cannot be blank")
        if not photo.data:
            raise ValidationError("photo file is empty")
        if caption is not None and len(caption) > MAX_CAPTION_LENGTH:
            raise ValidationError(f"caption exceeds {MAX_CAPTION_LENGTH} characters")

        upload_id = str(uuid4())
        async with self._database.transaction() as session:
            session.add(
                QueuedPhotoUploadRecord(
                    id=upload_id,
                    job_id=normalized_job_id,
                    file_name=photo.name.strip(),
                    content_type=photo.content_type,
                    size_bytes=photo.size,
                    file_modified_at=photo.modified_at,
                    file_data=photo.data,
                    caption=caption,
                    is_primary=bool(is_primary),
                    upload_progress=0,
                    status=UploadStatus.PENDING,
                    created_at_ns=self._next_created_at_ns(),
                    created_at=utc_now(),
                    retry_count=0,
                    max_retries=self._settings.max_retries,
                )
            )
        logger.info("Queued photo upload %s (%d bytes) for job %s", upload_id, photo.size, normalized_job_id)
        await self._notify()
        return upload_id

    # Reads

    async def get_edit(self, edit_id: str) -> QueuedEdit | None:
        async with self._database.session() as session:
            record = await session.get(QueuedEditRecord, edit_id)
            return self._to_edit(record) if record is not None else None

    async def get_upload(self, upload_id: str) -> QueuedPhotoUpload | None:
        async with self._database.session() as session:
            record = await session.get(QueuedPhotoUploadRecord, upload_id)
            return self._to_upload(record) if record is not None else None

    async def list_pending(self, job_id: str | None = None) -> list[QueuedEdit]:
        return await self._list_edits(statuses=(EditStatus.PENDING,), job_id=job_id)

    async def list_failed(self) -> list[QueuedEdit]:
        return await self._list_edits(statuses=(EditStatus.FAILED,))

    async def list_unsynced_field_edits(self, job_id: str) -> list[QueuedEdit]:
        return await self._list_edits(
            statuses=(EditStatus.PENDING, EditStatus.IN_FLIGHT),
            job_id=job_id,
            kind=EditKind.FIELD_UPDATE,
        )

    async def list_all_edits(self) -> list[QueuedEdit]:
        return await self._list_edits(statuses=tuple(EditStatus))

    async def _list_edits(
        self,
        *,
        statuses: tuple[EditStatus, ...],
        job_id: str | None = None,
        kind: EditKind | None = None,
    ) -> list[QueuedEdit]:
        stmt = select(QueuedEditRecord).where(QueuedEditRecord.status.in_(statuses))
        if job_id is not None:
            stmt = stmt.where(QueuedEditRecord.job_id == job_id)
        if kind is not None:
            stmt = stmt.where(QueuedEditRecord.kind == kind)
        stmt = stmt.order_by(QueuedEditRecord.created_at_ns.asc())
        async with self._database.session() as session:
            rows = (await session.scalars(stmt)).all()
            return [self._to_edit(row) for row in rows]

    async def list_pending_uploads(self, job_id: str | None = None) -> list[QueuedPhotoUpload]:
        return await self._list_uploads(statuses=(UploadStatus.PENDING,), job_id=job_id)

    async def list_failed_uploads(self) -> list[QueuedPhotoUpload]:
        return await self._list_uploads(statuses=(UploadStatus.FAILED,))

    async def list_all_uploads(self) -> list[QueuedPhotoUpload]:
        return await self._list_uploads(statuses=tuple(UploadStatus))

    async def _list_uploads(
        self,
        *,
        statuses: tuple[UploadStatus, ...],
        job_id: str | None = None,
    ) -> list[QueuedPhotoUpload]:
        stmt = select(QueuedPhotoUploadRecord).where(QueuedPhotoUploadRecord.status.in_(statuses))
        if job_id is not None:
            stmt = stmt.where(QueuedPhotoUploadRecord.job_id == job_id)
        stmt = stmt.order_by(QueuedPhotoUploadRecord.created_at_ns.asc())
        async with self._database.session() as session:
            rows = (await session.scalars(stmt)).all()
            return [self._to_upload(row) for row in rows]

    async def counts(self) -> QueueCounts:
        async with self._database.session() as session:
            edit_rows = (
                await session.execute(
                    select(QueuedEditRecord.status, func.count()).group_by(QueuedEditRecord.status)
                )
            ).all()
            upload_rows = (
                await session.execute(
                    select(QueuedPhotoUploadRecord.status, func.count()).group_by(QueuedPhotoUploadRecord.status)
                )
            ).all()
        edits = {EditStatus(row[0]): int(row[1]) for row in edit_rows}
        uploads = {UploadStatus(row[0]): int(row[1]) for row in upload_rows}
        return QueueCounts(
            pending_edits=edits.get(EditStatus.PENDING, 0),
            in_flight_edits=edits.get(EditStatus.IN_FLIGHT, 0),
            failed_edits=edits.get(EditStatus.FAILED, 0),
            pending_uploads=uploads.get(UploadStatus.PENDING, 0),
            uploading_uploads=uploads.get(UploadStatus.UPLOADING, 0),
            failed_uploads=uploads.get(UploadStatus.FAILED, 0),
        )

    async def storage_summary(self) -> StorageSummary:
        async with self._database.session() as session:
            edits = await session.scalar(select(func.count()).select_from(QueuedEditRecord))
            uploads = await session.scalar(select(func.count()).select_from(QueuedPhotoUploadRecord))
            upload_bytes = await session.scalar(select(func.coalesce(func.sum(QueuedPhotoUploadRecord.size_bytes), 0)))
        return StorageSummary(edits=int(edits or 0), uploads=int(uploads or 0), upload_bytes=int(upload_bytes or 0))

    # Status transitions

    def _enforce_edit_transition(self, from_status: EditStatus, to_status: EditStatus) -> None:
        if to_status not in ALLOWED_EDIT_TRANSITIONS[from_status]:
            raise InvalidEditStateError(f"Illegal transition: {from_status.value} -> {to_status.value}")

    def _enforce_upload_transition(self, from_status: UploadStatus, to_status: UploadStatus) -> None:
        if to_status not in ALLOWED_UPLOAD_TRANSITIONS[from_status]:
            raise InvalidEditStateError(f"Illegal transition: {from_status.value} -> {to_status.value}")

    async def mark_status(self, edit_id: str, status: EditStatus, *, error: str | None = None) -> QueuedEdit | None:
        """Move an edit to ``status``.

        ``completed`` deletes the record. ``failed`` records one failed attempt:
        the edit goes back to pending while retries remain and only stays
        failed once ``max_retries`` attempts have failed. A record that no
        longer exists is left alone and ``None`` is returned.
        """
        snapshot: QueuedEdit | None = None
        async with self._database.transaction() as session:
            record = await session.get(QueuedEditRecord, edit_id)
            if record is None:
                logger.debug("Ignoring %s for missing edit %s", status.value, edit_id)
                return None

            self._enforce_edit_transition(record.status, status)
            now = utc_now()
            if status == EditStatus.COMPLETED:
                await session.delete(record)
            elif status == EditStatus.FAILED:
                record.retry_count += 1
                record.last_error = error
                record.status = EditStatus.FAILED if record.retry_count >= record.max_retries else EditStatus.PENDING
                record.updated_at = now
            elif status == EditStatus.IN_FLIGHT:
                record.status = EditStatus.IN_FLIGHT
                record.last_attempt_at = now
                record.updated_at = now
            else:
                if record.status == EditStatus.FAILED:
                    record.retry_count = 0
                    record.last_error = None
                record.status = EditStatus.PENDING
                record.updated_at = now

            if status != EditStatus.COMPLETED:
                await session.flush()
                snapshot = self._to_edit(record)

        if snapshot is not None and snapshot.status == EditStatus.FAILED:
            logger.warning(
                "Edit %s for job %s failed after %d attempts: %s",
                edit_id,
                snapshot.job_id,
                snapshot.retry_count,
                error,
            )
        await self._notify()
        return snapshot

    async def mark_in_flight(self, edit_id: str) -> QueuedEdit | None:
        return await self.mark_status(edit_id, EditStatus.IN_FLIGHT)

    async def record_failure(self, edit_id: str, error: str) -> QueuedEdit | None:
        return await self.mark_status(edit_id, EditStatus.FAILED, error=error)

    async def release(self, edit_id: str) -> QueuedEdit | None:
        return await self.mark_status(edit_id, EditStatus.PENDING)

    async def mark_upload_status(
        self,
        upload_id: str,
        status: UploadStatus,
        *,
        progress: int | None = None,
        error: str | None = None,
    ) -> QueuedPhotoUpload | None:
        snapshot: QueuedPhotoUpload | None = None
        async with self._database.transaction() as session:
            record = await session.get(QueuedPhotoUploadRecord, upload_id)
            if record is None:
                logger.debug("Ignoring %s for missing upload %s", status.value, upload_id)
                return None

            if status == record.status == UploadStatus.UPLOADING and progress is not None:
                record.upload_progress = max(0, min(progress, 100))
            else:
                self._enforce_upload_transition(record.status, status)
                now = utc_now()
                if status == UploadStatus.COMPLETED:
                    await session.delete(record)
                elif status == UploadStatus.FAILED:
                    record.retry_count += 1
                    record.last_error = error
                    record.upload_progress = 0
                    exhausted = record.retry_count >= record.max_retries
                    record.status = UploadStatus.FAILED if exhausted else UploadStatus.PENDING
                    record.updated_at = now
                elif status == UploadStatus.UPLOADING:
                    record.status = UploadStatus.UPLOADING
                    record.upload_progress = max(0, min(progress or 0, 100))
                    record.last_attempt_at = now
                    record.updated_at = now
                else:
                    if record.status == UploadStatus.FAILED:
                        record.retry_count = 0
                        record.last_error = None
                    record.status = UploadStatus.PENDING
                    record.upload_progress = 0
                    record.updated_at = now

            if status != UploadStatus.COMPLETED:
                await session.flush()
                snapshot = self._to_upload(record)

        await self._notify()
        return snapshot

    async def record_upload_failure(self, upload_id: str, error: str) -> QueuedPhotoUpload | None:
        return await self.mark_upload_status(upload_id, UploadStatus.FAILED, error=error)

    async def release_upload(self, upload_id: str) -> QueuedPhotoUpload | None:
        return await self.mark_upload_status(upload_id, UploadStatus.PENDING)

    # Maintenance

    async def remove(self, edit_id: str) -> bool:
        async with self._database.transaction() as session:
            result = await session.execute(delete(QueuedEditRecord).where(QueuedEditRecord.id == edit_id))
        removed = bool(result.rowcount)
        if removed:
            await self._notify()
        return removed

    async def remove_upload(self, upload_id: str) -> bool:
        async with self._database.transaction() as session:
            result = await session.execute(
                delete(QueuedPhotoUploadRecord).where(QueuedPhotoUploadRecord.id == upload_id)
            )
        removed = bool(result.rowcount)
        if removed:
            await self._notify()
        return removed

    async def retry_failed(self) -> RequeueResult:
        now = utc_now()
        async with self._database.transaction() as session:
            edits = await session.execute(
                update(QueuedEditRecord)
                .where(QueuedEditRecord.status == EditStatus.FAILED)
                .values(status=EditStatus.PENDING, retry_count=0, last_error=None, updated_at=now)
            )
            uploads = await session.execute(
                update(QueuedPhotoUploadRecord)
                .where(QueuedPhotoUploadRecord.status == UploadStatus.FAILED)
                .values(status=UploadStatus.PENDING, retry_count=0, last_error=None, upload_progress=0, updated_at=now)
            )
        result = RequeueResult(edits=int(edits.rowcount or 0), uploads=int(uploads.rowcount or 0))
        if result.edits or result.uploads:
            logger.info("Re-queued %d failed edits and %d failed uploads", result.edits, result.uploads)
            await self._notify()
        return result

    async def purge_failed(self) -> RequeueResult:
        async with self._database.transaction() as session:
            edits = await session.execute(delete(QueuedEditRecord).where(QueuedEditRecord.status == EditStatus.FAILED))
            uploads = await session.execute(
                delete(QueuedPhotoUploadRecord).where(QueuedPhotoUploadRecord.status == UploadStatus.FAILED)
            )
        result = RequeueResult(edits=int(edits.rowcount or 0), uploads=int(uploads.rowcount or 0))
        if result.edits or result.uploads:
            logger.warning("Purged %d failed edits and %d failed uploads", result.edits, result.uploads)
            await self._notify()
        return result

    async def recover_interrupted(self) -> int:
        now = utc_now()
        async with self._database.transaction() as session:
            edits = await session.execute(
                update(QueuedEditRecord)
                .where(QueuedEditRecord.status == EditStatus.IN_FLIGHT)
                .values(status=EditStatus.PENDING, updated_at=now)
            )
            uploads = await session.execute(
                update(QueuedPhotoUploadRecord)
                .where(QueuedPhotoUploadRecord.status == UploadStatus.UPLOADING)
                .values(status=UploadStatus.PENDING, upload_progress=0, updated_at=now)
            )
        return int(edits.rowcount or 0) + int(uploads.rowcount or 0)

    async def clear_all(self) -> StorageSummary:
        summary = await self.storage_summary()
        async with self._database.transaction() as session:
            await session.execute(delete(QueuedEditRecord))
            await session.execute(delete(QueuedPhotoUploadRecord))
        logger.warning("Cleared edit queue: %d edits, %d uploads", summary.edits, summary.uploads)
        await self._notify()
        return summary

    def _to_edit(self, record: QueuedEditRecord) -> QueuedEdit:
        return QueuedEdit(
            id=record.id,
            job_id=record.job_id,
            kind=record.kind,
            payload=dict(record.payload or {}),
            status=record.status,
            created_at_ns=record.created_at_ns,
            created_at=coerce_utc(record.created_at),
            retry_count=record.retry_count,
            max_retries=record.max_retries,
            last_error=record.last_error,
            last_attempt_at=coerce_utc(record.last_attempt_at),
        )

    def _to_upload(self, record: QueuedPhotoUploadRecord) -> QueuedPhotoUpload:
        return QueuedPhotoUpload(
            id=record.id,
            job_id=record.job_id,
            file_name=record.file_name,
            content_type=record.content_type,
            size_bytes=record.size_bytes,
            file_modified_at=coerce_utc(record.file_modified_at),
            caption=record.caption,
            is_primary=record.is_primary,
            upload_progress=record.upload_progress,
            status=record.status,
            retry_count=record.retry_count,
            max_retries=record.max_retries,
            last_error=record.last_error,
            last_attempt_at=coerce_utc(record.last_attempt_at),
            created_at_ns=record.created_at_ns,
            created_at=coerce_utc(record.created_at),
            file_data=record.file_data,
        )


def edit_to_dict(edit: QueuedEdit) -> dict[str, Any]:
    return {
        "id": edit.id,
        "job_id": edit.job_id,
        "kind": edit.kind.value,
        "payload": edit.payload,
        "status": edit.status.value,
        "created_at": edit.created_at,
        "retry_count": edit.retry_count,
        "max_retries": edit.max_retries,
        "last_error": edit.last_error,
        "last_attempt_at": edit.last_attempt_at,
    }


def upload_to_dict(upload: QueuedPhotoUpload) -> dict[str, Any]:
    return {
        "id": upload.id,
        "job_id": upload.job_id,
        "file_name": upload.file_name,
        "content_type": upload.content_type,
        "size_bytes": upload.size_bytes,
        "caption": upload.caption,
        "is_primary": upload.is_primary,
        "upload_progress": upload.upload_progress,
        "status": upload.status.value,
        "created_at": upload.created_at,
        "retry_count": upload.retry_count,
        "max_retries": upload.max_retries,
        "last_error": upload.last_error,
        "last_attempt_at": upload.last_attempt_at,
    }
