from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import asdict
from datetime import date, datetime
from typing import Any, Callable

from pydantic import ValidationError as SchemaValidationError
from sqlalchemy import delete, func, or_, select

from fieldsync.core.config import Settings
from fieldsync.core.errors import JobNotCachedError, ValidationError
from fieldsync.core.timeutil import coerce_utc, utc_now
from fieldsync.db.models import CachedJobRecord, TechnicianCacheStatusRecord
from fieldsync.db.session import StoreDatabase
from fieldsync.cache.types import (
    CachedJob,
    CacheSize,
    ContactSummary,
    CustomerSummary,
    JobPhoto,
    LocationSummary,
    TechnicianCacheStatus,
    TechnicianSummary,
)
from fieldsync.remote.schemas import RemoteJob

logger = logging.getLogger(__name__)

_UNSET: Any = object()


def cached_job_from_remote(
    remote: RemoteJob,
    *,
    technician_id: str,
    last_cached_at: datetime | None,
    is_editable: bool = True,
) -> CachedJob:
    return CachedJob(
        id=remote.id,
        technician_id=technician_id,
        job_number=remote.job_number,
        description=remote.description,
        status=remote.status,
        service_type=remote.service_type,
        due_date=remote.due_date,
        start_date=remote.start_date,
        end_date=remote.end_date,
        notes=remote.notes,
        actual_hours=remote.actual_hours,
        estimated_hours=remote.estimated_hours,
        battery_type=remote.battery_type,
        battery_model=remote.battery_model,
        battery_serial=remote.battery_serial,
        equipment_type=remote.equipment_type,
        equipment_model=remote.equipment_model,
        equipment_serial=remote.equipment_serial,
        assigned_to_id=remote.assigned_to_id,
        customer=CustomerSummary(**remote.customer.model_dump()),
        location=LocationSummary(**remote.location.model_dump()) if remote.location else None,
        contact=ContactSummary(**remote.contact.model_dump()) if remote.contact else None,
        assigned_to=TechnicianSummary(**remote.assigned_to.model_dump()) if remote.assigned_to else None,
        photos=tuple(JobPhoto(**photo.model_dump()) for photo in remote.photos),
        last_cached_at=last_cached_at,
        is_editable=is_editable,
    )


def cached_job_to_wire(job: CachedJob) -> dict[str, Any]:
    """Render a cached job in the remote API's camelCase shape."""
    data = asdict(job)
    for local_only in ("technician_id", "last_cached_at", "is_editable"):
        data.pop(local_only)
    return RemoteJob.model_validate(data).to_wire()


def cached_job_to_dict(job: CachedJob) -> dict[str, Any]:
    return {
        **cached_job_to_wire(job),
        "technicianId": job.technician_id,
        "lastCached": job.last_cached_at.isoformat() if job.last_cached_at else None,
        "isEditable": job.is_editable,
    }


def _sort_key(job: CachedJob) -> tuple[bool, date, str]:
    return (job.due_date is None, job.due_date or date.max, job.job_number)


class JobCacheService:
    """Per-technician snapshot of assigned jobs.

    ``replace_today_jobs`` swaps a technician's cached jobs wholesale in one
    transaction, so readers never see a half-replaced list.
    """

    def __init__(
        self,
        settings: Settings,
        database: StoreDatabase,
        *,
        today: Callable[[], date] | None = None,
    ):
        self._settings = settings
        self._database = database
        self._today = today or date.today

    async def init(self) -> None:
        await self._database.init()

    async def dispose(self) -> None:
        await self._database.dispose()

    def today(self) -> date:
        return self._today()

    async def replace_today_jobs(self, technician_id: str, jobs: Iterable[RemoteJob]) -> TechnicianCacheStatus:
        if not technician_id or not technician_id.strip():
            raise ValidationError("technician_id cannot be blank")

        unique_jobs: dict[str, RemoteJob] = {}
        for job in jobs:
            unique_jobs[job.id] = job

        now = utc_now()
        today = self.today()
        async with self._database.transaction() as session:
            await session.execute(
                delete(CachedJobRecord).where(
                    or_(
                        CachedJobRecord.technician_id == technician_id,
                        CachedJobRecord.id.in_(list(unique_jobs)),
                    )
                )
            )
            for job in unique_jobs.values():
                session.add(
                    CachedJobRecord(
                        id=job.id,
                        technician_id=technician_id,
                        job_number=job.job_number,
                        status=job.status,
                        due_date=job.due_date,
                        payload=job.to_wire(),
                        is_editable=True,
                        last_cached_at=now,
                    )
                )

            status = await session.get(TechnicianCacheStatusRecord, technician_id)
            if status is None:
                status = TechnicianCacheStatusRecord(technician_id=technician_id)
                session.add(status)
            status.last_sync_at = now
            status.today_jobs_count = sum(1 for job in unique_jobs.values() if job.due_date == today)
            status.total_cached_jobs = len(unique_jobs)
            status.is_online = True
            status.updated_at = now
            await session.flush()
            snapshot = self._to_status(status)

        logger.info(
            "Cached %d jobs for technician %s (%d due today)",
            snapshot.total_cached_jobs,
            technician_id,
            snapshot.today_jobs_count,
        )
        return snapshot

    async def get_today_jobs(self, technician_id: str) -> list[CachedJob]:
        stmt = select(CachedJobRecord).where(
            CachedJobRecord.technician_id == technician_id,
            CachedJobRecord.due_date == self.today(),
        )
        return await self._load_jobs(stmt)

    async def get_all_jobs(self, technician_id: str) -> list[CachedJob]:
        stmt = select(CachedJobRecord).where(CachedJobRecord.technician_id == technician_id)
        return await self._load_jobs(stmt)

    async def _load_jobs(self, stmt) -> list[CachedJob]:  # type: ignore[no-untyped-def]
        async with self._database.session() as session:
            rows = (await session.scalars(stmt)).all()
            jobs = [self._to_snapshot(row) for row in rows]
        return sorted(jobs, key=_sort_key)

    async def get_job(self, job_id: str) -> CachedJob | None:
        async with self._database.session() as session:
            record = await session.get(CachedJobRecord, job_id)
            return self._to_snapshot(record) if record is not None else None

    async def update_job(self, job_id: str, partial_fields: Mapping[str, Any]) -> CachedJob:
        async with self._database.transaction() as session:
            record = await session.get(CachedJobRecord, job_id)
            if record is None:
                raise JobNotCachedError(f"Job not found in cache: {job_id}")

            try:
                patched = RemoteJob.model_validate({**record.payload, **dict(partial_fields)})
            except SchemaValidationError as exc:
                raise ValidationError(f"Cached job {job_id} rejected patch: {exc.error_count()} errors") from exc

            record.payload = patched.to_wire()
            record.job_number = patched.job_number
            record.status = patched.status
            record.due_date = patched.due_date
            record.last_cached_at = utc_now()
            await session.flush()
            return self._to_snapshot(record)

    async def get_cache_status(self, technician_id: str) -> TechnicianCacheStatus | None:
        async with self._database.session() as session:
            record = await session.get(TechnicianCacheStatusRecord, technician_id)
            return self._to_status(record) if record is not None else None

    async def update_cache_status(
        self,
        technician_id: str,
        *,
        is_online: bool | None = None,
        last_sync_at: datetime | None = _UNSET,
        last_offline_update_at: datetime | None = _UNSET,
    ) -> TechnicianCacheStatus:
        now = utc_now()
        async with self._database.transaction() as session:
            record = await session.get(TechnicianCacheStatusRecord, technician_id)
            if record is None:
                record = TechnicianCacheStatusRecord(
                    technician_id=technician_id,
                    today_jobs_count=0,
                    total_cached_jobs=0,
                    is_online=False,
                )
                session.add(record)
            if is_online is not None:
                record.is_online = is_online
            if last_sync_at is not _UNSET:
                record.last_sync_at = last_sync_at
            if last_offline_update_at is not _UNSET:
                record.last_offline_update_at = last_offline_update_at
            record.updated_at = now
            await session.flush()
            return self._to_status(record)

    async def mark_offline_update(self, technician_id: str) -> TechnicianCacheStatus:
        return await self.update_cache_status(technician_id, last_offline_update_at=utc_now())

    async def clear(self, technician_id: str) -> int:
        async with self._database.transaction() as session:
            result = await session.execute(delete(CachedJobRecord).where(CachedJobRecord.technician_id == technician_id))
            await session.execute(
                delete(TechnicianCacheStatusRecord).where(TechnicianCacheStatusRecord.technician_id == technician_id)
            )
        return int(result.rowcount or 0)

    async def clear_all(self) -> int:
        async with self._database.transaction() as session:
            result = await session.execute(delete(CachedJobRecord))
            await session.execute(delete(TechnicianCacheStatusRecord))
        return int(result.rowcount or 0)

    async def cache_size(self) -> CacheSize:
        async with self._database.session() as session:
            jobs = await session.scalar(select(func.count()).select_from(CachedJobRecord))
            technicians = await session.scalar(select(func.count()).select_from(TechnicianCacheStatusRecord))
        return CacheSize(jobs=int(jobs or 0), technicians=int(technicians or 0))

    def _to_snapshot(self, record: CachedJobRecord) -> CachedJob:
        remote = RemoteJob.model_validate(record.payload)
        return cached_job_from_remote(
            remote,
            technician_id=record.technician_id,
            last_cached_at=coerce_utc(record.last_cached_at),
            is_editable=record.is_editable,
        )

    def _to_status(self, record: TechnicianCacheStatusRecord) -> TechnicianCacheStatus:
        return TechnicianCacheStatus(
            technician_id=record.technician_id,
            last_sync_at=coerce_utc(record.last_sync_at),
            today_jobs_count=record.today_jobs_count or 0,
            total_cached_jobs=record.total_cached_jobs or 0,
            is_online=bool(record.is_online),
            last_offline_update_at=coerce_utc(record.last_offline_update_at),
        )


def status_to_dict(status: TechnicianCacheStatus) -> dict[str, Any]:
    return {
        "technician_id": status.technician_id,
        "last_sync_at": status.last_sync_at,
        "today_jobs_count": status.today_jobs_count,
        "total_cached_jobs": status.total_cached_jobs,
        "is_online": status.is_online,
        "last_offline_update_at": status.last_offline_update_at,
    }
