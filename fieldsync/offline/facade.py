from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from fieldsync.cache.jobs import JobCacheService, cached_job_to_wire
from fieldsync.core.errors import JobNotCachedError, StorageError, ValidationError
from fieldsync.edits.service import EditQueueService
from fieldsync.edits.types import PhotoFile
from fieldsync.merge.service import MergedJob, OfflineDataMerger
from fieldsync.sync.service import SyncOrchestrator
from fieldsync.sync.types import DrainReport, SyncStatus

logger = logging.getLogger(__name__)


class OfflineEditingFacade:
    """What the UI calls. Every write lands in the durable queue first."""

    def __init__(
        self,
        edits: EditQueueService,
        jobs: JobCacheService,
        merger: OfflineDataMerger,
        orchestrator: SyncOrchestrator,
    ):
        self._edits = edits
        self._jobs = jobs
        self._merger = merger
        self._orchestrator = orchestrator

    async def queue_field_edit(self, job_id: str, fields: Mapping[str, Any]) -> str:
        edit_id = await self._edits.enqueue_field_edit(job_id, fields)
        await self._patch_cached_job(job_id, fields)
        self._kick_sync()
        return edit_id

    async def queue_photo_upload(
        self,
        job_id: str,
        photo: PhotoFile,
        caption: str | None = None,
        is_primary: bool = False,
    ) -> str:
        upload_id = await self._edits.enqueue_photo_upload(job_id, photo, caption=caption, is_primary=is_primary)
        self._kick_sync()
        return upload_id

    async def queue_photo_delete(self, job_id: str, photo_id: str) -> str:
        edit_id = await self._edits.enqueue_photo_delete(job_id, photo_id)
        self._kick_sync()
        return edit_id

    async def sync_now(self) -> DrainReport:
        return await self._orchestrator.sync_now()

    async def get_sync_status(self) -> SyncStatus:
        return await self._orchestrator.get_status()

    async def get_job(self, job_id: str) -> MergedJob:
        cached = await self._jobs.get_job(job_id)
        if cached is None:
            raise JobNotCachedError(f"Job not found in cache: {job_id}")
        return await self._merger.merge(cached_job_to_wire(cached))

    async def get_jobs(self, technician_id: str, *, today_only: bool = True) -> list[MergedJob]:
        if today_only:
            cached = await self._jobs.get_today_jobs(technician_id)
        else:
            cached = await self._jobs.get_all_jobs(technician_id)
        return await self._merger.merge_many([cached_job_to_wire(job) for job in cached])

    async def _patch_cached_job(self, job_id: str, fields: Mapping[str, Any]) -> None:
        # The edit is already durable; the cache patch only drives immediate display.
        try:
            patched = await self._jobs.update_job(job_id, fields)
        except JobNotCachedError:
            logger.debug("Job %s is not cached, skipping display patch", job_id)
            return
        except (ValidationError, StorageError) as exc:
            logger.warning("Cached copy of job %s not patched: %s", job_id, exc)
            return
        try:
            await self._jobs.mark_offline_update(patched.technician_id)
        except StorageError as exc:
            logger.warning("Offline update marker for technician %s not written: %s", patched.technician_id, exc)

    def _kick_sync(self) -> None:
        if self._orchestrator.is_online:
            self._orchestrator.trigger()
