from __future__ import annotations

import asyncio
import logging

from fieldsync.core.config import Settings
from fieldsync.cache.jobs import JobCacheService
from fieldsync.cache.precache import JobDetailPrecacher
from fieldsync.cache.types import PrecacheReport, TechnicianCacheStatus
from fieldsync.remote.client import JobsApiClient

logger = logging.getLogger(__name__)


class TodayJobsRefresher:
    """Pulls today's jobs for a technician into the job cache.

    Detail-page pre-caching runs in the background after the cache is
    replaced and never delays or fails the refresh.
    """

    def __init__(
        self,
        settings: Settings,
        client: JobsApiClient,
        jobs: JobCacheService,
        precacher: JobDetailPrecacher,
    ):
        self._settings = settings
        self._client = client
        self._jobs = jobs
        self._precacher = precacher
        self._background: set[asyncio.Task[PrecacheReport]] = set()

    async def refresh(self, technician_id: str, *, precache: bool = True) -> TechnicianCacheStatus:
        remote_jobs = await self._client.list_jobs(
            technician_id,
            self._jobs.today(),
            limit=self._settings.job_fetch_limit,
        )
        status = await self._jobs.replace_today_jobs(technician_id, remote_jobs)
        if precache and remote_jobs:
            self._schedule_precache([job.id for job in remote_jobs])
        return status

    def _schedule_precache(self, job_ids: list[str]) -> None:
        task = asyncio.create_task(self._precacher.precache_with_retry(job_ids), name="fieldsync-precache")
        self._background.add(task)
        task.add_done_callback(self._on_precache_done)

    def _on_precache_done(self, task: asyncio.Task[PrecacheReport]) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Job detail pre-cache crashed: %s", exc)
        elif task.result().failed:
            logger.warning("Job detail pre-cache left %d pages uncached", task.result().failed)

    async def wait_for_background(self) -> None:
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def cancel_background(self) -> None:
        tasks = list(self._background)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
