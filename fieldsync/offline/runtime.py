from __future__ import annotations

import asyncio
import logging
from datetime import date
from typing import Any, Callable

import httpx

from fieldsync.cache.jobs import JobCacheService
from fieldsync.cache.pages import PageCacheService
from fieldsync.cache.precache import JobDetailPrecacher
from fieldsync.cache.refresh import TodayJobsRefresher
from fieldsync.cache.types import TechnicianCacheStatus
from fieldsync.connectivity.detector import ConnectivityDetector, ConnectivityStatus
from fieldsync.core.config import Settings
from fieldsync.core.errors import FieldSyncError
from fieldsync.core.events import EventBus, EventTopic
from fieldsync.db.init_db import EDIT_QUEUE_STORE, JOB_CACHE_STORE, PAGE_CACHE_STORE, build_store
from fieldsync.edits.service import EditQueueService
from fieldsync.merge.service import OfflineDataMerger
from fieldsync.navigation.guard import NavigationGuard
from fieldsync.offline.facade import OfflineEditingFacade
from fieldsync.remote.client import JobsApiClient
from fieldsync.sync.service import SyncOrchestrator

logger = logging.getLogger(__name__)


class OfflineRuntime:
    """Owns every offline service and their lifecycle.

    Nothing here is a module-level singleton: build one runtime per process
    (or per test), ``await init()`` it and ``await dispose()`` it.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        today: Callable[[], date] | None = None,
        initially_online: bool = False,
    ):
        self.settings = settings
        self.events = EventBus()

        self._stores = (
            build_store(settings, EDIT_QUEUE_STORE),
            build_store(settings, JOB_CACHE_STORE),
            build_store(settings, PAGE_CACHE_STORE),
        )
        edit_store, job_store, page_store = self._stores

        self.client = JobsApiClient(settings, transport=transport)
        self.edits = EditQueueService(settings, edit_store)
        self.jobs = JobCacheService(settings, job_store, today=today)
        self.pages = PageCacheService(settings, page_store)
        self.connectivity = ConnectivityDetector(settings, self.client, initially_online=initially_online)
        self.merger = OfflineDataMerger(self.edits)
        self.orchestrator = SyncOrchestrator(settings, self.edits, self.client, self.connectivity, self.events)
        self.precacher = JobDetailPrecacher(settings, self.client, self.pages)
        self.refresher = TodayJobsRefresher(settings, self.client, self.jobs, self.precacher)
        self.navigation = NavigationGuard(settings, self.pages, self.connectivity, self.events)
        self.facade = OfflineEditingFacade(self.edits, self.jobs, self.merger, self.orchestrator)

        self.active_technician_id: str | None = None
        self._reconnect_tasks: set[asyncio.Task[None]] = set()
        self._remove_connectivity_listener: Callable[[], None] | None = None
        self._initialized = False

    async def init(self, *, start_background: bool = True) -> None:
        if self._initialized:
            return
        await self.edits.init()
        await self.jobs.init()
        await self.pages.init()
        pruned = await self.navigation.init()
        if pruned:
            logger.info("Dropped %d stale cached pages", pruned)

        self._remove_connectivity_listener = self.connectivity.add_listener(self._on_connectivity_changed)
        self._initialized = True

        if start_background:
            await self.orchestrator.start()
            await self.connectivity.start()

    async def dispose(self) -> None:
        if not self._initialized:
            await self.client.aclose()
            return
        if self._remove_connectivity_listener is not None:
            self._remove_connectivity_listener()
            self._remove_connectivity_listener = None

        await self.orchestrator.stop()
        await self.connectivity.stop()
        for task in list(self._reconnect_tasks):
            task.cancel()
        if self._reconnect_tasks:
            await asyncio.gather(*self._reconnect_tasks, return_exceptions=True)
        await self.refresher.cancel_background()
        await self.client.aclose()
        for store in self._stores:
            await store.dispose()
        self._initialized = False

    def set_active_technician(self, technician_id: str | None) -> None:
        self.active_technician_id = technician_id

    async def refresh_jobs(self, technician_id: str | None = None, *, precache: bool = True) -> TechnicianCacheStatus:
        target = technician_id or self.active_technician_id
        if not target:
            raise ValueError("No technician selected for job refresh")
        return await self.refresher.refresh(target, precache=precache)

    async def _on_connectivity_changed(self, status: ConnectivityStatus) -> None:
        await self.events.publish(
            EventTopic.CONNECTIVITY,
            {
                "is_offline": status.is_offline,
                "is_local_network": status.is_local_network,
                "last_online_at": status.last_online_at.isoformat() if status.last_online_at else None,
            },
        )
        if status.is_online and self.active_technician_id:
            task = asyncio.create_task(self._refresh_after_reconnect(self.active_technician_id))
            self._reconnect_tasks.add(task)
            task.add_done_callback(self._reconnect_tasks.discard)

    async def _refresh_after_reconnect(self, technician_id: str) -> None:
        try:
            await self.orchestrator.sync_now()
            await self.refresher.refresh(technician_id)
        except FieldSyncError as exc:
            logger.warning("Post-reconnect refresh for technician %s failed: %s", technician_id, exc)

    async def diagnostics(self) -> dict[str, Any]:
        report = await self.orchestrator.diagnostics()
        job_size = await self.jobs.cache_size()
        report["job_cache"] = {"jobs": job_size.jobs, "technicians": job_size.technicians}
        report["page_cache"] = [
            {
                "route": page.route,
                "title": page.title,
                "cached_at": page.cached_at,
                "is_technician_page": page.is_technician_page,
                "is_job_detail_page": page.is_job_detail_page,
                "has_content": page.has_content,
            }
            for page in await self.pages.list_pages()
        ]
        report["active_technician_id"] = self.active_technician_id
        return report

    async def clear_all_data(self) -> dict[str, int]:
        summary = await self.edits.clear_all()
        jobs = await self.jobs.clear_all()
        pages = await self.pages.clear_all()
        return {"edits": summary.edits, "uploads": summary.uploads, "jobs": jobs, "pages": pages}
