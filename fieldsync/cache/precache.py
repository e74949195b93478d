from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from typing import Protocol

from fieldsync.core.config import Settings
from fieldsync.core.errors import FieldSyncError
from fieldsync.cache.pages import PageCacheService
from fieldsync.cache.types import PrecacheReport, PrecacheResult
from fieldsync.remote.client import FetchedPage

logger = logging.getLogger(__name__)


class PageFetcher(Protocol):
    async def fetch_page(self, route: str) -> FetchedPage: ...


class JobDetailPrecacher:
    """Fetches job detail pages while online so they open offline later."""

    def __init__(self, settings: Settings, fetcher: PageFetcher, pages: PageCacheService):
        self._settings = settings
        self._fetcher = fetcher
        self._pages = pages

    def route_for(self, job_id: str) -> str:
        return f"{self._settings.job_detail_route_prefix}/{job_id}"

    async def precache(self, job_ids: Iterable[str]) -> PrecacheReport:
        results: list[PrecacheResult] = []
        for job_id in job_ids:
            route = self.route_for(job_id)
            try:
                page = await self._fetcher.fetch_page(route)
                await self._pages.store_page(route, page.body, page.content_type, page.title)
            except FieldSyncError as exc:
                logger.debug("Pre-cache of %s failed: %s", route, exc)
                results.append(PrecacheResult(job_id=job_id, route=route, success=False, error=str(exc)))
            else:
                results.append(PrecacheResult(job_id=job_id, route=route, success=True))

        successful = sum(1 for result in results if result.success)
        report = PrecacheReport(
            total=len(results),
            successful=successful,
            failed=len(results) - successful,
            results=tuple(results),
        )
        if report.total:
            logger.info("Pre-cached %d/%d job detail pages", report.successful, report.total)
        return report

    async def precache_with_retry(self, job_ids: Iterable[str]) -> PrecacheReport:
        """Run one pass, then retry only the failures once after a short delay."""
        first = await self.precache(list(job_ids))
        if not first.failed:
            return first

        await asyncio.sleep(self._settings.precache_retry_delay_seconds)
        retry = await self.precache([result.job_id for result in first.results if not result.success])
        merged = {result.job_id: result for result in first.results}
        merged.update({result.job_id: result for result in retry.results})
        results = tuple(merged.values())
        successful = sum(1 for result in results if result.success)
        return PrecacheReport(total=len(results), successful=successful, failed=len(results) - successful, results=results)
