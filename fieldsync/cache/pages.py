from __future__ import annotations

import logging
from datetime import timedelta
from urllib.parse import urlsplit

from sqlalchemy import delete, func, select

from fieldsync.core.config import Settings
from fieldsync.core.errors import ValidationError
from fieldsync.core.timeutil import coerce_utc, utc_now
from fieldsync.db.models import CachedPageRecord
from fieldsync.db.session import StoreDatabase
from fieldsync.cache.types import CachedPage, PageContent

logger = logging.getLogger(__name__)


def normalize_route(route: str) -> str:
    """Strip scheme, host, query and fragment; drop a trailing slash."""
    if not isinstance(route, str) or not route.strip():
        raise ValidationError("route cannot be blank")
    path = urlsplit(route.strip()).path or "/"
    if not path.startswith("/"):
        path = f"/{path}"
    if len(path) > 1:
        path = path.rstrip("/") or "/"
    return path


class PageCacheService:
    """Routes visited (and pages pre-fetched) while online."""

    def __init__(self, settings: Settings, database: StoreDatabase):
        self._settings = settings
        self._database = database

    async def init(self) -> None:
        await self._database.init()

    async def dispose(self) -> None:
        await self._database.dispose()

    def is_technician_page(self, route: str) -> bool:
        return route.startswith(self._settings.technician_dashboard_route) and not self.is_job_detail_page(route)

    def is_job_detail_page(self, route: str) -> bool:
        return route.startswith(f"{self._settings.job_detail_route_prefix}/")

    async def record_visit(self, route: str, title: str = "") -> CachedPage:
        normalized = normalize_route(route)
        async with self._database.transaction() as session:
            record = await session.get(CachedPageRecord, normalized)
            if record is None:
                record = CachedPageRecord(route=normalized, title=title)
                session.add(record)
            elif title:
                record.title = title
            self._stamp(record)
            await session.flush()
            return self._to_snapshot(record)

    async def store_page(self, route: str, body: bytes, content_type: str, title: str = "") -> CachedPage:
        normalized = normalize_route(route)
        async with self._database.transaction() as session:
            record = await session.get(CachedPageRecord, normalized)
            if record is None:
                record = CachedPageRecord(route=normalized, title=title)
                session.add(record)
            elif title:
                record.title = title
            record.content = body
            record.content_type = content_type
            self._stamp(record)
            await session.flush()
            return self._to_snapshot(record)

    def _stamp(self, record: CachedPageRecord) -> None:
        record.cached_at = utc_now()
        record.is_technician_page = self.is_technician_page(record.route)
        record.is_job_detail_page = self.is_job_detail_page(record.route)

    async def get_page(self, route: str) -> CachedPage | None:
        async with self._database.session() as session:
            record = await session.get(CachedPageRecord, normalize_route(route))
            return self._to_snapshot(record) if record is not None else None

    async def get_content(self, route: str) -> PageContent | None:
        async with self._database.session() as session:
            record = await session.get(CachedPageRecord, normalize_route(route))
            if record is None or record.content is None:
                return None
            return PageContent(
                route=record.route,
                body=record.content,
                content_type=record.content_type or "text/html",
            )

    async def is_cached(self, route: str) -> bool:
        return await self.get_page(route) is not None

    async def list_pages(self) -> list[CachedPage]:
        async with self._database.session() as session:
            rows = (await session.scalars(select(CachedPageRecord).order_by(CachedPageRecord.cached_at.desc()))).all()
            return [self._to_snapshot(row) for row in rows]

    async def technician_pages(self) -> list[CachedPage]:
        return [page for page in await self.list_pages() if page.is_technician_page]

    async def job_detail_pages(self) -> list[CachedPage]:
        return [page for page in await self.list_pages() if page.is_job_detail_page]

    async def prune(self, max_age: timedelta | None = None) -> int:
        age = max_age or timedelta(days=self._settings.page_cache_max_age_days)
        cutoff = utc_now() - age
        async with self._database.transaction() as session:
            result = await session.execute(delete(CachedPageRecord).where(CachedPageRecord.cached_at < cutoff))
        pruned = int(result.rowcount or 0)
        if pruned:
            logger.info("Pruned %d cached pages older than %s", pruned, age)
        return pruned

    async def clear_all(self) -> int:
        async with self._database.transaction() as session:
            result = await session.execute(delete(CachedPageRecord))
        return int(result.rowcount or 0)

    async def count(self) -> int:
        async with self._database.session() as session:
            total = await session.scalar(select(func.count()).select_from(CachedPageRecord))
        return int(total or 0)

    def _to_snapshot(self, record: CachedPageRecord) -> CachedPage:
        return CachedPage(
            route=record.route,
            title=record.title or "",
            cached_at=coerce_utc(record.cached_at),
            is_technician_page=record.is_technician_page,
            is_job_detail_page=record.is_job_detail_page,
            has_content=record.content is not None,
        )
