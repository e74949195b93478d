from __future__ import annotations

from datetime import timedelta

import pytest

from fieldsync.cache.jobs import JobCacheService, cached_job_to_dict, cached_job_to_wire
from fieldsync.cache.pages import PageCacheService
from fieldsync.cache.precache import JobDetailPrecacher
from fieldsync.cache.refresh import TodayJobsRefresher
from fieldsync.core.config import Settings
from fieldsync.core.errors import AuthError, JobNotCachedError, ValidationError
from fieldsync.db.init_db import JOB_CACHE_STORE, PAGE_CACHE_STORE, build_store
from fieldsync.remote.client import JobsApiClient
from fieldsync.remote.schemas import RemoteJob

from conftest import TODAY, FakeJobsServer, job_document


async def _open_jobs(settings: Settings) -> JobCacheService:
    service = JobCacheService(settings, build_store(settings, JOB_CACHE_STORE), today=lambda: TODAY)
    await service.init()
    return service


async def _open_pages(settings: Settings) -> PageCacheService:
    service = PageCacheService(settings, build_store(settings, PAGE_CACHE_STORE))
    await service.init()
    return service


def _remote(job_id: str, **overrides) -> RemoteJob:  # type: ignore[no-untyped-def]
    return RemoteJob.model_validate(job_document(job_id, **overrides))


@pytest.mark.asyncio
async def test_today_jobs_are_filtered_and_sorted(settings: Settings) -> None:
    jobs = await _open_jobs(settings)
    try:
        assert await jobs.get_today_jobs("tech-1") == []

        tomorrow = (TODAY + timedelta(days=1)).isoformat()
        status = await jobs.replace_today_jobs(
            "tech-1",
            [
                _remote("j3", jobNumber="JOB-300"),
                _remote("j1", jobNumber="JOB-100"),
                _remote("j9", jobNumber="JOB-050", dueDate=f"{tomorrow}T00:00:00.000Z"),
                _remote("j0", jobNumber="JOB-000", dueDate=None),
            ],
        )

        assert status.total_cached_jobs == 4
        assert status.today_jobs_count == 2
        assert status.is_online is True
        assert status.last_sync_at is not None

        today_jobs = await jobs.get_today_jobs("tech-1")
        assert [job.id for job in today_jobs] == ["j1", "j3"]
        assert all(job.due_date == TODAY for job in today_jobs)
        assert all(job.last_cached_at is not None and job.is_editable for job in today_jobs)

        all_jobs = await jobs.get_all_jobs("tech-1")
        assert [job.id for job in all_jobs] == ["j1", "j3", "j9", "j0"]
        assert await jobs.get_today_jobs("tech-2") == []
    finally:
        await jobs.dispose()


@pytest.mark.asyncio
async def test_missing_customer_defaults_to_unknown(settings: Settings) -> None:
    jobs = await _open_jobs(settings)
    try:
        await jobs.replace_today_jobs("tech-1", [_remote("j1", customer=None, jobNumber=None, photos=None)])

        job = await jobs.get_job("j1")
        assert job is not None
        assert job.customer.name == "Unknown Customer"
        assert job.job_number == ""
        assert job.photos == ()

        wire = cached_job_to_wire(job)
        assert wire["customer"]["name"] == "Unknown Customer"
        assert wire["dueDate"] == TODAY.isoformat()
        assert "technicianId" not in wire

        rendered = cached_job_to_dict(job)
        assert rendered["technicianId"] == "tech-1"
        assert rendered["isEditable"] is True
    finally:
        await jobs.dispose()


@pytest.mark.asyncio
async def test_update_job_patches_cached_snapshot(settings: Settings) -> None:
    jobs = await _open_jobs(settings)
    try:
        await jobs.replace_today_jobs("tech-1", [_remote("j1")])
        before = await jobs.get_job("j1")
        assert before is not None

        updated = await jobs.update_job("j1", {"notes": "replaced gasket", "actualHours": 1.5})

        assert updated.notes == "replaced gasket"
        assert updated.actual_hours == 1.5
        assert updated.customer == before.customer
        assert (await jobs.get_job("j1")) == updated
        assert before.notes == "server notes"

        with pytest.raises(JobNotCachedError):
            await jobs.update_job("missing", {"notes": "x"})
        with pytest.raises(ValidationError):
            await jobs.update_job("j1", {"actualHours": "a lot"})
    finally:
        await jobs.dispose()


@pytest.mark.asyncio
async def test_replace_swaps_technician_jobs_wholesale(settings: Settings) -> None:
    jobs = await _open_jobs(settings)
    try:
        await jobs.replace_today_jobs("tech-1", [_remote("j1"), _remote("j2")])
        await jobs.replace_today_jobs("tech-2", [_remote("j5", assignedToId="tech-2")])

        status = await jobs.replace_today_jobs("tech-1", [_remote("j2", notes="newer"), _remote("j3")])

        assert status.total_cached_jobs == 2
        assert [job.id for job in await jobs.get_all_jobs("tech-1")] == ["j2", "j3"]
        assert await jobs.get_job("j1") is None
        job = await jobs.get_job("j2")
        assert job is not None and job.notes == "newer"
        assert [job.id for job in await jobs.get_all_jobs("tech-2")] == ["j5"]

        size = await jobs.cache_size()
        assert size.jobs == 3
        assert size.technicians == 2

        assert await jobs.clear("tech-1") == 2
        assert await jobs.get_cache_status("tech-1") is None
        assert await jobs.clear_all() == 1
        assert (await jobs.cache_size()).jobs == 0
    finally:
        await jobs.dispose()


@pytest.mark.asyncio
async def test_offline_update_marker_is_recorded(settings: Settings) -> None:
    jobs = await _open_jobs(settings)
    try:
        status = await jobs.mark_offline_update("tech-7")
        assert status.last_offline_update_at is not None
        assert status.total_cached_jobs == 0
        assert status.is_online is False

        status = await jobs.update_cache_status("tech-7", is_online=True)
        assert status.is_online is True
        assert status.last_offline_update_at is not None
    finally:
        await jobs.dispose()


@pytest.mark.asyncio
async def test_refresh_fetches_today_and_precaches_details(settings: Settings, server: FakeJobsServer) -> None:
    server.jobs = [job_document("j1"), job_document("j2")]
    server.pages = {
        "/technician/jobs/j1": "<html><head><title>Job j1</title></head><body>detail</body></html>",
    }
    jobs = await _open_jobs(settings)
    pages = await _open_pages(settings)
    client = JobsApiClient(settings, transport=server.transport)
    precacher = JobDetailPrecacher(settings, client, pages)
    refresher = TodayJobsRefresher(settings, client, jobs, precacher)
    try:
        status = await refresher.refresh("tech-1")

        assert status.today_jobs_count == 2
        listing = server.sent("GET", "/api/jobs")[0]
        assert listing.url.params["assignedToId"] == "tech-1"
        assert listing.url.params["dueDate"] == TODAY.isoformat()
        assert listing.url.params["limit"] == str(settings.job_fetch_limit)

        await refresher.wait_for_background()

        page = await pages.get_page("/technician/jobs/j1")
        assert page is not None
        assert page.title == "Job j1"
        assert page.is_job_detail_page is True
        assert page.has_content is True
        assert await pages.get_page("/technician/jobs/j2") is None
        assert len(server.sent("GET", "/technician/jobs/j2")) == 2
    finally:
        await refresher.cancel_background()
        await client.aclose()
        await pages.dispose()
        await jobs.dispose()


@pytest.mark.asyncio
async def test_precache_reports_partial_failures(settings: Settings, server: FakeJobsServer) -> None:
    server.pages = {"/technician/jobs/a": "<title>A</title>"}
    pages = await _open_pages(settings)
    client = JobsApiClient(settings, transport=server.transport)
    try:
        report = await JobDetailPrecacher(settings, client, pages).precache(["a", "b"])

        assert (report.total, report.successful, report.failed) == (2, 1, 1)
        failed = [result for result in report.results if not result.success]
        assert failed[0].route == "/technician/jobs/b"
        assert failed[0].error is not None and "404" in failed[0].error
    finally:
        await client.aclose()
        await pages.dispose()


@pytest.mark.asyncio
async def test_refresh_failure_leaves_cache_untouched(settings: Settings, server: FakeJobsServer) -> None:
    jobs = await _open_jobs(settings)
    pages = await _open_pages(settings)
    client = JobsApiClient(settings, transport=server.transport)
    refresher = TodayJobsRefresher(settings, client, jobs, JobDetailPrecacher(settings, client, pages))
    try:
        await jobs.replace_today_jobs("tech-1", [_remote("j1")])
        server.unauthorized = True

        with pytest.raises(AuthError):
            await refresher.refresh("tech-1", precache=False)

        assert [job.id for job in await jobs.get_today_jobs("tech-1")] == ["j1"]
    finally:
        await client.aclose()
        await pages.dispose()
        await jobs.dispose()
