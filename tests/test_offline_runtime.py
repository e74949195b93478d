from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager

import pytest

from fieldsync.core.config import Settings
from fieldsync.core.errors import JobNotCachedError
from fieldsync.core.events import Event, EventTopic
from fieldsync.edits.types import PhotoFile
from fieldsync.offline.runtime import OfflineRuntime
from fieldsync.remote.schemas import RemoteJob

from conftest import TODAY, FakeJobsServer, job_document


def _runtime(settings: Settings, server: FakeJobsServer) -> OfflineRuntime:
    return OfflineRuntime(settings, transport=server.transport, today=lambda: TODAY)


@asynccontextmanager
async def _started(settings: Settings, server: FakeJobsServer) -> AsyncIterator[OfflineRuntime]:
    runtime = _runtime(settings, server)
    await runtime.init(start_background=False)
    try:
        yield runtime
    finally:
        await runtime.dispose()


@pytest.mark.asyncio
async def test_offline_edit_wins_in_view_and_syncs_once_online(settings: Settings, server: FakeJobsServer) -> None:
    async with _started(settings, server) as runtime:
        await runtime.jobs.replace_today_jobs("tech-1", [RemoteJob.model_validate(job_document("job-1"))])
        assert runtime.connectivity.is_online is False

        await runtime.facade.queue_field_edit("job-1", {"notes": "A"})
        patched = await runtime.jobs.get_job("job-1")
        assert patched is not None and patched.notes == "A"
        cache_status = await runtime.jobs.get_cache_status("tech-1")
        assert cache_status is not None and cache_status.last_offline_update_at is not None

        # The server copy moves on to "B" while the edit is still queued.
        await runtime.jobs.replace_today_jobs("tech-1", [RemoteJob.model_validate(job_document("job-1", notes="B"))])
        merged = await runtime.facade.get_job("job-1")
        assert merged.data["notes"] == "A"
        assert merged.to_wire()["_offlineUpdates"]["hasPendingUpdates"] is True

        status = await runtime.facade.get_sync_status()
        assert status.pending_edits == 1
        assert status.is_online is False
        assert server.put_bodies() == []

        assert await runtime.connectivity.check_now() is True
        report = await runtime.facade.sync_now()

        assert report.completed_edits == 1
        bodies = server.put_bodies()
        assert len(bodies) == 1
        assert bodies[0][0] == "job-1"
        assert bodies[0][1]["notes"] == "A"
        assert bodies[0][1]["offlineUpdate"] is True
        assert (await runtime.facade.get_sync_status()).pending_edits == 0

        synced = await runtime.facade.get_job("job-1")
        assert synced.data["notes"] == "B"
        assert synced.offline_updates.has_pending_updates is False


@pytest.mark.asyncio
async def test_queue_survives_runtime_restart(settings: Settings, server: FakeJobsServer) -> None:
    runtime = _runtime(settings, server)
    await runtime.init(start_background=False)
    edit_id = await runtime.facade.queue_field_edit("job-9", {"actualHours": 2.5})
    upload_id = await runtime.facade.queue_photo_upload(
        "job-9",
        PhotoFile(name="before.jpg", content_type="image/jpeg", data=b"jpeg"),
        caption="Before",
    )
    await runtime.dispose()

    async with _started(settings, server) as restarted:
        status = await restarted.facade.get_sync_status()
        assert status.pending_edits == 1
        assert status.pending_photos == 1
        edit = await restarted.edits.get_edit(edit_id)
        upload = await restarted.edits.get_upload(upload_id)
        assert edit is not None and edit.payload == {"actualHours": 2.5}
        assert upload is not None and upload.file_data == b"jpeg"


@pytest.mark.asyncio
async def test_get_job_requires_a_cached_copy(settings: Settings, server: FakeJobsServer) -> None:
    async with _started(settings, server) as runtime:
        await runtime.facade.queue_field_edit("job-404", {"notes": "queued anyway"})

        with pytest.raises(JobNotCachedError):
            await runtime.facade.get_job("job-404")
        assert (await runtime.facade.get_sync_status()).pending_edits == 1


@pytest.mark.asyncio
async def test_refresh_and_merged_job_list(settings: Settings, server: FakeJobsServer) -> None:
    server.jobs = [job_document("j1"), job_document("j2", jobNumber="JOB-000")]
    async with _started(settings, server) as runtime:
        with pytest.raises(ValueError):
            await runtime.refresh_jobs()

        runtime.set_active_technician("tech-1")
        status = await runtime.refresh_jobs(precache=False)
        assert status.today_jobs_count == 2

        await runtime.facade.queue_field_edit("j1", {"status": "completed"})
        jobs = await runtime.facade.get_jobs("tech-1")

        assert [job.data["id"] for job in jobs] == ["j2", "j1"]
        assert jobs[1].data["status"] == "completed"
        assert jobs[0].offline_updates.has_pending_updates is False


@pytest.mark.asyncio
async def test_connectivity_changes_are_published(settings: Settings, server: FakeJobsServer) -> None:
    async with _started(settings, server) as runtime:
        seen: list[Event] = []
        runtime.events.subscribe(EventTopic.CONNECTIVITY, seen.append)

        await runtime.connectivity.check_now()
        await runtime.connectivity.report_platform_status(False)

        assert [event.payload["is_offline"] for event in seen] == [False, True]
        assert seen[0].payload["last_online_at"] is not None


@pytest.mark.asyncio
async def test_diagnostics_and_clear_all(settings: Settings, server: FakeJobsServer) -> None:
    async with _started(settings, server) as runtime:
        await runtime.jobs.replace_today_jobs("tech-1", [RemoteJob.model_validate(job_document("j1"))])
        await runtime.navigation.record_visit("/technician", "Dashboard")
        await runtime.facade.queue_field_edit("j1", {"notes": "x"})

        report = await runtime.diagnostics()

        assert report["status"]["pending_edits"] == 1
        assert report["storage"]["edits"] == 1
        assert report["job_cache"] == {"jobs": 1, "technicians": 1}
        assert [page["route"] for page in report["page_cache"]] == ["/technician"]
        assert [edit["job_id"] for edit in report["edits"]] == ["j1"]
        assert report["connectivity"]["is_offline"] is True

        cleared = await runtime.clear_all_data()
        assert cleared == {"edits": 1, "uploads": 0, "jobs": 1, "pages": 1}
        assert (await runtime.facade.get_sync_status()).pending_edits == 0


async def _eventually(check: Callable[[], Awaitable[bool]], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not await check():
        assert loop.time() < deadline, "condition not reached in time"
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_reconnect_syncs_then_refreshes_active_technician(settings: Settings, server: FakeJobsServer) -> None:
    server.jobs = [job_document("j1", notes="server after sync")]
    async with _started(settings, server) as runtime:
        runtime.set_active_technician("tech-1")
        await runtime.facade.queue_field_edit("j1", {"notes": "typed offline"})
        assert await runtime.jobs.get_job("j1") is None

        assert await runtime.connectivity.check_now() is True

        async def refreshed() -> bool:
            return await runtime.jobs.get_job("j1") is not None

        await _eventually(refreshed)
        assert [body["notes"] for _, body in server.put_bodies()] == ["typed offline"]
        sync_request = server.sent("PUT")[0]
        list_request = server.sent("GET", "/api/jobs")[0]
        assert server.requests.index(sync_request) < server.requests.index(list_request)
        assert (await runtime.facade.get_sync_status()).pending_edits == 0


@pytest.mark.asyncio
async def test_edit_is_kept_when_cache_patch_fails(settings: Settings, server: FakeJobsServer) -> None:
    async with _started(settings, server) as runtime:
        await runtime.jobs.replace_today_jobs("tech-1", [RemoteJob.model_validate(job_document("job-1"))])
        await runtime.jobs.dispose()

        edit_id = await runtime.facade.queue_field_edit("job-1", {"notes": "still queued"})

        edit = await runtime.edits.get_edit(edit_id)
        assert edit is not None and edit.payload == {"notes": "still queued"}
        assert (await runtime.facade.get_sync_status()).pending_edits == 1
