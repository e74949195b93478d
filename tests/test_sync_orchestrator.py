from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path

import pytest

from fieldsync.connectivity.detector import ConnectivityDetector
from fieldsync.core.config import Settings
from fieldsync.core.events import Event, EventBus, EventTopic
from fieldsync.db.init_db import EDIT_QUEUE_STORE, build_store
from fieldsync.db.models import EditStatus, UploadStatus
from fieldsync.edits.service import EditQueueService
from fieldsync.edits.types import PhotoFile
from fieldsync.remote.client import JobsApiClient
from fieldsync.sync.service import SyncOrchestrator

from conftest import FakeJobsServer, make_settings


@dataclass
class Harness:
    queue: EditQueueService
    client: JobsApiClient
    detector: ConnectivityDetector
    events: EventBus
    orchestrator: SyncOrchestrator


@asynccontextmanager
async def _harness(settings: Settings, server: FakeJobsServer, *, online: bool = True) -> AsyncIterator[Harness]:
    queue = EditQueueService(settings, build_store(settings, EDIT_QUEUE_STORE))
    await queue.init()
    client = JobsApiClient(settings, transport=server.transport)
    detector = ConnectivityDetector(settings, client, initially_online=online)
    events = EventBus()
    orchestrator = SyncOrchestrator(settings, queue, client, detector, events)
    try:
        yield Harness(queue, client, detector, events, orchestrator)
    finally:
        await orchestrator.stop()
        await client.aclose()
        await queue.dispose()


@pytest.mark.asyncio
async def test_field_edit_is_sent_once_with_offline_markers(settings: Settings, server: FakeJobsServer) -> None:
    async with _harness(settings, server) as h:
        updates: list[Event] = []
        h.events.subscribe(EventTopic.JOB_UPDATED, updates.append)
        edit_id = await h.queue.enqueue_field_edit("job-1", {"notes": "A", "actualHours": 2})
        edit = await h.queue.get_edit(edit_id)
        assert edit is not None

        report = await h.orchestrator.sync_now()

        assert report.ran and report.aborted_reason is None
        assert report.completed_edits == 1
        assert server.put_bodies() == [
            ("job-1", {"notes": "A", "actualHours": 2, "offlineUpdate": True, "timestamp": edit.created_at_ns // 1_000_000})
        ]
        assert await h.queue.get_edit(edit_id) is None
        assert [event.payload["job_id"] for event in updates] == ["job-1"]

        status = await h.orchestrator.get_status()
        assert status.pending_edits == 0
        assert status.last_sync_at is not None

        again = await h.orchestrator.sync_now()
        assert again.completed_edits == 0
        assert len(server.put_bodies()) == 1


@pytest.mark.asyncio
async def test_failed_edit_defers_later_edits_for_the_same_job(settings: Settings, server: FakeJobsServer) -> None:
    async with _harness(settings, server) as h:
        first = await h.queue.enqueue_field_edit("job-1", {"notes": "first"})
        await h.queue.enqueue_field_edit("job-1", {"notes": "second"})
        await h.queue.enqueue_field_edit("job-2", {"notes": "other"})
        server.fail_job("job-1", 500)

        report = await h.orchestrator.sync_now()

        assert report.failed_edits == 1
        assert report.deferred_edits == 1
        assert report.completed_edits == 1
        assert [job_id for job_id, _ in server.put_bodies()] == ["job-1", "job-2"]
        failed = await h.queue.get_edit(first)
        assert failed is not None
        assert failed.status == EditStatus.PENDING
        assert failed.retry_count == 1
        assert failed.last_error is not None and "500" in failed.last_error

        report = await h.orchestrator.sync_now()

        assert report.completed_edits == 2
        bodies = server.put_bodies()
        assert [(job_id, body["notes"]) for job_id, body in bodies[2:]] == [("job-1", "first"), ("job-1", "second")]


@pytest.mark.asyncio
async def test_edit_fails_permanently_after_max_retries(settings: Settings, server: FakeJobsServer) -> None:
    async with _harness(settings, server) as h:
        edit_id = await h.queue.enqueue_field_edit("job-1", {"notes": "x"})
        server.fail_job("job-1", 500, 502, 503)

        for _ in range(settings.max_retries):
            await h.orchestrator.sync_now()

        edit = await h.queue.get_edit(edit_id)
        assert edit is not None
        assert edit.status == EditStatus.FAILED
        assert edit.retry_count == settings.max_retries

        status = await h.orchestrator.get_status()
        assert status.pending_edits == 0
        assert status.failed_edits == 1

        await h.orchestrator.sync_now()
        assert len(server.put_bodies()) == settings.max_retries

        requeued = await h.orchestrator.retry_failed()
        assert requeued.edits == 1
        await h.orchestrator.sync_now()
        assert await h.queue.get_edit(edit_id) is None


@pytest.mark.asyncio
async def test_unauthorized_aborts_drain_without_consuming_retries(settings: Settings, server: FakeJobsServer) -> None:
    async with _harness(settings, server) as h:
        reauth: list[Event] = []
        h.events.subscribe(EventTopic.REAUTHENTICATION_REQUIRED, reauth.append)
        first = await h.queue.enqueue_field_edit("job-1", {"notes": "x"})
        await h.queue.enqueue_field_edit("job-2", {"notes": "y"})
        server.unauthorized = True

        report = await h.orchestrator.sync_now()

        assert report.aborted_reason == "auth"
        assert report.reauthentication_required
        assert len(server.put_bodies()) == 1
        edit = await h.queue.get_edit(first)
        assert edit is not None
        assert edit.status == EditStatus.PENDING
        assert edit.retry_count == 0
        assert len(reauth) == 1
        assert (await h.orchestrator.get_status()).reauthentication_required is True

        server.unauthorized = False
        report = await h.orchestrator.sync_now()

        assert report.completed_edits == 2
        assert (await h.orchestrator.get_status()).reauthentication_required is False


@pytest.mark.asyncio
async def test_drain_is_skipped_while_offline(settings: Settings, server: FakeJobsServer) -> None:
    async with _harness(settings, server, online=False) as h:
        await h.queue.enqueue_field_edit("job-1", {"notes": "x"})

        report = await h.orchestrator.sync_now()

        assert report.skipped_reason == "offline"
        assert not report.ran
        assert server.requests == []
        assert (await h.orchestrator.get_status()).pending_edits == 1


@pytest.mark.asyncio
async def test_concurrent_sync_requests_share_one_drain(settings: Settings, server: FakeJobsServer) -> None:
    async with _harness(settings, server) as h:
        await h.queue.enqueue_field_edit("job-1", {"notes": "x"})

        first, second = await asyncio.gather(h.orchestrator.sync_now(), h.orchestrator.sync_now())

        assert first is second
        assert len(server.put_bodies()) == 1

        task = h.orchestrator.trigger()
        assert task is not None
        assert h.orchestrator.trigger() is None
        await task


@pytest.mark.asyncio
async def test_transport_failure_aborts_drain_and_goes_offline(settings: Settings, server: FakeJobsServer) -> None:
    async with _harness(settings, server) as h:
        changes: list[bool] = []
        h.detector.add_listener(lambda status: changes.append(status.is_online))
        first = await h.queue.enqueue_field_edit("job-1", {"notes": "x"})
        await h.queue.enqueue_field_edit("job-2", {"notes": "y"})
        server.reachable = False

        report = await h.orchestrator.sync_now()

        assert report.aborted_reason == "network"
        assert report.failed_edits == 1
        assert len(server.sent("PUT")) == 1
        assert h.detector.is_online is False
        assert changes == [False]
        edit = await h.queue.get_edit(first)
        assert edit is not None
        assert edit.status == EditStatus.PENDING
        assert edit.retry_count == 1


@pytest.mark.asyncio
async def test_photo_upload_and_delete_are_replayed(settings: Settings, server: FakeJobsServer) -> None:
    async with _harness(settings, server) as h:
        photo = PhotoFile(name="meter.jpg", content_type="image/jpeg", data=b"\xff\xd8jpeg")
        upload_id = await h.queue.enqueue_photo_upload("job-1", photo, caption="Meter", is_primary=True)
        await h.queue.enqueue_photo_delete("job-1", "photo-7")

        report = await h.orchestrator.sync_now()

        assert report.completed_edits == 1
        assert report.completed_uploads == 1
        deletes = server.sent("DELETE", "/api/jobs/job-1/photos")
        assert [request.url.params["photoId"] for request in deletes] == ["photo-7"]
        posts = server.sent("POST", "/api/jobs/job-1/photos")
        assert len(posts) == 1
        body = posts[0].content
        assert b'filename="meter.jpg"' in body
        assert b"\xff\xd8jpeg" in body
        assert b'name="caption"' in body and b"Meter" in body
        assert b'name="isPrimary"' in body and b"true" in body
        assert await h.queue.get_upload(upload_id) is None


@pytest.mark.asyncio
async def test_failed_upload_is_retried_on_next_drain(settings: Settings, server: FakeJobsServer) -> None:
    async with _harness(settings, server) as h:
        photo = PhotoFile(name="meter.jpg", content_type="image/jpeg", data=b"jpeg")
        upload_id = await h.queue.enqueue_photo_upload("job-3", photo)
        server.fail_job("job-3", 500)

        report = await h.orchestrator.sync_now()

        assert report.failed_uploads == 1
        upload = await h.queue.get_upload(upload_id)
        assert upload is not None
        assert upload.status == UploadStatus.PENDING
        assert upload.retry_count == 1

        report = await h.orchestrator.sync_now()
        assert report.completed_uploads == 1
        assert await h.queue.get_upload(upload_id) is None


@pytest.mark.asyncio
async def test_status_events_follow_queue_changes(settings: Settings, server: FakeJobsServer) -> None:
    async with _harness(settings, server, online=False) as h:
        statuses: list[dict] = []
        h.events.subscribe(EventTopic.SYNC_STATUS, lambda event: statuses.append(event.payload))
        await h.orchestrator.start()

        await h.queue.enqueue_field_edit("job-1", {"notes": "x"})

        assert statuses[-1]["pending_edits"] == 1
        assert statuses[-1]["is_online"] is False

        await h.detector.report_platform_status(True)
        await h.orchestrator.sync_now()

        assert statuses[-1]["pending_edits"] == 0
        assert statuses[-1]["is_online"] is True
        assert len(server.put_bodies()) == 1

        diagnostics = await h.orchestrator.diagnostics()
        assert diagnostics["status"]["pending_edits"] == 0
        assert diagnostics["last_report"]["completed_edits"] == 1
        assert diagnostics["edits"] == []

        await h.orchestrator.stop()
        assert h.orchestrator.trigger() is None


@pytest.mark.asyncio
async def test_unexpected_replay_error_is_recorded_and_drain_continues(
    settings: Settings, server: FakeJobsServer
) -> None:
    async with _harness(settings, server) as h:
        broken = await h.queue.enqueue_field_edit("job-1", {"notes": "broken"})
        await h.queue.enqueue_field_edit("job-1", {"notes": "after broken"})
        await h.queue.enqueue_field_edit("job-2", {"notes": "fine"})
        server.broken_jobs.add("job-1")

        report = await h.orchestrator.sync_now()

        assert report.aborted_reason is None
        assert report.failed_edits == 1
        assert report.deferred_edits == 1
        assert report.completed_edits == 1
        assert [job_id for job_id, _ in server.put_bodies()] == ["job-2"]

        edit = await h.queue.get_edit(broken)
        assert edit is not None
        assert edit.status == EditStatus.PENDING
        assert edit.retry_count == 1
        assert edit.last_error is not None and "RuntimeError" in edit.last_error

        server.broken_jobs.clear()
        report = await h.orchestrator.sync_now()
        assert report.completed_edits == 2
        assert (await h.orchestrator.get_status()).pending_edits == 0


@pytest.mark.asyncio
async def test_unexpected_upload_error_never_leaves_upload_in_flight(
    settings: Settings, server: FakeJobsServer
) -> None:
    async with _harness(settings, server) as h:
        upload_id = await h.queue.enqueue_photo_upload(
            "job-3", PhotoFile(name="gauge.jpg", content_type="image/jpeg", data=b"\xff\xd8gauge")
        )
        server.broken_jobs.add("job-3")

        report = await h.orchestrator.sync_now()

        assert report.failed_uploads == 1
        upload = await h.queue.get_upload(upload_id)
        assert upload is not None
        assert upload.status == UploadStatus.PENDING
        assert upload.retry_count == 1
        assert (await h.orchestrator.get_status()).pending_photos == 1


async def _eventually(check, timeout: float = 2.0) -> None:  # type: ignore[no-untyped-def]
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not await check():
        assert loop.time() < deadline, "condition not reached in time"
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_reconnect_alone_drains_the_queue(settings: Settings, server: FakeJobsServer) -> None:
    async with _harness(settings, server, online=False) as h:
        await h.orchestrator.start()
        await h.queue.enqueue_field_edit("job-1", {"notes": "queued offline"})
        assert server.put_bodies() == []

        await h.detector.report_platform_status(True)

        async def drained() -> bool:
            return (await h.orchestrator.get_status()).pending_edits == 0

        await _eventually(drained)
        assert [body["notes"] for _, body in server.put_bodies()] == ["queued offline"]


@pytest.mark.asyncio
async def test_startup_check_drains_work_left_from_last_run(tmp_path: Path, server: FakeJobsServer) -> None:
    settings = make_settings(tmp_path, startup_sync_delay_seconds=0)
    async with _harness(settings, server) as h:
        await h.queue.enqueue_field_edit("job-1", {"notes": "from last shift"})

        await h.orchestrator.start()

        async def sent() -> bool:
            return len(server.put_bodies()) == 1

        await _eventually(sent)


@pytest.mark.asyncio
async def test_periodic_loop_drains_pending_work(tmp_path: Path, server: FakeJobsServer) -> None:
    settings = make_settings(tmp_path, sync_interval_seconds=0.05)
    async with _harness(settings, server) as h:
        await h.orchestrator.start()
        # Enqueuing alone never starts a drain; only the loop picks this up.
        await h.queue.enqueue_field_edit("job-1", {"notes": "picked up by timer"})

        async def drained() -> bool:
            return (await h.orchestrator.get_status()).pending_edits == 0

        await _eventually(drained)
        assert len(server.put_bodies()) == 1
