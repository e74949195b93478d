from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from fieldsync.connectivity.detector import ConnectivityDetector, ConnectivityStatus
from fieldsync.core.config import Settings
from fieldsync.core.errors import AuthError, FieldSyncError, InvalidEditStateError, NetworkError, RemoteRequestError
from fieldsync.core.events import EventBus, EventTopic
from fieldsync.core.timeutil import epoch_millis, utc_now
from fieldsync.db.models import EditKind, EditStatus, UploadStatus
from fieldsync.edits.service import EditQueueService, edit_to_dict, upload_to_dict
from fieldsync.edits.types import QueueCounts, QueuedEdit, QueuedPhotoUpload, RequeueResult
from fieldsync.sync.types import DrainReport, SyncStatus, report_to_dict, status_to_dict

logger = logging.getLogger(__name__)


class RemoteJobsApi(Protocol):
    async def put_job(self, job_id: str, fields: dict[str, Any], *, timestamp_ms: int) -> dict[str, Any]: ...

    async def upload_photo(self, upload: QueuedPhotoUpload) -> dict[str, Any]: ...

    async def delete_photo(self, job_id: str, photo_id: str) -> None: ...


class _DrainAborted(Exception):
    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


@dataclass
class _DrainCounters:
    started_at: datetime
    completed_edits: int = 0
    failed_edits: int = 0
    deferred_edits: int = 0
    completed_uploads: int = 0
    failed_uploads: int = 0
    deferred_uploads: int = 0
    stopped: bool = False
    blocked_jobs: set[str] = field(default_factory=set)

    def finish(self, *, aborted_reason: str | None = None) -> DrainReport:
        return DrainReport(
            started_at=self.started_at,
            finished_at=utc_now(),
            aborted_reason=aborted_reason,
            completed_edits=self.completed_edits,
            failed_edits=self.failed_edits,
            deferred_edits=self.deferred_edits,
            completed_uploads=self.completed_uploads,
            failed_uploads=self.failed_uploads,
            deferred_uploads=self.deferred_uploads,
            stopped=self.stopped,
        )


class SyncOrchestrator:
    """Drains the edit queue to the remote API.

    Only one drain runs at a time: ``sync_now`` joins a drain already in
    progress and ``trigger`` is a no-op while one runs. Within a drain, edits
    for the same job go out in enqueue order; once one of them fails the rest
    of that job waits for the next drain.
    """

    def __init__(
        self,
        settings: Settings,
        edits: EditQueueService,
        remote: RemoteJobsApi,
        connectivity: ConnectivityDetector,
        events: EventBus | None = None,
    ):
        self._settings = settings
        self._edits = edits
        self._remote = remote
        self._connectivity = connectivity
        self._events = events

        self._drain_task: asyncio.Task[DrainReport] | None = None
        self._periodic_task: asyncio.Task[None] | None = None
        self._startup_task: asyncio.Task[None] | None = None
        self._remove_connectivity_listener: Any = None
        self._syncing = False
        self._stop_requested = False
        self._reauthentication_required = False
        self._last_sync_at: datetime | None = None
        self._last_report: DrainReport | None = None

    @property
    def is_syncing(self) -> bool:
        return self._syncing

    @property
    def is_online(self) -> bool:
        return self._connectivity.is_online

    @property
    def last_sync_at(self) -> datetime | None:
        return self._last_sync_at

    @property
    def last_report(self) -> DrainReport | None:
        return self._last_report

    # Lifecycle

    async def start(self) -> None:
        self._stop_requested = False
        self._edits.add_change_listener(self._on_queue_changed)
        self._remove_connectivity_listener = self._connectivity.add_listener(self._on_connectivity_changed)
        if self._periodic_task is None:
            self._periodic_task = asyncio.create_task(self._periodic_loop(), name="fieldsync-periodic-sync")
        if self._startup_task is None:
            self._startup_task = asyncio.create_task(self._startup_check(), name="fieldsync-startup-sync")

    async def stop(self) -> None:
        """Stop scheduling work. A record already in flight is allowed to finish."""
        self._stop_requested = True
        self._edits.remove_change_listener(self._on_queue_changed)
        if self._remove_connectivity_listener is not None:
            self._remove_connectivity_listener()
            self._remove_connectivity_listener = None

        for task in (self._periodic_task, self._startup_task):
            if task is not None:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._periodic_task = None
        self._startup_task = None

        drain = self._drain_task
        if drain is not None and not drain.done():
            with contextlib.suppress(FieldSyncError):
                await asyncio.shield(drain)

    async def _startup_check(self) -> None:
        await asyncio.sleep(self._settings.startup_sync_delay_seconds)
        try:
            counts = await self._edits.counts()
        except FieldSyncError:
            logger.exception("Startup pending-work check failed")
            return
        if counts.has_pending_work and self._connectivity.is_online:
            logger.info(
                "Found %d pending edits and %d pending photos at startup",
                counts.pending_edits,
                counts.pending_uploads,
            )
            self.trigger()

    async def _periodic_loop(self) -> None:
        while True:
            await asyncio.sleep(self._settings.sync_interval_seconds)
            if self._stop_requested or not self._connectivity.is_online:
                continue
            try:
                counts = await self._edits.counts()
                if counts.has_pending_work:
                    await self.sync_now()
            except FieldSyncError:
                logger.exception("Periodic sync failed")

    async def _on_connectivity_changed(self, status: ConnectivityStatus) -> None:
        if status.is_online:
            logger.info("Back online, draining queued edits")
            self.trigger()
        await self._publish_status()

    async def _on_queue_changed(self, counts: QueueCounts) -> None:
        await self._publish_status(counts)

    # Drain entry points

    async def sync_now(self) -> DrainReport:
        task = self._drain_task
        if task is None or task.done():
            task = asyncio.create_task(self._drain(), name="fieldsync-drain")
            self._drain_task = task
        return await asyncio.shield(task)

    def trigger(self) -> asyncio.Task[DrainReport] | None:
        if self._stop_requested:
            return None
        if self._drain_task is not None and not self._drain_task.done():
            return None
        task = asyncio.create_task(self._drain(), name="fieldsync-drain")
        task.add_done_callback(self._log_drain_failure)
        self._drain_task = task
        return task

    @staticmethod
    def _log_drain_failure(task: asyncio.Task[DrainReport]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background drain failed: %s", exc)

    async def _drain(self) -> DrainReport:
        started_at = utc_now()
        if not self._connectivity.is_online:
            report = DrainReport(started_at=started_at, finished_at=utc_now(), skipped_reason="offline")
            self._last_report = report
            return report

        counters = _DrainCounters(started_at=started_at)
        aborted_reason: str | None = None
        self._syncing = True
        await self._publish_status()
        try:
            await self._drain_edits(counters)
            if not counters.stopped:
                counters.blocked_jobs.clear()
                await self._drain_uploads(counters)
        except _DrainAborted as exc:
            aborted_reason = exc.reason
        finally:
            self._syncing = False

        report = counters.finish(aborted_reason=aborted_reason)
        self._last_report = report
        if aborted_reason == "auth":
            self._reauthentication_required = True
            if self._events is not None:
                await self._events.publish(EventTopic.REAUTHENTICATION_REQUIRED, report_to_dict(report))
        elif aborted_reason is None and not report.stopped:
            self._reauthentication_required = False
            self._last_sync_at = report.finished_at

        logger.info(
            "Drain finished: %d edits, %d photos synced; %d edits, %d photos failed%s",
            report.completed_edits,
            report.completed_uploads,
            report.failed_edits,
            report.failed_uploads,
            f" (aborted: {aborted_reason})" if aborted_reason else "",
        )
        await self._publish_status()
        return report

    async def _drain_edits(self, counters: _DrainCounters) -> None:
        for edit in await self._edits.list_pending():
            if self._stop_requested:
                counters.stopped = True
                return
            if edit.job_id in counters.blocked_jobs:
                counters.deferred_edits += 1
                continue

            try:
                claimed = await self._edits.mark_in_flight(edit.id)
            except InvalidEditStateError:
                continue
            if claimed is None:
                continue

            try:
                await self._apply_edit(claimed)
            except AuthError:
                await self._edits.release(claimed.id)
                logger.warning("Remote API rejected credentials, aborting drain")
                raise _DrainAborted("auth")
            except NetworkError as exc:
                await self._edits.record_failure(claimed.id, str(exc))
                counters.failed_edits += 1
                counters.blocked_jobs.add(claimed.job_id)
                if not isinstance(exc, RemoteRequestError):
                    await self._connectivity.check_now()
                    raise _DrainAborted("network") from exc
                continue
            except Exception as exc:
                logger.exception("Edit %s could not be replayed", claimed.id)
                await self._edits.record_failure(claimed.id, f"{type(exc).__name__}: {exc}")
                counters.failed_edits += 1
                counters.blocked_jobs.add(claimed.job_id)
                continue

            await self._edits.mark_status(claimed.id, EditStatus.COMPLETED)
            counters.completed_edits += 1
            if claimed.kind == EditKind.FIELD_UPDATE and self._events is not None:
                await self._events.publish(
                    EventTopic.JOB_UPDATED,
                    {"job_id": claimed.job_id, "fields": sorted(claimed.payload)},
                )

    async def _apply_edit(self, edit: QueuedEdit) -> None:
        if edit.kind == EditKind.FIELD_UPDATE:
            await self._remote.put_job(edit.job_id, edit.payload, timestamp_ms=epoch_millis(edit.created_at_ns))
        elif edit.kind == EditKind.PHOTO_DELETE:
            await self._remote.delete_photo(edit.job_id, str(edit.payload["photoId"]))
        else:
            raise InvalidEditStateError(f"Edit kind cannot be replayed as an edit: {edit.kind.value}")

    async def _drain_uploads(self, counters: _DrainCounters) -> None:
        for upload in await self._edits.list_pending_uploads():
            if self._stop_requested:
                counters.stopped = True
                return
            if upload.job_id in counters.blocked_jobs:
                counters.deferred_uploads += 1
                continue

            try:
                claimed = await self._edits.mark_upload_status(upload.id, UploadStatus.UPLOADING, progress=0)
            except InvalidEditStateError:
                continue
            if claimed is None:
                continue

            try:
                await self._remote.upload_photo(claimed)
            except AuthError:
                await self._edits.release_upload(claimed.id)
                logger.warning("Remote API rejected credentials, aborting drain")
                raise _DrainAborted("auth")
            except NetworkError as exc:
                await self._edits.record_upload_failure(claimed.id, str(exc))
                counters.failed_uploads += 1
                counters.blocked_jobs.add(claimed.job_id)
                if not isinstance(exc, RemoteRequestError):
                    await self._connectivity.check_now()
                    raise _DrainAborted("network") from exc
                continue
            except Exception as exc:
                logger.exception("Photo upload %s could not be sent", claimed.id)
                await self._edits.record_upload_failure(claimed.id, f"{type(exc).__name__}: {exc}")
                counters.failed_uploads += 1
                counters.blocked_jobs.add(claimed.job_id)
                continue

            await self._edits.mark_upload_status(claimed.id, UploadStatus.COMPLETED)
            counters.completed_uploads += 1

    # Status

    async def get_status(self, counts: QueueCounts | None = None) -> SyncStatus:
        counts = counts or await self._edits.counts()
        return SyncStatus(
            pending_edits=counts.unsynced_edits,
            pending_photos=counts.unsynced_uploads,
            failed_edits=counts.failed_edits,
            failed_photos=counts.failed_uploads,
            is_online=self._connectivity.is_online,
            is_syncing=self._syncing,
            last_sync_at=self._last_sync_at,
            reauthentication_required=self._reauthentication_required,
        )

    async def _publish_status(self, counts: QueueCounts | None = None) -> None:
        if self._events is None:
            return
        try:
            status = await self.get_status(counts)
        except FieldSyncError:
            logger.exception("Could not read queue counts for status update")
            return
        await self._events.publish(EventTopic.SYNC_STATUS, status_to_dict(status))

    async def has_pending_items(self) -> bool:
        return (await self._edits.counts()).has_pending_work

    async def retry_failed(self) -> RequeueResult:
        result = await self._edits.retry_failed()
        if (result.edits or result.uploads) and self._connectivity.is_online:
            self.trigger()
        return result

    async def purge_failed(self) -> RequeueResult:
        return await self._edits.purge_failed()

    async def diagnostics(self) -> dict[str, Any]:
        status = await self.get_status()
        summary = await self._edits.storage_summary()
        connectivity = self._connectivity.status
        return {
            "status": status_to_dict(status),
            "connectivity": {
                "is_offline": connectivity.is_offline,
                "is_local_network": connectivity.is_local_network,
                "last_online_at": connectivity.last_online_at,
                "last_probe_at": connectivity.last_probe_at,
            },
            "storage": {
                "edits": summary.edits,
                "uploads": summary.uploads,
                "upload_bytes": summary.upload_bytes,
            },
            "edits": [edit_to_dict(edit) for edit in await self._edits.list_all_edits()],
            "uploads": [upload_to_dict(upload) for upload in await self._edits.list_all_uploads()],
            "last_report": report_to_dict(self._last_report) if self._last_report else None,
        }
