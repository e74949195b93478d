from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

from fieldsync.core.errors import ValidationError
from fieldsync.core.timeutil import epoch_millis
from fieldsync.edits.service import RESERVED_FIELD_KEYS
from fieldsync.edits.types import QueuedEdit

logger = logging.getLogger(__name__)


class UnsyncedEditSource(Protocol):
    async def list_unsynced_field_edits(self, job_id: str) -> list[QueuedEdit]: ...


@dataclass(frozen=True, slots=True)
class OfflineUpdateInfo:
    has_pending_updates: bool
    last_update_timestamp: int | None
    pending_fields: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class MergedJob:
    data: dict[str, Any]
    offline_updates: OfflineUpdateInfo = field(
        default_factory=lambda: OfflineUpdateInfo(has_pending_updates=False, last_update_timestamp=None)
    )

    def to_wire(self) -> dict[str, Any]:
        return {
            **self.data,
            "_offlineUpdates": {
                "hasPendingUpdates": self.offline_updates.has_pending_updates,
                "lastUpdateTimestamp": self.offline_updates.last_update_timestamp,
                "pendingFields": list(self.offline_updates.pending_fields),
            },
        }


def merge_edits(server_job: Mapping[str, Any], edits: list[QueuedEdit]) -> MergedJob:
    """Overlay unsynced field edits on a server record.

    For each field the edit with the greatest ``created_at_ns`` wins and its
    value replaces the server value unconditionally, even if the server
    changed the field after the edit was made.
    """
    latest: dict[str, tuple[int, Any]] = {}
    for edit in edits:
        for name, value in edit.payload.items():
            if name in RESERVED_FIELD_KEYS:
                continue
            current = latest.get(name)
            if current is None or edit.created_at_ns > current[0]:
                latest[name] = (edit.created_at_ns, value)

    if not latest:
        return MergedJob(data=dict(server_job))

    data = dict(server_job)
    for name, (_, value) in latest.items():
        data[name] = value

    last_update_ns = max(stamp for stamp, _ in latest.values())
    return MergedJob(
        data=data,
        offline_updates=OfflineUpdateInfo(
            has_pending_updates=True,
            last_update_timestamp=epoch_millis(last_update_ns),
            pending_fields=tuple(sorted(latest)),
        ),
    )


class OfflineDataMerger:
    def __init__(self, edits: UnsyncedEditSource):
        self._edits = edits

    async def merge(self, server_job: Mapping[str, Any]) -> MergedJob:
        job_id = server_job.get("id")
        if job_id is None or not str(job_id).strip():
            raise ValidationError("server job has no id")
        edits = await self._edits.list_unsynced_field_edits(str(job_id))
        merged = merge_edits(server_job, edits)
        if merged.offline_updates.has_pending_updates:
            logger.debug(
                "Job %s shows %d locally edited fields",
                job_id,
                len(merged.offline_updates.pending_fields),
            )
        return merged

    async def merge_many(self, server_jobs: list[Mapping[str, Any]]) -> list[MergedJob]:
        return [await self.merge(job) for job in server_jobs]

    async def has_pending_updates(self, job_id: str) -> bool:
        return bool(await self._edits.list_unsynced_field_edits(job_id))

    async def last_update_timestamp(self, job_id: str) -> int | None:
        edits = await self._edits.list_unsynced_field_edits(job_id)
        if not edits:
            return None
        return epoch_millis(max(edit.created_at_ns for edit in edits))
