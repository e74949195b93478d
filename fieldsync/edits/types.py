from __future__ import annotations

import mimetypes
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable

from fieldsync.db.models import EditKind, EditStatus, UploadStatus


@dataclass(frozen=True, slots=True)
class PhotoFile:
    """Photo bytes and metadata, captured in full at enqueue time."""

    name: str
    content_type: str
    data: bytes = field(repr=False)
    modified_at: datetime | None = None

    @property
    def size(self) -> int:
        return len(self.data)

    @classmethod
    def from_path(cls, path: Path, content_type: str | None = None) -> "PhotoFile":
        stat = path.stat()
        guessed, _ = mimetypes.guess_type(path.name)
        return cls(
            name=path.name,
            content_type=content_type or guessed or "application/octet-stream",
            data=path.read_bytes(),
            modified_at=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
        )


@dataclass(slots=True)
class QueuedEdit:
    id: str
    job_id: str
    kind: EditKind
    payload: dict[str, Any]
    status: EditStatus
    created_at_ns: int
    created_at: datetime
    retry_count: int
    max_retries: int
    last_error: str | None
    last_attempt_at: datetime | None

    @property
    def retries_exhausted(self) -> bool:
        return self.retry_count >= self.max_retries


@dataclass(slots=True)
class QueuedPhotoUpload:
    id: str
    job_id: str
    file_name: str
    content_type: str
    size_bytes: int
    file_modified_at: datetime | None
    caption: str | None
    is_primary: bool
    upload_progress: int
    status: UploadStatus
    retry_count: int
    max_retries: int
    last_error: str | None
    last_attempt_at: datetime | None
    created_at_ns: int
    created_at: datetime
    file_data: bytes = field(repr=False)


@dataclass(frozen=True, slots=True)
class QueueCounts:
    pending_edits: int = 0
    in_flight_edits: int = 0
    failed_edits: int = 0
    pending_uploads: int = 0
    uploading_uploads: int = 0
    failed_uploads: int = 0

    @property
    def unsynced_edits(self) -> int:
        return self.pending_edits + self.in_flight_edits

    @property
    def unsynced_uploads(self) -> int:
        return self.pending_uploads + self.uploading_uploads

    @property
    def has_pending_work(self) -> bool:
        return self.pending_edits > 0 or self.pending_uploads > 0


@dataclass(frozen=True, slots=True)
class RequeueResult:
    edits: int
    uploads: int


@dataclass(frozen=True, slots=True)
class StorageSummary:
    edits: int
    uploads: int
    upload_bytes: int


QueueListener = Callable[[QueueCounts], Awaitable[None] | None]
