from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Date,
    DateTime,
    Enum as SAEnum,
    Index,
    Integer,
    LargeBinary,
    String,
    Text,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class EditQueueBase(DeclarativeBase):
    pass


class JobCacheBase(DeclarativeBase):
    pass


class PageCacheBase(DeclarativeBase):
    pass


def _enum_values(enum_cls: type[Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class EditKind(str, Enum):
    FIELD_UPDATE = "field-update"
    PHOTO_UPLOAD = "photo-upload"
    PHOTO_DELETE = "photo-delete"


class EditStatus(str, Enum):
    PENDING = "pending"
    IN_FLIGHT = "in-flight"
    COMPLETED = "completed"
    FAILED = "failed"


class UploadStatus(str, Enum):
    PENDING = "pending"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    FAILED = "failed"


class QueuedEditRecord(EditQueueBase):
    __tablename__ = "queued_edits"
    __table_args__ = (
        Index("ix_queued_edits_status_created", "status", "created_at_ns"),
        Index("ix_queued_edits_job_created", "job_id", "created_at_ns"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    job_id: Mapped[str] = mapped_column(String(128), nullable=False)
    kind: Mapped[EditKind] = mapped_column(
        SAEnum(EditKind, native_enum=False, values_callable=_enum_values),
        nullable=False,
    )
    payload: Mapped[dict[str, Any]] = mapped_column(JSON(none_as_null=True), nullable=False, default=dict)
    status: Mapped[EditStatus] = mapped_column(
        SAEnum(EditStatus, native_enum=False, values_callable=_enum_values),
        nullable=False,
        default=EditStatus.PENDING,
    )
    created_at_ns: Mapped[int] = mapped_column(BigInteger, nullable=False, unique=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )


class QueuedPhotoUploadRecord(EditQueueBase):
    __tablename__ = "queued_photo_uploads"
    __table_args__ = (
        Index("ix_queued_photo_uploads_status_created", "status", "created_at_ns"),
        Index("ix_queued_photo_uploads_job_created", "job_id", "created_at_ns"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    job_id: Mapped[str] = mapped_column(String(128), nullable=False)
    file_name: Mapped[str] = mapped_column(String(1024), nullable=False)
    content_type: Mapped[str] = mapped_column(String(255), nullable=False)
    size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False)
    file_modified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    file_data: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    caption: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_primary: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    upload_progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[UploadStatus] = mapped_column(
        SAEnum(UploadStatus, native_enum=False, values_callable=_enum_values),
        nullable=False,
        default=UploadStatus.PENDING,
    )
    created_at_ns: Mapped[int] = mapped_column(BigInteger, nullable=False, unique=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )


class CachedJobRecord(JobCacheBase):
    __tablename__ = "cached_jobs"
    __table_args__ = (Index("ix_cached_jobs_technician_due", "technician_id", "due_date"),)

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    technician_id: Mapped[str] = mapped_column(String(128), nullable=False)
    job_number: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[str] = mapped_column(String(64), nullable=False)
    due_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON(none_as_null=True), nullable=False)
    is_editable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    last_cached_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class TechnicianCacheStatusRecord(JobCacheBase):
    __tablename__ = "technician_cache_status"

    technician_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    last_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    today_jobs_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_cached_jobs: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_online: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_offline_update_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )


class CachedPageRecord(PageCacheBase):
    __tablename__ = "cached_pages"
    __table_args__ = (Index("ix_cached_pages_cached_at", "cached_at"),)

    route: Mapped[str] = mapped_column(String(2048), primary_key=True)
    title: Mapped[str] = mapped_column(String(512), nullable=False, default="")
    cached_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    is_technician_page: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_job_detail_page: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    content: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)
    content_type: Mapped[str | None] = mapped_column(String(255), nullable=True)
