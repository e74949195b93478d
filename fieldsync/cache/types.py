from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime


@dataclass(frozen=True, slots=True)
class CustomerSummary:
    id: str
    name: str
    phone: str | None = None
    email: str | None = None
    address: str | None = None
    city: str | None = None
    state: str | None = None
    zip_code: str | None = None


@dataclass(frozen=True, slots=True)
class LocationSummary:
    id: str
    name: str
    address: str | None = None
    city: str | None = None
    phone: str | None = None


@dataclass(frozen=True, slots=True)
class ContactSummary:
    id: str
    first_name: str | None = None
    last_name: str | None = None
    phone: str | None = None
    email: str | None = None
    title: str | None = None


@dataclass(frozen=True, slots=True)
class TechnicianSummary:
    id: str
    name: str | None = None


@dataclass(frozen=True, slots=True)
class JobPhoto:
    id: str
    url: str
    caption: str | None = None
    original_name: str | None = None
    created_at: datetime | None = None
    is_primary: bool = False


@dataclass(frozen=True, slots=True)
class CachedJob:
    id: str
    technician_id: str
    job_number: str
    description: str | None
    status: str
    service_type: str | None
    due_date: date | None
    start_date: datetime | None
    end_date: datetime | None
    notes: str | None
    actual_hours: float | None
    estimated_hours: float | None
    battery_type: str | None
    battery_model: str | None
    battery_serial: str | None
    equipment_type: str | None
    equipment_model: str | None
    equipment_serial: str | None
    assigned_to_id: str | None
    customer: CustomerSummary
    location: LocationSummary | None
    contact: ContactSummary | None
    assigned_to: TechnicianSummary | None
    photos: tuple[JobPhoto, ...] = field(default_factory=tuple)
    last_cached_at: datetime | None = None
    is_editable: bool = True


@dataclass(frozen=True, slots=True)
class TechnicianCacheStatus:
    technician_id: str
    last_sync_at: datetime | None
    today_jobs_count: int
    total_cached_jobs: int
    is_online: bool
    last_offline_update_at: datetime | None


@dataclass(frozen=True, slots=True)
class CacheSize:
    jobs: int
    technicians: int
    pages: int = 0


@dataclass(frozen=True, slots=True)
class CachedPage:
    route: str
    title: str
    cached_at: datetime
    is_technician_page: bool
    is_job_detail_page: bool
    has_content: bool = False


@dataclass(frozen=True, slots=True)
class PageContent:
    route: str
    body: bytes
    content_type: str


@dataclass(frozen=True, slots=True)
class PrecacheResult:
    job_id: str
    route: str
    success: bool
    error: str | None = None


@dataclass(frozen=True, slots=True)
class PrecacheReport:
    total: int
    successful: int
    failed: int
    results: tuple[PrecacheResult, ...] = ()
