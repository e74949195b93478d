from fieldsync.cache.jobs import JobCacheService, cached_job_to_dict, cached_job_to_wire
from fieldsync.cache.pages import PageCacheService, normalize_route
from fieldsync.cache.precache import JobDetailPrecacher
from fieldsync.cache.refresh import TodayJobsRefresher
from fieldsync.cache.types import CachedJob, CachedPage, PrecacheReport, TechnicianCacheStatus

__all__ = [
    "CachedJob",
    "CachedPage",
    "JobCacheService",
    "JobDetailPrecacher",
    "PageCacheService",
    "PrecacheReport",
    "TechnicianCacheStatus",
    "TodayJobsRefresher",
    "cached_job_to_dict",
    "cached_job_to_wire",
    "normalize_route",
]
