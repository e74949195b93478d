from __future__ import annotations

from fieldsync.core.config import Settings
from fieldsync.db.migrations import EDIT_QUEUE_MIGRATIONS, JOB_CACHE_MIGRATIONS, PAGE_CACHE_MIGRATIONS
from fieldsync.db.models import EditQueueBase, JobCacheBase, PageCacheBase
from fieldsync.db.session import StoreDatabase, StoreDefinition

EDIT_QUEUE_STORE = StoreDefinition(name="edit_queue", metadata=EditQueueBase.metadata, migrations=EDIT_QUEUE_MIGRATIONS)
JOB_CACHE_STORE = StoreDefinition(name="job_cache", metadata=JobCacheBase.metadata, migrations=JOB_CACHE_MIGRATIONS)
PAGE_CACHE_STORE = StoreDefinition(name="page_cache", metadata=PageCacheBase.metadata, migrations=PAGE_CACHE_MIGRATIONS)


def build_store(settings: Settings, definition: StoreDefinition) -> StoreDatabase:
    return StoreDatabase(definition, settings.store_database_url(definition.name))

