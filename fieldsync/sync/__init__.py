from fieldsync.sync.service import SyncOrchestrator
from fieldsync.sync.types import DrainReport, SyncStatus

__all__ = ["DrainReport", "SyncOrchestrator", "SyncStatus"]
