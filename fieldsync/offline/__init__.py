from fieldsync.offline.facade import OfflineEditingFacade
from fieldsync.offline.runtime import OfflineRuntime

__all__ = ["OfflineEditingFacade", "OfflineRuntime"]
