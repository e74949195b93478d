from __future__ import annotations


class FieldSyncError(RuntimeError):
    pass


class StorageError(FieldSyncError):
    """A durable store could not read or write (quota, corruption, closed store)."""


class ValidationError(FieldSyncError):
    """Malformed input rejected before it reaches a store."""


class NetworkError(FieldSyncError):
    """Transient failure talking to the remote API. Retryable."""


class RemoteRequestError(NetworkError):
    def __init__(self, message: str, *, status_code: int):
        super().__init__(message)
        self.status_code = status_code


class AuthError(FieldSyncError):
    pass


class InvalidEditStateError(FieldSyncError):
    pass


class JobNotCachedError(FieldSyncError):
    pass


class StoreClosedError(StorageError):
    pass
