from __future__ import annotations

from fastapi import Request

from fieldsync.offline.runtime import OfflineRuntime


def get_runtime(request: Request) -> OfflineRuntime:
    return request.app.state.runtime
