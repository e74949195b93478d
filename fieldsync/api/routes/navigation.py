from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status

from fieldsync.api.deps import get_runtime
from fieldsync.api.schemas.navigation import CachedPageResponse, NavigationDecisionResponse, VisitRequest
from fieldsync.cache.types import CachedPage
from fieldsync.core.errors import ValidationError
from fieldsync.offline.runtime import OfflineRuntime

router = APIRouter(prefix="/navigation", tags=["navigation"])


def _page_response(page: CachedPage) -> CachedPageResponse:
    return CachedPageResponse(
        route=page.route,
        title=page.title,
        cached_at=page.cached_at,
        is_technician_page=page.is_technician_page,
        is_job_detail_page=page.is_job_detail_page,
        has_content=page.has_content,
    )


@router.post("/visits", response_model=CachedPageResponse, status_code=status.HTTP_201_CREATED)
async def record_visit(request: VisitRequest, runtime: OfflineRuntime = Depends(get_runtime)) -> CachedPageResponse:
    try:
        page = await runtime.navigation.record_visit(request.route, request.title)
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    return _page_response(page)


@router.get("/check", response_model=NavigationDecisionResponse)
async def check_navigation(
    target: str = Query(min_length=1),
    current: str | None = None,
    runtime: OfflineRuntime = Depends(get_runtime),
) -> NavigationDecisionResponse:
    try:
        decision = await runtime.navigation.resolve(target, current)
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    return NavigationDecisionResponse(
        target=decision.target,
        destination=decision.destination,
        blocked=decision.blocked,
        reason=decision.reason,
    )


@router.get("/suggestions", response_model=list[CachedPageResponse])
async def get_suggestions(
    current: str | None = None,
    runtime: OfflineRuntime = Depends(get_runtime),
) -> list[CachedPageResponse]:
    return [_page_response(page) for page in await runtime.navigation.suggestions(current)]
