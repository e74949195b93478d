from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Protocol

from fieldsync.core.config import Settings
from fieldsync.core.events import EventBus, EventTopic
from fieldsync.cache.pages import PageCacheService, normalize_route
from fieldsync.cache.types import CachedPage

logger = logging.getLogger(__name__)


class OnlineState(Protocol):
    @property
    def is_online(self) -> bool: ...


@dataclass(frozen=True, slots=True)
class NavigationDecision:
    target: str
    destination: str | None
    blocked: bool
    reason: str | None = None


class NavigationGuard:
    """Decides whether a route may be opened with the current connectivity."""

    def __init__(
        self,
        settings: Settings,
        pages: PageCacheService,
        connectivity: OnlineState,
        events: EventBus | None = None,
    ):
        self._settings = settings
        self._pages = pages
        self._connectivity = connectivity
        self._events = events

    @property
    def is_online(self) -> bool:
        return self._connectivity.is_online

    async def init(self) -> int:
        return await self._pages.prune()

    async def record_visit(self, route: str, title: str = "") -> CachedPage:
        return await self._pages.record_visit(route, title)

    async def is_allowed_offline(self, route: str) -> bool:
        return await self._pages.is_cached(normalize_route(route))

    async def should_block(self, target_route: str) -> bool:
        if self._connectivity.is_online:
            return False
        return not await self.is_allowed_offline(target_route)

    async def fallback_route(self, current_route: str | None) -> str | None:
        dashboard = self._settings.technician_dashboard_route
        if await self._pages.is_cached(dashboard):
            return dashboard
        return normalize_route(current_route) if current_route else None

    async def resolve(self, target_route: str, current_route: str | None = None) -> NavigationDecision:
        target = normalize_route(target_route)
        if not await self.should_block(target):
            return NavigationDecision(target=target, destination=target, blocked=False)

        # None keeps the user on the page they are already on.
        destination = await self.fallback_route(current_route)
        reason = "Page is not available offline"
        logger.info("Blocked offline navigation to %s, redirecting to %s", target, destination or "current page")
        if self._events is not None:
            await self._events.publish(
                EventTopic.NAVIGATION_BLOCKED,
                {"target": target, "destination": destination, "reason": reason},
            )
        return NavigationDecision(target=target, destination=destination, blocked=True, reason=reason)

    async def suggestions(self, current_route: str | None = None, limit: int | None = None) -> list[CachedPage]:
        current = normalize_route(current_route) if current_route else None
        candidates = [page for page in await self._pages.list_pages() if page.route != current]
        # list_pages is newest first; stable sort keeps recency inside each group.
        candidates.sort(key=lambda page: (not page.is_technician_page, not page.is_job_detail_page))
        return candidates[: limit or self._settings.navigation_suggestion_limit]


NavigateCallback = Callable[[str], Awaitable[None] | None]


class Navigator:
    """Single entry point for route changes.

    User clicks and programmatic redirects both go through ``navigate`` so the
    offline guard sees every transition.
    """

    def __init__(self, guard: NavigationGuard, perform: NavigateCallback, *, initial_route: str | None = None):
        self._guard = guard
        self._perform = perform
        self._current_route = normalize_route(initial_route) if initial_route else None

    @property
    def current_route(self) -> str | None:
        return self._current_route

    async def navigate(self, target_route: str) -> NavigationDecision:
        decision = await self._guard.resolve(target_route, self._current_route)
        if decision.destination is None or (decision.blocked and decision.destination == self._current_route):
            return decision

        result = self._perform(decision.destination)
        if inspect.isawaitable(result):
            await result
        self._current_route = decision.destination
        return decision

    async def page_rendered(self, route: str, title: str = "") -> None:
        """Call after a page finishes rendering while online."""
        self._current_route = normalize_route(route)
        if self._guard.is_online:
            await self._guard.record_visit(route, title)
