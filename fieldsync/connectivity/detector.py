from __future__ import annotations

import asyncio
import contextlib
import inspect
import ipaddress
import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Awaitable, Callable, Protocol
from urllib.parse import urlsplit

from fieldsync.core.config import Settings
from fieldsync.core.timeutil import utc_now

logger = logging.getLogger(__name__)

_LOCAL_HOSTNAMES = {"localhost"}


class ReachabilityProbe(Protocol):
    async def probe(self) -> bool: ...


@dataclass(frozen=True, slots=True)
class ConnectivityStatus:
    is_offline: bool
    last_online_at: datetime | None
    last_probe_at: datetime | None
    is_local_network: bool

    @property
    def is_online(self) -> bool:
        return not self.is_offline


ConnectivityListener = Callable[[ConnectivityStatus], Awaitable[None] | None]


def is_local_network_host(base_url: str) -> bool:
    host = urlsplit(base_url).hostname or ""
    if host in _LOCAL_HOSTNAMES:
        return True
    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        return False
    return address.is_private or address.is_loopback


class ConnectivityDetector:
    """Tracks whether the remote API is actually reachable.

    A platform "offline" signal is applied at once. A platform "online" signal
    only counts after ``probe_confirmations`` consecutive successful probes.
    Listeners hear transitions only.
    """

    def __init__(self, settings: Settings, prober: ReachabilityProbe, *, initially_online: bool = False):
        self._settings = settings
        self._prober = prober
        now = utc_now() if initially_online else None
        self._status = ConnectivityStatus(
            is_offline=not initially_online,
            last_online_at=now,
            last_probe_at=None,
            is_local_network=is_local_network_host(settings.app_base_url),
        )
        self._listeners: list[ConnectivityListener] = []
        self._consecutive_successes = 0
        self._monitor_task: asyncio.Task[None] | None = None
        self._check_lock = asyncio.Lock()

    @property
    def status(self) -> ConnectivityStatus:
        return self._status

    @property
    def is_online(self) -> bool:
        return not self._status.is_offline

    def add_listener(self, listener: ConnectivityListener) -> Callable[[], None]:
        self._listeners.append(listener)
        return lambda: self.remove_listener(listener)

    def remove_listener(self, listener: ConnectivityListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def report_platform_status(self, online: bool) -> ConnectivityStatus:
        if not online:
            self._consecutive_successes = 0
            await self._apply(offline=True)
            return self._status
        await self.check_now()
        return self._status

    async def check_now(self) -> bool:
        async with self._check_lock:
            reachable = await self._prober.probe()
            self._status = replace(self._status, last_probe_at=utc_now())
            if not reachable:
                self._consecutive_successes = 0
                await self._apply(offline=True)
                return False

            self._consecutive_successes += 1
            if self._consecutive_successes >= self._settings.probe_confirmations:
                await self._apply(offline=False)
            return self.is_online

    async def _apply(self, *, offline: bool) -> None:
        if offline:
            if self._status.is_offline:
                return
            self._status = replace(self._status, is_offline=True)
            logger.info("Connectivity lost")
        else:
            now = utc_now()
            was_offline = self._status.is_offline
            self._status = replace(self._status, is_offline=False, last_online_at=now)
            if not was_offline:
                return
            logger.info("Connectivity restored")
        await self._notify()

    async def _notify(self) -> None:
        status = self._status
        for listener in list(self._listeners):
            try:
                result = listener(status)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Connectivity listener failed")

    async def start(self) -> None:
        if self._monitor_task is not None:
            return
        await self.check_now()
        self._monitor_task = asyncio.create_task(self._monitor_loop(), name="fieldsync-connectivity")

    async def stop(self) -> None:
        task = self._monitor_task
        self._monitor_task = None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _monitor_loop(self) -> None:
        while True:
            await asyncio.sleep(self._settings.probe_interval_seconds)
            try:
                await self.check_now()
            except Exception:
                logger.exception("Connectivity check failed")
