"""
Connectivity tracking for the device.

The platform can report network changes through ``set_online``; in
addition, a periodic probe (``RemoteStore.ping``) catches the cases the
platform misses. Listeners run on every online/offline flip.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable

from secretary.core.exceptions import ConnectivityError

logger = logging.getLogger(__name__)

ConnectivityListener = Callable[[bool], Awaitable[None]]


class ConnectivityMonitor:
    """Online/offline state with change notifications.

    Args:
        probe: Awaitable that raises ``ConnectivityError`` (or times out)
            when the remote store is unreachable.
        interval: Seconds between probes; ``0`` disables the probe loop.
        probe_timeout: Upper bound for one probe.
        online: Initial state.
    """

    def __init__(
        self,
        probe: Callable[[], Awaitable[None]] | None = None,
        interval: float = 15.0,
        probe_timeout: float = 10.0,
        online: bool = True,
    ) -> None:
        self._probe = probe
        self._interval = interval
        self._probe_timeout = probe_timeout
        self._online = online
        self._listeners: list[ConnectivityListener] = []
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None

    @property
    def is_online(self) -> bool:
        return self._online

    def add_listener(self, listener: ConnectivityListener) -> Callable[[], None]:
        """Register *listener*; returns a function that unregisters it."""
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    async def set_online(self, online: bool) -> None:
        """Record the current state and notify listeners if it changed."""
        if online == self._online:
            return
        self._online = online
        logger.info("Connectivity changed: %s", "online" if online else "offline")
        for listener in list(self._listeners):
            try:
                await listener(online)
            except Exception:
                logger.exception("Connectivity listener failed")

    async def probe_once(self) -> bool:
        """Probe the remote store once and update the state."""
        if self._probe is None:
            return self._online
        try:
            await asyncio.wait_for(self._probe(), timeout=self._probe_timeout)
        except (ConnectivityError, TimeoutError, OSError) as exc:
            logger.debug("Connectivity probe failed: %s", exc)
            await self.set_online(False)
        else:
            await self.set_online(True)
        return self._online

    def start(self) -> None:
        """Launch the periodic probe loop (no-op without a probe or interval)."""
        if self._probe is None or self._interval <= 0 or self._task is not None:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)
            except TimeoutError:
                pass  # Probe interval elapsed
            if not self._stop_event.is_set():
                await self.probe_once()
