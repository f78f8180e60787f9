"""Network-state provider and the monitor that turns it into sync passes."""
from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Awaitable, Callable, List, Optional

from core.settings import SYNC

if TYPE_CHECKING:  # pragma: no cover
    from services.sync_service import OfflineSyncService


Listener = Callable[[bool], None]

logger = logging.getLogger("safework.sync.connectivity")


class NetworkState:
    """Injected online/offline signal with transition listeners."""

    def __init__(self, online: bool = True) -> None:
        self._online = online
        self._listeners: List[Listener] = []

    @property
    def online(self) -> bool:
        return self._online

    def set_online(self, value: bool) -> None:
        value = bool(value)
        if value == self._online:
            return
        self._online = value
        logger.info("Network is now %s", "online" if value else "offline")
        for listener in list(self._listeners):
            listener(value)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe


class ConnectivityMonitor:
    """Triggers sync passes on reconnect and on a periodic timer.

    ``probe`` is an optional coroutine (for example
    :meth:`RemoteApi.check_health`) whose answer refreshes the network state
    on every tick.
    """

    def __init__(
        self,
        service: "OfflineSyncService",
        network: NetworkState,
        *,
        interval_sec: float = SYNC.periodic_interval_sec,
        probe: Optional[Callable[[], Awaitable[bool]]] = None,
    ) -> None:
        self.service = service
        self.network = network
        self.interval_sec = interval_sec
        self.probe = probe
        self._timer: Optional[asyncio.Task] = None
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._triggered: set[asyncio.Task] = set()
        self._event_loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def running(self) -> bool:
        return self._timer is not None and not self._timer.done()

    def start(self) -> None:
        if self.running:
            return
        self._event_loop = asyncio.get_running_loop()
        self._unsubscribe = self.network.subscribe(self._on_transition)
        self._timer = self._event_loop.create_task(self._loop())
        logger.info("Connectivity monitor started (every %ss)", self.interval_sec)

    async def stop(self) -> None:
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None
        tasks = [t for t in (self._timer, *self._triggered) if t is not None]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._timer = None
        self._triggered.clear()
        self._event_loop = None

    def _on_transition(self, online: bool) -> None:
        # may be called from a host thread without an event loop
        loop = self._event_loop
        if not online or loop is None:
            return
        logger.info("Network reconnected, starting sync")
        try:
            current = asyncio.get_running_loop()
        except RuntimeError:
            current = None
        if current is loop:
            self._trigger_sync()
        else:
            loop.call_soon_threadsafe(self._trigger_sync)

    def _trigger_sync(self) -> None:
        task = asyncio.get_running_loop().create_task(self.service.sync_now())
        self._triggered.add(task)
        task.add_done_callback(self._triggered.discard)

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_sec)
            try:
                await self.tick()
            except Exception as exc:  # pragma: no cover - keep the timer alive
                logger.error("Periodic sync failed: %s", exc)

    async def tick(self) -> bool:
        """Run one timer tick; return True when a sync pass was requested."""

        if self.probe is not None:
            self.network.set_online(await self.probe())
            # a False -> True flip already fired a pass through the listener
            if self._triggered:
                return False
        if not self.network.online or self.service.running:
            return False
        await self.service.sync_now()
        return True


__all__ = ["ConnectivityMonitor", "NetworkState"]
