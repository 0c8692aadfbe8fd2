"""
Connection monitor.

Produces one authoritative "can we really reach the server" flag. The platform's
native online/offline signal only reflects the network link, so it is combined
with an active probe of the server's ``/ping`` endpoint: on a native "online"
event and periodically (every 30 s by default, 5 s timeout).
"""
import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional, Set

import httpx

from ..core.config import settings

logger = logging.getLogger(__name__)

ConnectionListener = Callable[[bool], None]
Probe = Callable[[], Awaitable[bool]]


class NativeConnectivity:
    """Link-layer online/offline signal reported by the host platform.

    The host (OS network hooks, a browser bridge, a test) calls ``set_online``;
    registered listeners get an ``online`` or ``offline`` event on each change.
    """

    ONLINE = "online"
    OFFLINE = "offline"

    def __init__(self, online: bool = True):
        self._online = online
        self._listeners: Dict[str, List[Callable[[], None]]] = {self.ONLINE: [], self.OFFLINE: []}

    @property
    def online(self) -> bool:
        return self._online

    def add_listener(self, event: str, callback: Callable[[], None]) -> None:
        self._listeners[event].append(callback)

    def remove_listener(self, event: str, callback: Callable[[], None]) -> None:
        if callback in self._listeners.get(event, []):
            self._listeners[event].remove(callback)

    def set_online(self, online: bool) -> None:
        if online == self._online:
            return
        self._online = online
        for callback in list(self._listeners[self.ONLINE if online else self.OFFLINE]):
            callback()


def http_probe(url: str, timeout: Optional[float] = None) -> Probe:
    """Build a probe issuing ``GET url``; any 2xx answer means reachable."""
    timeout = timeout or settings.PING_TIMEOUT_SECONDS

    async def probe() -> bool:
        async with httpx.AsyncClient(timeout=timeout) as client:
            resp = await client.get(url, headers={"Cache-Control": "no-store"})
            return resp.is_success

    return probe


class ConnectionMonitor:
    """Tracks server reachability and notifies subscribers on every transition.

    Lifecycle is explicit: ``await start()`` attaches to the native signal,
    runs an initial probe and starts the periodic timer; ``await stop()``
    detaches, cancels the timer and any in-flight probe, and drops subscribers.
    """

    def __init__(
        self,
        probe: Optional[Probe] = None,
        native: Optional[NativeConnectivity] = None,
        interval: Optional[float] = None,
        timeout: Optional[float] = None,
    ):
        self.native = native or NativeConnectivity()
        self.interval = settings.PING_INTERVAL_SECONDS if interval is None else interval
        self.timeout = settings.PING_TIMEOUT_SECONDS if timeout is None else timeout
        self._probe = probe or http_probe(f"{settings.API_BASE_URL.rstrip('/')}/ping", self.timeout)
        self._status = self.native.online
        self._listeners: List[ConnectionListener] = []
        self._timer_task: Optional[asyncio.Task] = None
        self._checks: Set[asyncio.Task] = set()
        self._started = False

    @property
    def is_online(self) -> bool:
        return self._status

    def get_status(self) -> bool:
        return self._status

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        self.native.add_listener(NativeConnectivity.ONLINE, self._handle_native_online)
        self.native.add_listener(NativeConnectivity.OFFLINE, self._handle_native_offline)
        if self.interval > 0:
            self._timer_task = asyncio.create_task(self._run_periodic_check())
        await self.check_now()

    async def stop(self) -> None:
        self._started = False
        self.native.remove_listener(NativeConnectivity.ONLINE, self._handle_native_online)
        self.native.remove_listener(NativeConnectivity.OFFLINE, self._handle_native_offline)

        tasks = list(self._checks)
        if self._timer_task is not None:
            tasks.append(self._timer_task)
            self._timer_task = None
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._checks.clear()
        self._listeners = []

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(self, callback: ConnectionListener) -> Callable[[], None]:
        """Register ``callback`` and call it right away with the current status.

        Returns an unsubscribe function that is safe to call at any time.
        """
        self._listeners.append(callback)
        callback(self._status)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def _update_status(self, online: bool) -> None:
        if online == self._status:
            return
        self._status = online
        logger.info("Connection status changed: %s", "online" if online else "offline")
        for listener in list(self._listeners):
            try:
                listener(online)
            except Exception:
                logger.exception("Error in connection listener %r", listener)

    # ------------------------------------------------------------------
    # Probing
    # ------------------------------------------------------------------

    async def check_now(self) -> bool:
        """Probe the server now, settle the status and return it."""
        reachable = await self._ping()
        if not reachable and self.native.online:
            # Link is up but the server is not answering
            self._update_status(False)
        elif reachable and not self._status:
            self._update_status(True)
        return self._status

    async def wait_for_pending_checks(self) -> None:
        """Wait until probes started by native events have settled."""
        while self._checks:
            await asyncio.gather(*list(self._checks), return_exceptions=True)

    async def _ping(self) -> bool:
        try:
            return bool(await asyncio.wait_for(self._probe(), timeout=self.timeout))
        except Exception as exc:
            logger.debug("Connectivity probe failed: %r", exc)
            return False

    async def _run_periodic_check(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            await self.check_now()

    def _handle_native_online(self) -> None:
        # Link came back; only trust it once the server answers
        task = asyncio.get_running_loop().create_task(self.check_now())
        self._checks.add(task)
        task.add_done_callback(self._checks.discard)

    def _handle_native_offline(self) -> None:
        self._update_status(False)
