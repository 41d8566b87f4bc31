"""
ReachabilityMonitor - online/offline state shared by every component.

Transitions:
- online -> offline: requests fail fast with NetworkUnavailableError
- offline -> online: reconnect handlers run (pending queue flush,
  refresh of collections marked refresh-on-reconnect)

Reconnect handling is debounced: when connectivity flaps, handlers run at
most once per ``reconnect_min_interval`` seconds. A suppressed reconnect
is deferred until the interval has elapsed, so queued work is not
forgotten while the device stays online.
"""

import asyncio
import time
from typing import AsyncIterator, Awaitable, Callable

import httpx
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from loguru import logger

from tripsync.services.events import Signals
from tripsync.utils import logged_job

ReconnectHandler = Callable[[], Awaitable[None]]


class ReachabilityMonitor:
    """
    Tracks connectivity and fans out transitions.

    Usage:
        monitor = ReachabilityMonitor(signals)
        monitor.on_reconnect(queue_flusher)

        # Platform adapter pushes path updates
        await monitor.set_online(False)
        await monitor.set_online(True)   # runs queue_flusher

        async for online in monitor.events():
            ...
    """

    def __init__(
        self,
        signals: Signals,
        online: bool = True,
        reconnect_min_interval: float = 5.0,
        probe_url: str | None = None,
        probe_interval_seconds: int = 30,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._signals = signals
        self._online = online
        self._min_interval = reconnect_min_interval
        self._probe_url = probe_url
        self._probe_interval = probe_interval_seconds
        self._http_client = http_client
        self._clock = clock

        self._handlers: list[ReconnectHandler] = []
        self._subscribers: list[asyncio.Queue[bool]] = []
        self._last_flush: float | None = None
        self._deferred: asyncio.Task[None] | None = None
        self._scheduler: AsyncIOScheduler | None = None
        self.flush_count = 0

    @property
    def is_online(self) -> bool:
        return self._online

    def on_reconnect(self, handler: ReconnectHandler) -> None:
        """Register a coroutine function run on every (debounced) reconnect."""
        self._handlers.append(handler)

    async def set_online(self, online: bool) -> None:
        """Record the current connectivity; no-op when unchanged."""
        if online == self._online:
            return

        self._online = online
        logger.info(f"Connectivity changed: {'online' if online else 'offline'}")

        for queue in list(self._subscribers):
            queue.put_nowait(online)
        await self._signals.connectivity_changed.emit(online)

        if online:
            await self._handle_reconnect()
        elif self._deferred and not self._deferred.done():
            self._deferred.cancel()
            self._deferred = None

    async def events(self) -> AsyncIterator[bool]:
        """Yield every transition (True = online) until the consumer stops."""
        queue: asyncio.Queue[bool] = asyncio.Queue()
        self._subscribers.append(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            self._subscribers.remove(queue)

    async def _handle_reconnect(self) -> None:
        now = self._clock()
        if self._last_flush is not None:
            elapsed = now - self._last_flush
            if elapsed < self._min_interval:
                remaining = self._min_interval - elapsed
                logger.debug(f"Reconnect debounced, deferring flush by {remaining:.1f}s")
                if self._deferred is None or self._deferred.done():
                    self._deferred = asyncio.create_task(self._deferred_flush(remaining))
                return

        await self._run_handlers()

    async def _deferred_flush(self, delay: float) -> None:
        await asyncio.sleep(delay)
        if self._online:
            await self._run_handlers()

    async def _run_handlers(self) -> None:
        self._last_flush = self._clock()
        self.flush_count += 1
        logger.info(f"Running {len(self._handlers)} reconnect handlers")
        for handler in list(self._handlers):
            try:
                await handler()
            except Exception as e:
                # Failed work stays queued for the next reconnect
                logger.error(f"Reconnect handler failed: {type(e).__name__}: {e}")

    # Active probing

    async def probe(self) -> bool:
        """Issue one HEAD request to the probe URL and record the outcome."""
        if not self._probe_url:
            return self._online

        client = self._http_client or httpx.AsyncClient(timeout=5.0)
        try:
            await client.head(self._probe_url, timeout=5.0)
            reachable = True
        except httpx.RequestError as e:
            logger.debug(f"Probe to {self._probe_url} failed: {e}")
            reachable = False
        finally:
            if self._http_client is None:
                await client.aclose()

        await self.set_online(reachable)
        return reachable

    @logged_job
    async def _probe_job(self) -> None:
        await self.probe()

    def start_probing(self) -> None:
        """Probe periodically on an AsyncIOScheduler interval job."""
        if not self._probe_url:
            logger.warning("No probe URL configured, active probing disabled")
            return
        if self._scheduler is not None:
            logger.warning("Reachability probing is already running")
            return

        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            self._probe_job,
            trigger="interval",
            seconds=self._probe_interval,
            id="reachability_probe",
            name="Reachability Probe",
            replace_existing=True,
        )
        self._scheduler.start()
        logger.info(f"Reachability probing every {self._probe_interval}s: {self._probe_url}")

    def stop_probing(self) -> None:
        if self._scheduler is None:
            return
        self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("Reachability probing stopped")

    async def close(self) -> None:
        self.stop_probing()
        if self._deferred and not self._deferred.done():
            self._deferred.cancel()
        self._deferred = None
