from __future__ import annotations

import asyncio
import logging
from typing import Iterable, Optional

from osis_sync.config_manager import ConfigManager
from osis_sync.models import Source, utc_now
from osis_sync.sync_engine import SyncOrchestrator

logger = logging.getLogger(__name__)


class SyncScheduler:
    """One loop per source: periodic cycles, manual triggers and debounced local changes."""

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        config_manager: ConfigManager,
        sources: Optional[Iterable[Source]] = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.config_manager = config_manager
        self.sources = list(sources or orchestrator.context.adapters)
        self._tasks: dict[Source, asyncio.Task] = {}
        self._wake: dict[Source, asyncio.Event] = {}
        self._reasons: dict[Source, str] = {}
        self._debounce: dict[Source, asyncio.TimerHandle] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks.values())

    def start(self) -> None:
        if self.running:
            return
        self._loop = asyncio.get_running_loop()
        for source in self.sources:
            self._wake[source] = asyncio.Event()
            self._tasks[source] = self._loop.create_task(
                self._run_source(source), name=f"osis-sync-{source.value}"
            )

    async def stop(self) -> None:
        for handle in self._debounce.values():
            handle.cancel()
        self._debounce.clear()
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    def trigger(self, source: Optional[Source] = None, reason: str = "manual") -> None:
        for target in [source] if source else self.sources:
            event = self._wake.get(target)
            if event is None:
                continue
            self._reasons[target] = reason
            event.set()

    def notify_local_change(self, source: Source) -> None:
        """Schedule a cycle shortly after a local mutation; bursts collapse into one."""
        if self._loop is None or source not in self._wake:
            return
        delay = self.config_manager.load().sync.debounce_seconds
        previous = self._debounce.pop(source, None)
        if previous is not None:
            previous.cancel()
        self._debounce[source] = self._loop.call_later(delay, self._fire_debounced, source)

    def _fire_debounced(self, source: Source) -> None:
        self._debounce.pop(source, None)
        self.trigger(source, reason="local_change")

    def _wait_seconds(self, source: Source) -> float:
        cursor = self.orchestrator.store.get_cursor(source)
        if cursor.backoff_until is not None:
            return max(0.0, (cursor.backoff_until - utc_now()).total_seconds())
        return float(max(30, int(self.config_manager.load().sync.interval_seconds)))

    async def _run_source(self, source: Source) -> None:
        # Run one cycle at startup so state is initialized quickly.
        trigger = "startup"
        wake = self._wake[source]
        while True:
            timeout = 30.0
            try:
                await self.orchestrator.run_cycle(source, trigger=trigger)
                timeout = self._wait_seconds(source)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("%s sync loop iteration failed", source.value)

            try:
                await asyncio.wait_for(wake.wait(), timeout=timeout)
                trigger = self._reasons.pop(source, "manual")
            except asyncio.TimeoutError:
                trigger = "scheduled"
            wake.clear()
