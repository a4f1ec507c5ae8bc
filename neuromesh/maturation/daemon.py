"""Maturation daemon — runs the maturation cycle on a timer in the background.

Uses an asyncio task for scheduling. Stations may stagger their first
pass with an initial delay so they do not all hit the shared store at
once.
"""

from __future__ import annotations

import asyncio
from typing import Any

import structlog

from neuromesh.events.bus import EventBus
from neuromesh.maturation.lifecycle import MaturationCycle, MaturationReport
from neuromesh.types import EVOLUTION_INTERVAL_SECONDS

logger = structlog.get_logger()


class MaturationDaemon:
    """Background daemon that runs maturation passes on a schedule."""

    def __init__(
        self,
        cycle: MaturationCycle,
        interval_seconds: float = EVOLUTION_INTERVAL_SECONDS,
        initial_delay: float = 0.0,
        event_bus: EventBus | None = None,
        history_limit: int = 100,
    ) -> None:
        self._cycle = cycle
        self._interval = interval_seconds
        self._initial_delay = initial_delay
        self._event_bus = event_bus
        self._history_limit = history_limit
        self._running = False
        self._task: asyncio.Task | None = None
        self._history: list[MaturationReport] = []

    async def start(self) -> None:
        """Start the daemon loop."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("maturation_daemon_started", station=self._cycle.station_id, interval=self._interval)
        await self._emit("maturation.daemon_started", {"interval_seconds": self._interval})

    async def stop(self) -> None:
        """Stop the daemon."""
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        await self._emit("maturation.daemon_stopped", {})

    async def run_once(self) -> MaturationReport:
        """Run a single maturation pass. Skipped passes are not kept in history."""
        report = await self._cycle.run(skip_if_busy=True)
        if not report.skipped:
            self._history.append(report)
            del self._history[:-self._history_limit]
        return report

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def history(self) -> list[MaturationReport]:
        return list(self._history)

    async def _run_loop(self) -> None:
        """Main daemon loop. Runs maturation passes on a schedule."""
        if self._initial_delay > 0:
            try:
                await asyncio.sleep(self._initial_delay)
            except asyncio.CancelledError:
                return

        while self._running:
            try:
                report = await self.run_once()
                logger.info(
                    "maturation_pass_completed",
                    phase=report.phase.value,
                    applied=len(report.applied),
                    skipped=report.skipped,
                )
            except Exception as e:
                logger.error("maturation_daemon_cycle_failed", error=str(e))
                await self._emit("maturation.daemon_error", {"error": str(e)})

            # Wait for next pass (or until stopped)
            try:
                await asyncio.sleep(self._interval)
            except asyncio.CancelledError:
                break

    async def _emit(self, topic: str, data: dict[str, Any]) -> None:
        if self._event_bus:
            await self._event_bus.emit(topic, data, source="maturation_daemon")
