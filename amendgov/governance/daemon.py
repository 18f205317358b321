"""Governance scheduler — runs review cycles on a schedule in the background.

Each instance owns its loop task; start and stop it from whatever hosts
the governance runtime (the CLI's serve command, or an embedding app).
"""

from __future__ import annotations

import asyncio
from typing import Any

import structlog

from amendgov.events.bus import EventBus
from amendgov.governance.cycle import CycleReport, ReviewCycle

logger = structlog.get_logger()


class GovernanceScheduler:
    """Background scheduler that runs review cycles on an interval."""

    def __init__(
        self,
        cycle: ReviewCycle,
        event_bus: EventBus | None = None,
        interval_hours: float = 24,
        initial_delay: float = 0,
        max_history: int = 50,
    ) -> None:
        self._cycle = cycle
        self._event_bus = event_bus
        self._interval_hours = interval_hours
        self._initial_delay = initial_delay
        self._max_history = max_history
        self._running = False
        self._task: asyncio.Task | None = None
        self._history: list[CycleReport] = []

    async def start(self) -> None:
        """Start the scheduler loop."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("scheduler_started", interval_hours=self._interval_hours)
        await self._emit("scheduler.started", {"interval_hours": self._interval_hours})

    async def stop(self) -> None:
        """Stop the scheduler."""
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info("scheduler_stopped", cycles=len(self._history))
        await self._emit("scheduler.stopped", {})

    async def run_once(self, roles: list[str] | None = None) -> CycleReport:
        """Run a single review cycle."""
        report = (await self._cycle.run(roles)).unwrap()
        self._history.append(report)
        if len(self._history) > self._max_history:
            self._history = self._history[-self._max_history:]
        logger.info(
            "review_cycle_completed",
            agents=len(report.reviews),
            submitted=report.amendments_submitted,
            reverted=report.safety.total_reverted if report.safety else 0,
            errors=len(report.errors),
        )
        return report

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def history(self) -> list[CycleReport]:
        return list(self._history)

    async def _run_loop(self) -> None:
        """Main loop — runs review cycles on a schedule."""
        interval_seconds = self._interval_hours * 3600
        if self._initial_delay:
            try:
                await asyncio.sleep(self._initial_delay)
            except asyncio.CancelledError:
                return
        while self._running:
            try:
                await self.run_once()
            except Exception as e:
                logger.error("review_cycle_failed", error=str(e))
                await self._emit("scheduler.error", {"error": str(e)})

            # Wait for next cycle (or until stopped)
            try:
                await asyncio.sleep(interval_seconds)
            except asyncio.CancelledError:
                break

    async def _emit(self, topic: str, data: dict[str, Any]) -> None:
        if self._event_bus:
            await self._event_bus.emit(topic, data, source="governance_scheduler")
