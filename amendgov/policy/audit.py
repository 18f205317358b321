"""Safety log — append-only record of every rule violation and forced revert.

Entries are SafetyEvent rows. There is no update or delete path: the log
is written through `record()` and read through `query()` / `stats()`.
"""

from __future__ import annotations

import logging
from collections import Counter
from typing import Any

from amendgov.events.bus import EventBus
from amendgov.store.repository import GovernanceRepository
from amendgov.types import ConstraintType, SafetyEvent, Violation

logger = logging.getLogger(__name__)


class SafetyLog:
    """Append-only safety audit trail backed by the governance store."""

    def __init__(
        self, repository: GovernanceRepository, event_bus: EventBus | None = None,
    ) -> None:
        self._repo = repository
        self._bus = event_bus

    async def record(self, event: SafetyEvent) -> SafetyEvent:
        """Record a safety event (immutable append)."""
        await self._repo.insert_safety_event(event)
        logger.warning(
            "safety %s agent=%s amendment=%s action=%s",
            event.constraint_type.value, event.agent_role,
            event.amendment_id, event.action_taken,
        )
        if self._bus:
            await self._bus.emit(
                f"safety.{event.constraint_type.value}",
                event.model_dump(mode="json"),
                source="safety_log",
            )
        return event

    async def log_violation(
        self, agent_role: str, violation: Violation, amendment_id: str | None = None,
    ) -> SafetyEvent:
        return await self.record(SafetyEvent(
            agent_role=agent_role,
            constraint_type=violation.constraint_type,
            constraint_data={"message": violation.message, **violation.data},
            action_taken=violation.action,
            amendment_id=amendment_id,
        ))

    async def log_event(
        self,
        agent_role: str,
        constraint_type: ConstraintType,
        data: dict[str, Any],
        action: str,
        amendment_id: str | None = None,
    ) -> SafetyEvent:
        return await self.record(SafetyEvent(
            agent_role=agent_role,
            constraint_type=constraint_type,
            constraint_data=data,
            action_taken=action,
            amendment_id=amendment_id,
        ))

    async def query(
        self,
        agent_role: str = "",
        constraint_type: ConstraintType | str = "",
        limit: int = 50,
    ) -> list[SafetyEvent]:
        """Newest first."""
        filters: dict[str, Any] = {}
        if agent_role:
            filters["agent_role"] = agent_role
        if constraint_type:
            filters["constraint_type"] = ConstraintType(constraint_type)
        return await self._repo.list_safety_events(limit=limit, **filters)

    async def count(self) -> int:
        return len(await self._repo.list_safety_events())

    async def stats(self) -> dict[str, Any]:
        events = await self._repo.list_safety_events()
        return {
            "total": len(events),
            "by_type": dict(Counter(e.constraint_type.value for e in events)),
            "by_agent": dict(Counter(e.agent_role for e in events)),
        }

    def __repr__(self) -> str:
        return f"SafetyLog(store={self._repo.store!r})"
