"""Amendment baking — folds proven amendments into standard knowledge.

When an agent carries the threshold number of active, unbaked
amendments, the oldest proven one with enough successful evaluations is
merged permanently into the agent's standard knowledge, marked baked and
deactivated. This frees a slot under the active-amendment cap.
"""

from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from amendgov.events.bus import EventBus
from amendgov.exceptions import InvalidTransitionError
from amendgov.governance.knowledge import KnowledgeComputer
from amendgov.store.repository import GovernanceRepository
from amendgov.types import Amendment, EvaluationStatus, operation, utcnow

logger = logging.getLogger(__name__)


class BakingStatus(BaseModel):
    agent_role: str
    needs_baking: bool
    current_count: int
    threshold: int


class BakeRecord(BaseModel):
    amendment_id: str
    agent_role: str
    trigger_pattern: str
    previous_hash: str
    new_hash: str
    baked_at: datetime = Field(default_factory=utcnow)


class AmendmentBaking:
    def __init__(
        self,
        repository: GovernanceRepository,
        knowledge: KnowledgeComputer,
        event_bus: EventBus | None = None,
        threshold: int = 10,
        min_successful_evals: int = 5,
        min_success_rate: float = 0.6,
    ) -> None:
        self._repo = repository
        self._knowledge = knowledge
        self._bus = event_bus
        self.threshold = threshold
        self.min_successful_evals = min_successful_evals
        self.min_success_rate = min_success_rate

    def is_bakeable(self, amendment: Amendment) -> bool:
        if amendment.is_baked or not amendment.is_active:
            return False
        if amendment.evaluation_status != EvaluationStatus.PROVEN:
            return False
        if amendment.success_count < self.min_successful_evals:
            return False
        if amendment.tasks_evaluated == 0:
            return False
        return amendment.success_count / amendment.tasks_evaluated >= self.min_success_rate

    async def _status(self, agent_role: str) -> BakingStatus:
        active = await self._repo.active_amendments(agent_role)
        count = sum(1 for a in active if not a.is_baked)
        return BakingStatus(
            agent_role=agent_role,
            needs_baking=count >= self.threshold,
            current_count=count,
            threshold=self.threshold,
        )

    @operation
    async def check_baking_threshold(self, agent_role: str) -> BakingStatus:
        await self._repo.require_agent(agent_role)
        return await self._status(agent_role)

    async def _select(self, agent_role: str) -> Amendment | None:
        candidates = [a for a in await self._repo.active_amendments(agent_role) if self.is_bakeable(a)]
        return candidates[0] if candidates else None

    @operation
    async def select_amendment_for_baking(self, agent_role: str) -> Amendment | None:
        """Oldest eligible proven amendment, or None."""
        return await self._select(agent_role)

    async def bake(self, amendment_id: str) -> BakeRecord:
        async with self._repo.transaction():
            amendment = await self._repo.require_amendment(amendment_id)
            if not self.is_bakeable(amendment):
                raise InvalidTransitionError(
                    f"Amendment {amendment_id} is not eligible for baking "
                    f"(status {amendment.evaluation_status.value}, "
                    f"baked={amendment.is_baked}, active={amendment.is_active})",
                    {"amendment_id": amendment_id},
                )
            result = await self._knowledge.bake_into_standard(amendment.agent_role, amendment)
            amendment.is_baked = True
            amendment.is_active = False
            amendment.baked_at = utcnow()
            await self._repo.save_amendment(amendment)
            await self._repo.refresh_active_count(amendment.agent_role)
        self._knowledge.invalidate_cache(amendment.agent_role)

        record = BakeRecord(
            amendment_id=amendment.id,
            agent_role=amendment.agent_role,
            trigger_pattern=amendment.trigger_pattern,
            previous_hash=result.previous_hash,
            new_hash=result.new_hash,
            baked_at=amendment.baked_at,
        )
        logger.info("Baked amendment %s into %s standard knowledge", amendment.id, amendment.agent_role)
        if self._bus:
            await self._bus.emit("amendment.baked", record.model_dump(mode="json"), source="baking")
        return record

    @operation
    async def bake_amendment(self, amendment_id: str) -> BakeRecord:
        return await self.bake(amendment_id)

    async def auto_bake(self, agent_role: str) -> BakeRecord | None:
        status = await self._status(agent_role)
        if not status.needs_baking:
            return None
        candidate = await self._select(agent_role)
        if candidate is None:
            logger.info(
                "%s is at %d active amendments but none is eligible for baking",
                agent_role, status.current_count,
            )
            return None
        return await self.bake(candidate.id)

    @operation
    async def run_auto_baking(self, agent_role: str) -> BakeRecord | None:
        return await self.auto_bake(agent_role)

    @operation
    async def run_global_baking_check(self) -> list[BakeRecord]:
        baked = []
        for agent in await self._repo.list_agents():
            record = await self.auto_bake(agent.role)
            if record:
                baked.append(record)
        return baked

    @operation
    async def get_baked_amendments(
        self, agent_role: str | None = None, limit: int = 50,
    ) -> list[Amendment]:
        filters: dict[str, Any] = {"is_baked": True}
        if agent_role:
            filters["agent_role"] = agent_role
        return await self._repo.list_amendments(descending=True, limit=limit, **filters)

    @operation
    async def get_baking_stats(self) -> dict[str, Any]:
        baked = await self._repo.list_amendments(is_baked=True)
        return {
            "total_baked": len(baked),
            "by_agent": dict(Counter(a.agent_role for a in baked)),
            "threshold": self.threshold,
        }
