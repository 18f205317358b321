"""Knowledge computer — derives an agent's effective knowledge.

Effective knowledge = base persona ⊕ standard knowledge ⊕ active amendments
applied in creation order. Results are cached per agent with explicit
invalidation only: every code path that changes an agent's active
amendment set must call `invalidate_cache`. With the cache disabled each
call recomputes from the store, which is the safe mode when several
processes share one store.
"""

from __future__ import annotations

import copy
import hashlib
import json
import logging
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from amendgov.events.bus import EventBus
from amendgov.exceptions import UnknownAmendmentTypeError
from amendgov.governance.roster import render_guidance
from amendgov.store.repository import GovernanceRepository
from amendgov.types import Amendment, AmendmentType, operation, utcnow

logger = logging.getLogger(__name__)


class TaskContext(BaseModel):
    """What a task looks like to trigger matching."""

    category: str | None = None
    tools: list[str] = Field(default_factory=list)
    phase: str | None = None


class AppliedInstruction(BaseModel):
    amendment_id: str
    trigger_pattern: str
    instruction: str


class EffectiveKnowledge(BaseModel):
    agent_role: str
    base: str
    standard: str
    areas: dict[str, str] = Field(default_factory=dict)
    guidance: dict[str, Any] = Field(default_factory=dict)
    instructions: list[AppliedInstruction] = Field(default_factory=list)
    amendments_applied: list[str] = Field(default_factory=list)
    text: str = ""
    version_hash: str = ""
    computed_at: datetime = Field(default_factory=utcnow)


class KnowledgeLookup(BaseModel):
    knowledge: EffectiveKnowledge
    from_cache: bool


class BakeResult(BaseModel):
    agent_role: str
    amendment_id: str
    previous_hash: str
    new_hash: str


def compute_version_hash(content: Any) -> str:
    payload = json.dumps(content, sort_keys=True, default=str)
    return hashlib.sha256(payload.encode()).hexdigest()


def deep_merge(base: dict[str, Any], incoming: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge incoming into a copy of base. Incoming wins."""
    merged = copy.deepcopy(base)
    for key, value in incoming.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def matches_trigger(trigger_pattern: str, context: TaskContext) -> bool:
    kind, _, value = trigger_pattern.partition(":")
    if kind == "task_category":
        return bool(context.category) and value.lower() == context.category.lower()
    if kind == "tool_use":
        return value in context.tools
    if kind == "quality_check":
        return context.phase == value
    return False


def apply_amendments(
    standard_guidance: dict[str, Any], amendments: list[Amendment],
) -> tuple[dict[str, str], dict[str, Any]]:
    """Fold amendments, oldest first, into target areas and guidance.

    append concatenates into its target area and deep-merges its
    mutation; replace overwrites the area and each mutated top-level key;
    remove deletes the area and the named guidance keys.
    """
    areas: dict[str, str] = {}
    guidance = copy.deepcopy(standard_guidance)

    for amendment in sorted(amendments, key=lambda a: (a.created_at, a.id)):
        area = amendment.area
        mutation = amendment.knowledge_mutation
        if amendment.amendment_type == AmendmentType.APPEND:
            if amendment.instruction_delta:
                existing = areas.get(area)
                areas[area] = (
                    f"{existing}\n{amendment.instruction_delta}"
                    if existing else amendment.instruction_delta
                )
            guidance = deep_merge(guidance, mutation)
        elif amendment.amendment_type == AmendmentType.REPLACE:
            areas[area] = amendment.instruction_delta
            for key, value in mutation.items():
                guidance[key] = copy.deepcopy(value)
        elif amendment.amendment_type == AmendmentType.REMOVE:
            areas.pop(area, None)
            for key, value in mutation.items():
                current = guidance.get(key)
                if isinstance(value, dict) and value and isinstance(current, dict):
                    for sub in value:
                        current.pop(sub, None)
                else:
                    guidance.pop(key, None)
        else:
            raise UnknownAmendmentTypeError(
                f"Unknown amendment type: {amendment.amendment_type}",
                {"amendment_id": amendment.id},
            )
    return areas, guidance


def render_knowledge(base: str, areas: dict[str, str], guidance: dict[str, Any]) -> str:
    sections = [f"## Base\n{base}"]
    rendered = render_guidance(guidance)
    if rendered:
        sections.append(f"## Standard\n{rendered}")
    if areas:
        sections.append(
            "## Amendments\n"
            + "\n".join(f"### {area}\n{text}" for area, text in areas.items())
        )
    return "\n\n".join(sections)


class KnowledgeComputer:
    """Computes and caches effective knowledge per agent."""

    def __init__(
        self,
        repository: GovernanceRepository,
        cache_enabled: bool = True,
        event_bus: EventBus | None = None,
    ) -> None:
        self._repo = repository
        self.cache_enabled = cache_enabled
        self._cache: dict[str, EffectiveKnowledge] = {}
        self._bus = event_bus

    # ── Cache ────────────────────────────────────────────────────

    def invalidate_cache(self, agent_role: str) -> None:
        if self._cache.pop(agent_role, None) is not None:
            logger.debug("Invalidated knowledge cache for %s", agent_role)

    def clear_cache(self) -> None:
        self._cache.clear()

    @property
    def cached_roles(self) -> list[str]:
        return sorted(self._cache)

    # ── Computation ──────────────────────────────────────────────

    async def _compute(self, agent_role: str) -> EffectiveKnowledge:
        agent = await self._repo.require_agent(agent_role)
        active = await self._repo.active_amendments(agent_role)
        areas, guidance = apply_amendments(agent.standard_guidance, active)

        ordered = sorted(active, key=lambda a: (a.created_at, a.id))
        knowledge = EffectiveKnowledge(
            agent_role=agent_role,
            base=agent.base_knowledge,
            standard=agent.standard_knowledge,
            areas=areas,
            guidance=guidance,
            instructions=[
                AppliedInstruction(
                    amendment_id=a.id,
                    trigger_pattern=a.trigger_pattern,
                    instruction=a.instruction_delta,
                )
                for a in ordered
                if a.amendment_type != AmendmentType.REMOVE and a.instruction_delta
            ],
            amendments_applied=[a.id for a in ordered],
            text=render_knowledge(agent.base_knowledge, areas, guidance),
        )
        knowledge.version_hash = compute_version_hash({
            "base": knowledge.base, "areas": areas, "guidance": guidance,
        })

        if (
            agent.effective_knowledge != knowledge.text
            or agent.knowledge_version != knowledge.version_hash
        ):
            agent.effective_knowledge = knowledge.text
            agent.knowledge_version = knowledge.version_hash
            await self._repo.save_agent(agent)

        if self.cache_enabled:
            self._cache[agent_role] = knowledge
        if self._bus:
            await self._bus.emit("knowledge.computed", {
                "agent_role": agent_role,
                "version_hash": knowledge.version_hash,
                "amendments_applied": len(knowledge.amendments_applied),
            }, source="knowledge_computer")
        return knowledge

    @operation
    async def compute_effective_knowledge(self, agent_role: str) -> EffectiveKnowledge:
        return await self._compute(agent_role)

    async def lookup(self, agent_role: str, force_refresh: bool = False) -> KnowledgeLookup:
        if self.cache_enabled and not force_refresh:
            cached = self._cache.get(agent_role)
            if cached is not None:
                return KnowledgeLookup(knowledge=cached, from_cache=True)
        return KnowledgeLookup(knowledge=await self._compute(agent_role), from_cache=False)

    @operation
    async def get_effective_knowledge(
        self, agent_role: str, force_refresh: bool = False,
    ) -> KnowledgeLookup:
        return await self.lookup(agent_role, force_refresh)

    @operation
    async def get_applicable_instructions(
        self, agent_role: str, context: TaskContext | dict[str, Any],
    ) -> list[AppliedInstruction]:
        context = TaskContext.model_validate(context)
        result = await self.lookup(agent_role)
        return [
            i for i in result.knowledge.instructions
            if matches_trigger(i.trigger_pattern, context)
        ]

    @operation
    async def get_knowledge_summary(self, agent_role: str) -> dict[str, Any]:
        result = await self.lookup(agent_role)
        k = result.knowledge
        return {
            "agent_role": agent_role,
            "version_hash": k.version_hash,
            "amendments_applied": len(k.amendments_applied),
            "areas": list(k.areas),
            "guidance_keys": sorted(k.guidance),
            "from_cache": result.from_cache,
            "computed_at": k.computed_at.isoformat(),
        }

    # ── Standard knowledge ───────────────────────────────────────

    @operation
    async def update_standard_knowledge(
        self, agent_role: str, guidance: dict[str, Any],
    ) -> EffectiveKnowledge:
        async with self._repo.transaction():
            agent = await self._repo.require_agent(agent_role)
            agent.standard_guidance = copy.deepcopy(guidance)
            agent.standard_knowledge = render_guidance(guidance)
            await self._repo.save_agent(agent)
        self.invalidate_cache(agent_role)
        return await self._compute(agent_role)

    async def bake_into_standard(self, agent_role: str, amendment: Amendment) -> BakeResult:
        """Merge a proven amendment permanently into standard knowledge."""
        agent = await self._repo.require_agent(agent_role)
        previous_hash = compute_version_hash(agent.standard_guidance)

        merged = copy.deepcopy(agent.standard_guidance)
        for key, value in amendment.knowledge_mutation.items():
            if isinstance(value, dict) and isinstance(merged.get(key), dict):
                merged[key] = {**merged[key], **copy.deepcopy(value)}
            else:
                merged[key] = copy.deepcopy(value)
        if amendment.instruction_delta:
            merged.setdefault("permanent_instructions", []).append({
                "trigger_pattern": amendment.trigger_pattern,
                "instruction": amendment.instruction_delta,
                "baked_at": utcnow().isoformat(),
            })

        agent.standard_guidance = merged
        agent.standard_knowledge = render_guidance(merged)
        await self._repo.save_agent(agent)
        self.invalidate_cache(agent_role)

        new_hash = compute_version_hash(merged)
        logger.info(
            "Baked %s into standard for %s: %s... -> %s...",
            amendment.id, agent_role, previous_hash[:8], new_hash[:8],
        )
        return BakeResult(
            agent_role=agent_role,
            amendment_id=amendment.id,
            previous_hash=previous_hash,
            new_hash=new_hash,
        )
