"""Governance runtime — wires every component against one store."""

from __future__ import annotations

import logging
from typing import Any

from amendgov.approval.escalation import ExceptionEscalation
from amendgov.approval.workflow import ApprovalWorkflow, TrustThresholds
from amendgov.config import GovSettings
from amendgov.events.bus import EventBus
from amendgov.governance.baking import AmendmentBaking
from amendgov.governance.cycle import ReviewCycle
from amendgov.governance.daemon import GovernanceScheduler
from amendgov.governance.engine import AmendmentEngine
from amendgov.governance.knowledge import KnowledgeComputer
from amendgov.governance.monitor import SelfMonitor
from amendgov.governance.patterns import DetectionThresholds, PatternDetector
from amendgov.governance.roster import default_agent
from amendgov.governance.safety import AmendmentSafety
from amendgov.policy.audit import SafetyLog
from amendgov.store.base import BaseStore
from amendgov.store.memory import InMemoryStore
from amendgov.store.repository import GovernanceRepository
from amendgov.store.sqlite import SqliteStore

logger = logging.getLogger(__name__)


class Governance:
    """Holds one instance of every governance subsystem."""

    def __init__(
        self,
        store: BaseStore,
        settings: GovSettings | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        self.settings = settings or GovSettings()
        s = self.settings
        self.store = store
        self.event_bus = event_bus or EventBus()
        self.repository = GovernanceRepository(store, timeout_seconds=s.store_timeout_seconds)

        self.safety_log = SafetyLog(self.repository, self.event_bus)
        self.knowledge = KnowledgeComputer(
            self.repository, cache_enabled=s.knowledge_cache_enabled, event_bus=self.event_bus,
        )
        self.monitor = SelfMonitor(self.repository, self.event_bus)
        self.safety = AmendmentSafety(
            self.repository, self.safety_log, self.knowledge, self.event_bus,
            monitor=self.monitor,
        )
        self.engine = AmendmentEngine(
            self.repository,
            guard=self.safety,
            knowledge=self.knowledge,
            event_bus=self.event_bus,
            evaluation_window=s.evaluation_window,
            proven_threshold=s.proven_threshold,
            monitor=self.monitor,
        )
        self.detector = PatternDetector(
            self.repository,
            DetectionThresholds(
                min_tasks=s.min_tasks_for_analysis,
                lookback_tasks=s.pattern_lookback_tasks,
                lookback_days=s.pattern_lookback_days,
                confidence_min=s.pattern_confidence_min,
            ),
            self.event_bus,
        )
        self.escalation = ExceptionEscalation(self.repository, self.safety_log, self.event_bus)
        self.workflow = ApprovalWorkflow(
            self.repository,
            self.engine,
            self.escalation,
            mode=s.approval_mode,
            trust_thresholds=TrustThresholds(
                min_proven_amendments=s.trust_min_proven_amendments,
                min_success_rate=s.trust_min_success_rate,
                min_active_days=s.trust_min_active_days,
            ),
            event_bus=self.event_bus,
        )
        self.baking = AmendmentBaking(
            self.repository,
            self.knowledge,
            self.event_bus,
            threshold=s.baking_threshold,
            min_successful_evals=s.baking_min_successful_evals,
            min_success_rate=s.baking_min_success_rate,
        )
        self.cycle = ReviewCycle(
            self.repository,
            self.detector,
            self.engine,
            self.safety,
            self.workflow,
            self.escalation,
            self.baking,
            self.event_bus,
        )
        self._scheduler: GovernanceScheduler | None = None

    @classmethod
    def open(cls, settings: GovSettings | None = None) -> Governance:
        """Governance backed by the SQLite database in settings."""
        settings = settings or GovSettings()
        store = SqliteStore(settings.db_path, lock_timeout=settings.store_timeout_seconds)
        return cls(store, settings)

    @classmethod
    def in_memory(cls, settings: GovSettings | None = None) -> Governance:
        settings = settings or GovSettings()
        return cls(InMemoryStore(lock_timeout=settings.store_timeout_seconds), settings)

    async def initialize(self) -> list[str]:
        """Open the store and create any configured agent that is missing."""
        await self.store.initialize()
        created = []
        async with self.repository.transaction():
            for role in self.settings.roles:
                if await self.repository.get_agent(role) is None:
                    await self.repository.save_agent(default_agent(role))
                    created.append(role)
        if created:
            logger.info("Bootstrapped %d agents: %s", len(created), ", ".join(created))
        return created

    async def close(self) -> None:
        if self._scheduler is not None:
            await self._scheduler.stop()
        await self.store.close()

    def scheduler(self) -> GovernanceScheduler:
        if self._scheduler is None:
            self._scheduler = GovernanceScheduler(
                self.cycle,
                self.event_bus,
                interval_hours=self.settings.review_interval_hours,
                initial_delay=self.settings.review_initial_delay,
            )
        return self._scheduler

    async def status(self) -> dict[str, Any]:
        agents = await self.repository.list_agents()
        queue = (await self.workflow.get_queue_stats()).unwrap()
        escalations = (await self.escalation.get_active_escalations()).unwrap()
        health = (await self.monitor.get_health_status()).unwrap()
        return {
            "agents": len(agents),
            "active_amendments": sum(a.active_amendment_count for a in agents),
            "approval_mode": self.workflow.get_mode(),
            "pending_approvals": queue.get("pending", 0),
            "pending_escalations": len(escalations),
            "monitor_health": health.status.value,
            "active_alerts": len(health.metrics.active_alerts),
            "scheduler_running": self._scheduler is not None and self._scheduler.is_running,
            "store": repr(self.store),
        }
