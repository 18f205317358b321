"""Core types shared across all amendgov subsystems."""

from __future__ import annotations

import functools
import json
import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Generic, TypeAlias, TypeVar

from pydantic import BaseModel, Field, ValidationError

from amendgov.exceptions import AmendGovError, exception_for_kind

_logger = logging.getLogger(__name__)

# ── ID Types ──────────────────────────────────────────────────────────────────

AgentRole: TypeAlias = str
AmendmentId: TypeAlias = str
TaskId: TypeAlias = str


def new_id() -> str:
    return uuid.uuid4().hex[:12]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Enumerations ──────────────────────────────────────────────────────────────


class PatternType(str, Enum):
    REPEATED_FAILURE = "repeated_failure"
    CATEGORY_WEAKNESS = "category_weakness"
    TIME_REGRESSION = "time_regression"
    QUALITY_DECLINE = "quality_decline"
    TOOL_INEFFICIENCY = "tool_inefficiency"


class AmendmentType(str, Enum):
    APPEND = "append"
    REPLACE = "replace"
    REMOVE = "remove"


class AmendmentFocus(str, Enum):
    BEHAVIORAL = "behavioral"
    EFFICIENCY = "efficiency"
    QUALITY = "quality"
    SKILL_GAP = "skill_gap"
    TOOLING = "tooling"
    KNOWLEDGE = "knowledge"


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    AUTO_APPROVED = "auto_approved"
    REJECTED = "rejected"


class EvaluationStatus(str, Enum):
    PENDING = "pending"
    EVALUATING = "evaluating"
    PROVEN = "proven"
    FAILED = "failed"
    REVERTED = "reverted"


class EscalationReason(str, Enum):
    SKILLS_LAYER_MODIFICATION = "skills_layer_mod"
    PERSONA_LAYER_MODIFICATION = "persona_layer_mod"
    CONSECUTIVE_FAILURES = "consecutive_failures"
    CROSS_AGENT_PATTERN = "cross_agent_pattern"


class EscalationStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    DISMISSED = "dismissed"


class ApprovalMode(str, Enum):
    AUTONOMOUS = "autonomous"
    STRICT = "strict"
    TRUST = "trust"


class ConstraintType(str, Enum):
    MAX_AMENDMENTS_EXCEEDED = "max_amendments_exceeded"
    PROTECTED_PATTERN_VIOLATION = "protected_pattern_violation"
    AUTO_REVERT_TRIGGERED = "auto_revert_triggered"
    EVALUATION_TIMEOUT = "evaluation_timeout"
    CONFLICTING_AMENDMENT = "conflicting_amendment"
    CROSS_AGENT_PATTERN = "cross_agent_pattern"
    CONSECUTIVE_FAILURES = "consecutive_failures"


class Trend(str, Enum):
    IMPROVING = "improving"
    STABLE = "stable"
    DECLINING = "declining"
    INSUFFICIENT_DATA = "insufficient_data"


class AlertType(str, Enum):
    LOW_SUCCESS_RATE = "cos_low_success_rate"
    RAPID_DECLINE = "cos_rapid_decline"
    SUSTAINED_LOW = "cos_sustained_low"


class AlertStatus(str, Enum):
    ACTIVE = "active"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"


class HealthStatus(str, Enum):
    INITIALIZING = "initializing"
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"


# ── Agents and task history ──────────────────────────────────────────────────


class PerformanceSnapshot(BaseModel):
    """Denormalized performance figures over a window of tasks."""

    sample_size: int = 0
    success_rate: float = 0.0
    avg_quality: float | None = None
    avg_duration_seconds: float | None = None
    variance: float | None = None  # mean (actual - estimated) / estimated
    trend: Trend = Trend.INSUFFICIENT_DATA
    captured_at: datetime = Field(default_factory=utcnow)


class Agent(BaseModel):
    """A governed subordinate role and its knowledge layers."""

    role: AgentRole
    base_knowledge: str = ""  # immutable persona layer
    standard_knowledge: str = ""
    standard_guidance: dict[str, Any] = Field(default_factory=dict)
    effective_knowledge: str = ""
    knowledge_version: str = ""
    performance: PerformanceSnapshot = Field(default_factory=PerformanceSnapshot)
    active_amendment_count: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def id(self) -> str:
        return self.role


class TaskHistoryEntry(BaseModel):
    """One completed task, produced by the execution collaborator."""

    id: str = Field(default_factory=new_id)
    task_id: TaskId
    agent_role: AgentRole
    category: str = "uncategorized"
    success: bool
    failure_reason: str | None = None
    duration_seconds: float | None = None
    estimated_seconds: float | None = None
    quality_score: float | None = Field(default=None, ge=0.0, le=1.0)
    tools_used: list[str] = Field(default_factory=list)
    # Delivery phase the task reached, e.g. "pre_delivery"
    phase: str | None = None
    completed_at: datetime = Field(default_factory=utcnow)


# ── Patterns ─────────────────────────────────────────────────────────────────


class Pattern(BaseModel):
    """A confidence-scored behavioral signal derived from task history."""

    type: PatternType
    category: str | None = None
    confidence: float = Field(ge=0.0, le=1.0)
    data: dict[str, Any] = Field(default_factory=dict)
    suggested_action: str = ""
    log_id: str | None = None


class PatternLogEntry(BaseModel):
    id: str = Field(default_factory=new_id)
    agent_role: AgentRole
    pattern_type: PatternType
    category: str | None = None
    confidence: float
    data: dict[str, Any] = Field(default_factory=dict)
    task_window: int | None = None
    amendment_id: AmendmentId | None = None
    dismissed: bool = False
    dismissed_reason: str | None = None
    created_at: datetime = Field(default_factory=utcnow)


# ── Amendments ───────────────────────────────────────────────────────────────


class AmendmentContent(BaseModel):
    """Fields shared by drafts and persisted amendments."""

    amendment_type: AmendmentType
    focus: AmendmentFocus = AmendmentFocus.KNOWLEDGE
    trigger_pattern: str = Field(min_length=1)
    target_area: str = ""
    instruction_delta: str = ""
    knowledge_mutation: dict[str, Any] = Field(default_factory=dict)
    pattern_confidence: float | None = None
    source_pattern: dict[str, Any] | None = None

    @property
    def area(self) -> str:
        return self.target_area or self.trigger_pattern

    def scan_text(self) -> str:
        """Concatenated text inspected by the safety and escalation rules."""
        return " ".join([
            self.trigger_pattern,
            self.instruction_delta,
            json.dumps(self.knowledge_mutation, sort_keys=True, default=str),
        ])


class AmendmentDraft(AmendmentContent):
    """A candidate amendment that has not been persisted."""


class AmendmentChanges(BaseModel):
    """Field overrides for a new amendment version."""

    amendment_type: AmendmentType | None = None
    trigger_pattern: str | None = None
    target_area: str | None = None
    instruction_delta: str | None = None
    knowledge_mutation: dict[str, Any] | None = None
    evaluation_window: int | None = Field(default=None, ge=1)


class Amendment(AmendmentContent):
    """A persisted, versioned modification to an agent's instructions."""

    id: AmendmentId = Field(default_factory=new_id)
    agent_role: AgentRole
    version: int = 1
    parent_id: AmendmentId | None = None
    superseded_by: AmendmentId | None = None
    approval_status: ApprovalStatus = ApprovalStatus.PENDING
    evaluation_status: EvaluationStatus = EvaluationStatus.PENDING
    is_active: bool = False
    is_baked: bool = False
    evaluation_window: int = 5
    tasks_evaluated: int = 0
    success_count: int = 0
    failure_count: int = 0
    performance_before: PerformanceSnapshot | None = None
    performance_after: PerformanceSnapshot | None = None
    approved_by: str | None = None
    approval_notes: str | None = None
    revert_reason: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    activated_at: datetime | None = None
    evaluated_at: datetime | None = None
    reverted_at: datetime | None = None
    baked_at: datetime | None = None


class EvaluationOutcome(BaseModel):
    """What happened on one task run under an amendment."""

    success: bool
    quality_score: float | None = Field(default=None, ge=0.0, le=1.0)
    duration_seconds: float | None = None
    feedback: str = ""


class Evaluation(BaseModel):
    id: str = Field(default_factory=new_id)
    amendment_id: AmendmentId
    agent_role: AgentRole
    task_id: TaskId
    position: int = Field(ge=1)
    success: bool
    quality_score: float | None = None
    duration_seconds: float | None = None
    feedback: str = ""
    evaluated_at: datetime = Field(default_factory=utcnow)


class EvaluationProgress(BaseModel):
    amendment_id: AmendmentId
    completed: int
    total: int
    successes: int
    failures: int
    status: EvaluationStatus
    is_active: bool
    evaluations: list[Evaluation] = Field(default_factory=list)


# ── Escalations and safety ───────────────────────────────────────────────────


class Escalation(BaseModel):
    """A human-review gate raised by a hardcoded exception condition."""

    id: str = Field(default_factory=new_id)
    reason: EscalationReason
    agent_role: AgentRole
    amendment_id: AmendmentId | None = None
    status: EscalationStatus = EscalationStatus.PENDING
    analysis: dict[str, Any] = Field(default_factory=dict)
    resolved_by: str | None = None
    resolution_notes: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    resolved_at: datetime | None = None


class FailureStreak(BaseModel):
    """Consecutive task failures for one agent."""

    agent_role: AgentRole
    failure_count: int = 0
    failure_pattern: str | None = None
    last_failure_at: datetime | None = None
    escalated: bool = False
    escalation_id: str | None = None
    reset_at: datetime | None = None

    @property
    def id(self) -> str:
        return self.agent_role


class SafetyEvent(BaseModel):
    """Immutable audit row written by the safety layer."""

    model_config = {"frozen": True}

    id: str = Field(default_factory=new_id)
    agent_role: AgentRole
    constraint_type: ConstraintType
    constraint_data: dict[str, Any] = Field(default_factory=dict)
    action_taken: str = ""
    amendment_id: AmendmentId | None = None
    created_at: datetime = Field(default_factory=utcnow)


class Violation(BaseModel):
    constraint_type: ConstraintType
    message: str
    action: str = ""
    data: dict[str, Any] = Field(default_factory=dict)


class ValidationReport(BaseModel):
    valid: bool
    violations: list[Violation] = Field(default_factory=list)

    @property
    def messages(self) -> list[str]:
        return [v.message for v in self.violations]

    @property
    def blocking(self) -> list[Violation]:
        return [v for v in self.violations if v.action != "flagged"]

    @property
    def flags(self) -> list[Violation]:
        return [v for v in self.violations if v.action == "flagged"]


class ForcedReversion(BaseModel):
    """Outcome of a background revert. Not a failure."""

    amendment_id: AmendmentId
    agent_role: AgentRole
    rule: ConstraintType
    data: dict[str, Any] = Field(default_factory=dict)
    reverted_at: datetime = Field(default_factory=utcnow)


# ── Supervisor self-monitoring ───────────────────────────────────────────────


class MonitorOutcome(BaseModel):
    """Final verdict on one amendment, as seen by the self-monitor."""

    id: str = Field(default_factory=new_id)
    sequence: int = 0
    amendment_id: AmendmentId
    agent_role: AgentRole
    success: bool
    details: dict[str, Any] = Field(default_factory=dict)
    recorded_at: datetime = Field(default_factory=utcnow)


class CeoAlert(BaseModel):
    """Raised when the supervisor's own amendments stop working."""

    id: str = Field(default_factory=new_id)
    alert_type: AlertType
    severity: str = "high"
    message: str
    metrics: dict[str, Any] = Field(default_factory=dict)
    status: AlertStatus = AlertStatus.ACTIVE
    acknowledged_by: str | None = None
    acknowledged_at: datetime | None = None
    resolved_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)


# ── Operation results ────────────────────────────────────────────────────────

T = TypeVar("T")


class OperationError(BaseModel):
    kind: str
    message: str
    details: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_exception(cls, exc: AmendGovError) -> OperationError:
        return cls(kind=exc.kind, message=str(exc), details=exc.details)


class Result(BaseModel, Generic[T]):
    """The {data, error} pair returned by every public operation."""

    model_config = {"arbitrary_types_allowed": True}

    data: Any = None
    error: OperationError | None = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> Any:
        """Return data, or re-raise the error as its exception type."""
        if self.error is not None:
            raise exception_for_kind(
                self.error.kind, self.error.message, self.error.details,
            )
        return self.data


def operation(fn: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Result]]:
    """Wrap an async method so governance errors come back as Result.error."""

    @functools.wraps(fn)
    async def wrapper(*args: Any, **kwargs: Any) -> Result:
        try:
            value = await fn(*args, **kwargs)
        except AmendGovError as e:
            _logger.warning("%s failed: %s (%s)", fn.__qualname__, e, e.kind)
            return Result(error=OperationError.from_exception(e))
        except ValidationError as e:
            _logger.warning("%s rejected malformed input: %s", fn.__qualname__, e)
            return Result(error=OperationError(
                kind="invalid_input",
                message=f"Malformed input: {e.error_count()} error(s)",
                details={"errors": e.errors(include_url=False)},
            ))
        if isinstance(value, Result):
            return value
        return Result(data=value)

    return wrapper
