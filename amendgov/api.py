"""HTTP surface — FastAPI app over a Governance runtime.

`amendgov serve` launches this at the configured host and port. Read
endpoints expose the approval queue, escalations, safety log, self-monitor
health and agent knowledge; write endpoints carry the human decisions and
manual triggers.
"""

from __future__ import annotations

from typing import Any

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from amendgov import __version__
from amendgov.exceptions import InvalidModeError
from amendgov.runtime import Governance
from amendgov.types import OperationError, Result, TaskHistoryEntry

ERROR_STATUS = {
    "not_found": 404,
    "validation": 422,
    "invalid_input": 422,
    "invalid_recommendation": 422,
    "conflict": 409,
    "invalid_transition": 409,
    "invalid_resolution": 400,
    "invalid_mode": 400,
    "unknown_pattern_type": 400,
    "malformed_pattern": 400,
    "unknown_amendment_type": 400,
    "store_unavailable": 503,
}


class ApprovePayload(BaseModel):
    approver: str = "ceo"
    notes: str | None = None


class RejectPayload(BaseModel):
    approver: str = "ceo"
    reason: str | None = None


class ResolvePayload(BaseModel):
    resolution: str
    resolved_by: str = "ceo"
    notes: str | None = None


class ReviewPayload(BaseModel):
    roles: list[str] | None = None


class ModePayload(BaseModel):
    mode: str


class AcknowledgePayload(BaseModel):
    acknowledged_by: str = "ceo"


def _governance(request: Request) -> Governance:
    return request.app.state.governance


def respond(result: Result) -> Any:
    """Serialize a Result, mapping its error kind to an HTTP status."""
    if result.ok:
        return _dump(result.data)
    error = result.error
    return JSONResponse(
        {"error": error.model_dump(mode="json")},
        status_code=ERROR_STATUS.get(error.kind, 400),
    )


def _dump(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, list):
        return [_dump(v) for v in value]
    if isinstance(value, dict):
        return {k: _dump(v) for k, v in value.items()}
    return value


def create_app(governance: Governance) -> FastAPI:
    app = FastAPI(title="amendgov", version=__version__)
    app.state.governance = governance
    gov = Depends(_governance)

    # ── Queries ──────────────────────────────────────────────────

    @app.get("/api/status")
    async def status(g: Governance = gov) -> dict:
        return await g.status()

    @app.get("/api/approvals/pending")
    async def pending_approvals(g: Governance = gov) -> Any:
        return respond(await g.workflow.get_pending_approvals())

    @app.get("/api/approvals/stats")
    async def queue_stats(g: Governance = gov) -> Any:
        return respond(await g.workflow.get_queue_stats())

    @app.get("/api/amendments/{amendment_id}")
    async def get_amendment(amendment_id: str, g: Governance = gov) -> Any:
        return respond(await g.engine.get_amendment(amendment_id))

    @app.get("/api/amendments/{amendment_id}/progress")
    async def evaluation_progress(amendment_id: str, g: Governance = gov) -> Any:
        return respond(await g.engine.get_evaluation_progress(amendment_id))

    @app.get("/api/escalations")
    async def escalations(history: bool = False, limit: int = 50, g: Governance = gov) -> Any:
        if history:
            return respond(await g.escalation.get_escalation_history(limit))
        return respond(await g.escalation.get_active_escalations())

    @app.get("/api/safety/log")
    async def safety_log(
        agent_role: str = "", constraint_type: str = "", limit: int = 50, g: Governance = gov,
    ) -> Any:
        return respond(await g.safety.get_safety_log(agent_role, constraint_type, limit))

    @app.get("/api/safety/stats")
    async def safety_stats(g: Governance = gov) -> Any:
        return respond(await g.safety.get_safety_stats())

    @app.get("/api/agents/{role}/knowledge")
    async def agent_knowledge(role: str, refresh: bool = False, g: Governance = gov) -> Any:
        return respond(await g.knowledge.get_effective_knowledge(role, force_refresh=refresh))

    @app.get("/api/monitor/health")
    async def monitor_health(g: Governance = gov) -> Any:
        return respond(await g.monitor.get_health_status())

    @app.get("/api/monitor/alerts")
    async def monitor_alerts(history: bool = False, g: Governance = gov) -> Any:
        if history:
            return respond(await g.monitor.list_alerts())
        return respond(await g.monitor.get_active_alerts())

    @app.get("/api/events")
    async def events(topic: str = "*", limit: int = 50, g: Governance = gov) -> list[dict]:
        return [e.model_dump(mode="json") for e in g.event_bus.history(topic_filter=topic, limit=limit)]

    # ── Decisions ────────────────────────────────────────────────

    @app.post("/api/amendments/{amendment_id}/approve")
    async def approve(amendment_id: str, payload: ApprovePayload, g: Governance = gov) -> Any:
        return respond(await g.workflow.approve(amendment_id, payload.approver, payload.notes))

    @app.post("/api/amendments/{amendment_id}/reject")
    async def reject(amendment_id: str, payload: RejectPayload, g: Governance = gov) -> Any:
        return respond(await g.workflow.reject(amendment_id, payload.approver, payload.reason))

    @app.post("/api/escalations/{escalation_id}/resolve")
    async def resolve(escalation_id: str, payload: ResolvePayload, g: Governance = gov) -> Any:
        return respond(await g.workflow.resolve_escalation(
            escalation_id, payload.resolution, payload.resolved_by, payload.notes,
        ))

    @app.post("/api/monitor/alerts/{alert_id}/acknowledge")
    async def acknowledge_alert(
        alert_id: str, payload: AcknowledgePayload, g: Governance = gov,
    ) -> Any:
        return respond(await g.monitor.acknowledge_alert(alert_id, payload.acknowledged_by))

    @app.post("/api/monitor/alerts/{alert_id}/resolve")
    async def resolve_alert(alert_id: str, g: Governance = gov) -> Any:
        return respond(await g.monitor.resolve_alert(alert_id))

    @app.post("/api/mode")
    async def set_mode(payload: ModePayload, g: Governance = gov) -> Any:
        return respond(await _set_mode(g, payload.mode))

    # ── Inputs and triggers ──────────────────────────────────────

    @app.post("/api/tasks")
    async def record_task(entry: TaskHistoryEntry, g: Governance = gov) -> Any:
        return respond(await g.cycle.record_task_outcome(entry))

    @app.post("/api/agents/{role}/recommendations")
    async def recommend(role: str, recommendation: dict[str, Any], g: Governance = gov) -> Any:
        return respond(await g.cycle.submit_recommendation(role, recommendation))

    @app.post("/api/review")
    async def review(payload: ReviewPayload | None = None, g: Governance = gov) -> Any:
        roles = payload.roles if payload else None
        return respond(await g.cycle.run(roles))

    @app.post("/api/safety/sweep")
    async def sweep(g: Governance = gov) -> Any:
        return respond(await g.safety.run_safety_checks())

    return app


async def _set_mode(g: Governance, mode: str) -> Result:
    try:
        g.workflow.set_mode(mode)
    except InvalidModeError as e:
        return Result(error=OperationError.from_exception(e))
    return Result(data=g.workflow.get_mode())
