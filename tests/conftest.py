"""Shared test fixtures — in-memory governance runtime and task seeding."""

from __future__ import annotations

from datetime import timedelta

import pytest
import pytest_asyncio

from amendgov.config import GovSettings
from amendgov.runtime import Governance
from amendgov.store.memory import InMemoryStore
from amendgov.store.repository import GovernanceRepository
from amendgov.types import AmendmentDraft, AmendmentType, TaskHistoryEntry, utcnow

ROLES = ["cfo", "cto", "devops", "qa", "cmo"]


@pytest.fixture
def settings():
    return GovSettings(roles=ROLES, approval_mode="autonomous")


@pytest_asyncio.fixture
async def gov(settings):
    governance = Governance(InMemoryStore(), settings)
    await governance.initialize()
    yield governance
    await governance.close()


@pytest.fixture
def repo():
    return GovernanceRepository(InMemoryStore())


@pytest.fixture
def seed_tasks(gov):
    """Insert task history for an agent. Specs are (category, success, reason)."""

    async def _seed(role, specs, **fields):
        now = utcnow()
        entries = []
        for i, (category, success, reason) in enumerate(specs):
            entry = TaskHistoryEntry(
                task_id=f"{role}-t{i}",
                agent_role=role,
                category=category,
                success=success,
                failure_reason=reason,
                completed_at=now - timedelta(minutes=i + 1),
                **fields,
            )
            await gov.repository.add_task(entry)
            entries.append(entry)
        return entries

    return _seed


@pytest.fixture
def cfo_history():
    """8 recent tasks, 4 failed expense reports (2 for missing receipts)."""
    return [
        ("expense_report", False, "missing receipts"),
        ("forecast", True, None),
        ("expense_report", False, "missing receipts"),
        ("forecast", True, None),
        ("expense_report", False, "wrong cost center"),
        ("budget_review", True, None),
        ("expense_report", False, "late submission"),
        ("budget_review", True, None),
    ]


def make_draft(trigger="task_category:expense_report", delta="Verify each line item.", **kw):
    return AmendmentDraft(
        amendment_type=kw.pop("amendment_type", AmendmentType.APPEND),
        trigger_pattern=trigger,
        target_area=kw.pop("target_area", trigger),
        instruction_delta=delta,
        **kw,
    )


@pytest.fixture
def draft():
    return make_draft


@pytest.fixture
def task_entry():
    def _entry(role, task_id, success=True, category="expense_report", **kw):
        return TaskHistoryEntry(
            task_id=task_id, agent_role=role, category=category, success=success, **kw,
        )

    return _entry
