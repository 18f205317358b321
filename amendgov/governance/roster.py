"""Default knowledge for the known agent roles, applied at bootstrap."""

from __future__ import annotations

import copy
from typing import Any

from amendgov.types import Agent

ROLE_PERSONAS: dict[str, dict[str, str]] = {
    "ceo": {"focus": "strategic_direction", "authority": "executive", "style": "decisive"},
    "cfo": {"focus": "financial_oversight", "authority": "financial", "style": "analytical"},
    "cto": {"focus": "technology_strategy", "authority": "technical", "style": "innovative"},
    "coo": {"focus": "operations", "authority": "operational", "style": "efficient"},
    "cmo": {"focus": "marketing", "authority": "brand", "style": "creative"},
    "chro": {"focus": "people", "authority": "hr", "style": "empathetic"},
    "clo": {"focus": "legal", "authority": "compliance", "style": "precise"},
    "ciso": {"focus": "security", "authority": "security", "style": "vigilant"},
    "cos": {"focus": "coordination", "authority": "cross_functional", "style": "adaptive"},
    "cco": {"focus": "customer", "authority": "customer_success", "style": "supportive"},
    "cpo": {"focus": "product", "authority": "product", "style": "user_focused"},
    "cro": {"focus": "revenue", "authority": "revenue", "style": "growth_oriented"},
    "devops": {"focus": "infrastructure", "authority": "platform", "style": "reliable"},
    "data": {"focus": "analytics", "authority": "data", "style": "evidence_based"},
    "qa": {"focus": "quality", "authority": "quality", "style": "thorough"},
}

DEFAULT_PERSONA = {"focus": "general", "authority": "standard", "style": "professional"}

ROLE_STANDARDS: dict[str, dict[str, Any]] = {
    "cfo": {
        "standards": {
            "accuracy_required": 0.99,
            "review_threshold_cad": 100,
            "escalation_required": ["new_vendor", "annual_commit", "budget_override"],
        },
        "procedures": {
            "expense_approval": "tier_based",
            "budget_tracking": "monthly",
            "reporting": "quarterly",
        },
    },
    "cto": {
        "standards": {
            "code_review_required": True,
            "security_scan_required": True,
            "documentation_required": True,
        },
        "procedures": {
            "architecture_review": "for_new_systems",
            "tech_debt_tracking": "continuous",
        },
    },
    "devops": {
        "standards": {
            "uptime_target": 0.999,
            "deployment_strategy": "rolling",
            "monitoring_required": True,
        },
        "procedures": {
            "incident_response": "immediate",
            "backup_frequency": "daily",
        },
    },
}


def render_persona(role: str) -> str:
    persona = ROLE_PERSONAS.get(role, DEFAULT_PERSONA)
    return (
        f"Role: {role}\n"
        f"Focus: {persona['focus']}\n"
        f"Authority: {persona['authority']}\n"
        f"Style: {persona['style']}"
    )


def render_guidance(guidance: dict[str, Any], indent: int = 0) -> str:
    """Render a nested guidance mapping as indented "key: value" lines."""
    lines = []
    pad = "  " * indent
    for key, value in guidance.items():
        if isinstance(value, dict):
            lines.append(f"{pad}{key}:")
            lines.append(render_guidance(value, indent + 1))
        elif isinstance(value, list) and value and isinstance(value[0], dict):
            lines.append(f"{pad}{key}:")
            for item in value:
                lines.append(render_guidance(item, indent + 1))
        elif isinstance(value, list):
            lines.append(f"{pad}{key}: {', '.join(str(v) for v in value)}")
        else:
            lines.append(f"{pad}{key}: {value}")
    return "\n".join(line for line in lines if line)


def default_agent(role: str) -> Agent:
    standard = copy.deepcopy(ROLE_STANDARDS.get(role, {"standards": {}, "procedures": {}}))
    return Agent(
        role=role,
        base_knowledge=render_persona(role),
        standard_guidance=standard,
        standard_knowledge=render_guidance(standard),
    )
