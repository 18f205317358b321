"""Recommendation intake — the contract for externally generated advice.

A research collaborator proposes recommendations shaped as::

    {"type", "content", "targetingPattern", "expectedImpact",
     "reasoning", "sources"}

They are validated here and, when accepted, converted into amendment
drafts that go through the same safety and approval path as
pattern-generated amendments.
"""

from __future__ import annotations

import re
from typing import Any

from pydantic import BaseModel, Field

from amendgov.types import Amendment, AmendmentDraft, AmendmentFocus, AmendmentType

MAX_CONTENT_WORDS = 200
REQUIRED_FIELDS = ("type", "content", "targetingPattern", "expectedImpact", "reasoning", "sources")
VALID_TYPES = ("knowledge_addition", "knowledge_modification", "skill_suggestion")
VALID_IMPACTS = ("high", "medium", "low")
MIN_TARGETING_PATTERN = 3

_TYPE_MAPPING: dict[str, tuple[AmendmentType, AmendmentFocus]] = {
    "knowledge_addition": (AmendmentType.APPEND, AmendmentFocus.KNOWLEDGE),
    "knowledge_modification": (AmendmentType.REPLACE, AmendmentFocus.KNOWLEDGE),
    "skill_suggestion": (AmendmentType.APPEND, AmendmentFocus.SKILL_GAP),
}


class RecommendationCheck(BaseModel):
    valid: bool
    errors: list[str] = Field(default_factory=list)


def validate_recommendation(
    rec: dict[str, Any], active_amendments: list[Amendment] | None = None,
) -> RecommendationCheck:
    errors = [f"Missing required field: {f}" for f in REQUIRED_FIELDS if not rec.get(f)]

    rec_type = rec.get("type")
    if rec_type and rec_type not in VALID_TYPES:
        errors.append(f"Invalid type: {rec_type}. Must be one of: {', '.join(VALID_TYPES)}")

    impact = rec.get("expectedImpact")
    if impact and impact not in VALID_IMPACTS:
        errors.append(
            f"Invalid expectedImpact: {impact}. Must be one of: {', '.join(VALID_IMPACTS)}"
        )

    content = rec.get("content")
    if isinstance(content, str):
        words = len(content.split())
        if words > MAX_CONTENT_WORDS:
            errors.append(f"Content exceeds {MAX_CONTENT_WORDS} words (has {words})")

    sources = rec.get("sources")
    if "sources" in rec and (not isinstance(sources, list) or not sources):
        if "Missing required field: sources" not in errors:
            errors.append("At least one source is required")

    pattern = rec.get("targetingPattern")
    if isinstance(pattern, str) and pattern:
        if len(pattern.strip()) < MIN_TARGETING_PATTERN:
            errors.append("targetingPattern must be a meaningful pattern description")
        lowered = pattern.lower()
        for amendment in active_amendments or []:
            trigger = amendment.trigger_pattern.lower()
            if trigger in lowered or lowered in trigger:
                errors.append(
                    f"Duplicates active amendment {amendment.id} "
                    f"({amendment.trigger_pattern})"
                )

    return RecommendationCheck(valid=not errors, errors=errors)


def _trigger_for(pattern: str) -> str:
    pattern = pattern.strip()
    if ":" in pattern and " " not in pattern:
        return pattern
    slug = re.sub(r"[^a-z0-9]+", "_", pattern.lower()).strip("_")
    return f"recommendation:{slug}"


def recommendation_to_draft(rec: dict[str, Any]) -> AmendmentDraft:
    """Convert a validated recommendation into an amendment draft."""
    amendment_type, focus = _TYPE_MAPPING[rec["type"]]
    trigger = _trigger_for(rec["targetingPattern"])
    mutation: dict[str, Any] = {
        "recommendations": {
            trigger: {
                "expected_impact": rec["expectedImpact"],
                "sources": list(rec["sources"]),
            },
        },
    }
    if rec["type"] == "skill_suggestion":
        mutation["skills_layer"] = {"suggestion": rec["content"]}
    return AmendmentDraft(
        amendment_type=amendment_type,
        focus=focus,
        trigger_pattern=trigger,
        target_area=trigger,
        instruction_delta=rec["content"],
        knowledge_mutation=mutation,
        source_pattern={"recommendation": rec},
    )
