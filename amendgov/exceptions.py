"""Custom exception hierarchy for amendgov."""

from __future__ import annotations

from typing import Any


class AmendGovError(Exception):
    """Base for all amendment governance errors."""

    kind = "error"

    def __init__(self, message: str = "", details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details = details or {}


class SafetyValidationError(AmendGovError):
    """One or more safety rules rejected an amendment."""

    kind = "validation"

    def __init__(self, message: str, violations: list[Any] | None = None) -> None:
        self.violations = violations or []
        super().__init__(message, {"violations": [_dump(v) for v in self.violations]})


class AmendmentConflictError(AmendGovError):
    """Duplicate or contradictory trigger among active amendments."""

    kind = "conflict"


class NotFoundError(AmendGovError):
    """No entity with the given ID exists."""

    kind = "not_found"


class StoreUnavailableError(AmendGovError):
    """The backing store is unreachable or timed out."""

    kind = "store_unavailable"


class InvalidTransitionError(AmendGovError):
    """Invalid evaluation or approval status transition."""

    kind = "invalid_transition"


class EvaluationClosedError(InvalidTransitionError):
    """The amendment is not accepting evaluations."""


class UnknownPatternTypeError(AmendGovError):
    """No amendment template exists for the pattern type."""

    kind = "unknown_pattern_type"


class MalformedPatternError(AmendGovError):
    """Pattern evidence is missing fields its template needs."""

    kind = "malformed_pattern"


class UnknownAmendmentTypeError(AmendGovError):
    """Amendment type is not append, replace or remove."""

    kind = "unknown_amendment_type"


class InvalidResolutionError(AmendGovError):
    """Escalation resolution must be approved, rejected or dismissed."""

    kind = "invalid_resolution"


class InvalidModeError(AmendGovError):
    """Unknown approval mode."""

    kind = "invalid_mode"


class InvalidRecommendationError(AmendGovError):
    """A research recommendation failed intake validation."""

    kind = "invalid_recommendation"


def _dump(value: Any) -> Any:
    if hasattr(value, "model_dump"):
        return value.model_dump(mode="json")
    return value


_BY_KIND: dict[str, type[AmendGovError]] = {
    cls.kind: cls
    for cls in (
        AmendmentConflictError, NotFoundError, StoreUnavailableError,
        InvalidTransitionError, UnknownPatternTypeError, MalformedPatternError,
        UnknownAmendmentTypeError, InvalidResolutionError, InvalidModeError,
        InvalidRecommendationError,
    )
}


def exception_for_kind(
    kind: str, message: str, details: dict[str, Any] | None = None,
) -> AmendGovError:
    """Rebuild an exception from a serialized operation error."""
    if kind == SafetyValidationError.kind:
        exc = SafetyValidationError(message)
        exc.details = details or {}
        return exc
    cls = _BY_KIND.get(kind, AmendGovError)
    exc = cls(message, details)
    if cls is AmendGovError:
        exc.kind = kind
    return exc
