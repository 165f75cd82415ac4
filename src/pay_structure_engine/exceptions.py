"""Typed exceptions for pay structure resolution and calculation.

Hierarchy:

    PayStructureError
    +-- ValidationError
    |   +-- UnboundVariableError
    |   +-- InvalidExpressionError
    |   +-- InvalidTransitionError
    +-- NotFoundError
    +-- CircularInclusionError
    +-- ResolutionDepthExceededError
    +-- UnsupportedMergeModeError
    +-- EvaluationError
    +-- ComponentCalculationError
    +-- AttendanceUnavailableError

Every exception carries a ``code`` attribute that is safe to return from the API.
"""

from __future__ import annotations

from datetime import date
from uuid import UUID


class PayStructureError(Exception):
    """Base class for all engine errors."""

    code: str = "PAY_STRUCTURE_ERROR"


class ValidationError(PayStructureError):
    """Malformed input that the caller can correct."""

    code = "VALIDATION_ERROR"


class UnboundVariableError(ValidationError):
    """A formula placeholder has no numeric value."""

    code = "UNBOUND_VARIABLE"

    def __init__(self, variable: str, reason: str = "is not defined"):
        self.variable = variable
        super().__init__(f"Variable '{variable}' {reason}")


class InvalidExpressionError(ValidationError):
    """A formula is outside the arithmetic grammar."""

    code = "INVALID_EXPRESSION"

    def __init__(self, expression: str, reason: str):
        self.expression = expression
        self.reason = reason
        super().__init__(f"Invalid expression '{expression}': {reason}")


class InvalidTransitionError(ValidationError):
    """Raised when an invalid template status transition is attempted."""

    code = "INVALID_TRANSITION"

    def __init__(self, from_status: str, to_status: str, reason: str | None = None):
        self.from_status = from_status
        self.to_status = to_status
        self.reason = reason
        msg = f"Invalid transition from '{from_status}' to '{to_status}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class NotFoundError(PayStructureError):
    """A template, component or assignment does not exist."""

    code = "NOT_FOUND"


class CircularInclusionError(PayStructureError):
    """The template inclusion graph contains a cycle."""

    code = "CIRCULAR_INCLUSION"

    def __init__(self, cycle: list[UUID]):
        self.cycle = cycle
        path = " -> ".join(str(template_id) for template_id in cycle)
        super().__init__(f"Circular template inclusion detected: {path}")


class ResolutionDepthExceededError(PayStructureError):
    """Template inclusion nesting is deeper than the configured bound."""

    code = "RESOLUTION_DEPTH_EXCEEDED"

    def __init__(self, template_id: UUID, max_depth: int):
        self.template_id = template_id
        self.max_depth = max_depth
        super().__init__(
            f"Template {template_id} exceeds maximum inclusion depth of {max_depth}"
        )


class UnsupportedMergeModeError(PayStructureError):
    """A merge mode cannot combine the given components."""

    code = "UNSUPPORTED_MERGE_MODE"

    def __init__(self, merge_mode: str, component_code: str, calculation_type: str):
        self.merge_mode = merge_mode
        self.component_code = component_code
        self.calculation_type = calculation_type
        super().__init__(
            f"Merge mode '{merge_mode}' is not supported for component "
            f"{component_code} with calculation type '{calculation_type}'"
        )


class EvaluationError(PayStructureError):
    """Arithmetic failed (division by zero, overflow, non-finite result)."""

    code = "EVALUATION_ERROR"

    def __init__(self, expression: str, reason: str):
        self.expression = expression
        self.reason = reason
        super().__init__(f"Formula evaluation error in '{expression}': {reason}")


class ComponentCalculationError(PayStructureError):
    """A single component failed; the whole calculation is aborted."""

    code = "COMPONENT_CALCULATION_ERROR"

    def __init__(self, component_code: str, reason: str):
        self.component_code = component_code
        self.reason = reason
        super().__init__(f"Failed to calculate component {component_code}: {reason}")


class AttendanceUnavailableError(PayStructureError):
    """Attendance history could not be fetched for a worker."""

    code = "ATTENDANCE_UNAVAILABLE"

    def __init__(self, worker_id: UUID, start_date: date, end_date: date, reason: str):
        self.worker_id = worker_id
        self.start_date = start_date
        self.end_date = end_date
        self.reason = reason
        super().__init__(
            f"Attendance for worker {worker_id} between {start_date} and "
            f"{end_date} is unavailable: {reason}"
        )
