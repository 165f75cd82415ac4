"""Template lifecycle state machine with transition validation."""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING

from pay_structure_engine.exceptions import InvalidTransitionError

if TYPE_CHECKING:
    from pay_structure_engine.models import PayStructureTemplate


class TemplateStatus(str, Enum):
    """Template status values."""

    DRAFT = "draft"
    ACTIVE = "active"
    DEPRECATED = "deprecated"
    ARCHIVED = "archived"


class TemplateStateMachine:
    """State machine for template status transitions.

    Allowed transitions (forward only):
    - draft → active (publish)
    - active → deprecated
    - active → archived
    - deprecated → archived
    """

    # Define valid transitions: {from_status: [allowed_to_statuses]}
    VALID_TRANSITIONS: dict[str, list[str]] = {
        TemplateStatus.DRAFT: [TemplateStatus.ACTIVE],
        TemplateStatus.ACTIVE: [TemplateStatus.DEPRECATED, TemplateStatus.ARCHIVED],
        TemplateStatus.DEPRECATED: [TemplateStatus.ARCHIVED],
        TemplateStatus.ARCHIVED: [],  # Terminal state
    }

    # Statuses where components and inclusions can be modified
    STRUCTURE_MUTABLE = {TemplateStatus.DRAFT}

    # Statuses that may be assigned to workers or included by other templates
    ASSIGNABLE = {TemplateStatus.ACTIVE}

    @classmethod
    def can_transition(cls, from_status: str, to_status: str) -> bool:
        """Check if a transition is valid."""
        allowed = cls.VALID_TRANSITIONS.get(from_status, [])
        return to_status in allowed

    @classmethod
    def validate_transition(cls, from_status: str, to_status: str) -> None:
        """Validate a transition, raising InvalidTransitionError if invalid."""
        if not cls.can_transition(from_status, to_status):
            raise InvalidTransitionError(from_status, to_status)

    @classmethod
    def can_modify_structure(cls, status: str) -> bool:
        """Check if components and inclusions can be changed."""
        return status in cls.STRUCTURE_MUTABLE

    @classmethod
    def is_assignable(cls, status: str) -> bool:
        return status in cls.ASSIGNABLE

    @classmethod
    def get_next_statuses(cls, current_status: str) -> list[str]:
        """Get list of valid next statuses from current status."""
        return cls.VALID_TRANSITIONS.get(current_status, [])

    @classmethod
    def validate_template_for_transition(
        cls, template: PayStructureTemplate, to_status: str, component_count: int
    ) -> list[str]:
        """Validate a template for a specific transition, returning any errors.

        Returns list of error messages (empty if valid).
        """
        errors: list[str] = []
        from_status = template.status

        if not cls.can_transition(from_status, to_status):
            errors.append(f"Cannot transition from '{from_status}' to '{to_status}'")
            return errors

        if to_status == TemplateStatus.ACTIVE and component_count == 0:
            errors.append("Template must have at least one component to publish")

        return errors
