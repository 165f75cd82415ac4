"""Pay structure services."""

from pay_structure_engine.services.attendance_source import SqlAttendanceSource
from pay_structure_engine.services.state_machine import TemplateStateMachine, TemplateStatus
from pay_structure_engine.services.structure_store import SqlPayStructureStore
from pay_structure_engine.services.template_service import (
    ComponentChange,
    TemplateComparison,
    TemplateService,
)

__all__ = [
    "ComponentChange",
    "SqlAttendanceSource",
    "SqlPayStructureStore",
    "TemplateComparison",
    "TemplateService",
    "TemplateStateMachine",
    "TemplateStatus",
]
