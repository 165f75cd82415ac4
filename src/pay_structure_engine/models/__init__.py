"""SQLAlchemy ORM models."""

from pay_structure_engine.models.attendance import TimeEntry
from pay_structure_engine.models.base import Base, TimestampMixin
from pay_structure_engine.models.template import (
    PayStructureComponent,
    PayStructureInclusion,
    PayStructureTemplate,
    TemplateResolutionCache,
)
from pay_structure_engine.models.worker import WorkerComponentOverride, WorkerPayStructure

__all__ = [
    "Base",
    "PayStructureComponent",
    "PayStructureInclusion",
    "PayStructureTemplate",
    "TemplateResolutionCache",
    "TimeEntry",
    "TimestampMixin",
    "WorkerComponentOverride",
    "WorkerPayStructure",
]
