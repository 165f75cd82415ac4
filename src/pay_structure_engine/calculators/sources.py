"""Interfaces the calculators depend on.

The SQLAlchemy implementations live in ``pay_structure_engine.services``;
tests use in-memory fakes.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Mapping, Protocol, Sequence
from uuid import UUID

from pay_structure_engine.calculators.patterns import TimeEntryRecord
from pay_structure_engine.calculators.types import (
    ComponentDefinition,
    ComponentOverride,
    EvaluationContext,
    ExternalCalculation,
    InclusionRule,
    ResolutionCacheKey,
    ResolvedTemplate,
    TemplateInfo,
    WorkerAssignment,
)


class PayStructureStore(Protocol):
    async def find_template_by_id(
        self, template_id: UUID, organization_id: UUID | None = None
    ) -> TemplateInfo | None: ...

    async def find_latest_template_by_code(
        self, organization_id: UUID, template_code: str, as_of: date | None = None
    ) -> TemplateInfo | None:
        """Highest-version active template with the code, effective on ``as_of``."""
        ...

    async def get_template_components(self, template_id: UUID) -> Sequence[ComponentDefinition]: ...

    async def find_template_inclusions(self, template_id: UUID) -> Sequence[InclusionRule]: ...

    async def get_current_worker_structure(
        self, worker_id: UUID, organization_id: UUID, as_of: date | None = None
    ) -> WorkerAssignment | None: ...

    async def get_worker_overrides(
        self, structure_id: UUID, organization_id: UUID
    ) -> Sequence[ComponentOverride]: ...

    async def get_resolution_cache(self, key: ResolutionCacheKey) -> ResolvedTemplate | None: ...

    async def save_resolution_cache(
        self, key: ResolutionCacheKey, resolved: ResolvedTemplate
    ) -> None: ...


class AttendanceSource(Protocol):
    async def find_approved_time_entries(
        self, worker_id: UUID, start_date: date, end_date: date
    ) -> Sequence[TimeEntryRecord]:
        """Approved entries with ``start_date <= entry_date <= end_date``."""
        ...


class ExternalCalculator(Protocol):
    """Computes an ``external`` component, e.g. a statutory tax service."""

    async def calculate(
        self,
        component: ComponentDefinition,
        calculation: ExternalCalculation,
        context: EvaluationContext,
    ) -> Decimal: ...


ExternalCalculatorRegistry = Mapping[str, ExternalCalculator]

__all__ = [
    "AttendanceSource",
    "ExternalCalculator",
    "ExternalCalculatorRegistry",
    "PayStructureStore",
]
