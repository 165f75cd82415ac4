"""Pytest fixtures for pay structure engine tests."""

from __future__ import annotations

from collections import defaultdict
from datetime import date
from decimal import Decimal
from typing import AsyncGenerator
from uuid import UUID, uuid4

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from pay_structure_engine.calculators.patterns import TimeEntryRecord
from pay_structure_engine.calculators.types import (
    ComponentCategory,
    ComponentDefinition,
    ComponentOverride,
    FixedCalculation,
    InclusionRule,
    MergeMode,
    ResolutionCacheKey,
    ResolvedTemplate,
    TemplateInfo,
    TemplateVersion,
    WorkerAssignment,
)
from pay_structure_engine.database import create_schema, create_session_factory


# ============================================================================
# In-memory collaborators
# ============================================================================


class FakeStore:
    """In-memory PayStructureStore."""

    def __init__(self) -> None:
        self.templates: dict[UUID, TemplateInfo] = {}
        self.components: dict[UUID, list[ComponentDefinition]] = defaultdict(list)
        self.inclusions: dict[UUID, list[InclusionRule]] = defaultdict(list)
        self.assignments: list[WorkerAssignment] = []
        self.overrides: dict[UUID, list[ComponentOverride]] = defaultdict(list)
        self.cache: dict[str, ResolvedTemplate] = {}
        self.cache_saves = 0

    # --- builders used by tests ---

    def add_template(
        self,
        code: str,
        organization_id: UUID,
        version: TemplateVersion | None = None,
        status: str = "active",
        components: list[ComponentDefinition] | None = None,
    ) -> TemplateInfo:
        template = TemplateInfo(
            template_id=uuid4(),
            organization_id=organization_id,
            template_code=code,
            template_name=code.title(),
            version=version or TemplateVersion(1, 0, 0),
            status=status,
        )
        self.templates[template.template_id] = template
        self.components[template.template_id] = list(components or [])
        return template

    def include(
        self,
        parent: TemplateInfo,
        included_code: str,
        priority: int,
        merge_mode: MergeMode = MergeMode.MERGE,
        **kwargs,
    ) -> InclusionRule:
        rule = InclusionRule(
            inclusion_id=uuid4(),
            parent_template_id=parent.template_id,
            included_template_code=included_code,
            priority=priority,
            merge_mode=merge_mode,
            **kwargs,
        )
        self.inclusions[parent.template_id].append(rule)
        return rule

    def assign(
        self,
        worker_id: UUID,
        template: TemplateInfo,
        base_salary: Decimal | None = None,
        hourly_rate: Decimal | None = None,
        effective_from: date = date(2024, 1, 1),
    ) -> WorkerAssignment:
        assignment = WorkerAssignment(
            structure_id=uuid4(),
            worker_id=worker_id,
            organization_id=template.organization_id,
            template_id=template.template_id,
            template_version=str(template.version),
            base_salary=base_salary,
            hourly_rate=hourly_rate,
            effective_from=effective_from,
        )
        self.assignments.append(assignment)
        return assignment

    # --- PayStructureStore ---

    async def find_template_by_id(self, template_id, organization_id=None):
        template = self.templates.get(template_id)
        if template is None:
            return None
        if organization_id is not None and template.organization_id != organization_id:
            return None
        return template

    async def find_latest_template_by_code(self, organization_id, template_code, as_of=None):
        candidates = [
            t
            for t in self.templates.values()
            if t.organization_id == organization_id
            and t.template_code == template_code
            and t.status == "active"
        ]
        return max(candidates, key=lambda t: t.version, default=None)

    async def get_template_components(self, template_id):
        return list(self.components[template_id])

    async def find_template_inclusions(self, template_id):
        return list(self.inclusions[template_id])

    async def get_current_worker_structure(self, worker_id, organization_id, as_of=None):
        for assignment in self.assignments:
            if assignment.worker_id != worker_id or assignment.organization_id != organization_id:
                continue
            if as_of is not None and assignment.effective_from and assignment.effective_from > as_of:
                continue
            if as_of is not None and assignment.effective_to and assignment.effective_to < as_of:
                continue
            return assignment
        return None

    async def get_worker_overrides(self, structure_id, organization_id):
        return list(self.overrides[structure_id])

    async def get_resolution_cache(self, key: ResolutionCacheKey):
        return self.cache.get(key.cache_key)

    async def save_resolution_cache(self, key: ResolutionCacheKey, resolved: ResolvedTemplate):
        self.cache_saves += 1
        self.cache[key.cache_key] = resolved


class FakeAttendance:
    """In-memory AttendanceSource holding approved entries per worker."""

    def __init__(self) -> None:
        self.entries: dict[UUID, list[TimeEntryRecord]] = defaultdict(list)
        self.calls = 0
        self.failing: set[UUID] = set()

    def add(self, worker_id: UUID, entry_date: date, hours: str = "8", **kwargs) -> None:
        self.entries[worker_id].append(
            TimeEntryRecord(entry_date=entry_date, hours_worked=Decimal(hours), **kwargs)
        )

    async def find_approved_time_entries(self, worker_id, start_date, end_date):
        self.calls += 1
        if worker_id in self.failing:
            raise ConnectionError("attendance service unreachable")
        return [e for e in self.entries[worker_id] if start_date <= e.entry_date <= end_date]


def fixed(
    code: str,
    amount: str,
    category: ComponentCategory = ComponentCategory.EARNING,
    sequence_order: int = 0,
    **kwargs,
) -> ComponentDefinition:
    """Fixed-amount component shorthand."""
    return ComponentDefinition(
        code=code,
        name=code.replace("_", " ").title(),
        category=category,
        calculation=FixedCalculation(amount=Decimal(amount)),
        sequence_order=sequence_order,
        **kwargs,
    )


@pytest.fixture
def organization_id() -> UUID:
    return uuid4()


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def attendance() -> FakeAttendance:
    return FakeAttendance()


# ============================================================================
# Database fixtures
# ============================================================================


@pytest.fixture
async def engine(tmp_path):
    """Create a fresh SQLite database per test."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'pay_structures.db'}",
        echo=False,
        poolclass=NullPool,
    )
    await create_schema(engine)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest.fixture
async def session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for each test."""
    async with session_factory() as session:
        yield session
        await session.rollback()
