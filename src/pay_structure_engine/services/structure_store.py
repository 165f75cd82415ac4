"""SQLAlchemy implementation of the pay structure store."""

from __future__ import annotations

import logging
from datetime import date
from uuid import UUID

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pay_structure_engine.calculators.patterns import PatternDescriptor, parse_pattern
from pay_structure_engine.calculators.types import (
    ComponentCategory,
    ComponentDefinition,
    ComponentFilter,
    ComponentOverride,
    InclusionRule,
    MergeMode,
    OverrideType,
    ResolutionCacheKey,
    ResolvedTemplate,
    TemplateInfo,
    TemplateVersion,
    ValueLimits,
    WorkerAssignment,
    calculation_from_dict,
)
from pay_structure_engine.config import get_settings
from pay_structure_engine.models import (
    PayStructureComponent,
    PayStructureInclusion,
    PayStructureTemplate,
    TemplateResolutionCache,
    WorkerComponentOverride,
    WorkerPayStructure,
)
from pay_structure_engine.services.state_machine import TemplateStatus

logger = logging.getLogger(__name__)


# === Row to domain conversion ===


def parse_condition(payload: dict | None) -> PatternDescriptor | None:
    """Stored condition JSON, with the configured default lookback."""
    if not payload:
        return None
    return parse_pattern(payload, get_settings().pattern_default_lookback_days)


def to_template_info(row: PayStructureTemplate) -> TemplateInfo:
    return TemplateInfo(
        template_id=row.template_id,
        organization_id=row.organization_id,
        template_code=row.template_code,
        template_name=row.template_name,
        version=TemplateVersion(row.version_major, row.version_minor, row.version_patch),
        status=row.status,
        currency=row.currency,
        pay_frequency=row.pay_frequency,
        is_organization_default=row.is_organization_default,
        effective_from=row.effective_from,
        effective_to=row.effective_to,
    )


def to_component_definition(row: PayStructureComponent) -> ComponentDefinition:
    return ComponentDefinition(
        code=row.component_code,
        name=row.component_name,
        category=ComponentCategory(row.component_category),
        calculation=calculation_from_dict(row.calculation_type, row.calculation_config or {}),
        sequence_order=row.sequence_order,
        affects_gross_pay=row.affects_gross_pay,
        affects_net_pay=row.affects_net_pay,
        is_taxable=row.is_taxable,
        is_mandatory=row.is_mandatory,
        limits=ValueLimits(
            min_amount=row.min_amount,
            max_amount=row.max_amount,
            max_per_period=row.max_per_period,
            max_annual=row.max_annual,
        ),
        condition=parse_condition(row.condition),
        source_template_id=row.template_id,
    )


def to_inclusion_rule(row: PayStructureInclusion) -> InclusionRule:
    return InclusionRule(
        inclusion_id=row.inclusion_id,
        parent_template_id=row.parent_template_id,
        included_template_code=row.included_template_code,
        priority=row.inclusion_priority,
        merge_mode=MergeMode(row.merge_mode),
        version_constraint=row.version_constraint,
        pinned_template_id=row.pinned_template_id,
        component_filter=ComponentFilter.from_dict(row.component_filter),
        effective_from=row.effective_from,
        effective_to=row.effective_to,
        is_active=row.is_active,
    )


def to_worker_assignment(row: WorkerPayStructure) -> WorkerAssignment:
    return WorkerAssignment(
        structure_id=row.worker_structure_id,
        worker_id=row.worker_id,
        organization_id=row.organization_id,
        template_id=row.template_id,
        template_version=row.template_version,
        base_salary=row.base_salary,
        hourly_rate=row.hourly_rate,
        pay_frequency=row.pay_frequency,
        currency=row.currency,
        effective_from=row.effective_from,
        effective_to=row.effective_to,
    )


def to_component_override(row: WorkerComponentOverride) -> ComponentOverride:
    return ComponentOverride(
        component_code=row.component_code,
        override_type=OverrideType(row.override_type),
        reason=row.override_reason,
        amount=row.override_amount,
        percentage=row.override_percentage,
        formula=row.override_formula,
        rate=row.override_rate,
        condition=parse_condition(row.override_condition),
        min_amount=row.min_amount,
        max_amount=row.max_amount,
        is_disabled=row.is_disabled,
        effective_from=row.effective_from,
        effective_to=row.effective_to,
        override_id=row.override_id,
    )


class SqlPayStructureStore:
    """Reads templates, assignments and overrides; owns the resolution cache.

    Each call opens its own session so concurrent worker calculations never
    share one.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def find_template_by_id(
        self, template_id: UUID, organization_id: UUID | None = None
    ) -> TemplateInfo | None:
        query = select(PayStructureTemplate).where(
            PayStructureTemplate.template_id == template_id
        )
        if organization_id is not None:
            query = query.where(PayStructureTemplate.organization_id == organization_id)
        async with self.session_factory() as session:
            row = (await session.execute(query)).scalar_one_or_none()
            return to_template_info(row) if row else None

    async def find_latest_template_by_code(
        self, organization_id: UUID, template_code: str, as_of: date | None = None
    ) -> TemplateInfo | None:
        query = select(PayStructureTemplate).where(
            PayStructureTemplate.organization_id == organization_id,
            PayStructureTemplate.template_code == template_code,
            PayStructureTemplate.status == TemplateStatus.ACTIVE.value,
        )
        if as_of is not None:
            query = query.where(
                or_(
                    PayStructureTemplate.effective_from.is_(None),
                    PayStructureTemplate.effective_from <= as_of,
                ),
                or_(
                    PayStructureTemplate.effective_to.is_(None),
                    PayStructureTemplate.effective_to >= as_of,
                ),
            )
        query = query.order_by(
            PayStructureTemplate.version_major.desc(),
            PayStructureTemplate.version_minor.desc(),
            PayStructureTemplate.version_patch.desc(),
        ).limit(1)
        async with self.session_factory() as session:
            row = (await session.execute(query)).scalar_one_or_none()
            return to_template_info(row) if row else None

    async def get_template_components(self, template_id: UUID) -> list[ComponentDefinition]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(PayStructureComponent)
                .where(PayStructureComponent.template_id == template_id)
                .order_by(PayStructureComponent.sequence_order, PayStructureComponent.component_code)
            )
            return [to_component_definition(row) for row in result.scalars().all()]

    async def find_template_inclusions(self, template_id: UUID) -> list[InclusionRule]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(PayStructureInclusion)
                .where(PayStructureInclusion.parent_template_id == template_id)
                .order_by(PayStructureInclusion.inclusion_priority)
            )
            return [to_inclusion_rule(row) for row in result.scalars().all()]

    async def get_current_worker_structure(
        self, worker_id: UUID, organization_id: UUID, as_of: date | None = None
    ) -> WorkerAssignment | None:
        query = select(WorkerPayStructure).where(
            WorkerPayStructure.worker_id == worker_id,
            WorkerPayStructure.organization_id == organization_id,
        )
        if as_of is None:
            query = query.where(WorkerPayStructure.is_current.is_(True))
        else:
            query = query.where(
                WorkerPayStructure.effective_from <= as_of,
                or_(
                    WorkerPayStructure.effective_to.is_(None),
                    WorkerPayStructure.effective_to >= as_of,
                ),
            )
        query = query.order_by(WorkerPayStructure.effective_from.desc()).limit(1)
        async with self.session_factory() as session:
            row = (await session.execute(query)).scalar_one_or_none()
            return to_worker_assignment(row) if row else None

    async def get_worker_overrides(
        self, structure_id: UUID, organization_id: UUID
    ) -> list[ComponentOverride]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(WorkerComponentOverride).where(
                    WorkerComponentOverride.worker_structure_id == structure_id,
                    WorkerComponentOverride.organization_id == organization_id,
                )
            )
            return [to_component_override(row) for row in result.scalars().all()]

    async def get_resolution_cache(self, key: ResolutionCacheKey) -> ResolvedTemplate | None:
        async with self.session_factory() as session:
            row = (
                await session.execute(
                    select(TemplateResolutionCache).where(
                        TemplateResolutionCache.cache_key == key.cache_key
                    )
                )
            ).scalar_one_or_none()
            if row is None:
                return None
            return ResolvedTemplate.from_cache_dict(key.template_id, key.version, row.resolved_components)

    async def save_resolution_cache(
        self, key: ResolutionCacheKey, resolved: ResolvedTemplate
    ) -> None:
        """Upsert the cache row; concurrent writers store identical values."""
        async with self.session_factory() as session:
            row = (
                await session.execute(
                    select(TemplateResolutionCache).where(
                        TemplateResolutionCache.cache_key == key.cache_key
                    )
                )
            ).scalar_one_or_none()
            if row is None:
                session.add(
                    TemplateResolutionCache(
                        template_id=key.template_id,
                        cache_key=key.cache_key,
                        resolved_components=resolved.to_cache_dict(),
                    )
                )
            else:
                row.resolved_components = resolved.to_cache_dict()
            await session.commit()
        logger.debug("Saved resolution cache %s", key.cache_key)
