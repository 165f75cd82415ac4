"""Template lifecycle, versioning and worker assignment service."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from pay_structure_engine.calculators.formula import FormulaEvaluator
from pay_structure_engine.calculators.patterns import pattern_to_dict
from pay_structure_engine.calculators.types import (
    ComponentDefinition,
    ComponentFilter,
    ComponentOverride,
    FormulaCalculation,
    MergeMode,
    OverrideType,
    PayFrequency,
    TemplateVersion,
    calculation_to_dict,
)
from pay_structure_engine.exceptions import (
    CircularInclusionError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from pay_structure_engine.models import (
    PayStructureComponent,
    PayStructureInclusion,
    PayStructureTemplate,
    TemplateResolutionCache,
    WorkerComponentOverride,
    WorkerPayStructure,
)
from pay_structure_engine.services.state_machine import TemplateStateMachine, TemplateStatus
from pay_structure_engine.services.structure_store import to_component_definition

logger = logging.getLogger(__name__)

# Fields compared between template versions
_COMPARED_FIELDS = (
    "name",
    "category",
    "calculation_type",
    "calculation",
    "sequence_order",
    "affects_gross_pay",
    "affects_net_pay",
    "is_taxable",
    "is_mandatory",
    "min_amount",
    "max_amount",
    "max_per_period",
    "max_annual",
    "condition",
)


@dataclass
class ComponentChange:
    component_code: str
    changes: dict[str, tuple[Any, Any]] = field(default_factory=dict)  # field -> (old, new)


@dataclass
class TemplateComparison:
    """Differences between two template versions."""

    from_version: str
    to_version: str
    added: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    modified: list[ComponentChange] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(self.added or self.removed or self.modified)


class TemplateService:
    """Service for managing templates and worker assignments.

    Operations:
    - create_template / add_component / add_inclusion: build a draft
    - publish_template / deprecate_template / archive_template: lifecycle
    - create_new_version / compare_versions: versioning
    - assign_template_to_worker / add_component_override: worker side
    """

    def __init__(self, session: AsyncSession):
        self.session = session
        self.formula_evaluator = FormulaEvaluator()

    # === Templates ===

    async def get_template(
        self,
        template_id: UUID,
        organization_id: UUID,
        load_children: bool = False,
    ) -> PayStructureTemplate:
        """Load a template, raising NotFoundError if absent for this organization."""
        query = select(PayStructureTemplate).where(
            PayStructureTemplate.template_id == template_id,
            PayStructureTemplate.organization_id == organization_id,
        )
        if load_children:
            query = query.options(
                selectinload(PayStructureTemplate.components),
                selectinload(PayStructureTemplate.inclusions),
            )
        template = (await self.session.execute(query)).scalar_one_or_none()
        if template is None:
            raise NotFoundError(f"Template {template_id} not found")
        return template

    async def create_template(
        self,
        organization_id: UUID,
        template_code: str,
        template_name: str,
        version: TemplateVersion | None = None,
        currency: str = "USD",
        pay_frequency: str | None = None,
        description: str | None = None,
        effective_from: date | None = None,
        effective_to: date | None = None,
        is_organization_default: bool = False,
    ) -> PayStructureTemplate:
        """Create a draft template."""
        version = version or TemplateVersion(1, 0, 0)
        if not template_code or not template_name:
            raise ValidationError("template_code and template_name are required")
        if pay_frequency is not None and pay_frequency not in {f.value for f in PayFrequency}:
            raise ValidationError(f"Invalid pay frequency: {pay_frequency}")
        if effective_from and effective_to and effective_to < effective_from:
            raise ValidationError("effective_to must not be before effective_from")
        await self._ensure_version_free(organization_id, template_code, version)

        template = PayStructureTemplate(
            organization_id=organization_id,
            template_code=template_code,
            template_name=template_name,
            description=description,
            version_major=version.major,
            version_minor=version.minor,
            version_patch=version.patch,
            status=TemplateStatus.DRAFT.value,
            currency=currency,
            pay_frequency=pay_frequency,
            is_organization_default=is_organization_default,
            effective_from=effective_from,
            effective_to=effective_to,
        )
        self.session.add(template)
        await self.session.flush()
        logger.info("Created template %s v%s", template_code, version)
        return template

    async def add_component(
        self,
        template_id: UUID,
        organization_id: UUID,
        component: ComponentDefinition,
    ) -> PayStructureComponent:
        """Add a component to a draft template."""
        template = await self.get_template(template_id, organization_id, load_children=True)
        self._require_draft(template, "add components")

        if any(c.component_code == component.code for c in template.components):
            raise ValidationError(
                f"Component {component.code} already exists in template {template.template_code}"
            )
        if isinstance(component.calculation, FormulaCalculation):
            self.formula_evaluator.validate_formula(component.calculation.expression)

        row = PayStructureComponent(
            template_id=template.template_id,
            component_code=component.code,
            component_name=component.name,
            component_category=component.category.value,
            calculation_type=component.calculation_type.value,
            calculation_config=calculation_to_dict(component.calculation),
            sequence_order=component.sequence_order,
            affects_gross_pay=component.affects_gross_pay,
            affects_net_pay=component.affects_net_pay,
            is_taxable=component.is_taxable,
            is_mandatory=component.is_mandatory,
            min_amount=component.limits.min_amount,
            max_amount=component.limits.max_amount,
            max_per_period=component.limits.max_per_period,
            max_annual=component.limits.max_annual,
            condition=pattern_to_dict(component.condition) if component.condition else None,
        )
        template.components.append(row)
        await self.session.flush()
        await self._invalidate_cache(template)
        return row

    async def add_inclusion(
        self,
        template_id: UUID,
        organization_id: UUID,
        included_template_code: str,
        priority: int,
        merge_mode: MergeMode = MergeMode.MERGE,
        pinned_template_id: UUID | None = None,
        component_filter: ComponentFilter | None = None,
        effective_from: date | None = None,
        effective_to: date | None = None,
    ) -> PayStructureInclusion:
        """Include another template by code.

        Raises:
            ValidationError: Not a draft, duplicate priority, unknown code or an
                inactive pinned version.
            CircularInclusionError: The inclusion would close a cycle.
        """
        template = await self.get_template(template_id, organization_id, load_children=True)
        self._require_draft(template, "add inclusions")

        if any(i.is_active and i.inclusion_priority == priority for i in template.inclusions):
            raise ValidationError(
                f"Template {template.template_code} already has an inclusion with priority {priority}"
            )
        if not await self._templates_by_code(organization_id, included_template_code):
            raise ValidationError(f"No template with code {included_template_code}")
        if pinned_template_id is not None:
            pinned = await self.get_template(pinned_template_id, organization_id)
            if pinned.template_code != included_template_code:
                raise ValidationError(
                    f"Pinned template {pinned_template_id} is not a version of {included_template_code}"
                )
            if not TemplateStateMachine.is_assignable(pinned.status):
                raise ValidationError(
                    f"Pinned template {pinned_template_id} is {pinned.status}; "
                    "only active versions can be pinned"
                )

        path = await self._inclusion_path(
            organization_id, included_template_code, template.template_code, set()
        )
        if path is not None:
            raise CircularInclusionError([template.template_id] + path)

        row = PayStructureInclusion(
            parent_template_id=template.template_id,
            included_template_code=included_template_code,
            inclusion_priority=priority,
            merge_mode=merge_mode.value,
            version_constraint="pinned" if pinned_template_id else "latest",
            pinned_template_id=pinned_template_id,
            component_filter=component_filter.to_dict() if component_filter else None,
            effective_from=effective_from,
            effective_to=effective_to,
        )
        template.inclusions.append(row)
        await self.session.flush()
        await self._invalidate_cache(template)
        return row

    async def publish_template(self, template_id: UUID, organization_id: UUID) -> PayStructureTemplate:
        """Activate a draft; a default template replaces the previous default."""
        template = await self.get_template(template_id, organization_id, load_children=True)
        errors = TemplateStateMachine.validate_template_for_transition(
            template, TemplateStatus.ACTIVE, len(template.components)
        )
        if errors:
            raise InvalidTransitionError(template.status, TemplateStatus.ACTIVE.value, "; ".join(errors))

        if template.is_organization_default:
            await self._clear_organization_default(organization_id, except_id=template.template_id)

        template.status = TemplateStatus.ACTIVE.value
        template.published_at = datetime.now(timezone.utc)
        await self.session.flush()
        await self._invalidate_cache(template)
        logger.info("Published template %s v%s", template.template_code, template.version_string)
        return template

    async def set_organization_default(
        self, template_id: UUID, organization_id: UUID
    ) -> PayStructureTemplate:
        template = await self.get_template(template_id, organization_id)
        if not TemplateStateMachine.is_assignable(template.status):
            raise ValidationError("Only active templates can be the organization default")
        await self._clear_organization_default(organization_id, except_id=template.template_id)
        template.is_organization_default = True
        await self.session.flush()
        return template

    async def deprecate_template(
        self, template_id: UUID, organization_id: UUID, reason: str | None = None
    ) -> PayStructureTemplate:
        template = await self.get_template(template_id, organization_id)
        TemplateStateMachine.validate_transition(template.status, TemplateStatus.DEPRECATED)
        template.status = TemplateStatus.DEPRECATED.value
        template.deprecated_at = datetime.now(timezone.utc)
        template.deprecation_reason = reason
        await self.session.flush()
        await self._invalidate_cache(template)
        logger.info("Deprecated template %s v%s", template.template_code, template.version_string)
        return template

    async def archive_template(self, template_id: UUID, organization_id: UUID) -> PayStructureTemplate:
        template = await self.get_template(template_id, organization_id)
        TemplateStateMachine.validate_transition(template.status, TemplateStatus.ARCHIVED)
        template.status = TemplateStatus.ARCHIVED.value
        await self.session.flush()
        await self._invalidate_cache(template)
        logger.info("Archived template %s v%s", template.template_code, template.version_string)
        return template

    # === Versioning ===

    async def create_new_version(
        self,
        template_id: UUID,
        organization_id: UUID,
        version_type: str = "minor",
    ) -> PayStructureTemplate:
        """Copy a template with its components and inclusions into a new draft version."""
        source = await self.get_template(template_id, organization_id, load_children=True)
        current = TemplateVersion(source.version_major, source.version_minor, source.version_patch)
        version = current.bump(version_type)
        await self._ensure_version_free(organization_id, source.template_code, version)

        new_template = PayStructureTemplate(
            organization_id=source.organization_id,
            template_code=source.template_code,
            template_name=source.template_name,
            description=source.description,
            version_major=version.major,
            version_minor=version.minor,
            version_patch=version.patch,
            status=TemplateStatus.DRAFT.value,
            currency=source.currency,
            pay_frequency=source.pay_frequency,
            is_organization_default=source.is_organization_default,
            effective_from=source.effective_from,
            effective_to=source.effective_to,
        )
        new_template.components = [
            PayStructureComponent(
                component_code=c.component_code,
                component_name=c.component_name,
                component_category=c.component_category,
                calculation_type=c.calculation_type,
                calculation_config=dict(c.calculation_config or {}),
                sequence_order=c.sequence_order,
                affects_gross_pay=c.affects_gross_pay,
                affects_net_pay=c.affects_net_pay,
                is_taxable=c.is_taxable,
                is_mandatory=c.is_mandatory,
                min_amount=c.min_amount,
                max_amount=c.max_amount,
                max_per_period=c.max_per_period,
                max_annual=c.max_annual,
                condition=c.condition,
            )
            for c in source.components
        ]
        new_template.inclusions = [
            PayStructureInclusion(
                included_template_code=i.included_template_code,
                inclusion_priority=i.inclusion_priority,
                merge_mode=i.merge_mode,
                version_constraint=i.version_constraint,
                pinned_template_id=i.pinned_template_id,
                component_filter=i.component_filter,
                effective_from=i.effective_from,
                effective_to=i.effective_to,
                is_active=i.is_active,
            )
            for i in source.inclusions
        ]
        self.session.add(new_template)
        await self.session.flush()
        logger.info(
            "Created template %s v%s from v%s", source.template_code, version, current
        )
        return new_template

    async def compare_versions(
        self, from_template_id: UUID, to_template_id: UUID, organization_id: UUID
    ) -> TemplateComparison:
        """Components added, removed and modified between two templates."""
        old = await self.get_template(from_template_id, organization_id, load_children=True)
        new = await self.get_template(to_template_id, organization_id, load_children=True)

        old_components = {c.component_code: _comparable(c) for c in old.components}
        new_components = {c.component_code: _comparable(c) for c in new.components}

        comparison = TemplateComparison(
            from_version=old.version_string,
            to_version=new.version_string,
            added=sorted(set(new_components) - set(old_components)),
            removed=sorted(set(old_components) - set(new_components)),
        )
        for code in sorted(set(old_components) & set(new_components)):
            before, after = old_components[code], new_components[code]
            changes = {
                name: (before[name], after[name])
                for name in _COMPARED_FIELDS
                if before[name] != after[name]
            }
            if changes:
                comparison.modified.append(ComponentChange(code, changes))
        return comparison

    # === Worker assignments ===

    async def assign_template_to_worker(
        self,
        worker_id: UUID,
        organization_id: UUID,
        effective_from: date,
        template_id: UUID | None = None,
        base_salary: Decimal | None = None,
        hourly_rate: Decimal | None = None,
        pay_frequency: str | None = None,
        currency: str | None = None,
        reason: str | None = None,
    ) -> WorkerPayStructure:
        """Assign an active template (or the organization default) to a worker.

        The worker's current assignment is closed the day before ``effective_from``.
        """
        if template_id is None:
            template = await self._organization_default(organization_id)
        else:
            template = await self.get_template(template_id, organization_id)
        if not TemplateStateMachine.is_assignable(template.status):
            raise ValidationError(
                f"Template {template.template_code} v{template.version_string} is "
                f"'{template.status}'; only active templates can be assigned"
            )
        if base_salary is None and hourly_rate is None:
            raise ValidationError("Either base_salary or hourly_rate is required")

        await self._supersede_current_assignment(worker_id, organization_id, effective_from)

        assignment = WorkerPayStructure(
            organization_id=organization_id,
            worker_id=worker_id,
            template_id=template.template_id,
            template_version=template.version_string,
            base_salary=base_salary,
            hourly_rate=hourly_rate,
            pay_frequency=pay_frequency or template.pay_frequency,
            currency=currency or template.currency,
            effective_from=effective_from,
            is_current=True,
            assignment_reason=reason,
        )
        self.session.add(assignment)
        await self.session.flush()
        logger.info(
            "Assigned template %s v%s to worker %s from %s",
            template.template_code,
            template.version_string,
            worker_id,
            effective_from,
        )
        return assignment

    async def add_component_override(
        self,
        worker_structure_id: UUID,
        organization_id: UUID,
        override: ComponentOverride,
    ) -> WorkerComponentOverride:
        """Attach an override to a worker's assignment, one per component."""
        structure = (
            await self.session.execute(
                select(WorkerPayStructure)
                .where(
                    WorkerPayStructure.worker_structure_id == worker_structure_id,
                    WorkerPayStructure.organization_id == organization_id,
                )
                .options(selectinload(WorkerPayStructure.overrides))
            )
        ).scalar_one_or_none()
        if structure is None:
            raise NotFoundError(f"Worker pay structure {worker_structure_id} not found")
        if any(o.component_code == override.component_code for o in structure.overrides):
            raise ValidationError(
                f"Override for component {override.component_code} already exists"
            )
        if override.override_type == OverrideType.FORMULA:
            self.formula_evaluator.validate_formula(override.formula)

        row = WorkerComponentOverride(
            organization_id=organization_id,
            component_code=override.component_code,
            override_type=override.override_type.value,
            override_amount=override.amount,
            override_percentage=override.percentage,
            override_formula=override.formula,
            override_rate=override.rate,
            override_condition=pattern_to_dict(override.condition) if override.condition else None,
            min_amount=override.min_amount,
            max_amount=override.max_amount,
            is_disabled=override.disables_component,
            override_reason=override.reason,
            effective_from=override.effective_from,
            effective_to=override.effective_to,
        )
        structure.overrides.append(row)
        await self.session.flush()
        return row

    # === Helpers ===

    @staticmethod
    def _require_draft(template: PayStructureTemplate, action: str) -> None:
        if not TemplateStateMachine.can_modify_structure(template.status):
            raise ValidationError(
                f"Cannot {action} to template {template.template_code} in status '{template.status}'"
            )

    async def _ensure_version_free(
        self, organization_id: UUID, template_code: str, version: TemplateVersion
    ) -> None:
        result = await self.session.execute(
            select(PayStructureTemplate.template_id).where(
                PayStructureTemplate.organization_id == organization_id,
                PayStructureTemplate.template_code == template_code,
                PayStructureTemplate.version_major == version.major,
                PayStructureTemplate.version_minor == version.minor,
                PayStructureTemplate.version_patch == version.patch,
            )
        )
        if result.first() is not None:
            raise ValidationError(f"Template {template_code} v{version} already exists")

    async def _templates_by_code(
        self, organization_id: UUID, template_code: str
    ) -> list[PayStructureTemplate]:
        result = await self.session.execute(
            select(PayStructureTemplate)
            .where(
                PayStructureTemplate.organization_id == organization_id,
                PayStructureTemplate.template_code == template_code,
            )
            .options(selectinload(PayStructureTemplate.inclusions))
        )
        return list(result.scalars().all())

    async def _inclusion_path(
        self, organization_id: UUID, from_code: str, to_code: str, seen: set[str]
    ) -> list[UUID] | None:
        """Template ids leading from ``from_code`` to ``to_code`` over inclusions, if any."""
        templates = await self._templates_by_code(organization_id, from_code)
        if from_code == to_code:
            return [templates[0].template_id] if templates else []
        if from_code in seen:
            return None
        seen.add(from_code)

        for template in templates:
            for inclusion in template.inclusions:
                if not inclusion.is_active:
                    continue
                path = await self._inclusion_path(
                    organization_id, inclusion.included_template_code, to_code, seen
                )
                if path is not None:
                    return [template.template_id] + path
        return None

    async def _clear_organization_default(self, organization_id: UUID, except_id: UUID) -> None:
        await self.session.execute(
            update(PayStructureTemplate)
            .where(
                PayStructureTemplate.organization_id == organization_id,
                PayStructureTemplate.is_organization_default.is_(True),
                PayStructureTemplate.template_id != except_id,
            )
            .values(is_organization_default=False)
            .execution_options(synchronize_session="fetch")
        )

    async def _organization_default(self, organization_id: UUID) -> PayStructureTemplate:
        result = await self.session.execute(
            select(PayStructureTemplate)
            .where(
                PayStructureTemplate.organization_id == organization_id,
                PayStructureTemplate.is_organization_default.is_(True),
                PayStructureTemplate.status == TemplateStatus.ACTIVE.value,
            )
            .limit(1)
        )
        template = result.scalar_one_or_none()
        if template is None:
            raise NotFoundError(f"Organization {organization_id} has no default template")
        return template

    async def _supersede_current_assignment(
        self, worker_id: UUID, organization_id: UUID, effective_from: date
    ) -> None:
        result = await self.session.execute(
            select(WorkerPayStructure).where(
                WorkerPayStructure.worker_id == worker_id,
                WorkerPayStructure.organization_id == organization_id,
                WorkerPayStructure.is_current.is_(True),
            )
        )
        for current in result.scalars().all():
            if current.effective_from >= effective_from:
                raise ValidationError(
                    f"New assignment must start after {current.effective_from}, "
                    f"the start of the current assignment"
                )
            current.effective_to = effective_from - timedelta(days=1)
            current.is_current = False

    async def _invalidate_cache(self, template: PayStructureTemplate) -> None:
        """Drop cached resolutions of ``template`` and of every template including its code."""
        template_ids = {template.template_id}
        pending = [template.template_code]
        seen: set[str] = set()
        while pending:
            code = pending.pop()
            if code in seen:
                continue
            seen.add(code)
            result = await self.session.execute(
                select(PayStructureTemplate.template_id, PayStructureTemplate.template_code)
                .join(
                    PayStructureInclusion,
                    PayStructureInclusion.parent_template_id == PayStructureTemplate.template_id,
                )
                .where(
                    PayStructureTemplate.organization_id == template.organization_id,
                    PayStructureInclusion.included_template_code == code,
                )
            )
            for parent_id, parent_code in result.all():
                template_ids.add(parent_id)
                pending.append(parent_code)

        await self.session.execute(
            delete(TemplateResolutionCache).where(
                TemplateResolutionCache.template_id.in_(template_ids)
            )
        )
        logger.debug(
            "Invalidated resolution cache for %d templates after %s changed",
            len(template_ids),
            template.template_code,
        )


def _comparable(row: PayStructureComponent) -> dict[str, Any]:
    data = to_component_definition(row).to_dict()
    data.pop("source_template_id", None)
    return data

