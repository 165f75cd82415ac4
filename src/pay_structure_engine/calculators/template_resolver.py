"""Template composition resolution.

A template may include other templates by code. Resolution flattens the
inclusion graph depth-first into one ordered component list:

1) Inclusions active on the as-of date are merged in ascending priority
2) Each included template is resolved recursively, then filtered
3) The template's own components are merged last and always win
4) The result is sorted by (sequence_order, code) and cached per
   (template, version, as-of date)
5) A cached entry is served only while the inclusion graph still reaches
   the same contributing templates
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import date
from uuid import UUID

from pay_structure_engine.calculators.sources import PayStructureStore
from pay_structure_engine.calculators.types import (
    ComponentDefinition,
    FixedCalculation,
    InclusionRule,
    MergeMode,
    ResolutionCacheKey,
    ResolvedTemplate,
    TemplateInfo,
)
from pay_structure_engine.config import get_settings
from pay_structure_engine.exceptions import (
    CircularInclusionError,
    NotFoundError,
    ResolutionDepthExceededError,
    UnsupportedMergeModeError,
    ValidationError,
)

logger = logging.getLogger(__name__)


def merge_component(
    merged: dict[str, ComponentDefinition],
    incoming: ComponentDefinition,
    merge_mode: MergeMode,
) -> None:
    """Merge one component into ``merged`` in place according to ``merge_mode``."""
    existing = merged.get(incoming.code)
    if existing is None:
        merged[incoming.code] = incoming
        return

    if merge_mode == MergeMode.MERGE:
        return
    if merge_mode == MergeMode.OVERRIDE:
        merged[incoming.code] = incoming
        return

    for component in (existing, incoming):
        if not isinstance(component.calculation, FixedCalculation):
            raise UnsupportedMergeModeError(
                merge_mode.value, component.code, component.calculation_type.value
            )
    merged[incoming.code] = replace(
        existing,
        calculation=FixedCalculation(
            amount=existing.calculation.amount + incoming.calculation.amount
        ),
    )


class TemplateResolver:
    """Resolves a template's inclusion graph into a flat component list."""

    def __init__(self, store: PayStructureStore, max_depth: int | None = None):
        self.store = store
        self.max_depth = max_depth if max_depth is not None else get_settings().resolution_max_depth

    async def resolve(
        self,
        template_id: UUID,
        as_of_date: date | None = None,
        organization_id: UUID | None = None,
    ) -> ResolvedTemplate:
        """Resolve ``template_id`` as of ``as_of_date`` (None = current).

        Raises:
            NotFoundError: The template or an included template does not exist.
            CircularInclusionError: The inclusion graph has a cycle.
            ResolutionDepthExceededError: Nesting is deeper than ``max_depth``.
            UnsupportedMergeModeError: ``additive`` met a non-fixed component.
            ValidationError: Two active inclusions share a priority.
        """
        return await self._resolve(template_id, as_of_date, organization_id, path=[])

    async def _resolve(
        self,
        template_id: UUID,
        as_of_date: date | None,
        organization_id: UUID | None,
        path: list[UUID],
    ) -> ResolvedTemplate:
        if template_id in path:
            cycle = path[path.index(template_id):] + [template_id]
            raise CircularInclusionError(cycle)
        if len(path) >= self.max_depth:
            raise ResolutionDepthExceededError(template_id, self.max_depth)

        template = await self.store.find_template_by_id(template_id, organization_id)
        if template is None:
            raise NotFoundError(f"Template {template_id} not found")

        cache_key = ResolutionCacheKey(template.template_id, template.version, as_of_date)
        cached = await self.store.get_resolution_cache(cache_key)
        if cached is not None:
            current = await self._current_contributors(template, as_of_date, path)
            if current == set(cached.contributing_template_ids):
                logger.debug("Resolution cache hit for %s", cache_key.cache_key)
                return cached
            logger.info("Resolution cache entry %s is stale", cache_key.cache_key)
        else:
            logger.debug("Resolution cache miss for %s", cache_key.cache_key)

        effective_date = as_of_date or date.today()
        inclusions = await self._active_inclusions(template, effective_date)

        merged: dict[str, ComponentDefinition] = {}
        contributing: list[UUID] = [template.template_id]
        child_path = path + [template.template_id]

        for inclusion in inclusions:
            target = await self._find_included_template(template, inclusion, as_of_date)
            resolved = await self._resolve(
                target.template_id, as_of_date, template.organization_id, list(child_path)
            )
            for component in resolved.components:
                if inclusion.component_filter and not inclusion.component_filter.allows(
                    component.code
                ):
                    continue
                merge_component(merged, component, inclusion.merge_mode)
            for contributor in resolved.contributing_template_ids:
                if contributor not in contributing:
                    contributing.append(contributor)

        for component in await self.store.get_template_components(template.template_id):
            if component.source_template_id is None:
                component = replace(component, source_template_id=template.template_id)
            merge_component(merged, component, MergeMode.OVERRIDE)

        result = ResolvedTemplate(
            template_id=template.template_id,
            version=template.version,
            components=tuple(sorted(merged.values(), key=lambda c: c.sort_key)),
            contributing_template_ids=tuple(contributing),
        )
        await self.store.save_resolution_cache(cache_key, result)
        logger.info(
            "Resolved template %s v%s: %d components from %d templates",
            template.template_code,
            template.version,
            len(result.components),
            len(result.contributing_template_ids),
        )
        return result

    async def _active_inclusions(
        self, template: TemplateInfo, effective_date: date
    ) -> list[InclusionRule]:
        inclusions = sorted(
            (
                inclusion
                for inclusion in await self.store.find_template_inclusions(template.template_id)
                if inclusion.is_effective_on(effective_date)
            ),
            key=lambda inclusion: inclusion.priority,
        )
        for previous, current in zip(inclusions, inclusions[1:]):
            if previous.priority == current.priority:
                raise ValidationError(
                    f"Template {template.template_code} has two active inclusions "
                    f"with priority {current.priority}"
                )
        return inclusions

    async def _current_contributors(
        self, template: TemplateInfo, as_of_date: date | None, path: list[UUID]
    ) -> set[UUID] | None:
        """Ids the inclusion graph currently reaches, or None if it no longer resolves.

        A cached entry is only served when this matches its contributing ids,
        so a newer ``latest`` version anywhere below invalidates it.
        """
        contributors = {template.template_id}
        child_path = path + [template.template_id]
        for inclusion in await self._active_inclusions(template, as_of_date or date.today()):
            try:
                target = await self._find_included_template(template, inclusion, as_of_date)
            except NotFoundError:
                return None
            if target.template_id in child_path or len(child_path) >= self.max_depth:
                return None
            nested = await self._current_contributors(target, as_of_date, child_path)
            if nested is None:
                return None
            contributors |= nested
        return contributors

    async def _find_included_template(
        self, parent: TemplateInfo, inclusion: InclusionRule, as_of_date: date | None
    ) -> TemplateInfo:
        if inclusion.pinned_template_id is not None:
            target = await self.store.find_template_by_id(
                inclusion.pinned_template_id, parent.organization_id
            )
        else:
            target = await self.store.find_latest_template_by_code(
                parent.organization_id,
                inclusion.included_template_code,
                as_of_date or date.today(),
            )
        if target is None:
            raise NotFoundError(
                f"Included template {inclusion.included_template_code} "
                f"({inclusion.version_constraint}) not found for template "
                f"{parent.template_code}"
            )
        return target
