"""Worker pay calculation engine - main orchestrator."""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from dataclasses import dataclass, field, replace
from datetime import date
from decimal import Decimal
from typing import Any, Sequence
from uuid import UUID

from pay_structure_engine.calculators.formula import FormulaEvaluator
from pay_structure_engine.calculators.line_builder import LineItemBuilder
from pay_structure_engine.calculators.pattern_qualifier import PatternQualifier, PatternResult
from pay_structure_engine.calculators.sources import (
    AttendanceSource,
    ExternalCalculatorRegistry,
    PayStructureStore,
)
from pay_structure_engine.calculators.template_resolver import TemplateResolver
from pay_structure_engine.calculators.types import (
    CompensationInput,
    ComponentCategory,
    ComponentDefinition,
    ComponentOverride,
    EvaluationContext,
    ExternalCalculation,
    FixedCalculation,
    FormulaCalculation,
    HourlyRateCalculation,
    LineItem,
    OverrideType,
    PercentageCalculation,
    ResolvedTemplate,
    SkippedComponent,
    TieredCalculation,
    WorkerAssignment,
    WorkerCalculationResult,
)
from pay_structure_engine.config import get_settings
from pay_structure_engine.exceptions import (
    ComponentCalculationError,
    NotFoundError,
    PayStructureError,
    ValidationError,
)

logger = logging.getLogger(__name__)

BASE_SALARY_CODE = "BASE_SALARY"
REGULAR_PAY_CODE = "REGULAR_PAY"


@dataclass(frozen=True)
class CalculationRequest:
    """One worker in a batch calculation."""

    worker_id: UUID
    compensation: CompensationInput = field(default_factory=CompensationInput)


@dataclass
class PayrollBatchResult:
    """Result of calculating several workers."""

    organization_id: UUID
    as_of_date: date
    results: dict[UUID, WorkerCalculationResult] = field(default_factory=dict)
    errors: dict[UUID, str] = field(default_factory=dict)

    @property
    def error_count(self) -> int:
        return len(self.errors)

    @property
    def total_earnings(self) -> Decimal:
        return sum((r.summary.total_earnings for r in self.results.values()), Decimal("0"))

    @property
    def total_net(self) -> Decimal:
        return sum((r.summary.net_pay for r in self.results.values()), Decimal("0"))


class WorkerPayCalculator:
    """Per-worker pay calculation pipeline.

    Calculation pipeline (stable order per worker):
    1) Load the current structure assignment and resolve its template
    2) Load overrides active on the as-of date
    3) Seed the context with compensation and emit base pay
    4) For each component in (sequence_order, code) order:
       skip if disabled, skip if its condition is not met,
       apply override values, evaluate, clamp, round
    5) Sum by category into the summary totals

    A failing component aborts the whole calculation.
    """

    def __init__(
        self,
        store: PayStructureStore,
        attendance: AttendanceSource,
        external_calculators: ExternalCalculatorRegistry | None = None,
        resolver: TemplateResolver | None = None,
        formula_evaluator: FormulaEvaluator | None = None,
    ):
        self.store = store
        self.attendance = attendance
        self.external_calculators = dict(external_calculators or {})
        self.resolver = resolver or TemplateResolver(store)
        self.formula_evaluator = formula_evaluator or FormulaEvaluator()
        self.settings = get_settings()

    async def calculate(
        self,
        worker_id: UUID,
        compensation: CompensationInput,
        organization_id: UUID,
        as_of_date: date | None = None,
    ) -> WorkerCalculationResult:
        """Calculate pay for one worker.

        Raises:
            NotFoundError: No current structure assignment for the worker.
            ComponentCalculationError: A component failed to evaluate.
        """
        effective_date = as_of_date or date.today()

        assignment = await self.store.get_current_worker_structure(
            worker_id, organization_id, effective_date
        )
        if assignment is None:
            raise NotFoundError(
                f"No pay structure assigned to worker {worker_id} on {effective_date}"
            )

        resolved = await self.resolver.resolve(assignment.template_id, as_of_date, organization_id)
        overrides = await self._active_overrides(assignment, organization_id, effective_date)
        qualifier = PatternQualifier(self.attendance)

        lines: list[LineItem] = []
        skipped: list[SkippedComponent] = []
        context = self._seed_context(assignment, compensation)

        base_line, context = self._base_pay_line(resolved, context)
        if base_line is not None:
            lines.append(base_line)

        for component in resolved.components:
            override = overrides.get(component.code)

            if override is not None and override.disables_component:
                skipped.append(SkippedComponent(component.code, "disabled"))
                continue

            pattern_result = None
            condition = component.condition
            if override is not None and override.override_type == OverrideType.CONDITION:
                condition = override.condition
            if condition is not None:
                pattern_result = await qualifier.qualifies(worker_id, condition, effective_date)
                if not pattern_result.qualified:
                    skipped.append(
                        SkippedComponent(
                            component.code, "condition_not_met", pattern_result.evidence.to_dict()
                        )
                    )
                    continue

            line, context = await self._calculate_component(
                component, override, context, pattern_result
            )
            lines.append(line)

        summary = LineItemBuilder.summarize(lines)
        calculation_id = self._generate_calculation_id(
            worker_id, organization_id, effective_date, resolved, assignment, compensation
        )

        logger.info(
            "Calculated worker %s on %s: %d lines, %d skipped, net %s",
            worker_id,
            effective_date,
            len(lines),
            len(skipped),
            summary.net_pay,
        )
        return WorkerCalculationResult(
            worker_id=worker_id,
            organization_id=organization_id,
            calculation_id=calculation_id,
            structure_id=assignment.structure_id,
            template_id=resolved.template_id,
            template_version=str(resolved.version),
            as_of_date=effective_date,
            line_items=tuple(lines),
            summary=summary,
            skipped_components=tuple(skipped),
        )

    async def calculate_many(
        self,
        requests: Sequence[CalculationRequest],
        organization_id: UUID,
        as_of_date: date | None = None,
    ) -> PayrollBatchResult:
        """Calculate independent workers concurrently.

        Engine errors are recorded per worker; anything else propagates.
        """
        batch = PayrollBatchResult(
            organization_id=organization_id, as_of_date=as_of_date or date.today()
        )

        async def run(request: CalculationRequest) -> None:
            try:
                batch.results[request.worker_id] = await self.calculate(
                    request.worker_id, request.compensation, organization_id, as_of_date
                )
            except PayStructureError as e:
                logger.error("Calculation failed for worker %s: %s", request.worker_id, e)
                batch.errors[request.worker_id] = str(e)

        await asyncio.gather(*(run(request) for request in requests))
        return batch

    # === Pipeline steps ===

    async def _active_overrides(
        self, assignment: WorkerAssignment, organization_id: UUID, as_of: date
    ) -> dict[str, ComponentOverride]:
        overrides = await self.store.get_worker_overrides(assignment.structure_id, organization_id)
        return {o.component_code: o for o in overrides if o.is_effective_on(as_of)}

    @staticmethod
    def _seed_context(
        assignment: WorkerAssignment, compensation: CompensationInput
    ) -> EvaluationContext:
        base_salary = compensation.base_salary
        if base_salary is None:
            base_salary = assignment.base_salary
        hourly_rate = compensation.hourly_rate
        if hourly_rate is None:
            hourly_rate = assignment.hourly_rate
        return EvaluationContext.seed(
            {"base_salary": base_salary, "hourly_rate": hourly_rate, "hours": compensation.hours}
        )

    @staticmethod
    def _base_pay_line(
        resolved: ResolvedTemplate, context: EvaluationContext
    ) -> tuple[LineItem | None, EvaluationContext]:
        """Emit BASE_SALARY (salaried) or REGULAR_PAY (hourly) unless the template defines it."""
        base_salary = context.lookup("base_salary")
        hourly_rate = context.lookup("hourly_rate")
        hours = context.lookup("hours")

        if base_salary is not None:
            code, name, amount = BASE_SALARY_CODE, "Base Salary", base_salary
            metadata: dict[str, Any] = {"source": "compensation", "base_salary": str(base_salary)}
        elif hourly_rate is not None and hours is not None:
            code, name, amount = REGULAR_PAY_CODE, "Regular Pay", hourly_rate * hours
            metadata = {
                "source": "compensation",
                "hourly_rate": str(hourly_rate),
                "hours": str(hours),
            }
        else:
            return None, context

        if resolved.get(code) is not None:
            return None, context

        component = ComponentDefinition(
            code=code,
            name=name,
            category=ComponentCategory.EARNING,
            calculation=FixedCalculation(amount=amount),
        )
        line = LineItemBuilder.create_line(component, amount, metadata)
        return line, context.with_line(code, line.amount, adds_to_gross=True)

    async def _calculate_component(
        self,
        component: ComponentDefinition,
        override: ComponentOverride | None,
        context: EvaluationContext,
        pattern_result: PatternResult | None,
    ) -> tuple[LineItem, EvaluationContext]:
        """Evaluate one component and extend the context with its value."""
        try:
            effective, override_applied = self._apply_override(component, override)
            raw_amount, metadata = await self._evaluate(effective, context)
        except PayStructureError as e:
            logger.error("Component %s failed: %s", component.code, e)
            raise ComponentCalculationError(component.code, str(e)) from e
        except ArithmeticError as e:
            logger.error("Component %s failed: %s", component.code, e)
            raise ComponentCalculationError(component.code, f"arithmetic error: {e}") from e
        except Exception as e:
            logger.exception("Component %s failed unexpectedly", component.code)
            raise ComponentCalculationError(component.code, f"{type(e).__name__}: {e}") from e

        limits = effective.limits
        if override is not None:
            limits = limits.tightened(override.min_amount, override.max_amount)
        amount = limits.clamp(raw_amount)

        metadata["calculation_type"] = effective.calculation_type.value
        metadata["override_applied"] = override_applied
        if amount != raw_amount:
            metadata["raw_amount"] = str(raw_amount)
            metadata["clamped"] = True
        if pattern_result is not None:
            metadata["pattern"] = pattern_result.to_dict()

        line = LineItemBuilder.create_line(effective, amount, metadata)
        adds_to_gross = (
            effective.category == ComponentCategory.EARNING and effective.affects_gross_pay
        )
        return line, context.with_line(effective.code, line.amount, adds_to_gross)

    @staticmethod
    def _apply_override(
        component: ComponentDefinition, override: ComponentOverride | None
    ) -> tuple[ComponentDefinition, bool]:
        """Replace calculation config with the override value of the matching type."""
        if override is None:
            return component, False

        calculation = component.calculation
        kind = override.override_type

        if kind == OverrideType.AMOUNT:
            return replace(component, calculation=FixedCalculation(amount=override.amount)), True
        if kind == OverrideType.FORMULA:
            return (
                replace(component, calculation=FormulaCalculation(expression=override.formula)),
                True,
            )
        if kind == OverrideType.PERCENTAGE and isinstance(calculation, PercentageCalculation):
            return replace(component, calculation=replace(calculation, rate=override.percentage)), True
        if kind == OverrideType.RATE and isinstance(calculation, HourlyRateCalculation):
            return replace(component, calculation=replace(calculation, rate=override.rate)), True
        if kind == OverrideType.CONDITION:
            return component, True
        return component, False

    async def _evaluate(
        self, component: ComponentDefinition, context: EvaluationContext
    ) -> tuple[Decimal, dict[str, Any]]:
        calculation = component.calculation

        if isinstance(calculation, FixedCalculation):
            return calculation.amount, {}

        if isinstance(calculation, PercentageCalculation):
            base = self._require(context, calculation.percentage_of)
            return base * calculation.rate, {
                "percentage_of": calculation.percentage_of,
                "base_amount": str(base),
                "rate": str(calculation.rate),
            }

        if isinstance(calculation, HourlyRateCalculation):
            hours = self._require(context, calculation.hours_field)
            rate = calculation.rate if calculation.rate is not None else context.lookup("hourly_rate")
            if rate is None:
                raise ValidationError("no hourly rate available")
            return hours * rate * calculation.rate_multiplier, {
                "hours": str(hours),
                "rate": str(rate),
                "rate_multiplier": str(calculation.rate_multiplier),
            }

        if isinstance(calculation, FormulaCalculation):
            result = self.formula_evaluator.evaluate(calculation.expression, context.as_variables())
            return result, {"formula": calculation.expression}

        if isinstance(calculation, TieredCalculation):
            basis = self._require(context, calculation.basis)
            return LineItemBuilder.calculate_tiered(calculation, basis), {
                "basis": calculation.basis,
                "basis_amount": str(basis),
                "tier_count": len(calculation.tiers),
            }

        if isinstance(calculation, ExternalCalculation):
            calculator = self.external_calculators.get(calculation.service)
            if calculator is None:
                raise ValidationError(
                    f"no external calculator registered for service '{calculation.service}'"
                )
            amount = await calculator.calculate(component, calculation, context)
            return Decimal(amount), {"service": calculation.service}

        raise ValidationError(f"unsupported calculation type {type(calculation).__name__}")

    @staticmethod
    def _require(context: EvaluationContext, name: str) -> Decimal:
        value = context.lookup(name)
        if value is None:
            raise ValidationError(f"'{name}' is not available in the calculation context")
        return value

    def _generate_calculation_id(
        self,
        worker_id: UUID,
        organization_id: UUID,
        as_of_date: date,
        resolved: ResolvedTemplate,
        assignment: WorkerAssignment,
        compensation: CompensationInput,
    ) -> UUID:
        """Generate deterministic calculation ID."""
        data = {
            "worker_id": str(worker_id),
            "organization_id": str(organization_id),
            "as_of_date": str(as_of_date),
            "structure_id": str(assignment.structure_id),
            "engine_version": self.settings.engine_version,
            "template_fingerprint": resolved.fingerprint(),
            "inputs": {
                "base_salary": str(compensation.base_salary),
                "hourly_rate": str(compensation.hourly_rate),
                "hours": str(compensation.hours),
                "pay_frequency": compensation.pay_frequency,
            },
        }
        json_str = json.dumps(data, sort_keys=True)
        hash_bytes = hashlib.sha256(json_str.encode()).digest()
        return UUID(bytes=hash_bytes[:16])
