"""Pay structure API endpoints."""

from __future__ import annotations

import logging
from datetime import date
from uuid import UUID

from fastapi import APIRouter, status

from pay_structure_engine.api.dependencies import (
    Attendance,
    ExternalCalculators,
    StructureStore,
    TenantId,
)
from pay_structure_engine.api.schemas import (
    CalculationRequestBody,
    ErrorResponse,
    FormulaTestRequest,
    FormulaTestResponse,
    PatternTestRequest,
    PatternTestResponse,
    ResolvedTemplateResponse,
    WorkerCalculationResponse,
)
from pay_structure_engine.calculators import (
    FormulaEvaluator,
    PatternQualifier,
    TemplateResolver,
    WorkerPayCalculator,
)
from pay_structure_engine.calculators.patterns import parse_pattern
from pay_structure_engine.calculators.types import CompensationInput
from pay_structure_engine.config import get_settings

logger = logging.getLogger(__name__)

router = APIRouter(tags=["pay-structures"])


@router.get(
    "/templates/{template_id}/resolved",
    response_model=ResolvedTemplateResponse,
    responses={
        404: {"model": ErrorResponse},
        422: {"model": ErrorResponse},
    },
)
async def get_resolved_template(
    template_id: UUID,
    tenant_id: TenantId,
    store: StructureStore,
    as_of: date | None = None,
) -> ResolvedTemplateResponse:
    """Resolve a template's inclusions into its effective component list."""
    resolver = TemplateResolver(store)
    resolved = await resolver.resolve(template_id, as_of, tenant_id)
    return ResolvedTemplateResponse.from_resolved(resolved)


@router.post(
    "/workers/{worker_id}/calculate",
    response_model=WorkerCalculationResponse,
    responses={
        404: {"model": ErrorResponse},
        422: {"model": ErrorResponse},
    },
)
async def calculate_worker_pay(
    worker_id: UUID,
    body: CalculationRequestBody,
    tenant_id: TenantId,
    store: StructureStore,
    attendance: Attendance,
    external_calculators: ExternalCalculators,
) -> WorkerCalculationResponse:
    """Calculate line items for a worker's current pay structure."""
    calculator = WorkerPayCalculator(store, attendance, external_calculators)
    compensation = CompensationInput(
        base_salary=body.base_salary,
        hourly_rate=body.hourly_rate,
        pay_frequency=body.pay_frequency,
        hours=body.hours,
    )
    result = await calculator.calculate(worker_id, compensation, tenant_id, body.as_of_date)
    return WorkerCalculationResponse.from_result(result)


@router.post(
    "/patterns/test",
    response_model=PatternTestResponse,
    responses={400: {"model": ErrorResponse}},
)
async def test_pattern(
    body: PatternTestRequest,
    tenant_id: TenantId,
    attendance: Attendance,
) -> PatternTestResponse:
    """Evaluate a pattern against several workers' attendance."""
    pattern = parse_pattern(body.pattern, get_settings().pattern_default_lookback_days)
    as_of = body.as_of_date or date.today()

    logger.info(
        "Testing %s pattern for %d workers in organization %s",
        pattern.pattern_type.value,
        len(body.worker_ids),
        tenant_id,
    )
    summary = await PatternQualifier(attendance).test_pattern(pattern, body.worker_ids, as_of)
    return PatternTestResponse.from_summary(summary)


@router.post(
    "/formulas/test",
    response_model=FormulaTestResponse,
    status_code=status.HTTP_200_OK,
)
async def test_formula(body: FormulaTestRequest) -> FormulaTestResponse:
    """Dry-run a formula with sample variable values."""
    result = FormulaEvaluator().test_formula(body.formula, body.variables)
    return FormulaTestResponse.from_result(result)
