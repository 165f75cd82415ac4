"""Pydantic schemas for API request/response models."""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from pay_structure_engine.calculators.formula import FormulaTestResult
from pay_structure_engine.calculators.pattern_qualifier import PatternTestSummary
from pay_structure_engine.calculators.types import (
    ComponentDefinition,
    ResolvedTemplate,
    WorkerCalculationResult,
)


class ErrorResponse(BaseModel):
    """Error body returned by the exception handlers."""

    detail: str
    code: str


# ============================================================================
# Template resolution schemas
# ============================================================================


class ComponentResponse(BaseModel):
    """A component of a resolved template."""

    model_config = ConfigDict(from_attributes=True)

    code: str
    name: str
    category: str
    calculation_type: str
    calculation: dict[str, Any]
    sequence_order: int
    affects_gross_pay: bool
    affects_net_pay: bool
    is_taxable: bool
    is_mandatory: bool
    min_amount: Decimal | None = None
    max_amount: Decimal | None = None
    max_per_period: Decimal | None = None
    max_annual: Decimal | None = None
    condition: dict[str, Any] | None = None
    source_template_id: UUID | None = None

    @classmethod
    def from_component(cls, component: ComponentDefinition) -> ComponentResponse:
        return cls.model_validate(component.to_dict())


class ResolvedTemplateResponse(BaseModel):
    template_id: UUID
    version: str
    fingerprint: str
    components: list[ComponentResponse]
    contributing_template_ids: list[UUID]

    @classmethod
    def from_resolved(cls, resolved: ResolvedTemplate) -> ResolvedTemplateResponse:
        return cls(
            template_id=resolved.template_id,
            version=str(resolved.version),
            fingerprint=resolved.fingerprint(),
            components=[ComponentResponse.from_component(c) for c in resolved.components],
            contributing_template_ids=list(resolved.contributing_template_ids),
        )


# ============================================================================
# Worker calculation schemas
# ============================================================================


class CalculationRequestBody(BaseModel):
    """Compensation input; omitted values fall back to the worker's assignment."""

    base_salary: Decimal | None = Field(default=None, ge=0)
    hourly_rate: Decimal | None = Field(default=None, ge=0)
    pay_frequency: str | None = None
    hours: Decimal | None = Field(default=None, ge=0)
    as_of_date: date | None = None


class LineItemResponse(BaseModel):
    component_code: str
    component_name: str
    category: str
    amount: Decimal
    calculation_metadata: dict[str, Any]


class PaySummaryResponse(BaseModel):
    total_earnings: Decimal
    total_deductions: Decimal
    total_taxes: Decimal
    net_pay: Decimal


class SkippedComponentResponse(BaseModel):
    component_code: str
    reason: str
    evidence: dict[str, Any] | None = None


class WorkerCalculationResponse(BaseModel):
    calculation_id: UUID
    worker_id: UUID
    structure_id: UUID
    template_id: UUID
    template_version: str
    as_of_date: date
    line_items: list[LineItemResponse]
    summary: PaySummaryResponse
    skipped_components: list[SkippedComponentResponse]

    @classmethod
    def from_result(cls, result: WorkerCalculationResult) -> WorkerCalculationResponse:
        return cls(
            calculation_id=result.calculation_id,
            worker_id=result.worker_id,
            structure_id=result.structure_id,
            template_id=result.template_id,
            template_version=result.template_version,
            as_of_date=result.as_of_date,
            line_items=[LineItemResponse.model_validate(line.to_dict()) for line in result.line_items],
            summary=PaySummaryResponse(
                total_earnings=result.summary.total_earnings,
                total_deductions=result.summary.total_deductions,
                total_taxes=result.summary.total_taxes,
                net_pay=result.summary.net_pay,
            ),
            skipped_components=[
                SkippedComponentResponse(
                    component_code=s.component_code, reason=s.reason, evidence=s.evidence
                )
                for s in result.skipped_components
            ],
        )


# ============================================================================
# Pattern and formula testing schemas
# ============================================================================


class PatternTestRequest(BaseModel):
    pattern: dict[str, Any]
    worker_ids: list[UUID] = Field(min_length=1)
    as_of_date: date | None = None


class WorkerPatternResult(BaseModel):
    worker_id: UUID
    qualified: bool
    evidence: dict[str, Any]


class PatternTestResponse(BaseModel):
    as_of_date: date
    total_tested: int
    qualified_count: int
    not_qualified_count: int
    results: list[WorkerPatternResult]

    @classmethod
    def from_summary(cls, summary: PatternTestSummary) -> PatternTestResponse:
        return cls(
            as_of_date=summary.as_of_date,
            total_tested=summary.total_tested,
            qualified_count=summary.qualified_count,
            not_qualified_count=summary.not_qualified_count,
            results=[
                WorkerPatternResult(
                    worker_id=worker_id,
                    qualified=result.qualified,
                    evidence=result.evidence.to_dict(),
                )
                for worker_id, result in summary.results.items()
            ],
        )


class FormulaTestRequest(BaseModel):
    formula: str
    variables: dict[str, Decimal] = Field(default_factory=dict)


class FormulaTestResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    success: bool
    formula: str
    result: Decimal | None = None
    message: str
    error: str | None = None
    variables: list[str]

    @classmethod
    def from_result(cls, result: FormulaTestResult) -> FormulaTestResponse:
        return cls.model_validate(result)
