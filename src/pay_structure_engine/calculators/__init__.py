"""Pay structure resolution and calculation engine."""

from pay_structure_engine.calculators.engine import (
    CalculationRequest,
    PayrollBatchResult,
    WorkerPayCalculator,
)
from pay_structure_engine.calculators.formula import FormulaEvaluator, FormulaTestResult
from pay_structure_engine.calculators.line_builder import LineItemBuilder
from pay_structure_engine.calculators.pattern_qualifier import (
    PatternEvidence,
    PatternQualifier,
    PatternResult,
)
from pay_structure_engine.calculators.template_resolver import TemplateResolver

__all__ = [
    "CalculationRequest",
    "FormulaEvaluator",
    "FormulaTestResult",
    "LineItemBuilder",
    "PatternEvidence",
    "PatternQualifier",
    "PatternResult",
    "PayrollBatchResult",
    "TemplateResolver",
    "WorkerPayCalculator",
]
