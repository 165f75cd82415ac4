"""Type definitions for pay structure resolution and calculation."""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, InvalidOperation
from enum import Enum
from types import MappingProxyType
from typing import Any, ClassVar, Mapping, Union
from uuid import UUID

from pay_structure_engine.calculators.patterns import (
    PatternDescriptor,
    parse_pattern,
    pattern_to_dict,
)
from pay_structure_engine.config import get_settings
from pay_structure_engine.exceptions import ValidationError

LATEST_VERSION = "latest"


class ComponentCategory(str, Enum):
    """Pay component categories."""

    EARNING = "earning"
    DEDUCTION = "deduction"
    TAX = "tax"
    BENEFIT = "benefit"
    EMPLOYER_COST = "employer_cost"
    REIMBURSEMENT = "reimbursement"


class CalculationType(str, Enum):
    """Calculation config variants."""

    FIXED = "fixed"
    PERCENTAGE = "percentage"
    FORMULA = "formula"
    HOURLY_RATE = "hourly_rate"
    TIERED = "tiered"
    EXTERNAL = "external"


class MergeMode(str, Enum):
    """How an included template's components combine with those already merged."""

    MERGE = "merge"  # first writer wins
    OVERRIDE = "override"  # last writer wins
    ADDITIVE = "additive"  # fixed amounts are summed


class OverrideType(str, Enum):
    """Worker-level component override kinds."""

    AMOUNT = "amount"
    PERCENTAGE = "percentage"
    FORMULA = "formula"
    RATE = "rate"
    DISABLED = "disabled"
    CONDITION = "condition"


class PayFrequency(str, Enum):
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    SEMIMONTHLY = "semimonthly"
    MONTHLY = "monthly"


def to_decimal(value: Any, field_name: str) -> Decimal:
    """Coerce a JSON scalar into a Decimal, raising ValidationError on junk."""
    if value is None or isinstance(value, bool):
        raise ValidationError(f"{field_name} must be a number")
    try:
        result = Decimal(str(value))
    except InvalidOperation:
        raise ValidationError(f"{field_name} must be a number, got {value!r}") from None
    if not result.is_finite():
        raise ValidationError(f"{field_name} must be finite")
    return result


def _optional_decimal(value: Any, field_name: str) -> Decimal | None:
    return None if value is None else to_decimal(value, field_name)


def _optional_str(value: Decimal | None) -> str | None:
    return None if value is None else str(value)


@dataclass(frozen=True, order=True)
class TemplateVersion:
    """Semantic version of a template."""

    major: int
    minor: int = 0
    patch: int = 0

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"

    @classmethod
    def parse(cls, value: str) -> TemplateVersion:
        parts = str(value).split(".")
        if len(parts) != 3 or not all(part.isdigit() for part in parts):
            raise ValidationError(f"Invalid version string: {value}")
        return cls(int(parts[0]), int(parts[1]), int(parts[2]))

    def bump(self, version_type: str) -> TemplateVersion:
        """Return the next version for a ``major``, ``minor`` or ``patch`` change."""
        if version_type == "major":
            return TemplateVersion(self.major + 1, 0, 0)
        if version_type == "minor":
            return TemplateVersion(self.major, self.minor + 1, 0)
        if version_type == "patch":
            return TemplateVersion(self.major, self.minor, self.patch + 1)
        raise ValidationError(f"Invalid version type: {version_type}")


@dataclass(frozen=True)
class TemplateInfo:
    """Identity and lifecycle attributes of a template."""

    template_id: UUID
    organization_id: UUID
    template_code: str
    template_name: str
    version: TemplateVersion
    status: str = "draft"
    currency: str = "USD"
    pay_frequency: str | None = None
    is_organization_default: bool = False
    effective_from: date | None = None
    effective_to: date | None = None


# === Calculation configs ===


@dataclass(frozen=True)
class FixedCalculation:
    amount: Decimal

    calculation_type: ClassVar[CalculationType] = CalculationType.FIXED

    def __post_init__(self) -> None:
        if not isinstance(self.amount, Decimal):
            raise ValidationError("Fixed calculation requires an amount")


@dataclass(frozen=True)
class PercentageCalculation:
    """``rate`` is a fraction (0.04 for 4%) of the context value named ``percentage_of``."""

    percentage_of: str
    rate: Decimal

    calculation_type: ClassVar[CalculationType] = CalculationType.PERCENTAGE

    def __post_init__(self) -> None:
        if not self.percentage_of:
            raise ValidationError("Percentage calculation requires percentage_of")
        if not isinstance(self.rate, Decimal) or self.rate < 0:
            raise ValidationError("Percentage calculation requires a non-negative rate")


@dataclass(frozen=True)
class FormulaCalculation:
    expression: str

    calculation_type: ClassVar[CalculationType] = CalculationType.FORMULA

    def __post_init__(self) -> None:
        if not isinstance(self.expression, str) or not self.expression.strip():
            raise ValidationError("Formula calculation requires a non-empty formula")


@dataclass(frozen=True)
class HourlyRateCalculation:
    """hours x effective hourly rate x multiplier (1.5 for overtime)."""

    rate_multiplier: Decimal = Decimal("1")
    hours_field: str = "hours"
    rate: Decimal | None = None  # None = worker's hourly rate

    calculation_type: ClassVar[CalculationType] = CalculationType.HOURLY_RATE

    def __post_init__(self) -> None:
        if self.rate_multiplier < 0:
            raise ValidationError("rate_multiplier must be non-negative")
        if self.rate is not None and self.rate < 0:
            raise ValidationError("rate must be non-negative")


@dataclass(frozen=True)
class TierBracket:
    """One bracket of a tiered calculation."""

    min_amount: Decimal
    max_amount: Decimal | None  # None = no upper limit
    rate: Decimal  # As decimal, e.g., 0.15 for 15%
    flat_amount: Decimal = Decimal("0")  # Flat amount at bracket start


@dataclass(frozen=True)
class TieredCalculation:
    basis: str
    tiers: tuple[TierBracket, ...]

    calculation_type: ClassVar[CalculationType] = CalculationType.TIERED

    def __post_init__(self) -> None:
        if not self.basis:
            raise ValidationError("Tiered calculation requires a basis")
        if not self.tiers:
            raise ValidationError("Tiered calculation requires at least one tier")

    @property
    def sorted_tiers(self) -> list[TierBracket]:
        return sorted(self.tiers, key=lambda tier: tier.min_amount)


@dataclass(frozen=True)
class ExternalCalculation:
    """Delegated to an ExternalCalculator registered under ``service``."""

    service: str
    parameters: Mapping[str, Any] = field(default_factory=dict)

    calculation_type: ClassVar[CalculationType] = CalculationType.EXTERNAL

    def __post_init__(self) -> None:
        if not self.service:
            raise ValidationError("External calculation requires a service name")


CalculationConfig = Union[
    FixedCalculation,
    PercentageCalculation,
    FormulaCalculation,
    HourlyRateCalculation,
    TieredCalculation,
    ExternalCalculation,
]


def calculation_from_dict(calculation_type: str, config: Mapping[str, Any]) -> CalculationConfig:
    """Build a calculation config from its persisted type and JSON body."""
    try:
        kind = CalculationType(calculation_type)
    except ValueError:
        raise ValidationError(f"Invalid calculation type: {calculation_type}") from None
    config = config or {}

    if kind == CalculationType.FIXED:
        return FixedCalculation(amount=to_decimal(config.get("amount"), "amount"))
    if kind == CalculationType.PERCENTAGE:
        return PercentageCalculation(
            percentage_of=str(config.get("percentage_of") or ""),
            rate=to_decimal(config.get("rate"), "rate"),
        )
    if kind == CalculationType.FORMULA:
        return FormulaCalculation(expression=str(config.get("formula") or ""))
    if kind == CalculationType.HOURLY_RATE:
        return HourlyRateCalculation(
            rate_multiplier=to_decimal(config.get("rate_multiplier", "1"), "rate_multiplier"),
            hours_field=str(config.get("hours_field") or "hours"),
            rate=_optional_decimal(config.get("rate"), "rate"),
        )
    if kind == CalculationType.TIERED:
        tiers = tuple(
            TierBracket(
                min_amount=to_decimal(tier.get("min_amount", "0"), "min_amount"),
                max_amount=_optional_decimal(tier.get("max_amount"), "max_amount"),
                rate=to_decimal(tier.get("rate", "0"), "rate"),
                flat_amount=to_decimal(tier.get("flat_amount", "0"), "flat_amount"),
            )
            for tier in config.get("tiers") or []
        )
        return TieredCalculation(basis=str(config.get("basis") or ""), tiers=tiers)
    return ExternalCalculation(
        service=str(config.get("service") or ""),
        parameters=dict(config.get("parameters") or {}),
    )


def calculation_to_dict(calculation: CalculationConfig) -> dict[str, Any]:
    """Serialize the JSON body of a calculation config (type is stored separately)."""
    if isinstance(calculation, FixedCalculation):
        return {"amount": str(calculation.amount)}
    if isinstance(calculation, PercentageCalculation):
        return {"percentage_of": calculation.percentage_of, "rate": str(calculation.rate)}
    if isinstance(calculation, FormulaCalculation):
        return {"formula": calculation.expression}
    if isinstance(calculation, HourlyRateCalculation):
        return {
            "rate_multiplier": str(calculation.rate_multiplier),
            "hours_field": calculation.hours_field,
            "rate": _optional_str(calculation.rate),
        }
    if isinstance(calculation, TieredCalculation):
        return {
            "basis": calculation.basis,
            "tiers": [
                {
                    "min_amount": str(tier.min_amount),
                    "max_amount": _optional_str(tier.max_amount),
                    "rate": str(tier.rate),
                    "flat_amount": str(tier.flat_amount),
                }
                for tier in calculation.tiers
            ],
        }
    return {"service": calculation.service, "parameters": dict(calculation.parameters)}


@dataclass(frozen=True)
class ValueLimits:
    """Bounds applied to a component's computed amount.

    ``max_per_period`` caps a single calculation. ``max_annual`` is stored and
    carried through resolution but not enforced: it needs year-to-date totals,
    which the engine does not track.
    """

    min_amount: Decimal | None = None
    max_amount: Decimal | None = None
    max_per_period: Decimal | None = None
    max_annual: Decimal | None = None

    def tightened(self, min_amount: Decimal | None, max_amount: Decimal | None) -> ValueLimits:
        """Narrow the bounds; an override can never widen them."""
        new_min = self.min_amount
        if min_amount is not None:
            new_min = min_amount if new_min is None else max(new_min, min_amount)
        new_max = self.max_amount
        if max_amount is not None:
            new_max = max_amount if new_max is None else min(new_max, max_amount)
        return ValueLimits(new_min, new_max, self.max_per_period, self.max_annual)

    def clamp(self, amount: Decimal) -> Decimal:
        if self.min_amount is not None and amount < self.min_amount:
            amount = self.min_amount
        if self.max_amount is not None and amount > self.max_amount:
            amount = self.max_amount
        if self.max_per_period is not None and amount > self.max_per_period:
            amount = self.max_per_period
        return amount


@dataclass(frozen=True)
class ComponentDefinition:
    """A pay component as it appears in a (resolved) template."""

    code: str
    name: str
    category: ComponentCategory
    calculation: CalculationConfig
    sequence_order: int = 0
    affects_gross_pay: bool = True
    affects_net_pay: bool = True
    is_taxable: bool = True
    is_mandatory: bool = False
    limits: ValueLimits = field(default_factory=ValueLimits)
    condition: PatternDescriptor | None = None
    source_template_id: UUID | None = None

    def __post_init__(self) -> None:
        if not self.code:
            raise ValidationError("Component code is required")

    @property
    def calculation_type(self) -> CalculationType:
        return self.calculation.calculation_type

    @property
    def sort_key(self) -> tuple[int, str]:
        return (self.sequence_order, self.code)

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "name": self.name,
            "category": self.category.value,
            "calculation_type": self.calculation_type.value,
            "calculation": calculation_to_dict(self.calculation),
            "sequence_order": self.sequence_order,
            "affects_gross_pay": self.affects_gross_pay,
            "affects_net_pay": self.affects_net_pay,
            "is_taxable": self.is_taxable,
            "is_mandatory": self.is_mandatory,
            "min_amount": _optional_str(self.limits.min_amount),
            "max_amount": _optional_str(self.limits.max_amount),
            "max_per_period": _optional_str(self.limits.max_per_period),
            "max_annual": _optional_str(self.limits.max_annual),
            "condition": pattern_to_dict(self.condition) if self.condition else None,
            "source_template_id": str(self.source_template_id) if self.source_template_id else None,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ComponentDefinition:
        try:
            category = ComponentCategory(data["category"])
        except ValueError:
            raise ValidationError(f"Invalid component category: {data['category']}") from None
        source = data.get("source_template_id")
        return cls(
            code=data["code"],
            name=data.get("name") or data["code"],
            category=category,
            calculation=calculation_from_dict(data["calculation_type"], data.get("calculation") or {}),
            sequence_order=int(data.get("sequence_order", 0)),
            affects_gross_pay=bool(data.get("affects_gross_pay", True)),
            affects_net_pay=bool(data.get("affects_net_pay", True)),
            is_taxable=bool(data.get("is_taxable", True)),
            is_mandatory=bool(data.get("is_mandatory", False)),
            limits=ValueLimits(
                min_amount=_optional_decimal(data.get("min_amount"), "min_amount"),
                max_amount=_optional_decimal(data.get("max_amount"), "max_amount"),
                max_per_period=_optional_decimal(data.get("max_per_period"), "max_per_period"),
                max_annual=_optional_decimal(data.get("max_annual"), "max_annual"),
            ),
            condition=(
                parse_pattern(data["condition"], get_settings().pattern_default_lookback_days)
                if data.get("condition")
                else None
            ),
            source_template_id=UUID(source) if source else None,
        )


@dataclass(frozen=True)
class ComponentFilter:
    """Allow-list or deny-list of component codes for an inclusion."""

    include: frozenset[str] | None = None
    exclude: frozenset[str] | None = None

    def allows(self, code: str) -> bool:
        if self.include is not None and code not in self.include:
            return False
        if self.exclude is not None and code in self.exclude:
            return False
        return True

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> ComponentFilter | None:
        if not data:
            return None
        include = data.get("include")
        exclude = data.get("exclude")
        return cls(
            include=frozenset(include) if include is not None else None,
            exclude=frozenset(exclude) if exclude is not None else None,
        )

    def to_dict(self) -> dict[str, list[str]]:
        data: dict[str, list[str]] = {}
        if self.include is not None:
            data["include"] = sorted(self.include)
        if self.exclude is not None:
            data["exclude"] = sorted(self.exclude)
        return data


def _effective_on(as_of: date, start: date | None, end: date | None) -> bool:
    if start is not None and start > as_of:
        return False
    if end is not None and end < as_of:
        return False
    return True


@dataclass(frozen=True)
class InclusionRule:
    """Directed edge: parent template includes another template by code."""

    inclusion_id: UUID
    parent_template_id: UUID
    included_template_code: str
    priority: int
    merge_mode: MergeMode = MergeMode.MERGE
    version_constraint: str = LATEST_VERSION
    pinned_template_id: UUID | None = None
    component_filter: ComponentFilter | None = None
    effective_from: date | None = None
    effective_to: date | None = None
    is_active: bool = True

    def is_effective_on(self, as_of: date) -> bool:
        return self.is_active and _effective_on(as_of, self.effective_from, self.effective_to)


@dataclass(frozen=True)
class WorkerAssignment:
    """A worker's current pay structure."""

    structure_id: UUID
    worker_id: UUID
    organization_id: UUID
    template_id: UUID
    template_version: str | None = None
    base_salary: Decimal | None = None
    hourly_rate: Decimal | None = None
    pay_frequency: str | None = None
    currency: str = "USD"
    effective_from: date | None = None
    effective_to: date | None = None


@dataclass(frozen=True)
class ComponentOverride:
    """Worker-specific change to one component."""

    component_code: str
    override_type: OverrideType
    reason: str
    amount: Decimal | None = None
    percentage: Decimal | None = None  # fraction, like PercentageCalculation.rate
    formula: str | None = None
    rate: Decimal | None = None
    condition: PatternDescriptor | None = None
    min_amount: Decimal | None = None
    max_amount: Decimal | None = None
    is_disabled: bool = False
    effective_from: date | None = None
    effective_to: date | None = None
    override_id: UUID | None = None

    def __post_init__(self) -> None:
        if not self.reason or not self.reason.strip():
            raise ValidationError("Override reason is required")
        required = {
            OverrideType.AMOUNT: self.amount,
            OverrideType.PERCENTAGE: self.percentage,
            OverrideType.FORMULA: self.formula,
            OverrideType.RATE: self.rate,
            OverrideType.CONDITION: self.condition,
        }
        if self.override_type in required and required[self.override_type] is None:
            raise ValidationError(
                f"Override of type '{self.override_type.value}' requires a "
                f"{self.override_type.value} value"
            )

    @property
    def disables_component(self) -> bool:
        return self.is_disabled or self.override_type == OverrideType.DISABLED

    def is_effective_on(self, as_of: date) -> bool:
        return _effective_on(as_of, self.effective_from, self.effective_to)


@dataclass(frozen=True)
class CompensationInput:
    """Per-calculation compensation; missing values fall back to the assignment."""

    base_salary: Decimal | None = None
    hourly_rate: Decimal | None = None
    pay_frequency: str | None = None
    hours: Decimal | None = None


@dataclass(frozen=True)
class ResolutionCacheKey:
    template_id: UUID
    version: TemplateVersion
    as_of: date | None = None

    @property
    def cache_key(self) -> str:
        as_of = self.as_of.isoformat() if self.as_of else "current"
        return f"{self.template_id}:{self.version}:{as_of}"


@dataclass(frozen=True)
class ResolvedTemplate:
    """Flattened, ordered component list for one template."""

    template_id: UUID
    version: TemplateVersion
    components: tuple[ComponentDefinition, ...]
    contributing_template_ids: tuple[UUID, ...]

    @property
    def component_codes(self) -> list[str]:
        return [component.code for component in self.components]

    def get(self, code: str) -> ComponentDefinition | None:
        for component in self.components:
            if component.code == code:
                return component
        return None

    def fingerprint(self) -> str:
        """Deterministic hash of the resolved component set."""
        data = {
            "template_id": str(self.template_id),
            "version": str(self.version),
            "components": [component.to_dict() for component in self.components],
        }
        json_str = json.dumps(data, sort_keys=True)
        return hashlib.sha256(json_str.encode()).hexdigest()[:32]

    def to_cache_dict(self) -> dict[str, Any]:
        return {
            "components": [component.to_dict() for component in self.components],
            "contributing_template_ids": [str(tid) for tid in self.contributing_template_ids],
        }

    @classmethod
    def from_cache_dict(
        cls, template_id: UUID, version: TemplateVersion, data: Mapping[str, Any]
    ) -> ResolvedTemplate:
        return cls(
            template_id=template_id,
            version=version,
            components=tuple(ComponentDefinition.from_dict(c) for c in data["components"]),
            contributing_template_ids=tuple(
                UUID(tid) for tid in data.get("contributing_template_ids", [])
            ),
        )


# === Calculation pipeline ===


@dataclass(frozen=True)
class EvaluationContext:
    """Named values visible to components, extended one line item at a time.

    Never mutated: ``with_line`` returns a new context.
    """

    values: Mapping[str, Decimal]
    gross_earnings: Decimal = Decimal("0")

    @classmethod
    def seed(cls, values: Mapping[str, Decimal | None]) -> EvaluationContext:
        return cls(
            values=MappingProxyType({k: v for k, v in values.items() if v is not None}),
        )

    def lookup(self, name: str) -> Decimal | None:
        if name == "gross_earnings":
            return self.gross_earnings
        return self.values.get(name)

    def with_line(self, code: str, amount: Decimal, adds_to_gross: bool) -> EvaluationContext:
        values = dict(self.values)
        values[code] = amount
        gross = self.gross_earnings + amount if adds_to_gross else self.gross_earnings
        return EvaluationContext(values=MappingProxyType(values), gross_earnings=gross)

    def as_variables(self) -> dict[str, Decimal]:
        variables = dict(self.values)
        variables["gross_earnings"] = self.gross_earnings
        return variables


@dataclass(frozen=True)
class LineItem:
    """One computed component of a worker's pay."""

    component_code: str
    component_name: str
    category: ComponentCategory
    amount: Decimal
    calculation_metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "component_code": self.component_code,
            "component_name": self.component_name,
            "category": self.category.value,
            "amount": str(self.amount),
            "calculation_metadata": self.calculation_metadata,
        }


@dataclass(frozen=True)
class PaySummary:
    total_earnings: Decimal
    total_deductions: Decimal
    total_taxes: Decimal
    net_pay: Decimal


@dataclass(frozen=True)
class SkippedComponent:
    component_code: str
    reason: str  # 'disabled' or 'condition_not_met'
    evidence: dict[str, Any] | None = None


@dataclass(frozen=True)
class WorkerCalculationResult:
    """Result of calculating pay for one worker."""

    worker_id: UUID
    organization_id: UUID
    calculation_id: UUID
    structure_id: UUID
    template_id: UUID
    template_version: str
    as_of_date: date
    line_items: tuple[LineItem, ...]
    summary: PaySummary
    skipped_components: tuple[SkippedComponent, ...] = ()

    def get_line(self, code: str) -> LineItem | None:
        for line in self.line_items:
            if line.component_code == code:
                return line
        return None
