"""Temporal pattern descriptors used as component eligibility conditions.

A descriptor is stored as JSON inside a component's ``condition`` column, e.g.::

    {"pattern_type": "day_of_week", "day_of_week": "sunday",
     "consecutive_count": 3, "lookback_days": 90}

    {"pattern_type": "combined", "logical_operator": "AND",
     "patterns": [{...}, {...}]}

Descriptors are trees, never graphs; they are validated on construction.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, ClassVar, Mapping, Union

from pay_structure_engine.exceptions import ValidationError

MAX_CONSECUTIVE_COUNT = 365
MAX_LOOKBACK_DAYS = 730
DEFAULT_LOOKBACK_DAYS = 90

DAYS_OF_WEEK = (
    "monday",
    "tuesday",
    "wednesday",
    "thursday",
    "friday",
    "saturday",
    "sunday",
)


class PatternType(str, Enum):
    """Pattern descriptor variants."""

    DAY_OF_WEEK = "day_of_week"
    SHIFT_TYPE = "shift_type"
    LOCATION = "location"
    ROLE = "role"
    HOURS_THRESHOLD = "hours_threshold"
    COMBINED = "combined"


class ComparisonOperator(str, Enum):
    """Operators for hours threshold patterns."""

    GREATER_THAN = ">"
    LESS_THAN = "<"
    EQUALS = "="
    GREATER_OR_EQUAL = ">="
    LESS_OR_EQUAL = "<="

    @classmethod
    def parse(cls, value: str) -> ComparisonOperator:
        """Accept symbols as well as spelled-out names (``greater_than``)."""
        aliases = {
            "greater_than": cls.GREATER_THAN,
            "less_than": cls.LESS_THAN,
            "equals": cls.EQUALS,
            "==": cls.EQUALS,
            "greater_or_equal": cls.GREATER_OR_EQUAL,
            "less_or_equal": cls.LESS_OR_EQUAL,
        }
        if value in aliases:
            return aliases[value]
        try:
            return cls(value)
        except ValueError:
            raise ValidationError(f"Invalid comparison operator: {value}") from None


class LogicalOperator(str, Enum):
    """How combined patterns join their sub-patterns."""

    AND = "AND"
    OR = "OR"


@dataclass(frozen=True)
class TimeEntryRecord:
    """An approved attendance record as seen by the pattern qualifier."""

    entry_date: date
    hours_worked: Decimal
    shift_type_id: str | None = None
    location_id: str | None = None
    role_id: str | None = None


def _validate_window(consecutive_count: int, lookback_days: int) -> None:
    if not isinstance(consecutive_count, int) or isinstance(consecutive_count, bool):
        raise ValidationError("consecutive_count must be an integer")
    if not 1 <= consecutive_count <= MAX_CONSECUTIVE_COUNT:
        raise ValidationError(
            f"consecutive_count must be between 1 and {MAX_CONSECUTIVE_COUNT}"
        )
    if not isinstance(lookback_days, int) or isinstance(lookback_days, bool):
        raise ValidationError("lookback_days must be an integer")
    if not 1 <= lookback_days <= MAX_LOOKBACK_DAYS:
        raise ValidationError(f"lookback_days must be between 1 and {MAX_LOOKBACK_DAYS}")


def _require_identifier(value: str | None, field_name: str) -> None:
    if not value:
        raise ValidationError(f"{field_name} is required")


@dataclass(frozen=True)
class DayOfWeekPattern:
    """Worked the same weekday N weeks in a row."""

    day_of_week: str
    consecutive_count: int
    lookback_days: int = DEFAULT_LOOKBACK_DAYS

    pattern_type: ClassVar[PatternType] = PatternType.DAY_OF_WEEK
    cycle_days: ClassVar[int] = 7

    def __post_init__(self) -> None:
        if self.day_of_week not in DAYS_OF_WEEK:
            raise ValidationError(f"Invalid day_of_week: {self.day_of_week}")
        _validate_window(self.consecutive_count, self.lookback_days)

    def matches(self, entry: TimeEntryRecord) -> bool:
        return entry.entry_date.weekday() == DAYS_OF_WEEK.index(self.day_of_week)


@dataclass(frozen=True)
class ShiftTypePattern:
    """Worked a given shift type N calendar days in a row."""

    shift_type_id: str
    consecutive_count: int
    lookback_days: int = DEFAULT_LOOKBACK_DAYS

    pattern_type: ClassVar[PatternType] = PatternType.SHIFT_TYPE
    cycle_days: ClassVar[int] = 1

    def __post_init__(self) -> None:
        _require_identifier(self.shift_type_id, "shift_type_id")
        _validate_window(self.consecutive_count, self.lookback_days)

    def matches(self, entry: TimeEntryRecord) -> bool:
        return entry.shift_type_id is not None and str(entry.shift_type_id) == self.shift_type_id


@dataclass(frozen=True)
class LocationPattern:
    """Worked at a given location N calendar days in a row."""

    location_id: str
    consecutive_count: int
    lookback_days: int = DEFAULT_LOOKBACK_DAYS

    pattern_type: ClassVar[PatternType] = PatternType.LOCATION
    cycle_days: ClassVar[int] = 1

    def __post_init__(self) -> None:
        _require_identifier(self.location_id, "location_id")
        _validate_window(self.consecutive_count, self.lookback_days)

    def matches(self, entry: TimeEntryRecord) -> bool:
        return entry.location_id is not None and str(entry.location_id) == self.location_id


@dataclass(frozen=True)
class RolePattern:
    """Worked in a given role N calendar days in a row."""

    role_id: str
    consecutive_count: int
    lookback_days: int = DEFAULT_LOOKBACK_DAYS

    pattern_type: ClassVar[PatternType] = PatternType.ROLE
    cycle_days: ClassVar[int] = 1

    def __post_init__(self) -> None:
        _require_identifier(self.role_id, "role_id")
        _validate_window(self.consecutive_count, self.lookback_days)

    def matches(self, entry: TimeEntryRecord) -> bool:
        return entry.role_id is not None and str(entry.role_id) == self.role_id


@dataclass(frozen=True)
class HoursThresholdPattern:
    """Summed hours over N consecutive records compared against a threshold."""

    hours_threshold: Decimal
    comparison_operator: ComparisonOperator
    consecutive_count: int
    lookback_days: int = DEFAULT_LOOKBACK_DAYS

    pattern_type: ClassVar[PatternType] = PatternType.HOURS_THRESHOLD

    def __post_init__(self) -> None:
        if (
            self.hours_threshold is None
            or not self.hours_threshold.is_finite()
            or self.hours_threshold < 0
        ):
            raise ValidationError("hours_threshold must be a non-negative number")
        _validate_window(self.consecutive_count, self.lookback_days)


@dataclass(frozen=True)
class CombinedPattern:
    """AND / OR over sub-patterns."""

    logical_operator: LogicalOperator
    patterns: tuple[PatternDescriptor, ...]

    pattern_type: ClassVar[PatternType] = PatternType.COMBINED

    def __post_init__(self) -> None:
        if not self.patterns:
            raise ValidationError("Combined pattern requires at least one sub-pattern")


LeafPattern = Union[DayOfWeekPattern, ShiftTypePattern, LocationPattern, RolePattern]

PatternDescriptor = Union[
    DayOfWeekPattern,
    ShiftTypePattern,
    LocationPattern,
    RolePattern,
    HoursThresholdPattern,
    CombinedPattern,
]


def _int_field(payload: Mapping[str, Any], key: str, default: int | None = None) -> int:
    value = payload.get(key, default)
    if value is None:
        raise ValidationError(f"{key} is required")
    if isinstance(value, bool):
        raise ValidationError(f"{key} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{key} must be an integer") from None


def parse_pattern(
    payload: Mapping[str, Any],
    default_lookback_days: int = DEFAULT_LOOKBACK_DAYS,
) -> PatternDescriptor:
    """Build a descriptor from its JSON form, raising ValidationError if malformed."""
    if not isinstance(payload, Mapping) or not payload:
        raise ValidationError("Pattern descriptor must be a non-empty object")

    raw_type = payload.get("pattern_type")
    if raw_type == "station":
        raw_type = PatternType.LOCATION.value
    try:
        pattern_type = PatternType(raw_type)
    except ValueError:
        raise ValidationError(f"Invalid pattern_type: {raw_type}") from None

    if pattern_type == PatternType.COMBINED:
        try:
            operator = LogicalOperator(str(payload.get("logical_operator", "")).upper())
        except ValueError:
            raise ValidationError(
                f"Invalid logical_operator: {payload.get('logical_operator')}"
            ) from None
        children = payload.get("patterns") or []
        return CombinedPattern(
            logical_operator=operator,
            patterns=tuple(parse_pattern(child, default_lookback_days) for child in children),
        )

    consecutive_count = _int_field(payload, "consecutive_count")
    lookback_days = _int_field(payload, "lookback_days", default_lookback_days)

    if pattern_type == PatternType.DAY_OF_WEEK:
        return DayOfWeekPattern(
            day_of_week=str(payload.get("day_of_week", "")).lower(),
            consecutive_count=consecutive_count,
            lookback_days=lookback_days,
        )
    if pattern_type == PatternType.SHIFT_TYPE:
        return ShiftTypePattern(
            shift_type_id=str(payload.get("shift_type_id") or ""),
            consecutive_count=consecutive_count,
            lookback_days=lookback_days,
        )
    if pattern_type == PatternType.LOCATION:
        return LocationPattern(
            location_id=str(payload.get("location_id") or payload.get("station_id") or ""),
            consecutive_count=consecutive_count,
            lookback_days=lookback_days,
        )
    if pattern_type == PatternType.ROLE:
        return RolePattern(
            role_id=str(payload.get("role_id") or ""),
            consecutive_count=consecutive_count,
            lookback_days=lookback_days,
        )

    threshold = payload.get("hours_threshold")
    if threshold is None or isinstance(threshold, bool):
        raise ValidationError("hours_threshold is required")
    try:
        hours_threshold = Decimal(str(threshold))
    except InvalidOperation:
        raise ValidationError(f"Invalid hours_threshold: {threshold}") from None
    if not hours_threshold.is_finite():
        raise ValidationError(f"Invalid hours_threshold: {threshold}")
    return HoursThresholdPattern(
        hours_threshold=hours_threshold,
        comparison_operator=ComparisonOperator.parse(
            str(payload.get("comparison_operator", ""))
        ),
        consecutive_count=consecutive_count,
        lookback_days=lookback_days,
    )


def pattern_to_dict(pattern: PatternDescriptor) -> dict[str, Any]:
    """Serialize a descriptor back to its JSON form."""
    if isinstance(pattern, CombinedPattern):
        return {
            "pattern_type": pattern.pattern_type.value,
            "logical_operator": pattern.logical_operator.value,
            "patterns": [pattern_to_dict(child) for child in pattern.patterns],
        }

    data: dict[str, Any] = {
        "pattern_type": pattern.pattern_type.value,
        "consecutive_count": pattern.consecutive_count,
        "lookback_days": pattern.lookback_days,
    }
    if isinstance(pattern, DayOfWeekPattern):
        data["day_of_week"] = pattern.day_of_week
    elif isinstance(pattern, ShiftTypePattern):
        data["shift_type_id"] = pattern.shift_type_id
    elif isinstance(pattern, LocationPattern):
        data["location_id"] = pattern.location_id
    elif isinstance(pattern, RolePattern):
        data["role_id"] = pattern.role_id
    else:
        data["hours_threshold"] = str(pattern.hours_threshold)
        data["comparison_operator"] = pattern.comparison_operator.value
    return data
