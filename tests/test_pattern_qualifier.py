"""Tests for pattern descriptors and qualification."""

from datetime import date, timedelta
from decimal import Decimal
from uuid import uuid4

import pytest

from pay_structure_engine.calculators.pattern_qualifier import (
    PatternQualifier,
    compare_hours,
    find_consecutive_runs,
)
from pay_structure_engine.calculators.patterns import (
    CombinedPattern,
    ComparisonOperator,
    DayOfWeekPattern,
    HoursThresholdPattern,
    LocationPattern,
    LogicalOperator,
    ShiftTypePattern,
    parse_pattern,
    pattern_to_dict,
)
from pay_structure_engine.exceptions import AttendanceUnavailableError, ValidationError

AS_OF = date(2024, 3, 31)  # a Sunday
SUNDAYS = [AS_OF - timedelta(weeks=n) for n in range(12)]


class TestParsePattern:
    """Test descriptor parsing and validation."""

    def test_day_of_week(self):
        pattern = parse_pattern(
            {"pattern_type": "day_of_week", "day_of_week": "Sunday", "consecutive_count": 3}
        )
        assert pattern == DayOfWeekPattern(day_of_week="sunday", consecutive_count=3)
        assert pattern.lookback_days == 90

    def test_default_lookback_override(self):
        pattern = parse_pattern(
            {"pattern_type": "role", "role_id": "lead", "consecutive_count": 2},
            default_lookback_days=30,
        )
        assert pattern.lookback_days == 30

    def test_station_alias(self):
        pattern = parse_pattern(
            {"pattern_type": "station", "station_id": "ST-1", "consecutive_count": 2}
        )
        assert isinstance(pattern, LocationPattern)
        assert pattern.location_id == "ST-1"

    def test_hours_threshold_operator_aliases(self):
        pattern = parse_pattern(
            {
                "pattern_type": "hours_threshold",
                "hours_threshold": 40,
                "comparison_operator": "greater_than",
                "consecutive_count": 5,
            }
        )
        assert isinstance(pattern, HoursThresholdPattern)
        assert pattern.comparison_operator == ComparisonOperator.GREATER_THAN
        assert pattern.hours_threshold == Decimal("40")

    def test_combined(self):
        pattern = parse_pattern(
            {
                "pattern_type": "combined",
                "logical_operator": "or",
                "patterns": [
                    {"pattern_type": "shift_type", "shift_type_id": "night", "consecutive_count": 2},
                    {"pattern_type": "day_of_week", "day_of_week": "saturday", "consecutive_count": 2},
                ],
            }
        )
        assert isinstance(pattern, CombinedPattern)
        assert pattern.logical_operator == LogicalOperator.OR
        assert len(pattern.patterns) == 2

    def test_to_dict_parses_back(self):
        payload = {
            "pattern_type": "combined",
            "logical_operator": "AND",
            "patterns": [
                {"pattern_type": "location", "location_id": "HQ", "consecutive_count": 4,
                 "lookback_days": 60},
            ],
        }
        pattern = parse_pattern(payload)
        assert parse_pattern(pattern_to_dict(pattern)) == pattern

    @pytest.mark.parametrize(
        "payload",
        [
            {},
            {"pattern_type": "moon_phase", "consecutive_count": 1},
            {"pattern_type": "day_of_week", "day_of_week": "funday", "consecutive_count": 1},
            {"pattern_type": "day_of_week", "day_of_week": "monday", "consecutive_count": 0},
            {"pattern_type": "day_of_week", "day_of_week": "monday", "consecutive_count": 366},
            {"pattern_type": "day_of_week", "day_of_week": "monday", "consecutive_count": 2,
             "lookback_days": 731},
            {"pattern_type": "shift_type", "consecutive_count": 2},
            {"pattern_type": "hours_threshold", "comparison_operator": ">", "consecutive_count": 2},
            {"pattern_type": "hours_threshold", "hours_threshold": 8,
             "comparison_operator": "!=", "consecutive_count": 2},
            {"pattern_type": "hours_threshold", "hours_threshold": "NaN",
             "comparison_operator": ">", "consecutive_count": 2},
            {"pattern_type": "hours_threshold", "hours_threshold": "Infinity",
             "comparison_operator": ">", "consecutive_count": 2},
            {"pattern_type": "hours_threshold", "hours_threshold": float("nan"),
             "comparison_operator": ">", "consecutive_count": 2},
            {"pattern_type": "combined", "logical_operator": "XOR", "patterns": []},
            {"pattern_type": "combined", "logical_operator": "AND", "patterns": []},
        ],
    )
    def test_invalid(self, payload):
        with pytest.raises(ValidationError):
            parse_pattern(payload)


class TestConsecutiveRuns:
    """Test run detection."""

    def test_empty(self):
        assert find_consecutive_runs([], 7, 1) == (0, [])

    def test_weekly_run(self):
        dates = [date(2024, 3, 3), date(2024, 3, 10), date(2024, 3, 17)]
        max_count, runs = find_consecutive_runs(dates, 7, 3)
        assert max_count == 3
        assert len(runs) == 1
        assert runs[0].start_date == date(2024, 3, 3)
        assert runs[0].end_date == date(2024, 3, 17)

    def test_gap_breaks_run(self):
        dates = [date(2024, 2, 4), date(2024, 2, 18), date(2024, 3, 3)]
        max_count, runs = find_consecutive_runs(dates, 7, 2)
        assert max_count == 1
        assert runs == []

    def test_runs_sorted_longest_first(self):
        dates = [date(2024, 1, d) for d in (1, 2, 5, 6, 7, 8)]
        max_count, runs = find_consecutive_runs(dates, 1, 2)
        assert max_count == 4
        assert [run.count for run in runs] == [4, 2]

    def test_duplicates_ignored(self):
        dates = [date(2024, 1, 1), date(2024, 1, 1), date(2024, 1, 2)]
        assert find_consecutive_runs(dates, 1, 1)[0] == 2


class TestCompareHours:
    def test_operators(self):
        assert compare_hours(Decimal("41"), ComparisonOperator.GREATER_THAN, Decimal("40"))
        assert not compare_hours(Decimal("40"), ComparisonOperator.GREATER_THAN, Decimal("40"))
        assert compare_hours(Decimal("40"), ComparisonOperator.GREATER_OR_EQUAL, Decimal("40"))
        assert compare_hours(Decimal("39"), ComparisonOperator.LESS_THAN, Decimal("40"))
        assert compare_hours(Decimal("40"), ComparisonOperator.LESS_OR_EQUAL, Decimal("40"))

    def test_equals_tolerance(self):
        assert compare_hours(Decimal("40.005"), ComparisonOperator.EQUALS, Decimal("40"))
        assert not compare_hours(Decimal("40.01"), ComparisonOperator.EQUALS, Decimal("40"))


class TestPatternQualifier:
    """Test qualification against attendance."""

    async def test_consecutive_sundays_qualify(self, attendance):
        worker_id = uuid4()
        for sunday in SUNDAYS[:3]:
            attendance.add(worker_id, sunday)

        pattern = DayOfWeekPattern(day_of_week="sunday", consecutive_count=3)
        result = await PatternQualifier(attendance).qualifies(worker_id, pattern, AS_OF)

        assert result.qualified is True
        assert result.evidence.max_consecutive == 3
        assert result.evidence.total_matching_days == 3
        assert result.evidence.window_start == AS_OF - timedelta(days=90)
        assert result.evidence.window_end == AS_OF

    async def test_two_week_gap_breaks_sunday_run(self, attendance):
        worker_id = uuid4()
        for sunday in (date(2024, 2, 4), date(2024, 2, 18), date(2024, 3, 3)):
            attendance.add(worker_id, sunday)

        pattern = DayOfWeekPattern(day_of_week="sunday", consecutive_count=2)
        result = await PatternQualifier(attendance).qualifies(worker_id, pattern, AS_OF)

        assert result.qualified is False
        assert result.evidence.max_consecutive == 1
        assert result.evidence.total_matching_days == 3

    async def test_other_weekdays_ignored(self, attendance):
        worker_id = uuid4()
        for sunday in SUNDAYS[:3]:
            attendance.add(worker_id, sunday - timedelta(days=1))  # Saturdays

        pattern = DayOfWeekPattern(day_of_week="sunday", consecutive_count=1)
        result = await PatternQualifier(attendance).qualifies(worker_id, pattern, AS_OF)
        assert result.qualified is False
        assert result.evidence.total_matching_days == 0

    async def test_entries_outside_lookback_ignored(self, attendance):
        worker_id = uuid4()
        for sunday in SUNDAYS[:3]:
            attendance.add(worker_id, sunday)

        pattern = DayOfWeekPattern(day_of_week="sunday", consecutive_count=3, lookback_days=10)
        result = await PatternQualifier(attendance).qualifies(worker_id, pattern, AS_OF)
        assert result.qualified is False
        assert result.evidence.max_consecutive == 2

    async def test_shift_type_daily_run(self, attendance):
        worker_id = uuid4()
        for offset in range(3):
            attendance.add(worker_id, AS_OF - timedelta(days=offset), shift_type_id="night")
        attendance.add(worker_id, AS_OF - timedelta(days=3), shift_type_id="day")

        pattern = ShiftTypePattern(shift_type_id="night", consecutive_count=3)
        result = await PatternQualifier(attendance).qualifies(worker_id, pattern, AS_OF)
        assert result.qualified is True
        assert result.evidence.runs[0].count == 3

    async def test_hours_threshold(self, attendance):
        worker_id = uuid4()
        for offset, hours in enumerate(["10", "12", "9", "4"]):
            attendance.add(worker_id, AS_OF - timedelta(days=offset), hours=hours)

        pattern = HoursThresholdPattern(
            hours_threshold=Decimal("30"),
            comparison_operator=ComparisonOperator.GREATER_OR_EQUAL,
            consecutive_count=3,
        )
        result = await PatternQualifier(attendance).qualifies(worker_id, pattern, AS_OF)

        assert result.qualified is True
        windows = result.evidence.qualifying_windows
        assert len(windows) == 1
        assert windows[0].total_hours == Decimal("31")

    async def test_hours_threshold_too_few_records(self, attendance):
        worker_id = uuid4()
        attendance.add(worker_id, AS_OF, hours="50")

        pattern = HoursThresholdPattern(
            hours_threshold=Decimal("1"),
            comparison_operator=ComparisonOperator.GREATER_THAN,
            consecutive_count=2,
        )
        result = await PatternQualifier(attendance).qualifies(worker_id, pattern, AS_OF)
        assert result.qualified is False

    async def test_combined_and_or(self, attendance):
        worker_id = uuid4()
        for sunday in SUNDAYS[:2]:
            attendance.add(worker_id, sunday, location_id="HQ")

        sundays = DayOfWeekPattern(day_of_week="sunday", consecutive_count=2)
        night = ShiftTypePattern(shift_type_id="night", consecutive_count=1)
        qualifier = PatternQualifier(attendance)

        both = await qualifier.qualifies(
            worker_id, CombinedPattern(LogicalOperator.AND, (sundays, night)), AS_OF
        )
        either = await qualifier.qualifies(
            worker_id, CombinedPattern(LogicalOperator.OR, (sundays, night)), AS_OF
        )

        assert both.qualified is False
        assert either.qualified is True
        assert [r.qualified for r in either.evidence.sub_results] == [True, False]

    async def test_attendance_fetched_once_per_window(self, attendance):
        worker_id = uuid4()
        attendance.add(worker_id, AS_OF)
        qualifier = PatternQualifier(attendance)
        pattern = DayOfWeekPattern(day_of_week="sunday", consecutive_count=1)

        await qualifier.qualifies(worker_id, pattern, AS_OF)
        await qualifier.qualifies(worker_id, pattern, AS_OF)
        assert attendance.calls == 1

    async def test_unavailable_attendance_fails_closed(self, attendance):
        worker_id = uuid4()
        attendance.failing.add(worker_id)
        pattern = DayOfWeekPattern(day_of_week="sunday", consecutive_count=1)

        result = await PatternQualifier(attendance).qualifies(worker_id, pattern, AS_OF)

        assert result.qualified is False
        assert "unreachable" in result.evidence.error

    async def test_evaluate_raises_when_attendance_unavailable(self, attendance):
        worker_id = uuid4()
        attendance.failing.add(worker_id)
        pattern = DayOfWeekPattern(day_of_week="sunday", consecutive_count=1)

        with pytest.raises(AttendanceUnavailableError):
            await PatternQualifier(attendance).evaluate(worker_id, pattern, AS_OF)

    async def test_test_pattern_summary(self, attendance):
        regular, occasional = uuid4(), uuid4()
        for sunday in SUNDAYS[:4]:
            attendance.add(regular, sunday)
        attendance.add(occasional, SUNDAYS[0])

        pattern = DayOfWeekPattern(day_of_week="sunday", consecutive_count=4)
        summary = await PatternQualifier(attendance).test_pattern(
            pattern, [regular, occasional], AS_OF
        )

        assert summary.total_tested == 2
        assert summary.qualified_workers == [regular]
        assert summary.not_qualified_workers == [occasional]
        assert summary.qualified_count == 1
