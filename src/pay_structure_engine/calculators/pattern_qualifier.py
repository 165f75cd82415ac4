"""Temporal pattern qualification against approved attendance."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from typing import Any, Iterable, Sequence
from uuid import UUID

from pay_structure_engine.calculators.patterns import (
    CombinedPattern,
    ComparisonOperator,
    HoursThresholdPattern,
    LeafPattern,
    LogicalOperator,
    PatternDescriptor,
    TimeEntryRecord,
)
from pay_structure_engine.calculators.sources import AttendanceSource
from pay_structure_engine.exceptions import AttendanceUnavailableError

logger = logging.getLogger(__name__)

EQUALS_TOLERANCE = Decimal("0.01")


@dataclass(frozen=True)
class ConsecutiveRun:
    start_date: date
    end_date: date
    count: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat(),
            "count": self.count,
        }


@dataclass(frozen=True)
class HoursWindow:
    """A run of consecutive records whose summed hours met the threshold."""

    start_date: date
    end_date: date
    total_hours: Decimal

    def to_dict(self) -> dict[str, Any]:
        return {
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat(),
            "total_hours": str(self.total_hours),
        }


@dataclass
class PatternEvidence:
    """Why a pattern did or did not qualify."""

    pattern_type: str
    required_count: int | None = None
    max_consecutive: int = 0
    total_matching_days: int = 0
    matching_dates: list[date] = field(default_factory=list)
    runs: list[ConsecutiveRun] = field(default_factory=list)
    qualifying_windows: list[HoursWindow] = field(default_factory=list)
    sub_results: list[PatternResult] = field(default_factory=list)
    window_start: date | None = None
    window_end: date | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "pattern_type": self.pattern_type,
            "required_count": self.required_count,
            "max_consecutive": self.max_consecutive,
            "total_matching_days": self.total_matching_days,
            "matching_dates": [d.isoformat() for d in self.matching_dates],
            "runs": [run.to_dict() for run in self.runs],
            "window_start": self.window_start.isoformat() if self.window_start else None,
            "window_end": self.window_end.isoformat() if self.window_end else None,
        }
        if self.qualifying_windows:
            data["qualifying_windows"] = [w.to_dict() for w in self.qualifying_windows]
        if self.sub_results:
            data["sub_results"] = [result.to_dict() for result in self.sub_results]
        if self.error:
            data["error"] = self.error
        return data


@dataclass
class PatternResult:
    qualified: bool
    pattern_type: str
    evidence: PatternEvidence

    def to_dict(self) -> dict[str, Any]:
        return {
            "qualified": self.qualified,
            "pattern_type": self.pattern_type,
            "evidence": self.evidence.to_dict(),
        }


@dataclass
class PatternTestSummary:
    """Result of evaluating one pattern for several workers."""

    as_of_date: date
    results: dict[UUID, PatternResult] = field(default_factory=dict)

    @property
    def total_tested(self) -> int:
        return len(self.results)

    @property
    def qualified_workers(self) -> list[UUID]:
        return [worker_id for worker_id, result in self.results.items() if result.qualified]

    @property
    def not_qualified_workers(self) -> list[UUID]:
        return [worker_id for worker_id, result in self.results.items() if not result.qualified]

    @property
    def qualified_count(self) -> int:
        return len(self.qualified_workers)

    @property
    def not_qualified_count(self) -> int:
        return self.total_tested - self.qualified_count


def find_consecutive_runs(
    dates: Iterable[date], cycle_days: int, required_count: int
) -> tuple[int, list[ConsecutiveRun]]:
    """Longest run of dates spaced exactly ``cycle_days`` apart.

    Returns the longest run length and every run of at least
    ``required_count`` dates, longest first.
    """
    ordered = sorted(set(dates))
    if not ordered:
        return 0, []

    step = timedelta(days=cycle_days)
    runs: list[ConsecutiveRun] = []
    max_count = 0
    run_start = ordered[0]
    count = 1

    for previous, current in zip(ordered, ordered[1:]):
        if current - previous == step:
            count += 1
            continue
        max_count = max(max_count, count)
        if count >= required_count:
            runs.append(ConsecutiveRun(run_start, previous, count))
        run_start = current
        count = 1

    max_count = max(max_count, count)
    if count >= required_count:
        runs.append(ConsecutiveRun(run_start, ordered[-1], count))

    runs.sort(key=lambda run: (-run.count, run.start_date))
    return max_count, runs


def compare_hours(total: Decimal, op: ComparisonOperator, threshold: Decimal) -> bool:
    if op == ComparisonOperator.GREATER_THAN:
        return total > threshold
    if op == ComparisonOperator.LESS_THAN:
        return total < threshold
    if op == ComparisonOperator.GREATER_OR_EQUAL:
        return total >= threshold
    if op == ComparisonOperator.LESS_OR_EQUAL:
        return total <= threshold
    return abs(total - threshold) < EQUALS_TOLERANCE


class PatternQualifier:
    """Decides whether a worker's approved attendance satisfies a pattern.

    One instance memoizes attendance fetches per (worker, window), so create
    one per worker calculation.
    """

    def __init__(self, attendance: AttendanceSource):
        self.attendance = attendance
        self._entries: dict[tuple[UUID, date, date], list[TimeEntryRecord]] = {}

    async def qualifies(
        self, worker_id: UUID, pattern: PatternDescriptor, as_of_date: date
    ) -> PatternResult:
        """Evaluate ``pattern``; unavailable attendance yields ``qualified=False``."""
        try:
            return await self.evaluate(worker_id, pattern, as_of_date)
        except AttendanceUnavailableError as e:
            logger.warning(
                "Pattern %s not qualified for worker %s: %s",
                pattern.pattern_type.value,
                worker_id,
                e,
            )
            return PatternResult(
                qualified=False,
                pattern_type=pattern.pattern_type.value,
                evidence=PatternEvidence(pattern_type=pattern.pattern_type.value, error=str(e)),
            )

    async def evaluate(
        self, worker_id: UUID, pattern: PatternDescriptor, as_of_date: date
    ) -> PatternResult:
        """Evaluate ``pattern``, raising AttendanceUnavailableError if history is missing."""
        if isinstance(pattern, CombinedPattern):
            return await self._evaluate_combined(worker_id, pattern, as_of_date)
        if isinstance(pattern, HoursThresholdPattern):
            return await self._evaluate_hours(worker_id, pattern, as_of_date)
        return await self._evaluate_leaf(worker_id, pattern, as_of_date)

    async def test_pattern(
        self, pattern: PatternDescriptor, worker_ids: Sequence[UUID], as_of_date: date
    ) -> PatternTestSummary:
        """Evaluate one pattern for several workers."""
        summary = PatternTestSummary(as_of_date=as_of_date)
        for worker_id in worker_ids:
            summary.results[worker_id] = await self.qualifies(worker_id, pattern, as_of_date)
        return summary

    async def _evaluate_leaf(
        self, worker_id: UUID, pattern: LeafPattern, as_of_date: date
    ) -> PatternResult:
        start = as_of_date - timedelta(days=pattern.lookback_days)
        entries = await self._fetch_entries(worker_id, start, as_of_date)

        matching_dates = sorted({entry.entry_date for entry in entries if pattern.matches(entry)})
        max_consecutive, runs = find_consecutive_runs(
            matching_dates, pattern.cycle_days, pattern.consecutive_count
        )

        return PatternResult(
            qualified=max_consecutive >= pattern.consecutive_count,
            pattern_type=pattern.pattern_type.value,
            evidence=PatternEvidence(
                pattern_type=pattern.pattern_type.value,
                required_count=pattern.consecutive_count,
                max_consecutive=max_consecutive,
                total_matching_days=len(matching_dates),
                matching_dates=matching_dates,
                runs=runs,
                window_start=start,
                window_end=as_of_date,
            ),
        )

    async def _evaluate_hours(
        self, worker_id: UUID, pattern: HoursThresholdPattern, as_of_date: date
    ) -> PatternResult:
        start = as_of_date - timedelta(days=pattern.lookback_days)
        entries = sorted(
            await self._fetch_entries(worker_id, start, as_of_date),
            key=lambda entry: entry.entry_date,
        )

        size = pattern.consecutive_count
        windows: list[HoursWindow] = []
        for i in range(len(entries) - size + 1):
            window = entries[i : i + size]
            total = sum((entry.hours_worked for entry in window), Decimal("0"))
            if compare_hours(total, pattern.comparison_operator, pattern.hours_threshold):
                windows.append(HoursWindow(window[0].entry_date, window[-1].entry_date, total))

        return PatternResult(
            qualified=bool(windows),
            pattern_type=pattern.pattern_type.value,
            evidence=PatternEvidence(
                pattern_type=pattern.pattern_type.value,
                required_count=size,
                max_consecutive=size if windows else 0,
                total_matching_days=len(entries),
                matching_dates=sorted({entry.entry_date for entry in entries}),
                qualifying_windows=windows,
                window_start=start,
                window_end=as_of_date,
            ),
        )

    async def _evaluate_combined(
        self, worker_id: UUID, pattern: CombinedPattern, as_of_date: date
    ) -> PatternResult:
        sub_results = [
            await self.evaluate(worker_id, child, as_of_date) for child in pattern.patterns
        ]
        if pattern.logical_operator == LogicalOperator.AND:
            qualified = all(result.qualified for result in sub_results)
        else:
            qualified = any(result.qualified for result in sub_results)

        return PatternResult(
            qualified=qualified,
            pattern_type=pattern.pattern_type.value,
            evidence=PatternEvidence(
                pattern_type=pattern.pattern_type.value,
                sub_results=sub_results,
            ),
        )

    async def _fetch_entries(
        self, worker_id: UUID, start_date: date, end_date: date
    ) -> list[TimeEntryRecord]:
        key = (worker_id, start_date, end_date)
        if key in self._entries:
            return self._entries[key]

        try:
            entries = await self.attendance.find_approved_time_entries(
                worker_id, start_date, end_date
            )
        except Exception as e:
            raise AttendanceUnavailableError(worker_id, start_date, end_date, str(e)) from e

        records = [entry for entry in entries if start_date <= entry.entry_date <= end_date]
        self._entries[key] = records
        return records
