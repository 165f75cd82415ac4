"""Line item builder and summary totals."""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Sequence

from pay_structure_engine.calculators.types import (
    ComponentCategory,
    ComponentDefinition,
    LineItem,
    PaySummary,
    TieredCalculation,
)


class LineItemBuilder:
    """Builds line items and totals.

    Sign conventions:
    - a line keeps the sign its calculation produced; a negative
      formula result is stored as negative
    - the category decides whether it adds to or subtracts from net

    Rounding:
    - internal compute at full Decimal precision
    - each line rounded to 2 decimals (half up) once limits are applied
    """

    OUTPUT_PRECISION = Decimal("0.01")  # 2 decimal places for persistence

    @staticmethod
    def round_to_cents(amount: Decimal) -> Decimal:
        """Round amount to 2 decimal places (cents)."""
        return amount.quantize(LineItemBuilder.OUTPUT_PRECISION, rounding=ROUND_HALF_UP)

    @staticmethod
    def calculate_tiered(calculation: TieredCalculation, basis_amount: Decimal) -> Decimal:
        """Walk brackets in ascending order.

        Each bracket taxes the slice of ``basis_amount`` between its minimum and
        its upper bound (its own ``max_amount`` or the next bracket's minimum).
        """
        tiers = calculation.sorted_tiers
        total = Decimal("0")

        for i, tier in enumerate(tiers):
            if basis_amount <= tier.min_amount:
                break

            upper = tier.max_amount
            if upper is None and i + 1 < len(tiers):
                upper = tiers[i + 1].min_amount

            slice_top = basis_amount if upper is None else min(basis_amount, upper)
            total += (slice_top - tier.min_amount) * tier.rate + tier.flat_amount

        return total

    @staticmethod
    def create_line(
        component: ComponentDefinition,
        amount: Decimal,
        metadata: dict[str, Any] | None = None,
    ) -> LineItem:
        """Create a line item, rounding to cents."""
        return LineItem(
            component_code=component.code,
            component_name=component.name,
            category=component.category,
            amount=LineItemBuilder.round_to_cents(amount),
            calculation_metadata=metadata or {},
        )

    @staticmethod
    def sum_by_category(lines: Sequence[LineItem]) -> dict[ComponentCategory, Decimal]:
        """Sum line amounts by category."""
        totals: dict[ComponentCategory, Decimal] = {c: Decimal("0") for c in ComponentCategory}
        for line in lines:
            totals[line.category] += line.amount
        return totals

    @staticmethod
    def summarize(lines: Sequence[LineItem]) -> PaySummary:
        """Summary totals.

        NET = Σ(EARNING) - Σ(DEDUCTION) - Σ(TAX)

        Benefits, employer costs and reimbursements are itemized but do not
        enter the totals.
        """
        totals = LineItemBuilder.sum_by_category(lines)
        earnings = totals[ComponentCategory.EARNING]
        deductions = totals[ComponentCategory.DEDUCTION]
        taxes = totals[ComponentCategory.TAX]
        return PaySummary(
            total_earnings=LineItemBuilder.round_to_cents(earnings),
            total_deductions=LineItemBuilder.round_to_cents(deductions),
            total_taxes=LineItemBuilder.round_to_cents(taxes),
            net_pay=LineItemBuilder.round_to_cents(earnings - deductions - taxes),
        )

