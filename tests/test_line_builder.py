"""Tests for line item builder."""

from decimal import Decimal

from pay_structure_engine.calculators.line_builder import LineItemBuilder
from pay_structure_engine.calculators.types import (
    ComponentCategory,
    ComponentDefinition,
    FixedCalculation,
    TierBracket,
    TieredCalculation,
)

from .conftest import fixed


def tiered(*brackets: tuple[str, str | None, str], basis: str = "gross_earnings") -> TieredCalculation:
    return TieredCalculation(
        basis=basis,
        tiers=tuple(
            TierBracket(
                min_amount=Decimal(low),
                max_amount=Decimal(high) if high is not None else None,
                rate=Decimal(rate),
            )
            for low, high, rate in brackets
        ),
    )


class TestLineItemBuilder:
    """Test line item builder functionality."""

    def test_round_to_cents(self):
        """Test rounding to 2 decimal places."""
        assert LineItemBuilder.round_to_cents(Decimal("10.125")) == Decimal("10.13")
        assert LineItemBuilder.round_to_cents(Decimal("10.124")) == Decimal("10.12")

        # Half-up rounding
        assert LineItemBuilder.round_to_cents(Decimal("10.135")) == Decimal("10.14")
        assert LineItemBuilder.round_to_cents(Decimal("0.005")) == Decimal("0.01")

    def test_create_line_rounds(self):
        component = fixed("BONUS", "0")
        line = LineItemBuilder.create_line(component, Decimal("33.3333"), {"source": "test"})

        assert line.component_code == "BONUS"
        assert line.component_name == "Bonus"
        assert line.category == ComponentCategory.EARNING
        assert line.amount == Decimal("33.33")
        assert line.calculation_metadata == {"source": "test"}

    def test_summarize(self):
        """NET = earnings - deductions - taxes."""
        lines = [
            LineItemBuilder.create_line(fixed("BASE", "0"), Decimal("5000")),
            LineItemBuilder.create_line(fixed("BONUS", "0"), Decimal("300")),
            LineItemBuilder.create_line(
                fixed("PENSION", "0", ComponentCategory.DEDUCTION), Decimal("212")
            ),
            LineItemBuilder.create_line(fixed("TAX", "0", ComponentCategory.TAX), Decimal("500")),
        ]
        summary = LineItemBuilder.summarize(lines)

        assert summary.total_earnings == Decimal("5300.00")
        assert summary.total_deductions == Decimal("212.00")
        assert summary.total_taxes == Decimal("500.00")
        assert summary.net_pay == Decimal("4588.00")

    def test_summarize_excludes_employer_costs(self):
        """Employer costs, benefits and reimbursements are itemized only."""
        lines = [
            LineItemBuilder.create_line(fixed("BASE", "0"), Decimal("1000")),
            LineItemBuilder.create_line(
                fixed("ER_PENSION", "0", ComponentCategory.EMPLOYER_COST), Decimal("50")
            ),
            LineItemBuilder.create_line(
                fixed("TRAVEL", "0", ComponentCategory.REIMBURSEMENT), Decimal("20")
            ),
        ]
        summary = LineItemBuilder.summarize(lines)
        assert summary.total_earnings == Decimal("1000.00")
        assert summary.net_pay == Decimal("1000.00")

    def test_summarize_empty(self):
        summary = LineItemBuilder.summarize([])
        assert summary.net_pay == Decimal("0.00")

    def test_sum_by_category(self):
        lines = [
            LineItemBuilder.create_line(fixed("A", "0"), Decimal("1")),
            LineItemBuilder.create_line(fixed("B", "0"), Decimal("2")),
        ]
        totals = LineItemBuilder.sum_by_category(lines)
        assert totals[ComponentCategory.EARNING] == Decimal("3")
        assert totals[ComponentCategory.TAX] == Decimal("0")


class TestTieredCalculation:
    """Test bracket arithmetic."""

    def test_three_brackets(self):
        calculation = tiered(
            ("0", "10000", "0.08"),
            ("10000", "25000", "0.15"),
            ("25000", None, "0.25"),
        )
        # 800 + 2250 + 1250
        assert LineItemBuilder.calculate_tiered(calculation, Decimal("30000")) == Decimal("4300")

    def test_progressive_brackets(self):
        calculation = tiered(
            ("0", "10000", "0.10"),
            ("10000", "40000", "0.12"),
            ("40000", None, "0.22"),
        )
        # 10000 * 0.10 + 25000 * 0.12 = 1000 + 3000 = 4000
        assert LineItemBuilder.calculate_tiered(calculation, Decimal("35000")) == Decimal("4000")

    def test_open_upper_bound_uses_next_minimum(self):
        calculation = tiered(("0", None, "0.10"), ("10000", None, "0.20"))
        # 10000 * 0.10 + 5000 * 0.20
        assert LineItemBuilder.calculate_tiered(calculation, Decimal("15000")) == Decimal("2000")

    def test_top_bracket_unbounded(self):
        calculation = tiered(
            ("0", "10000", "0.10"),
            ("10000", "40000", "0.12"),
            ("40000", None, "0.22"),
        )
        # 1000 + 3600 + 10000 * 0.22
        assert LineItemBuilder.calculate_tiered(calculation, Decimal("50000")) == Decimal("6800")

    def test_brackets_sorted_before_use(self):
        calculation = tiered(("10000", None, "0.20"), ("0", "10000", "0.10"))
        assert LineItemBuilder.calculate_tiered(calculation, Decimal("12000")) == Decimal("1400")

    def test_flat_amount_added(self):
        calculation = TieredCalculation(
            basis="base_salary",
            tiers=(
                TierBracket(Decimal("0"), Decimal("1000"), Decimal("0")),
                TierBracket(Decimal("1000"), None, Decimal("0.05"), flat_amount=Decimal("25")),
            ),
        )
        assert LineItemBuilder.calculate_tiered(calculation, Decimal("3000")) == Decimal("125")

    def test_basis_below_first_bracket(self):
        calculation = tiered(("500", None, "0.10"))
        assert LineItemBuilder.calculate_tiered(calculation, Decimal("400")) == Decimal("0")

    def test_component_wraps_tiered_calculation(self):
        component = ComponentDefinition(
            code="INCOME_TAX",
            name="Income Tax",
            category=ComponentCategory.TAX,
            calculation=tiered(("0", None, "0.10")),
        )
        assert component.calculation_type.value == "tiered"
        assert not isinstance(component.calculation, FixedCalculation)
