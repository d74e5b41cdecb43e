"""Unit tests for BracketCalculator."""

from dataclasses import replace
from decimal import Decimal

import pytest

from payroll_tax_engine.calculators.bracket_calculator import BracketCalculator
from payroll_tax_engine.calculators.types import CalculationMode, TaxBracket
from payroll_tax_engine.errors import InvalidTaxableAmountError, MalformedRuleSetError

MONTHLY = [(0, 3500, 8), (3500, 7000, 18), (7000, 10500, 28), (10500, None, 38)]


def reference_tax(rows, amount: Decimal) -> Decimal:
    """Straightforward piecewise-linear reference implementation."""
    total = Decimal("0")
    for low, high, rate in rows:
        low = Decimal(str(low))
        if amount <= low:
            break
        top = amount if high is None else min(amount, Decimal(str(high)))
        total += (top - low) * Decimal(str(rate)) / 100
    return total.quantize(Decimal("0.01"))


class TestProportionalDistribution:
    """Test progressive bracket slicing."""

    def test_monthly_wage_tax_on_5000(self, rules):
        """5000 over [0,3500)@8% and [3500,7000)@18% is 280 + 270."""
        rule = rules.tax_rule("wage_tax_monthly", MONTHLY)
        assert BracketCalculator.compute_tax(rule, Decimal("5000")) == Decimal("550.00")

    def test_zero_amount_is_zero_tax(self, rules):
        rule = rules.tax_rule("wage_tax_monthly", MONTHLY)
        assert BracketCalculator.compute_tax(rule, Decimal("0")) == Decimal("0.00")

    def test_top_bracket_is_unbounded(self, rules):
        """Amounts above the last bound are taxed at the top rate."""
        rule = rules.tax_rule("wage_tax_monthly", MONTHLY)
        # 280 + 630 + 980 + 1500 * 38%
        assert BracketCalculator.compute_tax(rule, Decimal("12000")) == Decimal("2460.00")

    def test_matches_reference_implementation(self, rules):
        rule = rules.tax_rule("wage_tax_monthly", MONTHLY)
        for raw in ("0.01", "999.99", "3500", "3500.01", "6999.99", "10500", "25000.55"):
            amount = Decimal(raw)
            assert BracketCalculator.compute_tax(rule, amount) == reference_tax(MONTHLY, amount)

    def test_slices_break_down_the_amount(self, rules):
        rule = rules.tax_rule("wage_tax_monthly", MONTHLY)
        slices = BracketCalculator.slices(rule, Decimal("5000"))

        assert [s.amount_in_bracket for s in slices] == [
            Decimal("3500"),
            Decimal("1500"),
            Decimal("0"),
            Decimal("0"),
        ]
        assert [s.tax for s in slices] == [
            Decimal("280.0000"),
            Decimal("270.0000"),
            Decimal("0"),
            Decimal("0"),
        ]

    def test_non_decreasing_and_continuous(self, rules):
        """Without fixed amounts the tax never drops and never jumps."""
        rule = rules.tax_rule("wage_tax_monthly", MONTHLY)
        previous = Decimal("0")
        amount = Decimal("0")
        while amount <= Decimal("15000"):
            tax = BracketCalculator.compute_tax(rule, amount)
            assert tax >= previous
            nudged = BracketCalculator.compute_tax(rule, amount + Decimal("0.01"))
            assert nudged - tax <= Decimal("0.02")
            previous = tax
            amount += Decimal("250")

    def test_fixed_amount_applies_once_per_entered_bracket(self, rules):
        rule = rules.tax_rule("wage_tax", [(0, 1000, 10), (1000, None, 20)])
        brackets = (
            rule.brackets[0],
            replace(rule.brackets[1], fixed_amount=Decimal("50")),
        )
        rule = replace(rule, brackets=brackets)

        # Bracket 2 is not entered at exactly its lower bound
        assert BracketCalculator.compute_tax(rule, Decimal("1000")) == Decimal("100.00")
        assert BracketCalculator.compute_tax(rule, Decimal("1500")) == Decimal("250.00")


class TestComponentBased:
    """Test flat-rate (component based) rule sets."""

    def test_aov_flat_rate(self, rules):
        rule = rules.flat_rule("aov", 4)
        assert rule.effective_mode == CalculationMode.COMPONENT_BASED
        assert BracketCalculator.compute_tax(rule, Decimal("5000")) == Decimal("200.00")

    def test_annual_cap_limits_tax(self, rules):
        rule = rules.flat_rule("aov", 4, annual_cap=Decimal("150"))
        assert BracketCalculator.compute_tax(rule, Decimal("5000")) == Decimal("150.00")


class TestValidation:
    """Test bracket partition validation."""

    def test_gap_between_brackets(self, rules):
        rule = rules.tax_rule("wage_tax", [(0, 1000, 8), (1200, None, 18)])
        with pytest.raises(MalformedRuleSetError) as exc:
            BracketCalculator.compute_tax(rule, Decimal("500"))
        assert "starts at 1200" in exc.value.reason

    def test_two_unbounded_brackets(self, rules):
        rule = rules.tax_rule("wage_tax", [(0, None, 8), (1000, None, 18)])
        with pytest.raises(MalformedRuleSetError):
            BracketCalculator.validate(rule)

    def test_first_bracket_must_start_at_zero(self, rules):
        rule = rules.tax_rule("wage_tax", [(100, None, 8)])
        errors = BracketCalculator.partition_errors(
            rule.brackets, CalculationMode.PROPORTIONAL_DISTRIBUTION
        )
        assert errors == ["first bracket starts at 100, expected 0"]

    def test_bounded_last_bracket(self, rules):
        rule = rules.tax_rule("wage_tax", [(0, 1000, 8)])
        errors = BracketCalculator.partition_errors(
            rule.brackets, CalculationMode.PROPORTIONAL_DISTRIBUTION
        )
        assert "expected exactly one unbounded bracket, found 0" in errors

    def test_component_based_takes_one_bracket(self, rules):
        rule = rules.tax_rule("aov", [(0, 1000, 4), (1000, None, 4)])
        errors = BracketCalculator.partition_errors(rule.brackets, CalculationMode.COMPONENT_BASED)
        assert "component_based rule sets take exactly one [0, inf) bracket" in errors

    def test_empty_table(self):
        assert BracketCalculator.partition_errors((), CalculationMode.PROPORTIONAL_DISTRIBUTION) == [
            "rule set has no brackets"
        ]

    def test_order_gaps_reported(self):
        brackets = (
            TaxBracket(1, Decimal("0"), Decimal("100"), Decimal("8")),
            TaxBracket(3, Decimal("100"), None, Decimal("18")),
        )
        errors = BracketCalculator.partition_errors(
            brackets, CalculationMode.PROPORTIONAL_DISTRIBUTION
        )
        assert errors == ["bracket_order must be 1..2, got [1, 3]"]

    def test_negative_amount_rejected(self, rules):
        rule = rules.tax_rule("wage_tax_monthly", MONTHLY)
        with pytest.raises(InvalidTaxableAmountError):
            BracketCalculator.compute_tax(rule, Decimal("-0.01"))

    def test_missing_amount_rejected(self, rules):
        rule = rules.flat_rule("aov", 4)
        with pytest.raises(InvalidTaxableAmountError):
            BracketCalculator.compute_tax(rule, None)


class TestDistribute:
    """Test rounding-safe distribution of a total over weights."""

    def test_parts_sum_to_total(self):
        parts = BracketCalculator.distribute(
            Decimal("100.00"),
            {"a": Decimal("1"), "b": Decimal("1"), "c": Decimal("1")},
        )
        assert sum(parts.values()) == Decimal("100.00")
        assert parts == {"a": Decimal("33.34"), "b": Decimal("33.33"), "c": Decimal("33.33")}

    def test_remainder_goes_to_largest_weight(self):
        parts = BracketCalculator.distribute(
            Decimal("10.00"),
            {"small": Decimal("1"), "large": Decimal("2")},
        )
        assert parts == {"small": Decimal("3.33"), "large": Decimal("6.67")}

    def test_zero_weights(self):
        parts = BracketCalculator.distribute(Decimal("10.00"), {"a": Decimal("0")})
        assert parts == {"a": Decimal("0")}
