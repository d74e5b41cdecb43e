"""Bracket table application for wage tax and social contributions."""

from __future__ import annotations

from decimal import Decimal
from typing import Mapping

from payroll_tax_engine.calculators.line_builder import LineItemBuilder
from payroll_tax_engine.calculators.types import (
    ZERO,
    BracketSlice,
    CalculationMode,
    TaxBracket,
    TaxRule,
)
from payroll_tax_engine.errors import InvalidTaxableAmountError, MalformedRuleSetError

HUNDRED = Decimal("100")


class BracketCalculator:
    """Applies a rule set's brackets to a taxable amount.

    Two modes, selected by the rule set:

    - proportional_distribution: progressive slicing. For bracket i covering
      [min_i, max_i) the slice is clamp(t, min_i, max_i) - min_i, taxed at
      rate_i, plus fixed_amount_i once if t enters the bracket (t > min_i).
    - component_based: a single [0, inf) bracket applied as a flat rate to
      each component's amount, optionally limited by the rule's annual_cap.

    The bracket table is re-validated on every call; rule data that reaches
    the calculator malformed halts the run rather than producing a figure.
    """

    @staticmethod
    def validate(rule: TaxRule) -> None:
        """Check the brackets partition [0, inf) exactly once.

        Raises:
            MalformedRuleSetError: On gaps, overlaps, disorder or a missing or
                duplicated unbounded bracket.
        """
        errors = BracketCalculator.partition_errors(
            rule.brackets, rule.effective_mode
        )
        if errors:
            raise MalformedRuleSetError(rule.rule_set_id, rule.tax_type, "; ".join(errors))

    @staticmethod
    def partition_errors(
        brackets: tuple[TaxBracket, ...] | list[TaxBracket],
        mode: CalculationMode,
    ) -> list[str]:
        """Return partition problems (empty list if the table is valid)."""
        if not brackets:
            return ["rule set has no brackets"]

        errors: list[str] = []
        ordered = sorted(brackets, key=lambda b: b.bracket_order)
        orders = [b.bracket_order for b in ordered]
        if orders != list(range(1, len(ordered) + 1)):
            errors.append(f"bracket_order must be 1..{len(ordered)}, got {orders}")

        if ordered[0].income_min != ZERO:
            errors.append(f"first bracket starts at {ordered[0].income_min}, expected 0")

        unbounded = [b for b in ordered if b.income_max is None]
        if len(unbounded) != 1:
            errors.append(f"expected exactly one unbounded bracket, found {len(unbounded)}")
        elif ordered[-1].income_max is not None:
            errors.append("unbounded bracket must be the last bracket")

        for current, following in zip(ordered, ordered[1:]):
            if current.income_max is None:
                continue
            if current.income_max <= current.income_min:
                errors.append(
                    f"bracket {current.bracket_order} is empty or inverted "
                    f"[{current.income_min}, {current.income_max})"
                )
            if following.income_min != current.income_max:
                errors.append(
                    f"bracket {following.bracket_order} starts at {following.income_min}, "
                    f"expected {current.income_max}"
                )

        for bracket in ordered:
            if bracket.rate_percentage < ZERO or bracket.fixed_amount < ZERO:
                errors.append(f"bracket {bracket.bracket_order} has a negative rate or fixed amount")

        if mode == CalculationMode.COMPONENT_BASED and len(ordered) != 1:
            errors.append("component_based rule sets take exactly one [0, inf) bracket")

        return errors

    @staticmethod
    def slices(rule: TaxRule, taxable_amount: Decimal) -> list[BracketSlice]:
        """Per-bracket breakdown of a proportional computation."""
        BracketCalculator._check_amount(rule, taxable_amount)
        BracketCalculator.validate(rule)

        result: list[BracketSlice] = []
        for bracket in sorted(rule.brackets, key=lambda b: b.bracket_order):
            entered = taxable_amount > bracket.income_min
            if entered:
                upper = taxable_amount
                if bracket.income_max is not None:
                    upper = min(taxable_amount, bracket.income_max)
                in_bracket = upper - bracket.income_min
                tax = in_bracket * bracket.rate_percentage / HUNDRED + bracket.fixed_amount
            else:
                in_bracket = ZERO
                tax = ZERO
            result.append(
                BracketSlice(
                    bracket_order=bracket.bracket_order,
                    income_min=bracket.income_min,
                    income_max=bracket.income_max,
                    amount_in_bracket=in_bracket,
                    rate_percentage=bracket.rate_percentage,
                    fixed_amount=bracket.fixed_amount if entered else ZERO,
                    tax=LineItemBuilder.round_internal(tax),
                )
            )
        return result

    @staticmethod
    def compute_tax(rule: TaxRule, taxable_amount: Decimal | None) -> Decimal:
        """Tax on taxable_amount under the rule's calculation mode.

        Raises:
            InvalidTaxableAmountError: If the amount is missing or negative.
            MalformedRuleSetError: If the bracket table is invalid.
        """
        BracketCalculator._check_amount(rule, taxable_amount)
        BracketCalculator.validate(rule)

        if rule.effective_mode == CalculationMode.COMPONENT_BASED:
            return BracketCalculator._flat_rate(rule, taxable_amount)

        total = sum(
            (s.tax for s in BracketCalculator.slices(rule, taxable_amount)), ZERO
        )
        return LineItemBuilder.round_to_cents(total)

    @staticmethod
    def _flat_rate(rule: TaxRule, taxable_amount: Decimal) -> Decimal:
        rate = rule.brackets[0].rate_percentage
        tax = taxable_amount * rate / HUNDRED
        if rule.annual_cap is not None:
            tax = min(tax, rule.annual_cap)
        return LineItemBuilder.round_to_cents(tax)

    @staticmethod
    def _check_amount(rule: TaxRule, taxable_amount: Decimal | None) -> None:
        if taxable_amount is None or taxable_amount < ZERO:
            raise InvalidTaxableAmountError(taxable_amount, rule.tax_type)

    @staticmethod
    def distribute(total: Decimal, weights: Mapping[str, Decimal]) -> dict[str, Decimal]:
        """Split total over weights so the rounded parts sum exactly to total.

        The rounding remainder goes to the largest weight (first in key
        order on ties).
        """
        weight_sum = sum(weights.values(), ZERO)
        if not weights or weight_sum <= ZERO:
            return {key: ZERO for key in weights}

        parts = {
            key: LineItemBuilder.round_to_cents(total * weight / weight_sum)
            for key, weight in weights.items()
        }
        remainder = total - sum(parts.values(), ZERO)
        if remainder:
            largest = max(weights, key=lambda k: weights[k])
            parts[largest] += remainder
        return parts
