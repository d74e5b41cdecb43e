"""Tax-free allowance caps tracked per employee per calendar year."""

from __future__ import annotations

from dataclasses import replace
from datetime import date
from decimal import Decimal
from typing import Mapping
from uuid import UUID

from payroll_tax_engine.calculators.line_builder import LineItemBuilder
from payroll_tax_engine.calculators.rule_resolver import RuleResolver
from payroll_tax_engine.calculators.types import (
    ZERO,
    AllowanceApplication,
    AllowanceUsageState,
    CapPeriod,
    ResidenceStatus,
)
from payroll_tax_engine.errors import (
    CapExceededWarning,
    InvalidTaxableAmountError,
    NearCapWarning,
    PayrollWarning,
)

UsageKey = tuple[UUID, str, int]

TAX_FREE_SUM_MONTHLY = "tax_free_sum_monthly"
TAX_FREE_SUM_ANNUAL = "tax_free_sum_annual"


class AllowanceLedger:
    """Splits capped allowance payments into tax-free and taxable portions.

    The ledger is pure: it reads a usage snapshot (loaded by the caller for
    the batch) and never writes. Committing a payment means persisting
    ``apply_usage(state, application)`` through the ledger service, which
    re-runs the split against freshly locked usage rows.

    For annual caps:
        remaining_cap = max(cap - tax_free_granted - already_granted, 0)
        tax_free      = min(gross, remaining_cap)
        taxable       = gross - tax_free

    ``already_granted`` carries amounts granted to the same allowance type
    earlier in the same payslip, so two components share one cap. Per-payment
    caps ignore usage entirely.
    """

    def __init__(
        self,
        resolver: RuleResolver,
        usage: Mapping[UsageKey, AllowanceUsageState] | None = None,
        near_cap_threshold_percent: Decimal = Decimal("10"),
    ):
        self.resolver = resolver
        self.usage = dict(usage or {})
        self.near_cap_threshold_percent = near_cap_threshold_percent

    def usage_for(
        self, employee_id: UUID, allowance_type: str, year: int
    ) -> AllowanceUsageState:
        """Usage for the key, or a fresh zero state if none exists yet."""
        state = self.usage.get((employee_id, allowance_type, year))
        if state is None:
            return AllowanceUsageState(
                employee_id=employee_id, allowance_type=allowance_type, year=year
            )
        return state

    def apply_allowance(
        self,
        employee_id: UUID,
        allowance_type: str,
        gross_amount: Decimal,
        payment_date: date,
        monthly_wage: Decimal | None = None,
        already_granted: Decimal = ZERO,
    ) -> AllowanceApplication:
        """Apply the allowance cap effective on payment_date to a payment.

        Raises:
            NoApplicableRuleError / AmbiguousRuleError: From allowance resolution
            UndefinedVariableError: Percentage cap without a monthly wage
            InvalidTaxableAmountError: If gross_amount is negative
        """
        if gross_amount is None or gross_amount < ZERO:
            raise InvalidTaxableAmountError(gross_amount, allowance_type)

        rule = self.resolver.resolve_allowance(
            self.resolver.organization_id, allowance_type, payment_date
        )
        cap = LineItemBuilder.round_to_cents(rule.cap_for(monthly_wage))
        year = payment_date.year

        if rule.cap_period == CapPeriod.ANNUAL:
            usage = self.usage_for(employee_id, allowance_type, year)
            used = usage.tax_free_granted + already_granted
        else:
            used = already_granted
        remaining = max(cap - used, ZERO)

        tax_free = min(gross_amount, remaining)
        taxable = gross_amount - tax_free

        warnings: list[PayrollWarning] = []
        if taxable > ZERO:
            warnings.append(
                CapExceededWarning(
                    allowance_type=allowance_type,
                    cap=cap,
                    remaining_cap=remaining,
                    taxable_portion=taxable,
                )
            )
        elif rule.cap_period == CapPeriod.ANNUAL and cap > ZERO:
            remaining_after = remaining - tax_free
            threshold = cap * self.near_cap_threshold_percent / Decimal("100")
            if tax_free > ZERO and ZERO < remaining_after <= threshold:
                warnings.append(
                    NearCapWarning(
                        allowance_type=allowance_type,
                        cap=cap,
                        remaining_after=remaining_after,
                    )
                )

        return AllowanceApplication(
            allowance_type=allowance_type,
            allowance_id=rule.allowance_id,
            year=year,
            gross_amount=gross_amount,
            tax_free_portion=tax_free,
            taxable_portion=taxable,
            cap=cap,
            remaining_cap=remaining,
            cap_period=rule.cap_period,
            warnings=tuple(warnings),
        )

    def tax_free_sum(
        self,
        allowance_type: str,
        payment_date: date,
        residence_status: ResidenceStatus,
    ) -> Decimal:
        """Tax-free sum for wage tax; non-residents receive none (art. 13.1a)."""
        if residence_status != ResidenceStatus.RESIDENT:
            return ZERO
        rule = self.resolver.resolve_allowance(
            self.resolver.organization_id, allowance_type, payment_date
        )
        return rule.amount

    @staticmethod
    def apply_usage(
        state: AllowanceUsageState, application: AllowanceApplication
    ) -> AllowanceUsageState:
        """Usage after committing application; both totals move together."""
        if not application.accumulates:
            return state
        return replace(
            state,
            total_granted=state.total_granted + application.gross_amount,
            tax_free_granted=state.tax_free_granted + application.tax_free_portion,
        )
