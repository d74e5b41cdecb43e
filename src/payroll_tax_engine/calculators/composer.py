"""Per-employee payslip composition."""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from payroll_tax_engine.calculators.allowance_ledger import (
    TAX_FREE_SUM_ANNUAL,
    TAX_FREE_SUM_MONTHLY,
    AllowanceLedger,
)
from payroll_tax_engine.calculators.bracket_calculator import BracketCalculator
from payroll_tax_engine.calculators.formula import FormulaEvaluator, coerce_decimal
from payroll_tax_engine.calculators.line_builder import LineItemBuilder
from payroll_tax_engine.calculators.rule_resolver import RuleResolver
from payroll_tax_engine.calculators.types import (
    ZERO,
    AllowanceApplication,
    CalculationMode,
    CalculationType,
    ComponentAssignment,
    ComponentLine,
    ComponentType,
    EmployeePayrollInput,
    PayFrequency,
    PayslipLine,
    TaxLine,
    TaxRule,
    TaxType,
)
from payroll_tax_engine.errors import (
    ComponentExpiringWarning,
    InvalidTaxableAmountError,
    PayrollLineError,
    PayrollTaxEngineError,
    PayrollWarning,
    UndefinedVariableError,
)

logger = logging.getLogger(__name__)

# Component categories that route through a capped allowance
CATEGORY_ALLOWANCES: dict[str, str] = {
    "holiday_allowance": "holiday_allowance",
    "vakantiegeld": "holiday_allowance",
    "bonus": "bonus_gratuity",
    "gratuity": "bonus_gratuity",
    "bonus_gratuity": "bonus_gratuity",
    "child_allowance": "child_allowance",
    "kinderbijslag": "child_allowance",
    "exchange_rate_compensation": "exchange_rate_compensation",
    "pension_payment": "pension_payment",
}

# Component categories taxed under their own rule set instead of wage tax
CATEGORY_TAX_TYPES: dict[str, str] = {
    "overtime": TaxType.OVERTIME.value,
    "lump_sum": TaxType.LUMP_SUM_BENEFITS.value,
}

SOCIAL_CONTRIBUTIONS = (TaxType.AOV.value, TaxType.AWW.value)

DEFAULT_PERCENTAGE_BASE = "base_salary"


class ComposerStep(str, Enum):
    """Stages of one employee's composition."""

    INIT = "init"
    VARIABLES_GATHERED = "variables_gathered"
    COMPONENTS_EVALUATED = "components_evaluated"
    ALLOWANCES_APPLIED = "allowances_applied"
    STANDARD_DEDUCTION_APPLIED = "standard_deduction_applied"
    TAX_COMPUTED = "tax_computed"
    COMPOSED = "composed"


@dataclass
class _ComponentWork:
    """Mutable per-component state while composing."""

    key: str
    assignment: ComponentAssignment
    variables: dict[str, Any] = field(default_factory=dict)
    amount: Decimal = ZERO
    taxable_amount: Decimal = ZERO
    tax_free_amount: Decimal = ZERO
    allowance_type: str | None = None
    taxes: dict[str, Decimal] = field(default_factory=dict)

    @property
    def component(self):
        return self.assignment.component

    @property
    def is_earning(self) -> bool:
        return self.component.component_type == ComponentType.EARNING

    @property
    def tax_route(self) -> str | None:
        """Income tax type this component's taxable amount feeds."""
        if not self.is_earning or not self.component.is_taxable:
            return None
        category = self.component.category
        explicit = self.component.metadata.get("tax_type")
        if explicit:
            return str(explicit)
        return CATEGORY_TAX_TYPES.get(category, "wage_tax")


@dataclass
class _EmployeeComposition:
    """Context for composing a single employee's line."""

    organization_id: UUID
    run_id: UUID
    period_date: date
    pay_frequency: PayFrequency
    employee: EmployeePayrollInput
    step: ComposerStep = ComposerStep.INIT
    work: list[_ComponentWork] = field(default_factory=list)
    allowances: list[AllowanceApplication] = field(default_factory=list)
    warnings: list[PayrollWarning] = field(default_factory=list)
    standard_deduction: Decimal = ZERO
    wage_tax_base: Decimal = ZERO
    taxes: list[TaxLine] = field(default_factory=list)
    rule_ids: set[str] = field(default_factory=set)
    component_code: str | None = None


class PayrollLineComposer:
    """Turns one employee's pay components for one period into a payslip line.

    Composition pipeline (stable order per employee):
    1) Init: active component assignments for the pay date
    2) VariablesGathered: assignment configuration merged over the employee bag
    3) ComponentsEvaluated: fixed / formula / percentage amounts
    4) AllowancesApplied: capped allowances split into tax-free and taxable
    5) StandardDeductionApplied: deductible cost rule against the wage tax base
    6) TaxComputed: wage tax, overtime, lump sum, AOV and AWW
    7) Composed: immutable PayslipLine with fingerprints and calculation id

    A failure at any step aborts the employee and is raised as
    PayrollLineError carrying the step, component and cause.
    """

    VALID_TRANSITIONS: dict[ComposerStep, ComposerStep] = {
        ComposerStep.INIT: ComposerStep.VARIABLES_GATHERED,
        ComposerStep.VARIABLES_GATHERED: ComposerStep.COMPONENTS_EVALUATED,
        ComposerStep.COMPONENTS_EVALUATED: ComposerStep.ALLOWANCES_APPLIED,
        ComposerStep.ALLOWANCES_APPLIED: ComposerStep.STANDARD_DEDUCTION_APPLIED,
        ComposerStep.STANDARD_DEDUCTION_APPLIED: ComposerStep.TAX_COMPUTED,
        ComposerStep.TAX_COMPUTED: ComposerStep.COMPOSED,
    }

    def __init__(
        self,
        resolver: RuleResolver,
        ledger: AllowanceLedger,
        formula_evaluator: FormulaEvaluator | None = None,
        engine_version: str = "1.0.0",
    ):
        self.resolver = resolver
        self.ledger = ledger
        self.formula_evaluator = formula_evaluator or FormulaEvaluator()
        self.engine_version = engine_version

    def compose(
        self,
        organization_id: UUID,
        run_id: UUID,
        period_date: date,
        pay_frequency: PayFrequency,
        employee: EmployeePayrollInput,
    ) -> PayslipLine:
        """Compose the payslip line for one employee.

        Raises:
            PayrollLineError: Wrapping the failing step's cause
        """
        ctx = _EmployeeComposition(
            organization_id=organization_id,
            run_id=run_id,
            period_date=period_date,
            pay_frequency=pay_frequency,
            employee=employee,
        )
        stages = (
            self._gather_variables,
            self._evaluate_components,
            self._apply_allowances,
            self._apply_standard_deduction,
            self._compute_taxes,
        )
        try:
            self._init(ctx)
            for stage in stages:
                self._advance(ctx)
                stage(ctx)
            self._advance(ctx)
            return self._compose(ctx)
        except (PayrollTaxEngineError, ArithmeticError) as e:
            logger.debug(
                "Composition failed",
                extra={"employee_id": str(employee.employee_id), "step": ctx.step.value},
            )
            raise PayrollLineError(
                ctx.step.value, employee.employee_id, e, ctx.component_code
            ) from e

    def _advance(self, ctx: _EmployeeComposition) -> None:
        ctx.step = self.VALID_TRANSITIONS[ctx.step]
        ctx.component_code = None

    # === Steps ===

    def _init(self, ctx: _EmployeeComposition) -> None:
        for index, assignment in enumerate(ctx.employee.assignments):
            if not assignment.is_active_on(ctx.period_date):
                continue
            ctx.work.append(
                _ComponentWork(key=f"{index}:{assignment.component.code}", assignment=assignment)
            )
            ends = assignment.effective_to
            if ends is not None and (ends.year, ends.month) == (
                ctx.period_date.year,
                ctx.period_date.month,
            ):
                ctx.warnings.append(
                    ComponentExpiringWarning(
                        component_code=assignment.component.code, effective_to=ends
                    )
                )

    def _gather_variables(self, ctx: _EmployeeComposition) -> None:
        for item in ctx.work:
            item.variables = {**ctx.employee.variables, **item.assignment.configuration}

    def _evaluate_components(self, ctx: _EmployeeComposition) -> None:
        for item in ctx.work:
            ctx.component_code = item.component.code
            amount = LineItemBuilder.round_to_cents(self._component_amount(item))
            if amount < ZERO:
                raise InvalidTaxableAmountError(amount, item.component.code)
            item.amount = amount
            if item.is_earning and item.component.is_taxable:
                item.taxable_amount = amount
            elif item.is_earning:
                item.tax_free_amount = amount

    def _component_amount(self, item: _ComponentWork) -> Decimal:
        component = item.component
        config = item.assignment.configuration

        if item.assignment.amount_override is not None:
            return item.assignment.amount_override
        if "amount" in config:
            return coerce_decimal("amount", config["amount"])

        if component.calculation_type == CalculationType.FIXED:
            if component.default_amount is None:
                raise UndefinedVariableError("amount")
            return component.default_amount

        if component.calculation_type == CalculationType.FORMULA:
            for name in component.required_variables:
                if item.variables.get(name) is None:
                    raise UndefinedVariableError(name, component.formula)
            if not component.formula:
                raise UndefinedVariableError("formula")
            return self.formula_evaluator.evaluate(component.formula, item.variables)

        base_name = str(component.metadata.get("percentage_base", DEFAULT_PERCENTAGE_BASE))
        if item.variables.get(base_name) is None:
            raise UndefinedVariableError(base_name)
        base = coerce_decimal(base_name, item.variables[base_name])
        rate = config.get("percentage_rate", component.percentage_rate)
        if rate is None:
            raise UndefinedVariableError("percentage_rate")
        return base * coerce_decimal("percentage_rate", rate) / Decimal("100")

    def _apply_allowances(self, ctx: _EmployeeComposition) -> None:
        granted: dict[str, Decimal] = defaultdict(lambda: ZERO)
        for item in ctx.work:
            if not item.is_earning or not item.component.is_taxable:
                continue
            allowance_type = item.component.metadata.get("allowance_type") or CATEGORY_ALLOWANCES.get(
                item.component.category
            )
            if not allowance_type:
                continue

            ctx.component_code = item.component.code
            monthly_wage = item.variables.get("monthly_wage")
            application = self.ledger.apply_allowance(
                employee_id=ctx.employee.employee_id,
                allowance_type=allowance_type,
                gross_amount=item.amount,
                payment_date=ctx.period_date,
                monthly_wage=(
                    coerce_decimal("monthly_wage", monthly_wage)
                    if monthly_wage is not None
                    else None
                ),
                already_granted=granted[allowance_type],
            )
            granted[allowance_type] += application.tax_free_portion
            item.allowance_type = allowance_type
            item.tax_free_amount = application.tax_free_portion
            item.taxable_amount = application.taxable_portion
            ctx.allowances.append(application)
            ctx.warnings.extend(application.warnings)
            ctx.rule_ids.add(str(application.allowance_id))

    def _apply_standard_deduction(self, ctx: _EmployeeComposition) -> None:
        base = sum(
            (i.taxable_amount for i in ctx.work if i.tax_route == TaxType.WAGE_TAX.value),
            ZERO,
        )
        if base <= ZERO:
            ctx.wage_tax_base = ZERO
            return

        rule = self.resolver.resolve_deduction(ctx.organization_id, ctx.period_date)
        ctx.rule_ids.add(str(rule.rule_id))
        periods = ctx.pay_frequency.periods_per_year

        if rule.is_percentage:
            deduction = base * rule.amount / Decimal("100")
        else:
            deduction = rule.amount / periods
        if rule.max_deduction is not None:
            deduction = min(deduction, rule.max_deduction / periods)
        deduction = LineItemBuilder.round_to_cents(min(deduction, base))

        ctx.standard_deduction = deduction
        ctx.wage_tax_base = base - deduction

    def _compute_taxes(self, ctx: _EmployeeComposition) -> None:
        routed: dict[str, dict[str, Decimal]] = defaultdict(dict)
        for item in ctx.work:
            route = item.tax_route
            if route is None:
                continue
            routed[route][item.key] = item.taxable_amount
            for contribution in SOCIAL_CONTRIBUTIONS:
                routed[contribution][item.key] = item.taxable_amount

        by_key = {item.key: item for item in ctx.work}
        for tax_type in sorted(routed):
            weights = routed[tax_type]
            ctx.component_code = None
            if tax_type == TaxType.WAGE_TAX.value:
                line, shares = self._wage_tax(ctx, weights)
            else:
                rule = self.resolver.resolve(ctx.organization_id, tax_type, ctx.period_date)
                line, shares = self._apply_rule(rule, sum(weights.values(), ZERO), weights)
            ctx.rule_ids.add(str(line.rule_set_id))
            ctx.taxes.append(line)
            for key, share in shares.items():
                by_key[key].taxes[line.tax_type] = share

    def _wage_tax(
        self, ctx: _EmployeeComposition, weights: dict[str, Decimal]
    ) -> tuple[TaxLine, dict[str, Decimal]]:
        """Wage tax on the deducted base, after the resident tax-free sum.

        Monthly payrolls use the monthly table directly. Other frequencies
        annualise the base, apply the annual table, and divide back.
        """
        status = ctx.employee.residence_status
        if ctx.pay_frequency == PayFrequency.MONTHLY:
            rule = self.resolver.resolve(
                ctx.organization_id, TaxType.WAGE_TAX_MONTHLY.value, ctx.period_date
            )
            tax_free = self.ledger.tax_free_sum(TAX_FREE_SUM_MONTHLY, ctx.period_date, status)
            taxable = max(ctx.wage_tax_base - tax_free, ZERO)
            line, _ = self._apply_rule(rule, taxable, {})
            total = line.amount
        else:
            periods = ctx.pay_frequency.periods_per_year
            rule = self.resolver.resolve(ctx.organization_id, TaxType.WAGE_TAX.value, ctx.period_date)
            tax_free = self.ledger.tax_free_sum(TAX_FREE_SUM_ANNUAL, ctx.period_date, status)
            annual = max(ctx.wage_tax_base * periods - tax_free, ZERO)
            taxable = LineItemBuilder.round_to_cents(annual / periods)
            annual_line, _ = self._apply_rule(rule, annual, {})
            total = LineItemBuilder.round_to_cents(annual_line.amount / periods)

        line = TaxLine(
            tax_type=rule.tax_type,
            rule_set_id=rule.rule_set_id,
            calculation_mode=rule.effective_mode,
            taxable_base=taxable,
            amount=total,
        )
        # Attribute to components by their share of the wage tax base
        return line, BracketCalculator.distribute(total, weights)

    @staticmethod
    def _apply_rule(
        rule: TaxRule, base: Decimal, weights: dict[str, Decimal]
    ) -> tuple[TaxLine, dict[str, Decimal]]:
        """Compute one rule set's tax and its per-component shares."""
        if rule.effective_mode == CalculationMode.COMPONENT_BASED and weights:
            shares = {
                key: BracketCalculator.compute_tax(rule, amount)
                for key, amount in weights.items()
            }
            total = sum(shares.values(), ZERO)
            if rule.annual_cap is not None and total > rule.annual_cap:
                total = LineItemBuilder.round_to_cents(rule.annual_cap)
                shares = BracketCalculator.distribute(total, weights)
        else:
            total = BracketCalculator.compute_tax(rule, base)
            shares = BracketCalculator.distribute(total, weights)

        line = TaxLine(
            tax_type=rule.tax_type,
            rule_set_id=rule.rule_set_id,
            calculation_mode=rule.effective_mode,
            taxable_base=base,
            amount=total,
        )
        return line, shares

    def _compose(self, ctx: _EmployeeComposition) -> PayslipLine:
        components = tuple(
            ComponentLine(
                component_code=item.component.code,
                component_name=item.component.name,
                component_type=item.component.component_type,
                category=item.component.category,
                amount=item.amount,
                taxable_amount=item.taxable_amount,
                tax_free_amount=item.tax_free_amount,
                is_taxable=item.component.is_taxable,
                allowance_type=item.allowance_type,
                taxes=dict(item.taxes),
            )
            for item in ctx.work
        )
        gross = sum((c.amount for c in components if c.component_type == ComponentType.EARNING), ZERO)
        deductions = sum(
            (c.amount for c in components if c.component_type == ComponentType.DEDUCTION), ZERO
        )
        total_tax = sum((t.amount for t in ctx.taxes), ZERO)
        net = LineItemBuilder.round_to_cents(gross - total_tax - deductions)

        inputs_data = self._inputs_data(ctx)
        inputs_fingerprint = LineItemBuilder.compute_inputs_fingerprint(inputs_data)
        rules_fingerprint = LineItemBuilder.compute_rules_fingerprint(ctx.rule_ids)
        calculation_id = LineItemBuilder.generate_calculation_id(
            ctx.run_id,
            ctx.employee.employee_id,
            ctx.period_date,
            self.engine_version,
            inputs_fingerprint,
            rules_fingerprint,
        )

        return PayslipLine(
            employee_id=ctx.employee.employee_id,
            run_id=ctx.run_id,
            period_date=ctx.period_date,
            pay_frequency=ctx.pay_frequency,
            gross_pay=gross,
            components=components,
            allowances=tuple(ctx.allowances),
            standard_deduction=ctx.standard_deduction,
            taxable_base=ctx.wage_tax_base,
            taxes=tuple(ctx.taxes),
            total_tax=total_tax,
            deductions_total=deductions,
            net_pay=net,
            warnings=tuple(ctx.warnings),
            calculation_id=calculation_id,
            inputs_fingerprint=inputs_fingerprint,
            rules_fingerprint=rules_fingerprint,
            rule_set_ids=tuple(sorted({t.rule_set_id for t in ctx.taxes}, key=str)),
        )

    @staticmethod
    def _inputs_data(ctx: _EmployeeComposition) -> list[dict[str, Any]]:
        """Canonical inputs: variables, component amounts and prior usage."""
        data: list[dict[str, Any]] = [
            {
                "type": "employee",
                "id": str(ctx.employee.employee_id),
                "residence_status": ctx.employee.residence_status.value,
                "pay_frequency": ctx.pay_frequency.value,
                "variables": {k: str(v) for k, v in sorted(ctx.employee.variables.items())},
            }
        ]
        for item in ctx.work:
            data.append(
                {
                    "type": "component",
                    "id": str(item.component.component_id),
                    "code": item.component.code,
                    "amount": str(item.amount),
                }
            )
        for application in ctx.allowances:
            data.append(
                {
                    "type": "allowance",
                    "allowance_type": application.allowance_type,
                    "remaining_cap": str(application.remaining_cap),
                }
            )
        return data
