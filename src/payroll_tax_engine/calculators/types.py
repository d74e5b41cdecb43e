"""Type definitions for the calculation pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any, Mapping
from uuid import UUID

from payroll_tax_engine.errors import PayrollWarning, UndefinedVariableError

ZERO = Decimal("0")


class TaxType(str, Enum):
    """Tax types a rule set can carry."""

    WAGE_TAX = "wage_tax"
    WAGE_TAX_MONTHLY = "wage_tax_monthly"
    LUMP_SUM_BENEFITS = "lump_sum_benefits"
    OVERTIME = "overtime"
    AOV = "aov"
    AWW = "aww"


class CalculationMethod(str, Enum):
    BRACKET = "bracket"
    FLAT_RATE = "flat_rate"


class CalculationMode(str, Enum):
    """How a rule set's brackets are applied to taxable income."""

    PROPORTIONAL_DISTRIBUTION = "proportional_distribution"
    COMPONENT_BASED = "component_based"


class CalculationType(str, Enum):
    """How a pay component's amount is obtained."""

    FIXED = "fixed"
    FORMULA = "formula"
    PERCENTAGE = "percentage"


class ComponentType(str, Enum):
    EARNING = "earning"
    DEDUCTION = "deduction"


class CapPeriod(str, Enum):
    """Whether an allowance cap accumulates over the calendar year."""

    ANNUAL = "annual"
    PER_PAYMENT = "per_payment"


class ResidenceStatus(str, Enum):
    RESIDENT = "resident"
    NON_RESIDENT = "non_resident"


class ComponentSelectionMode(str, Enum):
    """How a run type chooses the components it pays."""

    EXPLICIT = "explicit"
    TEMPLATE = "template"
    HYBRID = "hybrid"


class PayFrequency(str, Enum):
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    SEMIMONTHLY = "semimonthly"
    MONTHLY = "monthly"

    @property
    def periods_per_year(self) -> int:
        return {
            PayFrequency.WEEKLY: 52,
            PayFrequency.BIWEEKLY: 26,
            PayFrequency.SEMIMONTHLY: 24,
            PayFrequency.MONTHLY: 12,
        }[self]


# ===== Reference data =====


@dataclass(frozen=True)
class TaxBracket:
    """One bracket of a rule set: [income_min, income_max) at rate_percentage."""

    bracket_order: int
    income_min: Decimal
    income_max: Decimal | None  # None = no upper limit
    rate_percentage: Decimal  # 8 means 8%
    fixed_amount: Decimal = ZERO


def _effective_on(
    effective_from: date, effective_to: date | None, as_of_date: date
) -> bool:
    if as_of_date < effective_from:
        return False
    return effective_to is None or as_of_date <= effective_to


@dataclass(frozen=True)
class TaxRule:
    """A resolved tax rule set with its ordered brackets."""

    rule_set_id: UUID
    organization_id: UUID
    tax_type: str
    effective_from: date
    effective_to: date | None
    calculation_method: CalculationMethod
    brackets: tuple[TaxBracket, ...]
    calculation_mode: CalculationMode | None = None
    country: str = "SR"
    annual_cap: Decimal | None = None
    version: int = 1
    tax_name: str | None = None

    @property
    def rule_key(self) -> str:
        return self.tax_type

    @property
    def record_id(self) -> UUID:
        return self.rule_set_id

    @property
    def effective_mode(self) -> CalculationMode:
        """Explicit mode, or the default implied by the calculation method."""
        if self.calculation_mode is not None:
            return self.calculation_mode
        if self.calculation_method == CalculationMethod.FLAT_RATE:
            return CalculationMode.COMPONENT_BASED
        return CalculationMode.PROPORTIONAL_DISTRIBUTION

    def is_effective_on(self, as_of_date: date) -> bool:
        return _effective_on(self.effective_from, self.effective_to, as_of_date)


@dataclass(frozen=True)
class AllowanceRule:
    """A capped benefit category effective for a date window."""

    allowance_id: UUID
    organization_id: UUID
    allowance_type: str
    amount: Decimal
    effective_from: date
    effective_to: date | None
    is_percentage: bool = False
    cap_period: CapPeriod = CapPeriod.ANNUAL
    country: str = "SR"

    @property
    def rule_key(self) -> str:
        return self.allowance_type

    @property
    def record_id(self) -> UUID:
        return self.allowance_id

    def is_effective_on(self, as_of_date: date) -> bool:
        return _effective_on(self.effective_from, self.effective_to, as_of_date)

    def cap_for(self, monthly_wage: Decimal | None) -> Decimal:
        """Cap in currency; percentage caps scale the monthly wage."""
        if not self.is_percentage:
            return self.amount
        if monthly_wage is None:
            raise UndefinedVariableError("monthly_wage")
        return monthly_wage * self.amount / Decimal("100")


@dataclass(frozen=True)
class DeductionRule:
    """Standard deductible cost rule (e.g. 4% of wages, annual maximum)."""

    rule_id: UUID
    organization_id: UUID
    deduction_type: str
    amount: Decimal
    effective_from: date
    effective_to: date | None
    is_percentage: bool = True
    max_deduction: Decimal | None = None  # annual ceiling
    country: str = "SR"

    @property
    def rule_key(self) -> str:
        return self.deduction_type

    @property
    def record_id(self) -> UUID:
        return self.rule_id

    def is_effective_on(self, as_of_date: date) -> bool:
        return _effective_on(self.effective_from, self.effective_to, as_of_date)


@dataclass(frozen=True)
class ReferenceData:
    """Immutable snapshot of an organization's rule data for one batch."""

    organization_id: UUID
    tax_rules: tuple[TaxRule, ...] = ()
    allowances: tuple[AllowanceRule, ...] = ()
    deduction_rules: tuple[DeductionRule, ...] = ()


# ===== Components and employee inputs =====


@dataclass(frozen=True)
class PayComponentDefinition:
    """A pay component from the organization catalogue."""

    component_id: UUID
    code: str
    name: str
    component_type: ComponentType
    category: str
    calculation_type: CalculationType
    default_amount: Decimal | None = None
    formula: str | None = None
    percentage_rate: Decimal | None = None
    is_taxable: bool = True
    is_recurring: bool = True
    is_system_component: bool = False
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @property
    def required_variables(self) -> list[str]:
        return list(self.metadata.get("required_variables", []))


@dataclass(frozen=True)
class ComponentAssignment:
    """A component bound to one employee, with configuration overrides."""

    component: PayComponentDefinition
    configuration: Mapping[str, Any] = field(default_factory=dict)
    amount_override: Decimal | None = None
    effective_from: date | None = None
    effective_to: date | None = None

    def is_active_on(self, as_of_date: date) -> bool:
        if self.effective_from is not None and as_of_date < self.effective_from:
            return False
        return self.effective_to is None or as_of_date <= self.effective_to


@dataclass(frozen=True)
class EmployeePayrollInput:
    """Everything the composer needs for one employee in one period."""

    employee_id: UUID
    assignments: tuple[ComponentAssignment, ...]
    variables: Mapping[str, Any] = field(default_factory=dict)
    residence_status: ResidenceStatus = ResidenceStatus.RESIDENT
    employee_number: str | None = None


@dataclass(frozen=True)
class PayrollRunInput:
    """A pay run as delivered by the run source."""

    organization_id: UUID
    run_id: UUID
    period_date: date
    pay_frequency: PayFrequency
    employees: tuple[EmployeePayrollInput, ...]
    run_type: str = "regular"


# ===== Ledger =====


@dataclass(frozen=True)
class AllowanceUsageState:
    """Cumulative allowance usage for one employee, type and calendar year."""

    employee_id: UUID
    allowance_type: str
    year: int
    total_granted: Decimal = ZERO
    tax_free_granted: Decimal = ZERO
    version: int = 0


@dataclass(frozen=True)
class AllowanceApplication:
    """Outcome of applying an allowance cap to one payment."""

    allowance_type: str
    allowance_id: UUID
    year: int
    gross_amount: Decimal
    tax_free_portion: Decimal
    taxable_portion: Decimal
    cap: Decimal
    remaining_cap: Decimal  # before this payment
    cap_period: CapPeriod
    warnings: tuple[PayrollWarning, ...] = ()

    @property
    def accumulates(self) -> bool:
        return self.cap_period == CapPeriod.ANNUAL


# ===== Results =====


@dataclass(frozen=True)
class BracketSlice:
    """Portion of a taxable amount falling in one bracket."""

    bracket_order: int
    income_min: Decimal
    income_max: Decimal | None
    amount_in_bracket: Decimal
    rate_percentage: Decimal
    fixed_amount: Decimal
    tax: Decimal


@dataclass(frozen=True)
class ComponentLine:
    """One pay component as it appears on the payslip."""

    component_code: str
    component_name: str
    component_type: ComponentType
    category: str
    amount: Decimal
    taxable_amount: Decimal
    tax_free_amount: Decimal
    is_taxable: bool
    allowance_type: str | None = None
    taxes: Mapping[str, Decimal] = field(default_factory=dict)

    def to_canonical_dict(self) -> dict[str, Any]:
        """Return canonical dict for hashing (deterministic ordering)."""
        return {
            "component_code": self.component_code,
            "component_type": self.component_type.value,
            "amount": str(self.amount),
            "taxable_amount": str(self.taxable_amount),
            "tax_free_amount": str(self.tax_free_amount),
            "allowance_type": self.allowance_type,
            "taxes": {k: str(v) for k, v in sorted(self.taxes.items())},
        }


@dataclass(frozen=True)
class TaxLine:
    """Tax computed under one rule set."""

    tax_type: str
    rule_set_id: UUID
    calculation_mode: CalculationMode
    taxable_base: Decimal
    amount: Decimal


@dataclass(frozen=True)
class PayslipLine:
    """Immutable composed payroll line for one employee and period."""

    employee_id: UUID
    run_id: UUID
    period_date: date
    pay_frequency: PayFrequency
    gross_pay: Decimal
    components: tuple[ComponentLine, ...]
    allowances: tuple[AllowanceApplication, ...]
    standard_deduction: Decimal
    taxable_base: Decimal
    taxes: tuple[TaxLine, ...]
    total_tax: Decimal
    deductions_total: Decimal
    net_pay: Decimal
    warnings: tuple[PayrollWarning, ...]
    calculation_id: UUID
    inputs_fingerprint: str
    rules_fingerprint: str
    rule_set_ids: tuple[UUID, ...]

    @property
    def tax_by_type(self) -> dict[str, Decimal]:
        totals: dict[str, Decimal] = {}
        for line in self.taxes:
            totals[line.tax_type] = totals.get(line.tax_type, ZERO) + line.amount
        return totals


@dataclass(frozen=True)
class EmployeeFailure:
    """A per-employee failure reported alongside successful lines."""

    employee_id: UUID
    step: str
    code: str
    message: str
    component_code: str | None = None
