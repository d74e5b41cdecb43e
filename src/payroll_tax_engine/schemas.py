"""Pydantic schemas for rule definitions, run payloads and payslip snapshots."""

from datetime import date
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from payroll_tax_engine.calculators.types import (
    CalculationMethod,
    CalculationMode,
    CalculationType,
    CapPeriod,
    ComponentSelectionMode,
    ComponentType,
    PayFrequency,
    ResidenceStatus,
)
from payroll_tax_engine.errors import PayrollWarning


# ============================================================================
# Rule definition schemas
# ============================================================================


class TaxBracketCreate(BaseModel):
    """Schema for one bracket of a new rule set."""

    bracket_order: int = Field(ge=1)
    income_min: Decimal = Field(ge=0)
    income_max: Decimal | None = None
    rate_percentage: Decimal = Field(ge=0, le=100)
    fixed_amount: Decimal = Field(default=Decimal("0"), ge=0)


class TaxRuleSetCreate(BaseModel):
    """Schema for creating a tax rule set with its brackets."""

    tax_type: str
    tax_name: str | None = None
    description: str | None = None
    country: str = "SR"
    effective_from: date
    effective_to: date | None = None
    calculation_method: CalculationMethod = CalculationMethod.BRACKET
    calculation_mode: CalculationMode | None = None
    annual_cap: Decimal | None = Field(default=None, ge=0)
    brackets: list[TaxBracketCreate] = Field(min_length=1)

    @model_validator(mode="after")
    def _check_window(self) -> "TaxRuleSetCreate":
        if self.effective_to is not None and self.effective_to < self.effective_from:
            raise ValueError("effective_to must not precede effective_from")
        return self


class TaxRuleSetVersionCreate(BaseModel):
    """Schema for appending a new version to an existing rule set.

    Omitted fields are copied from the source version.
    """

    effective_from: date
    effective_to: date | None = None
    tax_name: str | None = None
    description: str | None = None
    annual_cap: Decimal | None = Field(default=None, ge=0)
    brackets: list[TaxBracketCreate] | None = None

    @model_validator(mode="after")
    def _check_window(self) -> "TaxRuleSetVersionCreate":
        if self.effective_to is not None and self.effective_to < self.effective_from:
            raise ValueError("effective_to must not precede effective_from")
        return self


class TaxRuleSetUpdate(BaseModel):
    """In-place amendment of a rule set no committed payroll references yet."""

    tax_name: str | None = None
    description: str | None = None
    effective_to: date | None = None
    annual_cap: Decimal | None = Field(default=None, ge=0)
    brackets: list[TaxBracketCreate] | None = None


class AllowanceCreate(BaseModel):
    """Schema for creating an allowance cap row."""

    allowance_type: str
    amount: Decimal = Field(ge=0)
    is_percentage: bool = False
    cap_period: CapPeriod = CapPeriod.ANNUAL
    country: str = "SR"
    description: str | None = None
    effective_from: date
    effective_to: date | None = None


class DeductibleCostRuleCreate(BaseModel):
    """Schema for creating a deductible cost rule."""

    deduction_type: str = "standard"
    amount: Decimal = Field(ge=0)
    is_percentage: bool = True
    max_deduction: Decimal | None = Field(default=None, ge=0)
    country: str = "SR"
    effective_from: date
    effective_to: date | None = None


class PayComponentCreate(BaseModel):
    """Schema for creating a pay component."""

    code: str
    name: str
    component_type: ComponentType = ComponentType.EARNING
    category: str
    calculation_type: CalculationType = CalculationType.FIXED
    default_amount: Decimal | None = None
    formula: str | None = None
    percentage_rate: Decimal | None = None
    is_taxable: bool = True
    is_recurring: bool = True
    is_system_component: bool = False
    metadata: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_calculation(self) -> "PayComponentCreate":
        if self.calculation_type == CalculationType.FORMULA and not self.formula:
            raise ValueError("formula components need a formula")
        if self.calculation_type == CalculationType.PERCENTAGE and self.percentage_rate is None:
            raise ValueError("percentage components need a percentage_rate")
        return self


# ============================================================================
# Run input payloads
# ============================================================================


class AssignmentPayload(BaseModel):
    """A component assignment as delivered by the assignment service."""

    component_code: str
    configuration: dict[str, Any] = Field(default_factory=dict)
    amount_override: Decimal | None = None
    effective_from: date | None = None
    effective_to: date | None = None


class EmployeePayload(BaseModel):
    """An employee's variable bag and assignments."""

    employee_id: UUID
    employee_number: str | None = None
    residence_status: ResidenceStatus = ResidenceStatus.RESIDENT
    variables: dict[str, Any] = Field(default_factory=dict)
    assignments: list[AssignmentPayload] = Field(default_factory=list)


class PayrollRunPayload(BaseModel):
    """Complete run input: catalogue, run type selection and employees."""

    organization_id: UUID
    run_id: UUID
    period_date: date
    pay_frequency: PayFrequency = PayFrequency.MONTHLY
    run_type: str = "regular"
    selection_mode: ComponentSelectionMode = ComponentSelectionMode.HYBRID
    template_component_codes: list[str] = Field(default_factory=list)
    allowed_component_codes: list[str] = Field(default_factory=list)
    excluded_component_codes: list[str] = Field(default_factory=list)
    components: list[PayComponentCreate]
    employees: list[EmployeePayload]


# ============================================================================
# Payslip snapshot
# ============================================================================


class WarningSchema(BaseModel):
    """Business warning with its structured details."""

    model_config = ConfigDict(extra="allow")

    code: str
    message: str


class ComponentLineSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    component_code: str
    component_name: str
    component_type: ComponentType
    category: str
    amount: Decimal
    taxable_amount: Decimal
    tax_free_amount: Decimal
    is_taxable: bool
    allowance_type: str | None = None
    taxes: dict[str, Decimal] = Field(default_factory=dict)


class AllowanceApplicationSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    allowance_type: str
    allowance_id: UUID
    year: int
    gross_amount: Decimal
    tax_free_portion: Decimal
    taxable_portion: Decimal
    cap: Decimal
    remaining_cap: Decimal
    cap_period: CapPeriod


class TaxLineSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    tax_type: str
    rule_set_id: UUID
    calculation_mode: CalculationMode
    taxable_base: Decimal
    amount: Decimal


class PayslipLineSchema(BaseModel):
    """Serialized payslip line, stored as the commit snapshot."""

    model_config = ConfigDict(from_attributes=True)

    employee_id: UUID
    run_id: UUID
    period_date: date
    pay_frequency: PayFrequency
    gross_pay: Decimal
    components: list[ComponentLineSchema]
    allowances: list[AllowanceApplicationSchema]
    standard_deduction: Decimal
    taxable_base: Decimal
    taxes: list[TaxLineSchema]
    total_tax: Decimal
    deductions_total: Decimal
    net_pay: Decimal
    warnings: list[WarningSchema]
    calculation_id: UUID
    inputs_fingerprint: str
    rules_fingerprint: str
    rule_set_ids: list[UUID]

    @field_validator("warnings", mode="before")
    @classmethod
    def _warnings_to_dicts(cls, value: Any) -> Any:
        return [w.to_dict() if isinstance(w, PayrollWarning) else w for w in value]
