"""Tax rule sets, brackets, allowances and deductible cost rules."""

from __future__ import annotations

from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from payroll_tax_engine.calculators.types import (
    AllowanceRule,
    CalculationMethod,
    CalculationMode,
    CapPeriod,
    DeductionRule,
    TaxBracket as TaxBracketRecord,
    TaxRule,
)
from payroll_tax_engine.models.base import Base, EffectiveWindowMixin, TimestampMixin


class TaxRuleSet(Base, TimestampMixin, EffectiveWindowMixin):
    """A versioned, effective-dated tax rule set for one tax type.

    Rows are never amended once a committed payroll references them; a legal
    rate change is a new row (new version) with its own window.
    """

    __tablename__ = "tax_rule_set"

    rule_set_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    organization_id: Mapped[UUID] = mapped_column(nullable=False, index=True)
    country: Mapped[str] = mapped_column(String(2), nullable=False, default="SR")
    tax_type: Mapped[str] = mapped_column(String, nullable=False)
    tax_name: Mapped[str | None] = mapped_column(String, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    calculation_method: Mapped[str] = mapped_column(String, nullable=False, default="bracket")
    calculation_mode: Mapped[str | None] = mapped_column(String, nullable=True)
    annual_cap: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_from_rule_set_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("tax_rule_set.rule_set_id"),
        nullable=True,
    )

    __table_args__ = (
        UniqueConstraint(
            "organization_id", "tax_type", "version", name="tax_rule_set_version_unique"
        ),
        CheckConstraint(
            "calculation_method IN ('bracket', 'flat_rate')",
            name="tax_rule_set_method_check",
        ),
        CheckConstraint(
            "calculation_mode IS NULL OR calculation_mode IN "
            "('proportional_distribution', 'component_based')",
            name="tax_rule_set_mode_check",
        ),
        CheckConstraint(
            "effective_to IS NULL OR effective_to >= effective_from",
            name="tax_rule_set_dates_check",
        ),
    )

    # Relationships
    brackets: Mapped[list[TaxBracket]] = relationship(
        back_populates="rule_set",
        order_by="TaxBracket.bracket_order",
        cascade="all, delete-orphan",
    )

    def to_record(self) -> TaxRule:
        """Detached immutable view used by the calculators."""
        return TaxRule(
            rule_set_id=self.rule_set_id,
            organization_id=self.organization_id,
            tax_type=self.tax_type,
            effective_from=self.effective_from,
            effective_to=self.effective_to,
            calculation_method=CalculationMethod(self.calculation_method),
            calculation_mode=(
                CalculationMode(self.calculation_mode) if self.calculation_mode else None
            ),
            brackets=tuple(b.to_record() for b in self.brackets),
            country=self.country,
            annual_cap=self.annual_cap,
            version=self.version,
            tax_name=self.tax_name,
        )


class TaxBracket(Base):
    """One bracket of a rule set: [income_min, income_max), NULL max = unbounded."""

    __tablename__ = "tax_bracket"

    bracket_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    rule_set_id: Mapped[UUID] = mapped_column(
        ForeignKey("tax_rule_set.rule_set_id", ondelete="CASCADE"),
        nullable=False,
    )
    bracket_order: Mapped[int] = mapped_column(Integer, nullable=False)
    income_min: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    income_max: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    rate_percentage: Mapped[Decimal] = mapped_column(Numeric(7, 4), nullable=False)
    fixed_amount: Mapped[Decimal] = mapped_column(
        Numeric(14, 2), nullable=False, default=Decimal("0")
    )

    __table_args__ = (
        UniqueConstraint("rule_set_id", "bracket_order", name="tax_bracket_order_unique"),
        CheckConstraint("income_min >= 0", name="tax_bracket_min_check"),
        CheckConstraint(
            "income_max IS NULL OR income_max > income_min",
            name="tax_bracket_range_check",
        ),
    )

    # Relationships
    rule_set: Mapped[TaxRuleSet] = relationship(back_populates="brackets")

    def to_record(self) -> TaxBracketRecord:
        return TaxBracketRecord(
            bracket_order=self.bracket_order,
            income_min=self.income_min,
            income_max=self.income_max,
            rate_percentage=self.rate_percentage,
            fixed_amount=self.fixed_amount if self.fixed_amount is not None else Decimal("0"),
        )


class Allowance(Base, TimestampMixin, EffectiveWindowMixin):
    """Capped benefit category; rows of one type have disjoint windows."""

    __tablename__ = "allowance"

    allowance_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    organization_id: Mapped[UUID] = mapped_column(nullable=False, index=True)
    country: Mapped[str] = mapped_column(String(2), nullable=False, default="SR")
    allowance_type: Mapped[str] = mapped_column(String, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False)
    is_percentage: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    cap_period: Mapped[str] = mapped_column(String, nullable=False, default="annual")
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint("amount >= 0", name="allowance_amount_check"),
        CheckConstraint(
            "cap_period IN ('annual', 'per_payment')", name="allowance_cap_period_check"
        ),
        CheckConstraint(
            "effective_to IS NULL OR effective_to >= effective_from",
            name="allowance_dates_check",
        ),
    )

    def to_record(self) -> AllowanceRule:
        return AllowanceRule(
            allowance_id=self.allowance_id,
            organization_id=self.organization_id,
            allowance_type=self.allowance_type,
            amount=self.amount,
            effective_from=self.effective_from,
            effective_to=self.effective_to,
            is_percentage=self.is_percentage,
            cap_period=CapPeriod(self.cap_period),
            country=self.country,
        )


class DeductibleCostRule(Base, TimestampMixin, EffectiveWindowMixin):
    """Standard deduction with an annual maximum."""

    __tablename__ = "deductible_cost_rule"

    rule_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    organization_id: Mapped[UUID] = mapped_column(nullable=False, index=True)
    country: Mapped[str] = mapped_column(String(2), nullable=False, default="SR")
    deduction_type: Mapped[str] = mapped_column(String, nullable=False, default="standard")
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False)
    is_percentage: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    max_deduction: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)

    __table_args__ = (
        CheckConstraint("amount >= 0", name="deductible_cost_amount_check"),
        CheckConstraint(
            "effective_to IS NULL OR effective_to >= effective_from",
            name="deductible_cost_dates_check",
        ),
    )

    def to_record(self) -> DeductionRule:
        return DeductionRule(
            rule_id=self.rule_id,
            organization_id=self.organization_id,
            deduction_type=self.deduction_type,
            amount=self.amount,
            effective_from=self.effective_from,
            effective_to=self.effective_to,
            is_percentage=self.is_percentage,
            max_deduction=self.max_deduction,
            country=self.country,
        )
