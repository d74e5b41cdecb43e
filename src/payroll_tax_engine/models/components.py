"""Pay component catalogue."""

from __future__ import annotations

from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import Boolean, CheckConstraint, ForeignKey, Numeric, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from payroll_tax_engine.calculators.types import (
    CalculationType,
    ComponentType,
    PayComponentDefinition,
)
from payroll_tax_engine.models.base import Base, JSONType, TimestampMixin


class PayComponent(Base, TimestampMixin):
    """Organization-scoped earning or deduction definition.

    System components are seeded and protected: they can be cloned into a
    customizable copy but not deleted.
    """

    __tablename__ = "pay_component"

    component_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    organization_id: Mapped[UUID] = mapped_column(nullable=False, index=True)
    code: Mapped[str] = mapped_column(String, nullable=False)
    name: Mapped[str] = mapped_column(String, nullable=False)
    component_type: Mapped[str] = mapped_column(String, nullable=False, default="earning")
    category: Mapped[str] = mapped_column(String, nullable=False)
    calculation_type: Mapped[str] = mapped_column(String, nullable=False, default="fixed")
    default_amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    formula: Mapped[str | None] = mapped_column(Text, nullable=True)
    percentage_rate: Mapped[Decimal | None] = mapped_column(Numeric(7, 4), nullable=True)
    is_taxable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_recurring: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_system_component: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    status: Mapped[str] = mapped_column(String, nullable=False, default="active")
    # "metadata" is reserved on declarative classes
    component_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSONType, nullable=False, default=dict
    )
    cloned_from_component_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("pay_component.component_id"),
        nullable=True,
    )

    __table_args__ = (
        UniqueConstraint("organization_id", "code", name="pay_component_org_code_unique"),
        CheckConstraint(
            "component_type IN ('earning', 'deduction')",
            name="pay_component_type_check",
        ),
        CheckConstraint(
            "calculation_type IN ('fixed', 'formula', 'percentage')",
            name="pay_component_calc_type_check",
        ),
        CheckConstraint(
            "calculation_type != 'formula' OR formula IS NOT NULL",
            name="pay_component_formula_check",
        ),
        CheckConstraint(
            "status IN ('active', 'inactive')",
            name="pay_component_status_check",
        ),
    )

    def to_definition(self) -> PayComponentDefinition:
        """Detached immutable view used by the composer."""
        return PayComponentDefinition(
            component_id=self.component_id,
            code=self.code,
            name=self.name,
            component_type=ComponentType(self.component_type),
            category=self.category,
            calculation_type=CalculationType(self.calculation_type),
            default_amount=self.default_amount,
            formula=self.formula,
            percentage_rate=self.percentage_rate,
            is_taxable=self.is_taxable,
            is_recurring=self.is_recurring,
            is_system_component=self.is_system_component,
            metadata=dict(self.component_metadata or {}),
        )
