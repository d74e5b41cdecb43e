"""Allowance usage ledger and payroll commit records."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from payroll_tax_engine.calculators.types import AllowanceUsageState
from payroll_tax_engine.models.base import Base, JSONType, TimestampMixin


class AllowanceUsage(Base, TimestampMixin):
    """Cumulative allowance usage per employee, allowance type and calendar year.

    Created lazily on the first committed grant of a year, updated on every
    commit, never deleted. ``version`` is checked on every UPDATE so two
    writers cannot both grant against the same remaining cap.
    """

    __tablename__ = "allowance_usage"

    usage_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    employee_id: Mapped[UUID] = mapped_column(nullable=False)
    allowance_type: Mapped[str] = mapped_column(String, nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    total_granted: Mapped[Decimal] = mapped_column(
        Numeric(14, 2), nullable=False, default=Decimal("0")
    )
    tax_free_granted: Mapped[Decimal] = mapped_column(
        Numeric(14, 2), nullable=False, default=Decimal("0")
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )

    __table_args__ = (
        UniqueConstraint(
            "employee_id", "allowance_type", "year", name="allowance_usage_key_unique"
        ),
        CheckConstraint("tax_free_granted >= 0", name="allowance_usage_tax_free_check"),
        CheckConstraint(
            "total_granted >= tax_free_granted", name="allowance_usage_total_check"
        ),
    )

    __mapper_args__ = {"version_id_col": version}

    def to_state(self) -> AllowanceUsageState:
        return AllowanceUsageState(
            employee_id=self.employee_id,
            allowance_type=self.allowance_type,
            year=self.year,
            total_granted=self.total_granted,
            tax_free_granted=self.tax_free_granted,
            version=self.version,
        )


class PayrollCommit(Base, TimestampMixin):
    """Idempotency record for one committed (employee, run, period)."""

    __tablename__ = "payroll_commit"

    commit_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    organization_id: Mapped[UUID] = mapped_column(nullable=False)
    employee_id: Mapped[UUID] = mapped_column(nullable=False)
    run_id: Mapped[UUID] = mapped_column(nullable=False, index=True)
    period_date: Mapped[date] = mapped_column(nullable=False)
    calculation_id: Mapped[UUID] = mapped_column(nullable=False)
    inputs_fingerprint: Mapped[str] = mapped_column(String, nullable=False)
    rules_fingerprint: Mapped[str] = mapped_column(String, nullable=False)
    line_hash: Mapped[str] = mapped_column(String, nullable=False)
    engine_version: Mapped[str] = mapped_column(String, nullable=False)
    gross_pay: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    total_tax: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    net_pay: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    payslip: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "employee_id", "run_id", "period_date", name="payroll_commit_key_unique"
        ),
    )

    # Relationships
    rule_sets: Mapped[list[PayrollCommitRuleSet]] = relationship(
        back_populates="commit",
        cascade="all, delete-orphan",
    )


class PayrollCommitRuleSet(Base):
    """Rule set referenced by a committed payroll line (makes it immutable)."""

    __tablename__ = "payroll_commit_rule_set"

    commit_id: Mapped[UUID] = mapped_column(
        ForeignKey("payroll_commit.commit_id", ondelete="CASCADE"),
        primary_key=True,
    )
    rule_set_id: Mapped[UUID] = mapped_column(
        ForeignKey("tax_rule_set.rule_set_id"),
        primary_key=True,
    )

    # Relationships
    commit: Mapped[PayrollCommit] = relationship(back_populates="rule_sets")
