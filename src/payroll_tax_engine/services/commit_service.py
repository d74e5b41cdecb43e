"""Idempotent commit records for payroll lines."""

from __future__ import annotations

from datetime import date
from uuid import UUID

from sqlalchemy import exists, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from payroll_tax_engine.calculators.line_builder import LineItemBuilder
from payroll_tax_engine.calculators.types import PayslipLine
from payroll_tax_engine.errors import CommitConflictError
from payroll_tax_engine.models import PayrollCommit, PayrollCommitRuleSet
from payroll_tax_engine.schemas import PayslipLineSchema


class PayrollCommitService:
    """Service for idempotent payroll commit records.

    Key invariants:
    1. One payroll_commit per (employee, run, period), enforced by unique constraint
    2. Re-recording the same calculation is a no-op
    3. If a commit exists with a different calculation_id, abort (data has changed)
    4. Every rule set a commit used is linked, which freezes that rule set
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_commit(
        self, employee_id: UUID, run_id: UUID, period_date: date
    ) -> PayrollCommit | None:
        result = await self.session.execute(
            select(PayrollCommit).where(
                PayrollCommit.employee_id == employee_id,
                PayrollCommit.run_id == run_id,
                PayrollCommit.period_date == period_date,
            )
        )
        return result.scalar_one_or_none()

    async def committed_employee_ids(self, run_id: UUID, period_date: date) -> set[UUID]:
        """Employees already committed for a run and period."""
        result = await self.session.execute(
            select(PayrollCommit.employee_id).where(
                PayrollCommit.run_id == run_id,
                PayrollCommit.period_date == period_date,
            )
        )
        return set(result.scalars().all())

    async def record_commit(
        self,
        organization_id: UUID,
        line: PayslipLine,
        engine_version: str,
    ) -> bool:
        """Record a committed line with its snapshot.

        Returns True if a new commit was created, False if it already exists.

        Raises:
            CommitConflictError: If the key holds a different calculation_id
        """
        existing = await self.get_commit(line.employee_id, line.run_id, line.period_date)
        if existing is not None:
            if existing.calculation_id != line.calculation_id:
                raise CommitConflictError(
                    line.employee_id,
                    line.run_id,
                    existing.calculation_id,
                    line.calculation_id,
                )
            return False

        snapshot = PayslipLineSchema.model_validate(line).model_dump(mode="json")
        commit = PayrollCommit(
            organization_id=organization_id,
            employee_id=line.employee_id,
            run_id=line.run_id,
            period_date=line.period_date,
            calculation_id=line.calculation_id,
            inputs_fingerprint=line.inputs_fingerprint,
            rules_fingerprint=line.rules_fingerprint,
            line_hash=self.compute_line_hash(line),
            engine_version=engine_version,
            gross_pay=line.gross_pay,
            total_tax=line.total_tax,
            net_pay=line.net_pay,
            payslip=snapshot,
        )
        commit.rule_sets = [
            PayrollCommitRuleSet(rule_set_id=rule_set_id) for rule_set_id in line.rule_set_ids
        ]
        self.session.add(commit)
        await self.session.flush()
        return True

    @staticmethod
    def compute_line_hash(line: PayslipLine) -> str:
        """Hash of the calculation id and the canonical component lines."""
        return LineItemBuilder.compute_line_hash(
            {
                "calculation_id": str(line.calculation_id),
                "components": [c.to_canonical_dict() for c in line.components],
            }
        )

    async def is_rule_set_referenced(self, rule_set_id: UUID) -> bool:
        """True if any committed payroll used the rule set."""
        result = await self.session.execute(
            select(exists().where(PayrollCommitRuleSet.rule_set_id == rule_set_id))
        )
        return bool(result.scalar())

    async def latest_reference_date(self, rule_set_id: UUID) -> date | None:
        """Latest committed period that used the rule set, if any."""
        result = await self.session.execute(
            select(func.max(PayrollCommit.period_date))
            .join(PayrollCommitRuleSet)
            .where(PayrollCommitRuleSet.rule_set_id == rule_set_id)
        )
        return result.scalar()
