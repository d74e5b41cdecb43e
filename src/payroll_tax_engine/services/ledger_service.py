"""Persistence side of the allowance ledger."""

from __future__ import annotations

import logging
from collections import defaultdict
from decimal import Decimal
from typing import Iterable
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from payroll_tax_engine.calculators.allowance_ledger import UsageKey
from payroll_tax_engine.calculators.types import AllowanceUsageState, PayslipLine
from payroll_tax_engine.models import AllowanceUsage

logger = logging.getLogger(__name__)


class AllowanceLedgerService:
    """Reads and updates AllowanceUsage rows.

    Key invariants:
    1. One row per (employee, allowance type, year), enforced by unique constraint
    2. total_granted and tax_free_granted move together in one flush
    3. Rows are read FOR UPDATE at commit and every UPDATE checks ``version``;
       a concurrent writer surfaces as StaleDataError or IntegrityError and the
       caller retries against fresh state
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def load_usage(
        self, employee_ids: Iterable[UUID], year: int
    ) -> dict[UsageKey, AllowanceUsageState]:
        """Snapshot usage for a batch (preview path, no locks)."""
        ids = list(employee_ids)
        if not ids:
            return {}
        result = await self.session.execute(
            select(AllowanceUsage).where(
                AllowanceUsage.employee_id.in_(ids),
                AllowanceUsage.year == year,
            )
        )
        return {
            (row.employee_id, row.allowance_type, row.year): row.to_state()
            for row in result.scalars().all()
        }

    async def lock_employee_usage(
        self, employee_id: UUID, year: int
    ) -> dict[str, AllowanceUsage]:
        """Lock an employee's usage rows for the year (commit path).

        Returns allowance_type -> row.
        """
        result = await self.session.execute(
            select(AllowanceUsage)
            .where(
                AllowanceUsage.employee_id == employee_id,
                AllowanceUsage.year == year,
            )
            .with_for_update()
        )
        return {row.allowance_type: row for row in result.scalars().all()}

    async def apply_line(
        self,
        line: PayslipLine,
        locked_rows: dict[str, AllowanceUsage],
    ) -> list[AllowanceUsage]:
        """Persist the usage deltas of a composed line.

        Missing rows are created lazily. Per-payment caps do not accumulate
        and leave the ledger untouched.
        """
        deltas: dict[tuple[str, int], tuple[Decimal, Decimal]] = defaultdict(
            lambda: (Decimal("0"), Decimal("0"))
        )
        for application in line.allowances:
            if not application.accumulates:
                continue
            key = (application.allowance_type, application.year)
            total, tax_free = deltas[key]
            deltas[key] = (
                total + application.gross_amount,
                tax_free + application.tax_free_portion,
            )

        touched: list[AllowanceUsage] = []
        for (allowance_type, year), (total, tax_free) in sorted(deltas.items()):
            row = locked_rows.get(allowance_type)
            if row is None or row.year != year:
                row = AllowanceUsage(
                    employee_id=line.employee_id,
                    allowance_type=allowance_type,
                    year=year,
                    total_granted=Decimal("0"),
                    tax_free_granted=Decimal("0"),
                )
                self.session.add(row)
                locked_rows[allowance_type] = row
            row.total_granted = row.total_granted + total
            row.tax_free_granted = row.tax_free_granted + tax_free
            touched.append(row)
            logger.debug(
                "Allowance usage %s/%s for employee %s: +%s total, +%s tax-free",
                allowance_type,
                year,
                line.employee_id,
                total,
                tax_free,
            )

        await self.session.flush()
        return touched
