"""Batch loading of rule reference data."""

from __future__ import annotations

import logging
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from payroll_tax_engine.calculators.types import ReferenceData
from payroll_tax_engine.models import Allowance, DeductibleCostRule, TaxRuleSet

logger = logging.getLogger(__name__)


class ReferenceDataRepository:
    """Loads an organization's rules once per batch.

    Everything is converted to frozen records immediately, so the snapshot
    can be shared read-only by concurrent employee computations without
    touching the session again.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def load(self, organization_id: UUID) -> ReferenceData:
        """Load rule sets (with brackets), allowances and deductible cost rules."""
        rule_sets = await self.session.execute(
            select(TaxRuleSet)
            .where(TaxRuleSet.organization_id == organization_id)
            .options(selectinload(TaxRuleSet.brackets))
            .order_by(TaxRuleSet.tax_type, TaxRuleSet.effective_from)
        )
        allowances = await self.session.execute(
            select(Allowance)
            .where(Allowance.organization_id == organization_id)
            .order_by(Allowance.allowance_type, Allowance.effective_from)
        )
        deduction_rules = await self.session.execute(
            select(DeductibleCostRule)
            .where(DeductibleCostRule.organization_id == organization_id)
            .order_by(DeductibleCostRule.effective_from)
        )

        data = ReferenceData(
            organization_id=organization_id,
            tax_rules=tuple(r.to_record() for r in rule_sets.scalars().all()),
            allowances=tuple(a.to_record() for a in allowances.scalars().all()),
            deduction_rules=tuple(d.to_record() for d in deduction_rules.scalars().all()),
        )
        logger.info(
            "Loaded reference data for organization %s: %d rule sets, %d allowances, "
            "%d deductible cost rules",
            organization_id,
            len(data.tax_rules),
            len(data.allowances),
            len(data.deduction_rules),
        )
        return data
