"""Effective-dated rule resolution."""

from __future__ import annotations

from datetime import date
from typing import Iterable, TypeVar
from uuid import UUID

from payroll_tax_engine.calculators.types import (
    AllowanceRule,
    DeductionRule,
    ReferenceData,
    TaxRule,
)
from payroll_tax_engine.errors import AmbiguousRuleError, NoApplicableRuleError

R = TypeVar("R", TaxRule, AllowanceRule, DeductionRule)

STANDARD_DEDUCTION = "standard"


def find_effective(
    records: Iterable[R],
    record_type: str,
    key: str,
    as_of_date: date,
    organization_id: UUID | None = None,
) -> R:
    """Return the single record with rule_key == key effective on as_of_date.

    A record is effective when effective_from <= as_of_date and
    (effective_to is NULL or effective_to >= as_of_date).

    Raises:
        NoApplicableRuleError: If no record matches.
        AmbiguousRuleError: If more than one record matches. Overlapping
            windows are a data defect, never resolved by picking one.
    """
    matches = [r for r in records if r.rule_key == key and r.is_effective_on(as_of_date)]
    if not matches:
        raise NoApplicableRuleError(record_type, key, as_of_date, organization_id)
    if len(matches) > 1:
        raise AmbiguousRuleError(
            record_type,
            key,
            as_of_date,
            sorted((r.record_id for r in matches), key=str),
            organization_id,
        )
    return matches[0]


class RuleResolver:
    """Resolves rule sets, allowances and deduction rules for a pay date.

    Works over a ReferenceData snapshot loaded once per batch, so resolution
    is pure and safe to share across concurrent employee computations.
    Results are cached per (organization, key, date) for the batch.
    """

    def __init__(self, reference_data: ReferenceData):
        self.reference_data = reference_data
        self._cache: dict[tuple[str, str, date], TaxRule | AllowanceRule | DeductionRule] = {}

    @property
    def organization_id(self) -> UUID:
        return self.reference_data.organization_id

    def resolve(self, organization_id: UUID, tax_type: str, as_of_date: date) -> TaxRule:
        """Resolve the tax rule set effective on as_of_date.

        Args:
            organization_id: Organization the rule belongs to
            tax_type: e.g. 'wage_tax_monthly', 'aov'
            as_of_date: The pay date

        Raises:
            NoApplicableRuleError: If no rule set matches
            AmbiguousRuleError: If more than one rule set matches
        """
        return self._lookup(
            "tax rule set",
            organization_id,
            tax_type,
            as_of_date,
            self.reference_data.tax_rules,
        )

    def resolve_allowance(
        self, organization_id: UUID, allowance_type: str, as_of_date: date
    ) -> AllowanceRule:
        """Resolve the allowance row effective on as_of_date."""
        return self._lookup(
            "allowance",
            organization_id,
            allowance_type,
            as_of_date,
            self.reference_data.allowances,
        )

    def resolve_deduction(
        self,
        organization_id: UUID,
        as_of_date: date,
        deduction_type: str = STANDARD_DEDUCTION,
    ) -> DeductionRule:
        """Resolve the deductible cost rule effective on as_of_date."""
        return self._lookup(
            "deductible cost rule",
            organization_id,
            deduction_type,
            as_of_date,
            self.reference_data.deduction_rules,
        )

    def has_allowance(self, allowance_type: str) -> bool:
        return any(a.allowance_type == allowance_type for a in self.reference_data.allowances)

    def _lookup(self, record_type, organization_id, key, as_of_date, records):
        if organization_id != self.reference_data.organization_id:
            raise NoApplicableRuleError(record_type, key, as_of_date, organization_id)

        cache_key = (record_type, key, as_of_date)
        if cache_key in self._cache:
            return self._cache[cache_key]

        record = find_effective(records, record_type, key, as_of_date, organization_id)

        self._cache[cache_key] = record
        return record
