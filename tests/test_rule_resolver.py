"""Unit tests for RuleResolver.

Resolution is pure over a ReferenceData snapshot, so no database is needed.
"""

from datetime import date
from uuid import uuid4

import pytest

from payroll_tax_engine.calculators.rule_resolver import RuleResolver, find_effective
from payroll_tax_engine.calculators.types import ReferenceData
from payroll_tax_engine.errors import AmbiguousRuleError, NoApplicableRuleError

BRACKETS = [(0, 1000, 5), (1000, None, 15)]


class TestEffectiveWindow:
    """Test effective-window matching."""

    def test_resolves_by_pay_date(self, rules, organization_id):
        """Overtime rates changed on 1 July 2025."""
        first_half = rules.tax_rule("overtime", BRACKETS, end=date(2025, 6, 30))
        second_half = rules.tax_rule("overtime", BRACKETS, start=date(2025, 7, 1))
        resolver = RuleResolver(rules.suriname_2025(tax_rules=(first_half, second_half)))

        assert resolver.resolve(organization_id, "overtime", date(2025, 6, 30)) == first_half
        assert resolver.resolve(organization_id, "overtime", date(2025, 7, 1)) == second_half

    def test_window_bounds_are_inclusive(self, rules, organization_id):
        rule = rules.tax_rule("overtime", BRACKETS, start=date(2025, 3, 1), end=date(2025, 3, 31))
        resolver = RuleResolver(rules.suriname_2025(tax_rules=(rule,)))

        assert resolver.resolve(organization_id, "overtime", date(2025, 3, 1)) == rule
        assert resolver.resolve(organization_id, "overtime", date(2025, 3, 31)) == rule
        with pytest.raises(NoApplicableRuleError):
            resolver.resolve(organization_id, "overtime", date(2025, 4, 1))

    def test_open_ended_window(self, rules, organization_id):
        rule = rules.tax_rule("aov", [(0, None, 4)], end=None)
        resolver = RuleResolver(rules.suriname_2025(tax_rules=(rule,)))

        assert resolver.resolve(organization_id, "aov", date(2040, 1, 1)) == rule

    def test_no_rule_before_first_window(self, rules, organization_id):
        resolver = RuleResolver(rules.suriname_2025())
        with pytest.raises(NoApplicableRuleError) as exc:
            resolver.resolve(organization_id, "wage_tax_monthly", date(2024, 12, 31))

        assert exc.value.key == "wage_tax_monthly"
        assert exc.value.as_of_date == date(2024, 12, 31)
        assert exc.value.code == "NO_APPLICABLE_RULE"


class TestAmbiguity:
    """Overlapping windows are a data defect, never resolved silently."""

    def test_overlap_raises_with_all_matching_ids(self, rules, organization_id):
        a = rules.tax_rule("overtime", BRACKETS)
        b = rules.tax_rule("overtime", BRACKETS, start=date(2025, 6, 1), end=None)
        resolver = RuleResolver(rules.suriname_2025(tax_rules=(a, b)))

        with pytest.raises(AmbiguousRuleError) as exc:
            resolver.resolve(organization_id, "overtime", date(2025, 6, 15))
        assert sorted(exc.value.matching_ids, key=str) == sorted(
            [a.rule_set_id, b.rule_set_id], key=str
        )

    def test_outside_overlap_still_resolves(self, rules, organization_id):
        a = rules.tax_rule("overtime", BRACKETS)
        b = rules.tax_rule("overtime", BRACKETS, start=date(2025, 6, 1), end=None)
        resolver = RuleResolver(rules.suriname_2025(tax_rules=(a, b)))

        assert resolver.resolve(organization_id, "overtime", date(2025, 1, 15)) == a
        assert resolver.resolve(organization_id, "overtime", date(2026, 1, 15)) == b

    def test_find_effective_ignores_other_keys(self, rules):
        aov = rules.flat_rule("aov", 4)
        aww = rules.flat_rule("aww", 1)
        assert find_effective([aov, aww], "tax rule set", "aww", date(2025, 5, 1)) == aww


class TestAllowancesAndDeductions:
    """Test allowance and deductible cost rule resolution."""

    def test_resolve_allowance(self, resolver, organization_id):
        allowance = resolver.resolve_allowance(organization_id, "holiday_allowance", date(2025, 5, 1))
        assert allowance.amount == 19500

    def test_resolve_standard_deduction(self, resolver, organization_id):
        rule = resolver.resolve_deduction(organization_id, date(2025, 5, 1))
        assert rule.is_percentage
        assert rule.max_deduction == 4800

    def test_unknown_allowance_type(self, resolver, organization_id):
        assert not resolver.has_allowance("company_bicycle")
        with pytest.raises(NoApplicableRuleError):
            resolver.resolve_allowance(organization_id, "company_bicycle", date(2025, 5, 1))


class TestOrganizationScope:
    """Test organization scoping and the batch cache."""

    def test_other_organization_gets_no_rule(self, resolver):
        with pytest.raises(NoApplicableRuleError) as exc:
            resolver.resolve(uuid4(), "aov", date(2025, 5, 1))
        assert exc.value.organization_id is not None

    def test_cache_returns_same_record(self, resolver, organization_id):
        first = resolver.resolve(organization_id, "aov", date(2025, 5, 1))
        second = resolver.resolve(organization_id, "aov", date(2025, 5, 1))
        assert first is second

    def test_cache_not_shared_across_organizations(self, resolver, organization_id):
        resolver.resolve(organization_id, "aov", date(2025, 5, 1))
        with pytest.raises(NoApplicableRuleError):
            resolver.resolve(uuid4(), "aov", date(2025, 5, 1))

    def test_empty_reference_data(self, organization_id):
        resolver = RuleResolver(ReferenceData(organization_id=organization_id))
        with pytest.raises(NoApplicableRuleError):
            resolver.resolve(organization_id, "aov", date(2025, 5, 1))
