"""Integration tests for RuleAdministrationService (SQLite)."""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest

from payroll_tax_engine.errors import (
    OverlappingWindowError,
    RuleSetImmutableError,
    RuleValidationError,
    SystemComponentProtectedError,
)
from payroll_tax_engine.models import PayrollCommit, PayrollCommitRuleSet
from payroll_tax_engine.schemas import (
    AllowanceCreate,
    DeductibleCostRuleCreate,
    PayComponentCreate,
    TaxBracketCreate,
    TaxRuleSetCreate,
    TaxRuleSetUpdate,
    TaxRuleSetVersionCreate,
)
from payroll_tax_engine.services.rule_admin import RuleAdministrationService

MONTHLY_WAGE_TAX = [(0, 3500, 8), (3500, 7000, 18), (7000, 10500, 28), (10500, None, 38)]


def bracket_schemas(rows):
    return [
        TaxBracketCreate(
            bracket_order=i,
            income_min=Decimal(str(low)),
            income_max=Decimal(str(high)) if high is not None else None,
            rate_percentage=Decimal(str(rate)),
        )
        for i, (low, high, rate) in enumerate(rows, start=1)
    ]


def monthly_rule_set(start=date(2025, 1, 1), end=None, rows=MONTHLY_WAGE_TAX):
    return TaxRuleSetCreate(
        tax_type="wage_tax_monthly",
        tax_name="Loonbelasting (maandtabel)",
        effective_from=start,
        effective_to=end,
        brackets=bracket_schemas(rows),
    )


async def add_commit_referencing(session, organization_id, rule_set_id, period_date):
    """Insert a committed payroll record that used the rule set."""
    commit = PayrollCommit(
        organization_id=organization_id,
        employee_id=uuid4(),
        run_id=uuid4(),
        period_date=period_date,
        calculation_id=uuid4(),
        inputs_fingerprint="inputs",
        rules_fingerprint="rules",
        line_hash="line",
        engine_version="1.0.0-test",
        gross_pay=Decimal("0"),
        total_tax=Decimal("0"),
        net_pay=Decimal("0"),
        payslip={},
    )
    commit.rule_sets = [PayrollCommitRuleSet(rule_set_id=rule_set_id)]
    session.add(commit)
    await session.flush()


@pytest.fixture
def admin(session):
    return RuleAdministrationService(session)


class TestCreateRuleSet:
    """Test rule set creation and validation."""

    async def test_create_first_version(self, admin, organization_id):
        rule_set = await admin.create_rule_set(organization_id, monthly_rule_set())

        assert rule_set.version == 1
        assert rule_set.tax_type == "wage_tax_monthly"
        assert [b.bracket_order for b in rule_set.brackets] == [1, 2, 3, 4]
        assert rule_set.to_record().effective_mode.value == "proportional_distribution"

    async def test_overlapping_window_rejected(self, admin, organization_id):
        first = await admin.create_rule_set(organization_id, monthly_rule_set())

        with pytest.raises(OverlappingWindowError) as exc:
            await admin.create_rule_set(organization_id, monthly_rule_set(start=date(2025, 6, 1)))
        assert exc.value.conflicting_id == first.rule_set_id

    async def test_adjacent_window_gets_next_version(self, admin, organization_id):
        await admin.create_rule_set(organization_id, monthly_rule_set(end=date(2025, 12, 31)))
        second = await admin.create_rule_set(
            organization_id, monthly_rule_set(start=date(2026, 1, 1))
        )
        assert second.version == 2

    async def test_other_organization_does_not_overlap(self, admin, organization_id):
        await admin.create_rule_set(organization_id, monthly_rule_set())
        other = await admin.create_rule_set(uuid4(), monthly_rule_set())
        assert other.version == 1

    async def test_every_problem_is_reported(self, admin, organization_id):
        data = TaxRuleSetCreate(
            tax_type="church_tax",
            effective_from=date(2025, 1, 1),
            brackets=bracket_schemas([(0, 1000, 8), (1200, None, 18)]),
        )
        with pytest.raises(RuleValidationError) as exc:
            await admin.create_rule_set(organization_id, data)

        assert len(exc.value.errors) == 2
        assert exc.value.errors[0] == "unknown tax_type 'church_tax'"

    async def test_flat_rate_takes_single_bracket(self, admin, organization_id):
        data = TaxRuleSetCreate(
            tax_type="aov",
            effective_from=date(2025, 1, 1),
            calculation_method="flat_rate",
            brackets=bracket_schemas([(0, None, 4)]),
        )
        rule_set = await admin.create_rule_set(organization_id, data)
        assert rule_set.to_record().effective_mode.value == "component_based"


class TestVersioning:
    """Test append-only versioning."""

    async def test_new_version_closes_previous_window(self, admin, organization_id):
        source = await admin.create_rule_set(organization_id, monthly_rule_set())

        new = await admin.create_rule_version(
            source.rule_set_id,
            TaxRuleSetVersionCreate(
                effective_from=date(2025, 7, 1),
                brackets=bracket_schemas([(0, 3500, 7), (3500, None, 18)]),
            ),
        )

        assert source.effective_to == date(2025, 6, 30)
        assert new.version == 2
        assert new.effective_from == date(2025, 7, 1)
        assert new.effective_to is None
        assert new.created_from_rule_set_id == source.rule_set_id
        assert new.tax_name == source.tax_name
        assert len(new.brackets) == 2

    async def test_brackets_copied_when_not_replaced(self, admin, organization_id):
        source = await admin.create_rule_set(organization_id, monthly_rule_set())
        new = await admin.create_rule_version(
            source.rule_set_id, TaxRuleSetVersionCreate(effective_from=date(2026, 1, 1))
        )

        assert [(b.income_min, b.rate_percentage) for b in new.brackets] == [
            (b.income_min, b.rate_percentage) for b in source.brackets
        ]

    async def test_must_start_after_source(self, admin, organization_id):
        source = await admin.create_rule_set(organization_id, monthly_rule_set())
        with pytest.raises(RuleValidationError):
            await admin.create_rule_version(
                source.rule_set_id, TaxRuleSetVersionCreate(effective_from=date(2025, 1, 1))
            )

    async def test_committed_payroll_after_new_start_blocks_version(
        self, admin, session, organization_id
    ):
        source = await admin.create_rule_set(organization_id, monthly_rule_set())
        await add_commit_referencing(session, organization_id, source.rule_set_id, date(2025, 8, 31))

        with pytest.raises(RuleSetImmutableError):
            await admin.create_rule_version(
                source.rule_set_id, TaxRuleSetVersionCreate(effective_from=date(2025, 7, 1))
            )
        assert source.effective_to is None

    async def test_committed_payroll_before_new_start_is_fine(
        self, admin, session, organization_id
    ):
        source = await admin.create_rule_set(organization_id, monthly_rule_set())
        await add_commit_referencing(session, organization_id, source.rule_set_id, date(2025, 3, 31))

        new = await admin.create_rule_version(
            source.rule_set_id, TaxRuleSetVersionCreate(effective_from=date(2025, 7, 1))
        )
        assert new.version == 2
        assert source.effective_to == date(2025, 6, 30)

    async def test_version_history_oldest_first(self, admin, organization_id):
        source = await admin.create_rule_set(organization_id, monthly_rule_set())
        await admin.create_rule_version(
            source.rule_set_id, TaxRuleSetVersionCreate(effective_from=date(2026, 1, 1))
        )

        history = await admin.get_version_history(organization_id, "wage_tax_monthly")
        assert [r.version for r in history] == [1, 2]

    async def test_compare_versions(self, admin, organization_id):
        source = await admin.create_rule_set(organization_id, monthly_rule_set())
        new = await admin.create_rule_version(
            source.rule_set_id,
            TaxRuleSetVersionCreate(
                effective_from=date(2026, 1, 1),
                brackets=bracket_schemas(
                    [(0, 3500, 6), (3500, 7000, 18), (7000, 10500, 28), (10500, 20000, 38),
                     (20000, None, 40)]
                ),
            ),
        )

        comparison = await admin.compare_rule_versions(source.rule_set_id, new.rule_set_id)

        assert comparison.has_changes
        assert (comparison.from_version, comparison.to_version) == (1, 2)
        assert "effective_from" in [c.field for c in comparison.field_changes]
        assert comparison.brackets_added == [5]
        assert comparison.brackets_removed == []
        changed = {c.field for c in comparison.bracket_changes}
        assert changed == {"bracket[1].rate_percentage", "bracket[4].income_max"}

    async def test_missing_rule_set(self, admin):
        with pytest.raises(ValueError, match="not found"):
            await admin.get_rule_set(uuid4())


class TestUpdateRuleSet:
    async def test_update_unreferenced_rule_set(self, admin, organization_id):
        rule_set = await admin.create_rule_set(organization_id, monthly_rule_set())

        updated = await admin.update_rule_set(
            rule_set.rule_set_id,
            TaxRuleSetUpdate(
                effective_to=date(2025, 12, 31),
                description="Corrected before first payroll",
                brackets=bracket_schemas([(0, 3000, 8), (3000, None, 18)]),
            ),
        )

        assert updated.effective_to == date(2025, 12, 31)
        assert updated.description == "Corrected before first payroll"
        assert [b.income_max for b in updated.brackets] == [Decimal("3000"), None]

    async def test_referenced_rule_set_is_immutable(self, admin, session, organization_id):
        rule_set = await admin.create_rule_set(organization_id, monthly_rule_set())
        await add_commit_referencing(session, organization_id, rule_set.rule_set_id, date(2025, 1, 31))

        with pytest.raises(RuleSetImmutableError):
            await admin.update_rule_set(rule_set.rule_set_id, TaxRuleSetUpdate(description="x"))

    async def test_invalid_replacement_brackets(self, admin, organization_id):
        rule_set = await admin.create_rule_set(organization_id, monthly_rule_set())
        with pytest.raises(RuleValidationError):
            await admin.update_rule_set(
                rule_set.rule_set_id,
                TaxRuleSetUpdate(brackets=bracket_schemas([(0, 3000, 8)])),
            )

    async def test_reopening_window_cannot_overlap(self, admin, organization_id):
        first = await admin.create_rule_set(organization_id, monthly_rule_set(end=date(2025, 12, 31)))
        await admin.create_rule_set(organization_id, monthly_rule_set(start=date(2026, 1, 1)))

        with pytest.raises(OverlappingWindowError):
            await admin.update_rule_set(first.rule_set_id, TaxRuleSetUpdate(effective_to=None))


class TestAllowancesAndDeductions:
    async def test_allowance_overlap_rejected(self, admin, organization_id):
        data = AllowanceCreate(
            allowance_type="holiday_allowance",
            amount=Decimal("19500"),
            effective_from=date(2025, 1, 1),
        )
        await admin.create_allowance(organization_id, data)

        with pytest.raises(OverlappingWindowError):
            await admin.create_allowance(organization_id, data)

    async def test_deduction_rules_by_window(self, admin, organization_id):
        await admin.create_deductible_cost_rule(
            organization_id,
            DeductibleCostRuleCreate(
                amount=Decimal("4"),
                max_deduction=Decimal("4800"),
                effective_from=date(2024, 1, 1),
                effective_to=date(2024, 12, 31),
            ),
        )
        rule = await admin.create_deductible_cost_rule(
            organization_id,
            DeductibleCostRuleCreate(amount=Decimal("4"), effective_from=date(2025, 1, 1)),
        )
        assert rule.max_deduction is None

        with pytest.raises(OverlappingWindowError):
            await admin.create_deductible_cost_rule(
                organization_id,
                DeductibleCostRuleCreate(amount=Decimal("5"), effective_from=date(2024, 6, 1)),
            )


class TestPayComponents:
    """Test the pay component catalogue."""

    async def test_formula_component_infers_variables(self, admin, organization_id):
        component = await admin.create_component(
            organization_id,
            PayComponentCreate(
                code="MEDICAL",
                name="Medical treatment forfait",
                category="forfait",
                calculation_type="formula",
                formula="MIN(annual_salary * 0.03, 200) / 12",
            ),
        )
        assert component.component_metadata["required_variables"] == ["annual_salary"]
        assert component.to_definition().required_variables == ["annual_salary"]

    async def test_undeclared_variable_rejected(self, admin, organization_id):
        with pytest.raises(RuleValidationError) as exc:
            await admin.create_component(
                organization_id,
                PayComponentCreate(
                    code="CAR",
                    name="Company car",
                    category="forfait",
                    calculation_type="formula",
                    formula="car_catalog_value * 0.02 / months",
                    metadata={"required_variables": ["car_catalog_value"]},
                ),
            )
        assert exc.value.errors == ["formula uses undeclared variable 'months'"]

    async def test_disallowed_formula_rejected(self, admin, organization_id):
        with pytest.raises(RuleValidationError):
            await admin.create_component(
                organization_id,
                PayComponentCreate(
                    code="BAD",
                    name="Bad",
                    category="forfait",
                    calculation_type="formula",
                    formula="__import__('os')",
                ),
            )

    async def test_duplicate_code_rejected(self, admin, organization_id):
        data = PayComponentCreate(
            code="BASE_SALARY", name="Base salary", category="regular_salary"
        )
        await admin.create_component(organization_id, data)
        with pytest.raises(RuleValidationError):
            await admin.create_component(organization_id, data)

    async def test_system_component_clone_and_delete(self, admin, organization_id):
        system = await admin.create_component(
            organization_id,
            PayComponentCreate(
                code="HOLIDAY",
                name="Holiday allowance",
                category="holiday_allowance",
                default_amount=Decimal("1000"),
                is_system_component=True,
            ),
        )

        with pytest.raises(SystemComponentProtectedError):
            await admin.delete_component(system.component_id)

        clone = await admin.clone_component(
            system.component_id, "HOLIDAY_CUSTOM", {"default_amount": Decimal("1500")}
        )
        assert not clone.is_system_component
        assert clone.cloned_from_component_id == system.component_id
        assert clone.default_amount == Decimal("1500")
        assert clone.category == "holiday_allowance"

        await admin.delete_component(clone.component_id)
        codes = [c.code for c in await admin.list_components(organization_id)]
        assert codes == ["HOLIDAY"]

    async def test_clone_rejects_unknown_override(self, admin, organization_id):
        source = await admin.create_component(
            organization_id,
            PayComponentCreate(code="BASE_SALARY", name="Base salary", category="regular_salary"),
        )
        with pytest.raises(RuleValidationError):
            await admin.clone_component(source.component_id, "COPY", {"organization_id": uuid4()})

    async def test_formula_authoring_helpers(self, admin):
        assert admin.validate_formula("meal_count * 5") == []
        result = admin.test_formula("meal_count * 5", {"meal_count": 3})
        assert result.success
        assert result.result == Decimal("15.00")
