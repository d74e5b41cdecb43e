"""Seed script for Suriname tax reference data (2023-2025).

Run with:
    python scripts/seed_tax_rules.py

Seeds wage tax, overtime, lump sum, AOV and AWW rule sets, the tax-free
allowances, standard deductible costs and the forfait benefit components for
the organization in SEED_ORGANIZATION_ID. Every record goes through the rule
administration service, so bracket tables and effective windows are validated
at seed time.
"""

from __future__ import annotations

import asyncio
import os
from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from payroll_tax_engine.config import configure_logging
from payroll_tax_engine.database import create_all, get_session, init_db
from payroll_tax_engine.models import TaxRuleSet
from payroll_tax_engine.schemas import (
    AllowanceCreate,
    DeductibleCostRuleCreate,
    PayComponentCreate,
    TaxBracketCreate,
    TaxRuleSetCreate,
)
from payroll_tax_engine.services.rule_admin import RuleAdministrationService

DEFAULT_ORGANIZATION_ID = "96a08639-b162-4959-80ab-a839d57648ef"

WAGE_TAX_ANNUAL = [(0, 42000, 8), (42000, 84000, 18), (84000, 126000, 28), (126000, None, 38)]
WAGE_TAX_MONTHLY = [(0, 3500, 8), (3500, 7000, 18), (7000, 10500, 28), (10500, None, 38)]
WAGE_TAX_ANNUAL_2023 = [
    (0, "11356.80", 8),
    ("11356.80", "19273.80", 18),
    ("19273.80", "30193.80", 28),
    ("30193.80", None, 38),
]
WAGE_TAX_MONTHLY_2023 = [
    (0, "946.40", 8),
    ("946.40", "1606.15", 18),
    ("1606.15", "2516.15", 28),
    ("2516.15", None, 38),
]

# (tax_type, name, start, end, method, brackets)
TAX_RULE_SETS = [
    ("wage_tax", "Suriname Wage Tax 2023", date(2023, 1, 1), date(2023, 12, 31), "bracket", WAGE_TAX_ANNUAL_2023),
    ("wage_tax", "Suriname Wage Tax 2024", date(2024, 1, 1), date(2024, 12, 31), "bracket", WAGE_TAX_ANNUAL),
    ("wage_tax", "Suriname Wage Tax 2025", date(2025, 1, 1), date(2025, 12, 31), "bracket", WAGE_TAX_ANNUAL),
    ("wage_tax_monthly", "Suriname Wage Tax 2023 (Monthly)", date(2023, 1, 1), date(2023, 12, 31), "bracket", WAGE_TAX_MONTHLY_2023),
    ("wage_tax_monthly", "Suriname Wage Tax 2024 (Monthly)", date(2024, 1, 1), date(2024, 12, 31), "bracket", WAGE_TAX_MONTHLY),
    ("wage_tax_monthly", "Suriname Wage Tax 2025 (Monthly)", date(2025, 1, 1), date(2025, 12, 31), "bracket", WAGE_TAX_MONTHLY),
    (
        "lump_sum_benefits",
        "Suriname Lump Sum Benefits 2025",
        date(2025, 1, 1),
        date(2025, 12, 31),
        "bracket",
        [(0, 42000, 5), (42000, 84000, 15), (84000, 126000, 25), (126000, None, 35)],
    ),
    (
        "overtime",
        "Suriname Overtime Tax 2025 (Jan-Jun)",
        date(2025, 1, 1),
        date(2025, 6, 30),
        "bracket",
        [(0, 500, 5), (500, 1100, 15), (1100, None, 25)],
    ),
    (
        "overtime",
        "Suriname Overtime Tax 2025 (July onwards)",
        date(2025, 7, 1),
        date(2025, 12, 31),
        "bracket",
        [(0, 2500, 5), (2500, 7500, 15), (7500, None, 25)],
    ),
    ("aov", "Suriname AOV 2024", date(2024, 1, 1), date(2024, 12, 31), "flat_rate", [(0, None, 4)]),
    ("aov", "Suriname AOV 2025", date(2025, 1, 1), date(2025, 12, 31), "flat_rate", [(0, None, 4)]),
    ("aww", "Suriname AWW 2024", date(2024, 1, 1), date(2024, 12, 31), "flat_rate", [(0, None, 1)]),
    ("aww", "Suriname AWW 2025", date(2025, 1, 1), date(2025, 12, 31), "flat_rate", [(0, None, 1)]),
]

# (allowance_type, amount, is_percentage, cap_period, start, end, description)
ALLOWANCES = [
    ("tax_free_sum_annual", 90000, False, "annual", date(2023, 1, 1), date(2024, 12, 31), "Tax free sum per year 2023-2024"),
    ("tax_free_sum_annual", 108000, False, "annual", date(2025, 1, 1), date(2025, 12, 31), "Tax free sum per year 2025"),
    ("tax_free_sum_monthly", 7500, False, "per_payment", date(2023, 1, 1), date(2024, 12, 31), "Tax free sum per month 2023-2024"),
    ("tax_free_sum_monthly", 9000, False, "per_payment", date(2025, 1, 1), date(2025, 12, 31), "Tax free sum per month 2025"),
    ("holiday_allowance", 6516, False, "annual", date(2022, 1, 1), date(2022, 12, 31), "Holiday allowance, max per year 2022"),
    ("holiday_allowance", 10016, False, "annual", date(2023, 1, 1), date(2024, 12, 31), "Holiday allowance, max per year 2023-2024"),
    ("holiday_allowance", 19500, False, "annual", date(2025, 1, 1), date(2025, 12, 31), "Holiday allowance, max per year 2025"),
    ("bonus_gratuity", 10016, False, "annual", date(2023, 1, 1), date(2024, 12, 31), "Gratuities and bonuses, max per year 2023-2024"),
    ("bonus_gratuity", 19500, False, "annual", date(2025, 1, 1), date(2025, 12, 31), "Gratuities and bonuses, max per year 2025"),
    ("child_allowance", 75, False, "per_payment", date(2021, 1, 1), date(2021, 6, 30), "Child allowance per month Jan-Jun 2021"),
    ("child_allowance", 125, False, "per_payment", date(2021, 7, 1), None, "Child allowance per month from July 2021"),
    ("exchange_rate_compensation", 100, False, "per_payment", date(2021, 1, 1), date(2021, 8, 31), "Exchange rate compensation Jan-Aug 2021"),
    ("exchange_rate_compensation", 800, False, "per_payment", date(2021, 9, 1), date(2025, 12, 31), "Exchange rate compensation Sep 2021-2025"),
    ("pension_payment", 3500, False, "per_payment", date(2025, 1, 1), date(2025, 2, 28), "Pension payment (twice AOV) Jan-Feb 2025"),
    ("pension_payment", 4500, False, "per_payment", date(2025, 3, 1), date(2025, 12, 31), "Pension payment (twice AOV) from March 2025"),
]

# Anniversary benefits: percentage of one monthly wage
ANNIVERSARIES = [(10, 25), (15, 50), (20, 75), (25, 100), (30, 150), (35, 200), (40, 300)]

# (amount %, max per year, start, end)
STANDARD_DEDUCTIONS = [
    (4, 1200, date(2023, 1, 1), date(2023, 12, 31)),
    (4, 4800, date(2024, 1, 1), None),
]

# (code, name, formula, required variables)
FORFAIT_COMPONENTS = [
    ("FORFAIT_COMPANY_CAR", "Auto van de Zaak (2% Forfait)", "car_catalog_value * 0.02 / 12", ["car_catalog_value"]),
    ("FORFAIT_MEDICAL_TREATMENT", "Vrije Geneeskundige Behandeling (3% Forfait)", "MIN(annual_salary * 0.03, 200) / 12", ["annual_salary"]),
    ("FORFAIT_FREE_HOUSING", "Vrije Woning (7.5% Forfait)", "annual_salary * 0.075 / 12", ["annual_salary"]),
    ("FORFAIT_FULL_BOARD", "Kost en Inwoning (SRD 10/dag)", "days_with_board * 10", ["days_with_board"]),
    ("FORFAIT_LODGING", "Inwoning (SRD 5/dag)", "days_with_lodging * 5", ["days_with_lodging"]),
    ("FORFAIT_HOT_MEAL", "Warme Maaltijd (SRD 5)", "meal_count * 5", ["meal_count"]),
]


def _brackets(rows) -> list[TaxBracketCreate]:
    return [
        TaxBracketCreate(
            bracket_order=i,
            income_min=Decimal(str(low)),
            income_max=Decimal(str(high)) if high is not None else None,
            rate_percentage=Decimal(str(rate)),
        )
        for i, (low, high, rate) in enumerate(rows, start=1)
    ]


async def seed_tax_rule_sets(admin: RuleAdministrationService, organization_id: UUID) -> None:
    for tax_type, name, start, end, method, rows in TAX_RULE_SETS:
        await admin.create_rule_set(
            organization_id,
            TaxRuleSetCreate(
                tax_type=tax_type,
                tax_name=name,
                effective_from=start,
                effective_to=end,
                calculation_method=method,
                brackets=_brackets(rows),
            ),
        )
        print(f"Created {name}")


async def seed_allowances(admin: RuleAdministrationService, organization_id: UUID) -> None:
    for allowance_type, amount, is_percentage, cap_period, start, end, description in ALLOWANCES:
        await admin.create_allowance(
            organization_id,
            AllowanceCreate(
                allowance_type=allowance_type,
                amount=Decimal(amount),
                is_percentage=is_percentage,
                cap_period=cap_period,
                effective_from=start,
                effective_to=end,
                description=description,
            ),
        )
    print(f"Created {len(ALLOWANCES)} allowances")

    for years, percentage in ANNIVERSARIES:
        await admin.create_allowance(
            organization_id,
            AllowanceCreate(
                allowance_type=f"anniversary_{years}_years",
                amount=Decimal(percentage),
                is_percentage=True,
                cap_period="per_payment",
                effective_from=date(2021, 1, 1),
                description=f"Anniversary benefit for {years} years: {percentage}% of one monthly wage",
            ),
        )
    print(f"Created {len(ANNIVERSARIES)} anniversary allowances")


async def seed_deductible_costs(admin: RuleAdministrationService, organization_id: UUID) -> None:
    for amount, maximum, start, end in STANDARD_DEDUCTIONS:
        await admin.create_deductible_cost_rule(
            organization_id,
            DeductibleCostRuleCreate(
                amount=Decimal(amount),
                is_percentage=True,
                max_deduction=Decimal(maximum),
                effective_from=start,
                effective_to=end,
            ),
        )
    print("Created standard deductible costs")


async def seed_forfait_components(admin: RuleAdministrationService, organization_id: UUID) -> None:
    for code, name, formula, required in FORFAIT_COMPONENTS:
        await admin.create_component(
            organization_id,
            PayComponentCreate(
                code=code,
                name=name,
                category="benefit_forfait",
                calculation_type="formula",
                formula=formula,
                is_system_component=True,
                metadata={"required_variables": required},
            ),
        )
    print(f"Created {len(FORFAIT_COMPONENTS)} forfait components")


async def seed(session: AsyncSession, organization_id: UUID) -> bool:
    """Seed all reference data. Returns False if the organization already has rules."""
    existing = await session.execute(
        select(TaxRuleSet.rule_set_id).where(TaxRuleSet.organization_id == organization_id).limit(1)
    )
    if existing.first() is not None:
        print("Tax rules already exist, skipping...")
        return False

    admin = RuleAdministrationService(session)
    await seed_tax_rule_sets(admin, organization_id)
    await seed_allowances(admin, organization_id)
    await seed_deductible_costs(admin, organization_id)
    await seed_forfait_components(admin, organization_id)
    return True


async def main():
    """Run seed script."""
    configure_logging()
    organization_id = UUID(os.getenv("SEED_ORGANIZATION_ID", DEFAULT_ORGANIZATION_ID))
    print(f"Seeding tax rules for organization {organization_id}...")

    engine, _ = init_db()
    await create_all(engine)
    async with get_session() as session:
        await seed(session, organization_id)

    print("\nDone! Tax rules seeded successfully.")


if __name__ == "__main__":
    asyncio.run(main())
