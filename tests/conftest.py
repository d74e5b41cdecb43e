"""Pytest fixtures for payroll tax engine tests."""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Any, AsyncGenerator
from uuid import UUID, uuid4

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payroll_tax_engine.calculators.allowance_ledger import AllowanceLedger
from payroll_tax_engine.calculators.composer import PayrollLineComposer
from payroll_tax_engine.calculators.rule_resolver import RuleResolver
from payroll_tax_engine.calculators.types import (
    AllowanceRule,
    CalculationMethod,
    CalculationMode,
    CalculationType,
    CapPeriod,
    ComponentAssignment,
    ComponentType,
    DeductionRule,
    EmployeePayrollInput,
    PayComponentDefinition,
    ReferenceData,
    ResidenceStatus,
    TaxBracket,
    TaxRule,
)
from payroll_tax_engine.config import Settings
from payroll_tax_engine.database import create_all, create_session_factory, get_engine

ORGANIZATION_ID = UUID("96a08639-b162-4959-80ab-a839d57648ef")

YEAR_2025 = (date(2025, 1, 1), date(2025, 12, 31))

MONTHLY_WAGE_TAX = [(0, 3500, 8), (3500, 7000, 18), (7000, 10500, 28), (10500, None, 38)]
ANNUAL_WAGE_TAX = [(0, 42000, 8), (42000, 84000, 18), (84000, 126000, 28), (126000, None, 38)]
OVERTIME_H1_2025 = [(0, 500, 5), (500, 1100, 15), (1100, None, 25)]


class RuleFactory:
    """Builds reference data records and run inputs for one organization."""

    def __init__(self, organization_id: UUID):
        self.organization_id = organization_id

    def brackets(self, rows) -> tuple[TaxBracket, ...]:
        return tuple(
            TaxBracket(
                bracket_order=i,
                income_min=Decimal(str(low)),
                income_max=Decimal(str(high)) if high is not None else None,
                rate_percentage=Decimal(str(rate)),
            )
            for i, (low, high, rate) in enumerate(rows, start=1)
        )

    def tax_rule(
        self,
        tax_type: str,
        rows,
        start: date = YEAR_2025[0],
        end: date | None = YEAR_2025[1],
        method: CalculationMethod = CalculationMethod.BRACKET,
        mode: CalculationMode | None = None,
        annual_cap: Decimal | None = None,
    ) -> TaxRule:
        return TaxRule(
            rule_set_id=uuid4(),
            organization_id=self.organization_id,
            tax_type=tax_type,
            effective_from=start,
            effective_to=end,
            calculation_method=method,
            calculation_mode=mode,
            brackets=self.brackets(rows),
            annual_cap=annual_cap,
        )

    def flat_rule(self, tax_type: str, rate, **kwargs) -> TaxRule:
        return self.tax_rule(
            tax_type, [(0, None, rate)], method=CalculationMethod.FLAT_RATE, **kwargs
        )

    def allowance(
        self,
        allowance_type: str,
        amount,
        start: date = YEAR_2025[0],
        end: date | None = YEAR_2025[1],
        is_percentage: bool = False,
        cap_period: CapPeriod = CapPeriod.ANNUAL,
    ) -> AllowanceRule:
        return AllowanceRule(
            allowance_id=uuid4(),
            organization_id=self.organization_id,
            allowance_type=allowance_type,
            amount=Decimal(str(amount)),
            effective_from=start,
            effective_to=end,
            is_percentage=is_percentage,
            cap_period=cap_period,
        )

    def deduction(
        self,
        amount=4,
        max_deduction=4800,
        start: date = date(2024, 1, 1),
        end: date | None = None,
        is_percentage: bool = True,
    ) -> DeductionRule:
        return DeductionRule(
            rule_id=uuid4(),
            organization_id=self.organization_id,
            deduction_type="standard",
            amount=Decimal(str(amount)),
            effective_from=start,
            effective_to=end,
            is_percentage=is_percentage,
            max_deduction=Decimal(str(max_deduction)) if max_deduction is not None else None,
        )

    def suriname_2025(self, **overrides: Any) -> ReferenceData:
        """Monthly/annual wage tax, overtime H1, AOV, AWW and the 2025 allowances."""
        tax_rules = overrides.get(
            "tax_rules",
            (
                self.tax_rule("wage_tax_monthly", MONTHLY_WAGE_TAX),
                self.tax_rule("wage_tax", ANNUAL_WAGE_TAX),
                self.tax_rule(
                    "overtime", OVERTIME_H1_2025, end=date(2025, 6, 30)
                ),
                self.flat_rule("aov", 4),
                self.flat_rule("aww", 1),
            ),
        )
        allowances = overrides.get(
            "allowances",
            (
                self.allowance("tax_free_sum_monthly", 9000, cap_period=CapPeriod.PER_PAYMENT),
                self.allowance("tax_free_sum_annual", 108000),
                self.allowance("holiday_allowance", 19500),
                self.allowance("bonus_gratuity", 19500),
                self.allowance(
                    "child_allowance", 125, start=date(2021, 7, 1), end=None,
                    cap_period=CapPeriod.PER_PAYMENT,
                ),
                self.allowance(
                    "anniversary_10_years", 25, start=date(2021, 1, 1), end=None,
                    is_percentage=True, cap_period=CapPeriod.PER_PAYMENT,
                ),
            ),
        )
        deduction_rules = overrides.get("deduction_rules", (self.deduction(),))
        return ReferenceData(
            organization_id=self.organization_id,
            tax_rules=tuple(tax_rules),
            allowances=tuple(allowances),
            deduction_rules=tuple(deduction_rules),
        )

    def component(
        self,
        code: str,
        category: str = "regular_salary",
        calculation_type: CalculationType = CalculationType.FIXED,
        default_amount=None,
        formula: str | None = None,
        percentage_rate=None,
        component_type: ComponentType = ComponentType.EARNING,
        is_taxable: bool = True,
        metadata: dict[str, Any] | None = None,
    ) -> PayComponentDefinition:
        return PayComponentDefinition(
            component_id=uuid4(),
            code=code,
            name=code.replace("_", " ").title(),
            component_type=component_type,
            category=category,
            calculation_type=calculation_type,
            default_amount=Decimal(str(default_amount)) if default_amount is not None else None,
            formula=formula,
            percentage_rate=Decimal(str(percentage_rate)) if percentage_rate is not None else None,
            is_taxable=is_taxable,
            metadata=metadata or {},
        )

    def employee(
        self,
        *assignments: ComponentAssignment | PayComponentDefinition,
        variables: dict[str, Any] | None = None,
        residence_status: ResidenceStatus = ResidenceStatus.RESIDENT,
        employee_id: UUID | None = None,
    ) -> EmployeePayrollInput:
        return EmployeePayrollInput(
            employee_id=employee_id or uuid4(),
            assignments=tuple(
                a if isinstance(a, ComponentAssignment) else ComponentAssignment(component=a)
                for a in assignments
            ),
            variables=variables or {},
            residence_status=residence_status,
        )

    def salary(self, amount) -> PayComponentDefinition:
        return self.component("BASE_SALARY", default_amount=amount)


@pytest.fixture
def organization_id() -> UUID:
    return ORGANIZATION_ID


@pytest.fixture
def rules(organization_id) -> RuleFactory:
    return RuleFactory(organization_id)


@pytest.fixture
def reference_data(rules) -> ReferenceData:
    return rules.suriname_2025()


@pytest.fixture
def resolver(reference_data) -> RuleResolver:
    return RuleResolver(reference_data)


@pytest.fixture
def ledger(resolver) -> AllowanceLedger:
    return AllowanceLedger(resolver)


@pytest.fixture
def composer(resolver, ledger) -> PayrollLineComposer:
    return PayrollLineComposer(resolver, ledger, engine_version="1.0.0-test")


@pytest.fixture
def settings() -> Settings:
    """Settings for tests; one worker keeps SQLite writers serialised."""
    return Settings(
        database_url="sqlite+aiosqlite://",
        engine_version="1.0.0-test",
        max_concurrency=1,
        commit_retry_attempts=3,
        near_cap_threshold_percent=Decimal("10"),
        default_country="SR",
        log_level="DEBUG",
    )


@pytest_asyncio.fixture
async def engine(tmp_path):
    """File-backed SQLite engine so every session sees committed data."""
    engine = get_engine(f"sqlite+aiosqlite:///{tmp_path / 'payroll_tax.db'}")
    await create_all(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest_asyncio.fixture
async def session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for each test."""
    async with session_factory() as session:
        yield session
        await session.rollback()
