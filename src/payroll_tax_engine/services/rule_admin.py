"""Rule administration - authoring and versioning of reference data."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from typing import Any, Mapping
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from payroll_tax_engine.calculators.bracket_calculator import BracketCalculator
from payroll_tax_engine.calculators.formula import (
    FormulaEvaluator,
    FormulaIssue,
    FormulaTestResult,
)
from payroll_tax_engine.calculators.types import (
    CalculationMethod,
    CalculationMode,
    CalculationType,
    TaxBracket as TaxBracketRecord,
    TaxType,
)
from payroll_tax_engine.errors import (
    OverlappingWindowError,
    RuleSetImmutableError,
    RuleValidationError,
    SystemComponentProtectedError,
)
from payroll_tax_engine.models import (
    Allowance,
    DeductibleCostRule,
    PayComponent,
    TaxBracket,
    TaxRuleSet,
)
from payroll_tax_engine.schemas import (
    AllowanceCreate,
    DeductibleCostRuleCreate,
    PayComponentCreate,
    TaxBracketCreate,
    TaxRuleSetCreate,
    TaxRuleSetUpdate,
    TaxRuleSetVersionCreate,
)
from payroll_tax_engine.services.commit_service import PayrollCommitService

logger = logging.getLogger(__name__)

TAX_TYPES = frozenset(t.value for t in TaxType)

# Rule set properties compared between versions
COMPARED_FIELDS = (
    "tax_name",
    "description",
    "tax_type",
    "country",
    "effective_from",
    "effective_to",
    "calculation_method",
    "calculation_mode",
    "annual_cap",
)
BRACKET_FIELDS = ("income_min", "income_max", "rate_percentage", "fixed_amount")


@dataclass(frozen=True)
class FieldChange:
    field: str
    old: Any
    new: Any


@dataclass(frozen=True)
class RuleSetComparison:
    """Differences between two versions of a rule set."""

    from_rule_set_id: UUID
    to_rule_set_id: UUID
    from_version: int
    to_version: int
    field_changes: list[FieldChange] = field(default_factory=list)
    brackets_added: list[int] = field(default_factory=list)
    brackets_removed: list[int] = field(default_factory=list)
    bracket_changes: list[FieldChange] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(
            self.field_changes
            or self.brackets_added
            or self.brackets_removed
            or self.bracket_changes
        )


def _effective_mode(
    method: CalculationMethod, mode: CalculationMode | None
) -> CalculationMode:
    if mode is not None:
        return mode
    if method == CalculationMethod.FLAT_RATE:
        return CalculationMode.COMPONENT_BASED
    return CalculationMode.PROPORTIONAL_DISTRIBUTION


def _bracket_records(brackets: list[TaxBracketCreate]) -> list[TaxBracketRecord]:
    return [
        TaxBracketRecord(
            bracket_order=b.bracket_order,
            income_min=b.income_min,
            income_max=b.income_max,
            rate_percentage=b.rate_percentage,
            fixed_amount=b.fixed_amount,
        )
        for b in brackets
    ]


def _bracket_rows(brackets: list[TaxBracketCreate]) -> list[TaxBracket]:
    return [
        TaxBracket(
            bracket_order=b.bracket_order,
            income_min=b.income_min,
            income_max=b.income_max,
            rate_percentage=b.rate_percentage,
            fixed_amount=b.fixed_amount,
        )
        for b in sorted(brackets, key=lambda b: b.bracket_order)
    ]


def _bracket_schemas(rows: list[TaxBracket]) -> list[TaxBracketCreate]:
    return [
        TaxBracketCreate(
            bracket_order=b.bracket_order,
            income_min=b.income_min,
            income_max=b.income_max,
            rate_percentage=b.rate_percentage,
            fixed_amount=b.fixed_amount if b.fixed_amount is not None else Decimal("0"),
        )
        for b in rows
    ]


class RuleAdministrationService:
    """Service for authoring rule reference data.

    Key invariants:
    1. Bracket tables are validated before they are stored; a table that does
       not partition [0, inf) is rejected with every problem listed
    2. Records of one kind and key never have overlapping effective windows
    3. Versions are append-only; a rule set referenced by a committed payroll
       is never amended in place
    4. System pay components cannot be deleted, only cloned
    """

    def __init__(self, session: AsyncSession):
        self.session = session
        self.formula_evaluator = FormulaEvaluator()

    # ===== Tax rule sets =====

    async def get_rule_set(self, rule_set_id: UUID) -> TaxRuleSet:
        result = await self.session.execute(
            select(TaxRuleSet)
            .where(TaxRuleSet.rule_set_id == rule_set_id)
            .options(selectinload(TaxRuleSet.brackets))
        )
        rule_set = result.scalar_one_or_none()
        if rule_set is None:
            raise ValueError(f"Tax rule set {rule_set_id} not found")
        return rule_set

    async def create_rule_set(
        self, organization_id: UUID, data: TaxRuleSetCreate
    ) -> TaxRuleSet:
        """Create version 1 (or the next version) of a tax type's rule set.

        Raises:
            RuleValidationError: If the tax type or bracket table is invalid
            OverlappingWindowError: If the window overlaps an existing version
        """
        errors = []
        if data.tax_type not in TAX_TYPES:
            errors.append(f"unknown tax_type '{data.tax_type}'")
        mode = _effective_mode(data.calculation_method, data.calculation_mode)
        errors.extend(BracketCalculator.partition_errors(_bracket_records(data.brackets), mode))
        if errors:
            raise RuleValidationError(errors)

        await self._check_rule_set_overlap(
            organization_id, data.tax_type, data.effective_from, data.effective_to
        )

        rule_set = TaxRuleSet(
            organization_id=organization_id,
            country=data.country,
            tax_type=data.tax_type,
            tax_name=data.tax_name,
            description=data.description,
            effective_from=data.effective_from,
            effective_to=data.effective_to,
            calculation_method=data.calculation_method.value,
            calculation_mode=data.calculation_mode.value if data.calculation_mode else None,
            annual_cap=data.annual_cap,
            version=await self._next_version(organization_id, data.tax_type),
        )
        rule_set.brackets = _bracket_rows(data.brackets)
        self.session.add(rule_set)
        await self.session.flush()

        logger.info(
            "Created %s rule set %s v%d effective %s..%s",
            rule_set.tax_type,
            rule_set.rule_set_id,
            rule_set.version,
            rule_set.effective_from,
            rule_set.effective_to or "open",
        )
        return rule_set

    async def create_rule_version(
        self, rule_set_id: UUID, data: TaxRuleSetVersionCreate
    ) -> TaxRuleSet:
        """Append a new version effective from ``data.effective_from``.

        The source version's window is closed the day before the new version
        starts. Brackets are copied unless replaced.

        Raises:
            RuleValidationError: If the new version does not start after the
                source or its brackets are invalid
            RuleSetImmutableError: If committed payroll on or after the new
                start date used the source version
            OverlappingWindowError: If the new window overlaps another version
        """
        source = await self.get_rule_set(rule_set_id)
        if data.effective_from <= source.effective_from:
            raise RuleValidationError(
                [
                    f"new version must start after {source.effective_from}, "
                    f"got {data.effective_from}"
                ]
            )

        brackets = data.brackets if data.brackets is not None else _bracket_schemas(source.brackets)
        mode = _effective_mode(
            CalculationMethod(source.calculation_method),
            CalculationMode(source.calculation_mode) if source.calculation_mode else None,
        )
        errors = BracketCalculator.partition_errors(_bracket_records(brackets), mode)
        if errors:
            raise RuleValidationError(errors)

        if source.effective_to is None or source.effective_to >= data.effective_from:
            referenced_until = await PayrollCommitService(self.session).latest_reference_date(
                source.rule_set_id
            )
            if referenced_until is not None and referenced_until >= data.effective_from:
                raise RuleSetImmutableError(source.rule_set_id)
            source.effective_to = data.effective_from - timedelta(days=1)

        await self._check_rule_set_overlap(
            source.organization_id,
            source.tax_type,
            data.effective_from,
            data.effective_to,
            exclude_id=source.rule_set_id,
        )

        new = TaxRuleSet(
            organization_id=source.organization_id,
            country=source.country,
            tax_type=source.tax_type,
            tax_name=data.tax_name if data.tax_name is not None else source.tax_name,
            description=data.description if data.description is not None else source.description,
            effective_from=data.effective_from,
            effective_to=data.effective_to,
            calculation_method=source.calculation_method,
            calculation_mode=source.calculation_mode,
            annual_cap=data.annual_cap if data.annual_cap is not None else source.annual_cap,
            version=await self._next_version(source.organization_id, source.tax_type),
            created_from_rule_set_id=source.rule_set_id,
        )
        new.brackets = _bracket_rows(brackets)
        self.session.add(new)
        await self.session.flush()

        logger.info(
            "Created %s rule set version v%d (%s) from v%d (%s), effective %s",
            new.tax_type,
            new.version,
            new.rule_set_id,
            source.version,
            source.rule_set_id,
            new.effective_from,
        )
        return new

    async def update_rule_set(self, rule_set_id: UUID, changes: TaxRuleSetUpdate) -> TaxRuleSet:
        """Amend a rule set in place.

        Raises:
            RuleSetImmutableError: If committed payroll references the rule set
            RuleValidationError: If replacement brackets are invalid
            OverlappingWindowError: If a new effective_to overlaps another version
        """
        rule_set = await self.get_rule_set(rule_set_id)
        if await PayrollCommitService(self.session).is_rule_set_referenced(rule_set_id):
            raise RuleSetImmutableError(rule_set_id)

        provided = changes.model_fields_set
        if "brackets" in provided and changes.brackets is not None:
            mode = _effective_mode(
                CalculationMethod(rule_set.calculation_method),
                CalculationMode(rule_set.calculation_mode) if rule_set.calculation_mode else None,
            )
            errors = BracketCalculator.partition_errors(_bracket_records(changes.brackets), mode)
            if errors:
                raise RuleValidationError(errors)
            rule_set.brackets.clear()
            await self.session.flush()
            rule_set.brackets.extend(_bracket_rows(changes.brackets))

        if "effective_to" in provided:
            if changes.effective_to is not None and changes.effective_to < rule_set.effective_from:
                raise RuleValidationError(["effective_to must not precede effective_from"])
            await self._check_rule_set_overlap(
                rule_set.organization_id,
                rule_set.tax_type,
                rule_set.effective_from,
                changes.effective_to,
                exclude_id=rule_set.rule_set_id,
            )
            rule_set.effective_to = changes.effective_to

        for name in ("tax_name", "description", "annual_cap"):
            if name in provided:
                setattr(rule_set, name, getattr(changes, name))

        await self.session.flush()
        logger.info("Updated rule set %s: %s", rule_set_id, sorted(provided))
        return rule_set

    async def get_version_history(
        self, organization_id: UUID, tax_type: str
    ) -> list[TaxRuleSet]:
        """All versions of a tax type, oldest first."""
        result = await self.session.execute(
            select(TaxRuleSet)
            .where(
                TaxRuleSet.organization_id == organization_id,
                TaxRuleSet.tax_type == tax_type,
            )
            .options(selectinload(TaxRuleSet.brackets))
            .order_by(TaxRuleSet.version)
        )
        return list(result.scalars().all())

    async def compare_rule_versions(
        self, from_rule_set_id: UUID, to_rule_set_id: UUID
    ) -> RuleSetComparison:
        """Property and bracket differences between two rule set versions."""
        old = await self.get_rule_set(from_rule_set_id)
        new = await self.get_rule_set(to_rule_set_id)

        field_changes = [
            FieldChange(name, getattr(old, name), getattr(new, name))
            for name in COMPARED_FIELDS
            if getattr(old, name) != getattr(new, name)
        ]

        old_brackets = {b.bracket_order: b for b in old.brackets}
        new_brackets = {b.bracket_order: b for b in new.brackets}
        bracket_changes = []
        for order in sorted(old_brackets.keys() & new_brackets.keys()):
            for name in BRACKET_FIELDS:
                before = getattr(old_brackets[order], name)
                after = getattr(new_brackets[order], name)
                if before != after:
                    bracket_changes.append(FieldChange(f"bracket[{order}].{name}", before, after))

        return RuleSetComparison(
            from_rule_set_id=old.rule_set_id,
            to_rule_set_id=new.rule_set_id,
            from_version=old.version,
            to_version=new.version,
            field_changes=field_changes,
            brackets_added=sorted(new_brackets.keys() - old_brackets.keys()),
            brackets_removed=sorted(old_brackets.keys() - new_brackets.keys()),
            bracket_changes=bracket_changes,
        )

    # ===== Allowances and deductible cost rules =====

    async def create_allowance(self, organization_id: UUID, data: AllowanceCreate) -> Allowance:
        """Create an allowance cap row.

        Raises:
            OverlappingWindowError: If another row of the type overlaps
        """
        existing = await self.session.execute(
            select(Allowance).where(
                Allowance.organization_id == organization_id,
                Allowance.allowance_type == data.allowance_type,
            )
        )
        for row in existing.scalars().all():
            if row.overlaps(data.effective_from, data.effective_to):
                raise OverlappingWindowError("allowance", data.allowance_type, row.allowance_id)

        allowance = Allowance(
            organization_id=organization_id,
            country=data.country,
            allowance_type=data.allowance_type,
            amount=data.amount,
            is_percentage=data.is_percentage,
            cap_period=data.cap_period.value,
            description=data.description,
            effective_from=data.effective_from,
            effective_to=data.effective_to,
        )
        self.session.add(allowance)
        await self.session.flush()
        logger.info(
            "Created allowance %s %s effective %s",
            data.allowance_type,
            f"{data.amount}%" if data.is_percentage else data.amount,
            data.effective_from,
        )
        return allowance

    async def create_deductible_cost_rule(
        self, organization_id: UUID, data: DeductibleCostRuleCreate
    ) -> DeductibleCostRule:
        """Create a deductible cost rule.

        Raises:
            OverlappingWindowError: If another rule of the type overlaps
        """
        existing = await self.session.execute(
            select(DeductibleCostRule).where(
                DeductibleCostRule.organization_id == organization_id,
                DeductibleCostRule.deduction_type == data.deduction_type,
            )
        )
        for row in existing.scalars().all():
            if row.overlaps(data.effective_from, data.effective_to):
                raise OverlappingWindowError(
                    "deductible_cost_rule", data.deduction_type, row.rule_id
                )

        rule = DeductibleCostRule(
            organization_id=organization_id,
            country=data.country,
            deduction_type=data.deduction_type,
            amount=data.amount,
            is_percentage=data.is_percentage,
            max_deduction=data.max_deduction,
            effective_from=data.effective_from,
            effective_to=data.effective_to,
        )
        self.session.add(rule)
        await self.session.flush()
        return rule

    # ===== Pay components =====

    async def get_component(self, component_id: UUID) -> PayComponent:
        component = await self.session.get(PayComponent, component_id)
        if component is None:
            raise ValueError(f"Pay component {component_id} not found")
        return component

    async def list_components(self, organization_id: UUID) -> list[PayComponent]:
        result = await self.session.execute(
            select(PayComponent)
            .where(PayComponent.organization_id == organization_id)
            .order_by(PayComponent.code)
        )
        return list(result.scalars().all())

    async def create_component(
        self, organization_id: UUID, data: PayComponentCreate
    ) -> PayComponent:
        """Create a pay component.

        Formula components are validated against the formula grammar; their
        ``metadata.required_variables`` defaults to the formula's identifiers
        and, when given, must declare every identifier the formula uses.

        Raises:
            RuleValidationError: On a duplicate code or an invalid formula
        """
        await self._check_unique_code(organization_id, data.code)
        metadata = dict(data.metadata)
        if data.calculation_type == CalculationType.FORMULA:
            metadata["required_variables"] = self._formula_variables(
                data.formula, metadata.get("required_variables")
            )

        component = PayComponent(
            organization_id=organization_id,
            code=data.code,
            name=data.name,
            component_type=data.component_type.value,
            category=data.category,
            calculation_type=data.calculation_type.value,
            default_amount=data.default_amount,
            formula=data.formula,
            percentage_rate=data.percentage_rate,
            is_taxable=data.is_taxable,
            is_recurring=data.is_recurring,
            is_system_component=data.is_system_component,
            component_metadata=metadata,
        )
        self.session.add(component)
        await self.session.flush()
        logger.info("Created pay component %s (%s)", component.code, component.calculation_type)
        return component

    async def clone_component(
        self,
        component_id: UUID,
        new_code: str,
        overrides: Mapping[str, Any] | None = None,
    ) -> PayComponent:
        """Copy a component (typically a system one) into a customizable one."""
        source = await self.get_component(component_id)
        await self._check_unique_code(source.organization_id, new_code)
        overrides = dict(overrides or {})

        values = {
            "name": source.name,
            "component_type": source.component_type,
            "category": source.category,
            "calculation_type": source.calculation_type,
            "default_amount": source.default_amount,
            "formula": source.formula,
            "percentage_rate": source.percentage_rate,
            "is_taxable": source.is_taxable,
            "is_recurring": source.is_recurring,
            "component_metadata": dict(source.component_metadata or {}),
        }
        unknown = set(overrides) - set(values)
        if unknown:
            raise RuleValidationError([f"cannot override {name}" for name in sorted(unknown)])
        values.update(overrides)
        if values["calculation_type"] == CalculationType.FORMULA.value:
            values["component_metadata"]["required_variables"] = self._formula_variables(
                values["formula"],
                None if "formula" in overrides else values["component_metadata"].get("required_variables"),
            )

        clone = PayComponent(
            organization_id=source.organization_id,
            code=new_code,
            is_system_component=False,
            cloned_from_component_id=source.component_id,
            **values,
        )
        self.session.add(clone)
        await self.session.flush()
        logger.info("Cloned pay component %s into %s", source.code, new_code)
        return clone

    async def delete_component(self, component_id: UUID) -> None:
        """Delete a non-system component.

        Raises:
            SystemComponentProtectedError: For system components
        """
        component = await self.get_component(component_id)
        if component.is_system_component:
            raise SystemComponentProtectedError(component_id)
        await self.session.delete(component)
        await self.session.flush()
        logger.info("Deleted pay component %s", component.code)

    # ===== Formulas =====

    def validate_formula(self, formula: str) -> list[FormulaIssue]:
        return self.formula_evaluator.validate(formula)

    def test_formula(self, formula: str, variables: Mapping[str, Any]) -> FormulaTestResult:
        return self.formula_evaluator.test_formula(formula, variables)

    # ===== Helpers =====

    def _formula_variables(self, formula: str | None, declared: list[str] | None) -> list[str]:
        issues = self.formula_evaluator.validate(formula or "")
        if issues:
            raise RuleValidationError([issue.message for issue in issues])
        used = self.formula_evaluator.extract_variables(formula)
        if declared is None:
            return used
        missing = sorted(set(used) - set(declared))
        if missing:
            raise RuleValidationError(
                [f"formula uses undeclared variable '{name}'" for name in missing]
            )
        return list(declared)

    async def _check_unique_code(self, organization_id: UUID, code: str) -> None:
        result = await self.session.execute(
            select(PayComponent.component_id).where(
                PayComponent.organization_id == organization_id,
                PayComponent.code == code,
            )
        )
        if result.first() is not None:
            raise RuleValidationError([f"pay component code '{code}' already exists"])

    async def _next_version(self, organization_id: UUID, tax_type: str) -> int:
        result = await self.session.execute(
            select(func.max(TaxRuleSet.version)).where(
                TaxRuleSet.organization_id == organization_id,
                TaxRuleSet.tax_type == tax_type,
            )
        )
        return (result.scalar() or 0) + 1

    async def _check_rule_set_overlap(
        self,
        organization_id: UUID,
        tax_type: str,
        start: date,
        end: date | None,
        exclude_id: UUID | None = None,
    ) -> None:
        result = await self.session.execute(
            select(TaxRuleSet).where(
                TaxRuleSet.organization_id == organization_id,
                TaxRuleSet.tax_type == tax_type,
            )
        )
        for row in result.scalars().all():
            if row.rule_set_id != exclude_id and row.overlaps(start, end):
                raise OverlappingWindowError("tax_rule_set", tax_type, row.rule_set_id)
