"""Exceptions and business warnings raised by the payroll tax engine.

Errors fall into three families with different run-level consequences:

- ReferenceDataError: the rule data itself is unusable (no rule, ambiguous
  rule, malformed bracket table). The whole run halts.
- EmployeeInputError: one employee's inputs are unusable (undefined formula
  variable, negative taxable amount). Only that employee fails.
- Administration errors: raised while authoring rules, never during a run.

Warnings are values, not exceptions. They ride along on the payslip line.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import date
from decimal import Decimal
from typing import Any, ClassVar
from uuid import UUID


class PayrollTaxEngineError(Exception):
    """Base class for all engine errors."""

    code: str = "PAYROLL_TAX_ENGINE_ERROR"


# ===== Reference data (run-halting) =====


class ReferenceDataError(PayrollTaxEngineError):
    """Reference data is missing or inconsistent; the run cannot continue."""

    code = "REFERENCE_DATA_ERROR"


class NoApplicableRuleError(ReferenceDataError):
    """Raised when no record of the requested kind is effective on a date."""

    code = "NO_APPLICABLE_RULE"

    def __init__(
        self,
        record_type: str,
        key: str,
        as_of_date: date,
        organization_id: UUID | None = None,
    ):
        self.record_type = record_type
        self.key = key
        self.as_of_date = as_of_date
        self.organization_id = organization_id
        super().__init__(
            f"No {record_type} '{key}' effective {as_of_date}"
            + (f" for organization {organization_id}" if organization_id else "")
        )


class AmbiguousRuleError(ReferenceDataError):
    """Raised when more than one record of a kind is effective on a date."""

    code = "AMBIGUOUS_RULE"

    def __init__(
        self,
        record_type: str,
        key: str,
        as_of_date: date,
        matching_ids: list[UUID],
        organization_id: UUID | None = None,
    ):
        self.record_type = record_type
        self.key = key
        self.as_of_date = as_of_date
        self.matching_ids = matching_ids
        self.organization_id = organization_id
        ids = ", ".join(str(i) for i in matching_ids)
        super().__init__(
            f"{len(matching_ids)} {record_type} records '{key}' effective "
            f"{as_of_date}: {ids}"
        )


class MalformedRuleSetError(ReferenceDataError):
    """Raised when a rule set's brackets do not partition [0, inf) exactly once."""

    code = "MALFORMED_RULE_SET"

    def __init__(self, rule_set_id: UUID | None, tax_type: str, reason: str):
        self.rule_set_id = rule_set_id
        self.tax_type = tax_type
        self.reason = reason
        super().__init__(f"Rule set {rule_set_id} ({tax_type}) is malformed: {reason}")


# ===== Employee input (employee-scoped) =====


class EmployeeInputError(PayrollTaxEngineError):
    """An employee's inputs cannot be calculated; other employees continue."""

    code = "EMPLOYEE_INPUT_ERROR"


class UndefinedVariableError(EmployeeInputError):
    """Raised when a formula or cap references a variable that was not supplied."""

    code = "UNDEFINED_VARIABLE"

    def __init__(self, variable: str, formula: str | None = None):
        self.variable = variable
        self.formula = formula
        msg = f"Variable '{variable}' is not defined"
        if formula:
            msg += f" (formula: {formula})"
        super().__init__(msg)


class InvalidVariableError(EmployeeInputError):
    """Raised when a variable value is not numeric."""

    code = "INVALID_VARIABLE"

    def __init__(self, variable: str, value: Any):
        self.variable = variable
        self.value = value
        super().__init__(f"Variable '{variable}' must be numeric, got {value!r}")


class InvalidTaxableAmountError(EmployeeInputError):
    """Raised when a taxable amount is negative or missing."""

    code = "INVALID_TAXABLE_AMOUNT"

    def __init__(self, amount: Decimal | None, context: str | None = None):
        self.amount = amount
        self.context = context
        msg = f"Invalid taxable amount {amount}"
        if context:
            msg += f" for {context}"
        super().__init__(msg)


class FormulaError(EmployeeInputError):
    """Base class for formula parse and evaluation failures."""

    code = "FORMULA_ERROR"

    def __init__(self, formula: str, message: str):
        self.formula = formula
        self.message = message
        super().__init__(f"{message} (formula: {formula})")


class FormulaSyntaxError(FormulaError):
    code = "FORMULA_SYNTAX"


class DisallowedFormulaError(FormulaError):
    """Raised when a formula uses a construct outside the arithmetic grammar."""

    code = "FORMULA_DISALLOWED"


class FormulaEvaluationError(FormulaError):
    code = "FORMULA_EVALUATION"


# ===== Run-level =====


class PayrollLineError(PayrollTaxEngineError):
    """Wraps a failure while composing one employee's payslip line."""

    code = "PAYROLL_LINE_ERROR"

    def __init__(
        self,
        step: str,
        employee_id: UUID,
        cause: Exception,
        component_code: str | None = None,
    ):
        self.step = step
        self.employee_id = employee_id
        self.cause = cause
        self.component_code = component_code
        where = f" component {component_code}" if component_code else ""
        super().__init__(
            f"Employee {employee_id} failed at {step}{where}: {cause}"
        )

    @property
    def cause_code(self) -> str:
        return getattr(self.cause, "code", type(self.cause).__name__)

    @property
    def halts_run(self) -> bool:
        return isinstance(self.cause, ReferenceDataError)


class PayrollRunHaltedError(PayrollTaxEngineError):
    """Raised when reference data problems stop a whole run."""

    code = "PAYROLL_RUN_HALTED"

    def __init__(self, run_id: UUID, cause: Exception):
        self.run_id = run_id
        self.cause = cause
        super().__init__(f"Payroll run {run_id} halted: {cause}")


class CommitConflictError(PayrollTaxEngineError):
    """Raised when a commit key already holds a different calculation."""

    code = "COMMIT_CONFLICT"

    def __init__(
        self,
        employee_id: UUID,
        run_id: UUID,
        existing_calculation_id: UUID,
        new_calculation_id: UUID,
    ):
        self.employee_id = employee_id
        self.run_id = run_id
        self.existing_calculation_id = existing_calculation_id
        self.new_calculation_id = new_calculation_id
        super().__init__(
            f"Commit for employee {employee_id} in run {run_id} exists with "
            f"calculation_id {existing_calculation_id}, but attempted to write "
            f"{new_calculation_id}"
        )


class LedgerContentionError(PayrollTaxEngineError):
    """Raised when a commit keeps losing the race for its usage rows."""

    code = "LEDGER_CONTENTION"

    def __init__(self, employee_id: UUID, attempts: int):
        self.employee_id = employee_id
        self.attempts = attempts
        super().__init__(
            f"Allowance usage for employee {employee_id} changed concurrently; "
            f"gave up after {attempts} attempts"
        )


# ===== Rule administration =====


class RuleAdministrationError(PayrollTaxEngineError):
    code = "RULE_ADMINISTRATION_ERROR"


class RuleValidationError(RuleAdministrationError):
    """Raised when a rule definition fails validation."""

    code = "RULE_VALIDATION"

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__("Rule validation failed: " + "; ".join(errors))


class OverlappingWindowError(RuleAdministrationError):
    """Raised when a new record's effective window overlaps an existing one."""

    code = "OVERLAPPING_WINDOW"

    def __init__(self, record_type: str, key: str, conflicting_id: UUID):
        self.record_type = record_type
        self.key = key
        self.conflicting_id = conflicting_id
        super().__init__(
            f"{record_type} '{key}' overlaps the effective window of {conflicting_id}"
        )


class RuleSetImmutableError(RuleAdministrationError):
    """Raised when amending a rule set referenced by a committed payroll."""

    code = "RULE_SET_IMMUTABLE"

    def __init__(self, rule_set_id: UUID):
        self.rule_set_id = rule_set_id
        super().__init__(
            f"Rule set {rule_set_id} is referenced by committed payroll; "
            "create a new version instead"
        )


class SystemComponentProtectedError(RuleAdministrationError):
    code = "SYSTEM_COMPONENT_PROTECTED"

    def __init__(self, component_id: UUID):
        self.component_id = component_id
        super().__init__(f"Pay component {component_id} is a system component")


# ===== Business warnings =====


@dataclass(frozen=True)
class PayrollWarning:
    """Non-fatal condition attached to a payslip line."""

    code: ClassVar[str] = "WARNING"

    @property
    def message(self) -> str:
        return self.code

    def to_dict(self) -> dict[str, Any]:
        data = {k: str(v) if isinstance(v, (Decimal, UUID, date)) else v for k, v in asdict(self).items()}
        return {"code": self.code, "message": self.message, **data}


@dataclass(frozen=True)
class CapExceededWarning(PayrollWarning):
    """Part of an allowance payment exceeded the remaining tax-free cap."""

    code: ClassVar[str] = "CAP_EXCEEDED"

    allowance_type: str
    cap: Decimal
    remaining_cap: Decimal
    taxable_portion: Decimal

    @property
    def message(self) -> str:
        return (
            f"{self.allowance_type}: {self.taxable_portion} exceeds remaining "
            f"tax-free cap {self.remaining_cap} (cap {self.cap}) and is taxable"
        )


@dataclass(frozen=True)
class NearCapWarning(PayrollWarning):
    """Remaining tax-free cap is at or below the configured threshold."""

    code: ClassVar[str] = "NEAR_CAP"

    allowance_type: str
    cap: Decimal
    remaining_after: Decimal

    @property
    def message(self) -> str:
        return (
            f"{self.allowance_type}: only {self.remaining_after} of the "
            f"{self.cap} tax-free cap remains this year"
        )


@dataclass(frozen=True)
class ComponentExpiringWarning(PayrollWarning):
    """A component assignment ends within the pay period's month."""

    code: ClassVar[str] = "COMPONENT_EXPIRING"

    component_code: str
    effective_to: date

    @property
    def message(self) -> str:
        return f"Component {self.component_code} assignment ends {self.effective_to}"
