"""Payroll tax engine services."""

from payroll_tax_engine.services.commit_service import PayrollCommitService
from payroll_tax_engine.services.ledger_service import AllowanceLedgerService
from payroll_tax_engine.services.payroll_service import (
    CancellationToken,
    PayrollRunResult,
    PayrollService,
)
from payroll_tax_engine.services.reference_data import ReferenceDataRepository
from payroll_tax_engine.services.rule_admin import RuleAdministrationService
from payroll_tax_engine.services.sources import PayrollRunSource, StaticPayrollRunSource

__all__ = [
    "AllowanceLedgerService",
    "CancellationToken",
    "PayrollCommitService",
    "PayrollRunResult",
    "PayrollRunSource",
    "PayrollService",
    "ReferenceDataRepository",
    "RuleAdministrationService",
    "StaticPayrollRunSource",
]
