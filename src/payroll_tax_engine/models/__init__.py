"""ORM models for the payroll tax engine."""

from payroll_tax_engine.models.base import Base, TimestampMixin
from payroll_tax_engine.models.components import PayComponent
from payroll_tax_engine.models.ledger import (
    AllowanceUsage,
    PayrollCommit,
    PayrollCommitRuleSet,
)
from payroll_tax_engine.models.tax_rules import (
    Allowance,
    DeductibleCostRule,
    TaxBracket,
    TaxRuleSet,
)

__all__ = [
    "Allowance",
    "AllowanceUsage",
    "Base",
    "DeductibleCostRule",
    "PayComponent",
    "PayrollCommit",
    "PayrollCommitRuleSet",
    "TaxBracket",
    "TaxRuleSet",
    "TimestampMixin",
]
