"""Payroll tax calculators."""

from payroll_tax_engine.calculators.allowance_ledger import AllowanceLedger
from payroll_tax_engine.calculators.bracket_calculator import BracketCalculator
from payroll_tax_engine.calculators.composer import PayrollLineComposer
from payroll_tax_engine.calculators.formula import FormulaEvaluator
from payroll_tax_engine.calculators.line_builder import LineItemBuilder
from payroll_tax_engine.calculators.rule_resolver import RuleResolver

__all__ = [
    "AllowanceLedger",
    "BracketCalculator",
    "FormulaEvaluator",
    "LineItemBuilder",
    "PayrollLineComposer",
    "RuleResolver",
]
