"""Sandboxed arithmetic formulas for benefit-in-kind valuations.

Formulas such as ``MIN(annual_salary * 0.03, 200) / 12`` are parsed with
``ast`` in eval mode and interpreted node by node over Decimal values. Only
a fixed grammar is accepted:

  - Binary operators: + - * /
  - Unary minus (and plus)
  - Parentheses
  - Numeric literals (converted from source text, never through float)
  - Identifiers, looked up in the caller's variable bag
  - Functions: MIN(a, b, ...), MAX(a, b, ...), ROUND(x[, places])

Everything else (attribute access, subscripts, comparisons, keyword
arguments, strings, any other call) is rejected before evaluation. Nothing
is ever passed to eval or exec.
"""

from __future__ import annotations

import ast
import decimal
from dataclasses import dataclass, field
from decimal import ROUND_HALF_EVEN, Decimal, InvalidOperation
from functools import lru_cache
from typing import Any, Mapping

from payroll_tax_engine.calculators.line_builder import LineItemBuilder
from payroll_tax_engine.errors import (
    DisallowedFormulaError,
    FormulaError,
    FormulaEvaluationError,
    FormulaSyntaxError,
    InvalidVariableError,
    UndefinedVariableError,
)

ALLOWED_FUNCTIONS: frozenset[str] = frozenset({"MIN", "MAX", "ROUND"})

_BINARY_OPS = (ast.Add, ast.Sub, ast.Mult, ast.Div)
_UNARY_OPS = (ast.USub, ast.UAdd)

# 28 significant digits keeps well over 4 fractional digits for payroll magnitudes
_CONTEXT = decimal.Context(prec=28, rounding=ROUND_HALF_EVEN)

_TOO_DEEP = "Formula is nested too deeply"


@dataclass(frozen=True)
class FormulaIssue:
    """A validation problem found in a formula."""

    formula: str
    message: str
    node_type: str = ""
    col_offset: int = 0


@dataclass(frozen=True)
class FormulaTestResult:
    """Non-raising outcome of a trial evaluation."""

    formula: str
    success: bool
    result: Decimal | None = None
    error: str | None = None
    error_code: str | None = None
    variables_used: list[str] = field(default_factory=list)


def _function_name(node: ast.Call) -> str | None:
    if isinstance(node.func, ast.Name) and node.func.id.upper() in ALLOWED_FUNCTIONS:
        return node.func.id.upper()
    return None


def _check_node(node: ast.AST, formula: str, issues: list[FormulaIssue]) -> None:
    """Recursively validate an AST node against the formula grammar."""
    col = getattr(node, "col_offset", 0)

    if isinstance(node, ast.BinOp):
        if not isinstance(node.op, _BINARY_OPS):
            issues.append(
                FormulaIssue(formula, f"Disallowed operator: {type(node.op).__name__}", "BinOp", col)
            )
        _check_node(node.left, formula, issues)
        _check_node(node.right, formula, issues)

    elif isinstance(node, ast.UnaryOp):
        if not isinstance(node.op, _UNARY_OPS):
            issues.append(
                FormulaIssue(formula, f"Disallowed operator: {type(node.op).__name__}", "UnaryOp", col)
            )
        _check_node(node.operand, formula, issues)

    elif isinstance(node, ast.Call):
        name = _function_name(node)
        if name is None:
            func = node.func.id if isinstance(node.func, ast.Name) else type(node.func).__name__
            issues.append(FormulaIssue(formula, f"Disallowed function call: {func}", "Call", col))
            return
        if node.keywords:
            issues.append(FormulaIssue(formula, f"{name} takes no keyword arguments", "Call", col))
        if not node.args:
            issues.append(FormulaIssue(formula, f"{name} needs at least one argument", "Call", col))
        if name == "ROUND" and len(node.args) > 2:
            issues.append(FormulaIssue(formula, "ROUND takes one or two arguments", "Call", col))
        for arg in node.args:
            if isinstance(arg, ast.Starred):
                issues.append(FormulaIssue(formula, "Argument unpacking is not allowed", "Starred", col))
            else:
                _check_node(arg, formula, issues)

    elif isinstance(node, ast.Name):
        if node.id.upper() in ALLOWED_FUNCTIONS:
            issues.append(FormulaIssue(formula, f"{node.id} must be called", "Name", col))

    elif isinstance(node, ast.Constant):
        if isinstance(node.value, bool) or not isinstance(node.value, (int, float)):
            issues.append(
                FormulaIssue(
                    formula,
                    f"Only numeric literals are allowed, got {node.value!r}",
                    "Constant",
                    col,
                )
            )

    else:
        issues.append(
            FormulaIssue(
                formula,
                f"Disallowed expression: {type(node).__name__}",
                type(node).__name__,
                col,
            )
        )


@lru_cache(maxsize=512)
def _compile(formula: str) -> ast.Expression:
    """Parse and validate; cached per formula text."""
    if not formula or not formula.strip():
        raise FormulaSyntaxError(formula, "Formula is empty")
    try:
        tree = ast.parse(formula.strip(), mode="eval")
        issues: list[FormulaIssue] = []
        _check_node(tree.body, formula, issues)
    except SyntaxError as e:
        raise FormulaSyntaxError(formula, f"Syntax error: {e.msg}") from e
    except (RecursionError, MemoryError) as e:
        raise FormulaSyntaxError(formula, _TOO_DEEP) from e
    if issues:
        raise DisallowedFormulaError(formula, "; ".join(i.message for i in issues))
    return tree


def coerce_decimal(name: str, value: Any) -> Decimal:
    """Numeric variable value as Decimal."""
    if value is None:
        raise UndefinedVariableError(name)
    if isinstance(value, bool):
        raise InvalidVariableError(name, value)
    if isinstance(value, Decimal):
        return value
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, (float, str)):
        try:
            result = Decimal(str(value).strip())
        except InvalidOperation as e:
            raise InvalidVariableError(name, value) from e
        if not result.is_finite():
            raise InvalidVariableError(name, value)
        return result
    raise InvalidVariableError(name, value)


class _Interpreter:
    """Walks a validated expression tree over Decimal values."""

    def __init__(self, formula: str, variables: Mapping[str, Any]):
        self.formula = formula
        self.source = formula.strip()
        self.variables = variables

    def visit(self, node: ast.AST) -> Decimal:
        if isinstance(node, ast.Constant):
            # Literal text, so 0.1 stays exactly 0.1
            text = ast.get_source_segment(self.source, node) or repr(node.value)
            try:
                return Decimal(text.replace("_", ""))
            except InvalidOperation:
                return Decimal(str(node.value))

        if isinstance(node, ast.Name):
            if node.id not in self.variables:
                raise UndefinedVariableError(node.id, self.formula)
            return coerce_decimal(node.id, self.variables[node.id])

        if isinstance(node, ast.UnaryOp):
            operand = self.visit(node.operand)
            return -operand if isinstance(node.op, ast.USub) else operand

        if isinstance(node, ast.BinOp):
            left = self.visit(node.left)
            right = self.visit(node.right)
            if isinstance(node.op, ast.Add):
                return left + right
            if isinstance(node.op, ast.Sub):
                return left - right
            if isinstance(node.op, ast.Mult):
                return left * right
            if right == 0:
                raise FormulaEvaluationError(self.formula, "Division by zero")
            return left / right

        if isinstance(node, ast.Call):
            name = _function_name(node)
            args = [self.visit(a) for a in node.args]
            if name == "MIN":
                return min(args)
            if name == "MAX":
                return max(args)
            return self._round(args)

        raise DisallowedFormulaError(self.formula, f"Disallowed expression: {type(node).__name__}")

    def _round(self, args: list[Decimal]) -> Decimal:
        places = args[1] if len(args) > 1 else Decimal("0")
        if places != places.to_integral_value() or not 0 <= places <= 10:
            raise FormulaEvaluationError(self.formula, f"ROUND places must be 0..10, got {places}")
        return args[0].quantize(Decimal(1).scaleb(-int(places)), rounding=ROUND_HALF_EVEN)


class FormulaEvaluator:
    """Evaluates formula-defined component amounts against a variable bag."""

    def evaluate(
        self,
        formula: str,
        variables: Mapping[str, Any],
        quantize: bool = True,
    ) -> Decimal:
        """Evaluate formula with variables.

        Args:
            formula: Expression in the formula grammar
            variables: Name to numeric value (Decimal, int, float or numeric str)
            quantize: Round the result to cents (ROUND_HALF_EVEN); otherwise
                return it at internal precision (4 places)

        Raises:
            FormulaSyntaxError: If the formula does not parse or nests too deeply
            DisallowedFormulaError: If the formula leaves the grammar
            UndefinedVariableError: If an identifier is not in variables
            InvalidVariableError: If a variable is not numeric
            FormulaEvaluationError: On division by zero or bad ROUND places
        """
        tree = _compile(formula)
        try:
            with decimal.localcontext(_CONTEXT):
                result = _Interpreter(formula, variables).visit(tree.body)
        except RecursionError as e:
            raise FormulaEvaluationError(formula, _TOO_DEEP) from e
        if quantize:
            return LineItemBuilder.round_to_cents(result)
        return LineItemBuilder.round_internal(result)

    def validate(self, formula: str) -> list[FormulaIssue]:
        """Validate syntax and grammar. Empty list means the formula is valid."""
        if not formula or not formula.strip():
            return [FormulaIssue(formula, "Formula is empty")]
        issues: list[FormulaIssue] = []
        try:
            tree = ast.parse(formula.strip(), mode="eval")
            _check_node(tree.body, formula, issues)
        except SyntaxError as e:
            return [FormulaIssue(formula, f"Syntax error: {e.msg}", col_offset=e.offset or 0)]
        except (RecursionError, MemoryError):
            return [FormulaIssue(formula, _TOO_DEEP)]
        return issues

    def extract_variables(self, formula: str) -> list[str]:
        """Sorted unique identifiers referenced by a valid formula."""
        tree = _compile(formula)
        return sorted(
            {
                node.id
                for node in ast.walk(tree)
                if isinstance(node, ast.Name) and node.id.upper() not in ALLOWED_FUNCTIONS
            }
        )

    def test_formula(self, formula: str, variables: Mapping[str, Any]) -> FormulaTestResult:
        """Trial evaluation for rule authoring; never raises formula errors."""
        try:
            used = self.extract_variables(formula)
            result = self.evaluate(formula, variables)
        except (FormulaError, UndefinedVariableError, InvalidVariableError) as e:
            return FormulaTestResult(
                formula=formula, success=False, error=str(e), error_code=e.code
            )
        return FormulaTestResult(
            formula=formula, success=True, result=result, variables_used=used
        )
