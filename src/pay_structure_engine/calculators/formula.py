"""Formula evaluation for ``formula`` components.

Formulas reference context values as ``{name}`` placeholders, e.g.
``{base_salary} * 0.1 + {OVERTIME}``. After substitution the expression must
be plain arithmetic:

  - numbers, ``.``, parentheses and whitespace
  - the binary operators ``+ - * /`` with standard precedence

Anything else is rejected before evaluation. The substituted text is parsed
with ``ast`` and only numeric constants and the four binary operators are
accepted, so no Python code can be reached through a formula.
"""

from __future__ import annotations

import ast
import decimal
import operator
import re
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Mapping

from pay_structure_engine.exceptions import (
    EvaluationError,
    InvalidExpressionError,
    PayStructureError,
    UnboundVariableError,
)

PLACEHOLDER_PATTERN = re.compile(r"\{([A-Za-z_][A-Za-z0-9_]*)\}")
ALLOWED_CHARACTERS = re.compile(r"^[0-9.+\-*/()\s]*$")
OPERATORS = frozenset("+-*/")
NUMBER_TOKEN = re.compile(r"[0-9.]+")
VALID_NUMBER = re.compile(r"\d+(\.\d+)?|\.\d+")

_BINARY_OPERATORS: dict[type[ast.operator], Callable[[Decimal, Decimal], Decimal]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
}


@dataclass
class FormulaTestResult:
    """Outcome of a dry-run evaluation."""

    success: bool
    formula: str
    result: Decimal | None = None
    message: str = ""
    error: str | None = None
    variables: list[str] = field(default_factory=list)


def _format_number(name: str, value: Any) -> str:
    if value is None:
        raise UnboundVariableError(name)
    if isinstance(value, bool) or not isinstance(value, (int, float, Decimal, str)):
        raise UnboundVariableError(name, "has invalid numeric value")
    try:
        number = Decimal(str(value))
    except decimal.InvalidOperation:
        raise UnboundVariableError(name, "has invalid numeric value") from None
    if not number.is_finite():
        raise UnboundVariableError(name, "has invalid numeric value")
    text = format(number, "f")
    if number < 0:
        # keeps the substituted text inside the binary-operator grammar
        return f"(0-{text[1:]})"
    return text


class FormulaEvaluator:
    """Evaluates placeholder formulas over Decimal values."""

    def evaluate(self, expression: str, variables: Mapping[str, Any]) -> Decimal:
        """Substitute ``variables`` into ``expression`` and compute the result.

        Raises:
            UnboundVariableError: A placeholder has no numeric value.
            InvalidExpressionError: The expression is outside the grammar.
            EvaluationError: Division by zero, overflow or a non-finite result.
        """
        if not isinstance(expression, str) or not expression.strip():
            raise InvalidExpressionError(str(expression), "formula must be a non-empty string")

        substituted = self.substitute_variables(expression, variables)
        return self.evaluate_expression(substituted)

    def substitute_variables(self, expression: str, variables: Mapping[str, Any]) -> str:
        def replace(match: re.Match[str]) -> str:
            name = match.group(1)
            return _format_number(name, variables.get(name))

        return PLACEHOLDER_PATTERN.sub(replace, expression)

    def evaluate_expression(self, expression: str) -> Decimal:
        """Evaluate an already-substituted arithmetic expression."""
        tree, compact = self._parse(expression)

        try:
            with decimal.localcontext() as ctx:
                ctx.traps[decimal.DivisionByZero] = True
                ctx.traps[decimal.Overflow] = True
                ctx.traps[decimal.InvalidOperation] = True
                result = self._evaluate_node(tree.body, compact, expression)
        except decimal.DivisionByZero:
            raise EvaluationError(expression, "division by zero") from None
        except decimal.Overflow:
            raise EvaluationError(expression, "numeric overflow") from None
        except decimal.InvalidOperation:
            raise EvaluationError(expression, "undefined result") from None

        if not result.is_finite():
            raise EvaluationError(expression, "result is not a finite number")
        return result

    def extract_variables(self, expression: str) -> list[str]:
        """Placeholder names in order of first appearance."""
        seen: dict[str, None] = {}
        for name in PLACEHOLDER_PATTERN.findall(expression or ""):
            seen.setdefault(name, None)
        return list(seen)

    def validate_formula(self, expression: str) -> None:
        """Check syntax without evaluating; placeholders count as numbers."""
        if not isinstance(expression, str) or not expression.strip():
            raise InvalidExpressionError(str(expression), "formula must be a non-empty string")
        self._parse(PLACEHOLDER_PATTERN.sub("1", expression))

    def test_formula(
        self, expression: str, variables: Mapping[str, Any] | None = None
    ) -> FormulaTestResult:
        """Evaluate with sample values, reporting failure instead of raising."""
        variables = variables or {}
        names = self.extract_variables(expression) if isinstance(expression, str) else []
        try:
            result = self.evaluate(expression, variables)
        except PayStructureError as e:
            return FormulaTestResult(
                success=False,
                formula=str(expression),
                message="Formula evaluation failed",
                error=str(e),
                variables=names,
            )
        return FormulaTestResult(
            success=True,
            formula=expression,
            result=result,
            message="Formula evaluated successfully",
            variables=names,
        )

    # === Parsing ===

    def _parse(self, expression: str) -> tuple[ast.Expression, str]:
        if not ALLOWED_CHARACTERS.match(expression):
            raise InvalidExpressionError(expression, "contains invalid characters")

        compact = re.sub(r"\s+", "", expression)
        self._check_structure(expression, compact)
        compact = self._normalize_numbers(expression, compact)

        try:
            tree = ast.parse(compact, mode="eval")
        except SyntaxError as e:
            raise InvalidExpressionError(expression, f"syntax error: {e.msg}") from None

        self._check_node(tree.body, compact, expression)
        return tree, compact

    @staticmethod
    def _normalize_numbers(expression: str, compact: str) -> str:
        """Strip leading zeros so every literal is also a valid Python number."""

        def normalize(match: re.Match[str]) -> str:
            token = match.group(0)
            if not VALID_NUMBER.fullmatch(token):
                raise InvalidExpressionError(expression, f"invalid number: {token}")
            whole, dot, fraction = token.partition(".")
            return (whole.lstrip("0") or "0") + dot + fraction

        return NUMBER_TOKEN.sub(normalize, compact)

    @staticmethod
    def _check_structure(expression: str, compact: str) -> None:
        if not compact:
            raise InvalidExpressionError(expression, "formula is empty")
        if re.search(r"\d\s+[\d.]", expression):
            raise InvalidExpressionError(expression, "missing operator between numbers")

        depth = 0
        for char in compact:
            if char == "(":
                depth += 1
            elif char == ")":
                depth -= 1
                if depth < 0:
                    raise InvalidExpressionError(expression, "unbalanced parentheses")
        if depth != 0:
            raise InvalidExpressionError(expression, "unbalanced parentheses")

        if compact[0] in OPERATORS:
            raise InvalidExpressionError(expression, "cannot start with an operator")
        if compact[-1] in OPERATORS:
            raise InvalidExpressionError(expression, "cannot end with an operator")
        for previous, current in zip(compact, compact[1:]):
            if previous in OPERATORS and current in OPERATORS:
                raise InvalidExpressionError(expression, "consecutive operators")
            if previous == "(" and current in OPERATORS:
                raise InvalidExpressionError(expression, "operator after '('")
            if previous in OPERATORS and current == ")":
                raise InvalidExpressionError(expression, "operator before ')'")
            if previous == "(" and current == ")":
                raise InvalidExpressionError(expression, "empty parentheses")

    def _check_node(self, node: ast.AST, compact: str, expression: str) -> None:
        if isinstance(node, ast.BinOp) and type(node.op) in _BINARY_OPERATORS:
            self._check_node(node.left, compact, expression)
            self._check_node(node.right, compact, expression)
        elif isinstance(node, ast.Constant) and type(node.value) in (int, float):
            pass
        else:
            raise InvalidExpressionError(
                expression, f"disallowed syntax: {type(node).__name__}"
            )

    def _evaluate_node(self, node: ast.AST, compact: str, expression: str) -> Decimal:
        if isinstance(node, ast.BinOp):
            left = self._evaluate_node(node.left, compact, expression)
            right = self._evaluate_node(node.right, compact, expression)
            return _BINARY_OPERATORS[type(node.op)](left, right)
        if isinstance(node, ast.Constant):
            # exact literal text, never the float approximation
            return Decimal(ast.get_source_segment(compact, node))
        raise InvalidExpressionError(expression, f"disallowed syntax: {type(node).__name__}")
