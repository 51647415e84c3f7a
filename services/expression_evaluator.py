# WORKFLOW: Safe arithmetic evaluator for tariff rate formulas.
# Used by: Calculation service (base duty), policy engine (extra charges), trade agreement checker
# Functions:
# 1. evaluate_formula() - Evaluate a formula string against shipment variables
# 2. build_variables() - Build the variable map {value, weight, quantity, duty, total}
# 3. round_currency() - Round a monetary amount to cents (half-up)
#
# Evaluation flow: Formula string -> Character whitelist -> AST parse -> Node walk -> Decimal result
# Grammar: + - * /, parentheses, numeric literals and the known shipment variables only.
# Nothing is ever passed to eval(); any other syntax raises EvaluationError.

import ast
import re
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Dict, Mapping, Optional

from core.exceptions import EvaluationError

KNOWN_VARIABLES = ("value", "weight", "quantity", "duty", "total")

_ALLOWED_CHARS = re.compile(r'^[\d\s+\-*/().a-zA-Z_]+$')
_CENTS = Decimal("0.01")


def _decimal(value) -> Decimal:
    if isinstance(value, bool) or not isinstance(value, (int, float, Decimal)):
        raise EvaluationError(f"Unsupported literal in formula: {value!r}")
    return Decimal(str(value))


def build_variables(
    value: float,
    weight: Optional[float] = None,
    quantity: Optional[float] = None,
    duty: Optional[float] = None,
    total: Optional[float] = None,
) -> Dict[str, float]:
    """Build the formula variable map; unset variables evaluate as 0."""
    return {
        "value": value or 0,
        "weight": weight or 0,
        "quantity": quantity or 0,
        "duty": duty or 0,
        "total": total or 0,
    }


def evaluate_formula(formula: str, variables: Mapping[str, Optional[float]]) -> float:
    """
    Evaluate a rate formula.

    Known variables that are missing or None evaluate as 0. Any other
    identifier raises EvaluationError, as do division by zero and malformed input.

    Args:
        formula: Formula string (e.g. "value * 0.05 + weight * 1.2")
        variables: Variable values keyed by name

    Returns:
        Unrounded result as float
    """
    if not formula or not formula.strip():
        raise EvaluationError("Empty formula", formula=formula)
    if not _ALLOWED_CHARS.match(formula):
        raise EvaluationError(f"Formula contains invalid characters: {formula}", formula=formula)

    try:
        tree = ast.parse(formula.strip(), mode="eval")
    except SyntaxError as e:
        raise EvaluationError(f"Malformed formula '{formula}': {e.msg}", formula=formula) from e

    values = {name: Decimal("0") for name in KNOWN_VARIABLES}
    for name, raw in variables.items():
        key = name.lower()
        if key in values and raw is not None:
            values[key] = _decimal(raw)

    def _eval(node: ast.AST) -> Decimal:
        if isinstance(node, ast.Expression):
            return _eval(node.body)
        if isinstance(node, ast.BinOp):
            left = _eval(node.left)
            right = _eval(node.right)
            if isinstance(node.op, ast.Add):
                return left + right
            if isinstance(node.op, ast.Sub):
                return left - right
            if isinstance(node.op, ast.Mult):
                return left * right
            if isinstance(node.op, ast.Div):
                if right == 0:
                    raise EvaluationError(f"Division by zero in formula: {formula}", formula=formula)
                return left / right
            raise EvaluationError(f"Unsupported operator: {type(node.op).__name__}", formula=formula)
        if isinstance(node, ast.UnaryOp):
            operand = _eval(node.operand)
            if isinstance(node.op, ast.UAdd):
                return operand
            if isinstance(node.op, ast.USub):
                return -operand
            raise EvaluationError(f"Unsupported unary operator: {type(node.op).__name__}", formula=formula)
        if isinstance(node, ast.Constant):
            return _decimal(node.value)
        if isinstance(node, ast.Name):
            key = node.id.lower()
            if key not in values:
                raise EvaluationError(f"Unknown variable referenced in formula: {node.id}", formula=formula)
            return values[key]
        raise EvaluationError(f"Unsupported expression element: {type(node).__name__}", formula=formula)

    try:
        return float(_eval(tree))
    except InvalidOperation as e:
        raise EvaluationError(f"Formula could not be evaluated: {formula}", formula=formula) from e


def round_currency(amount: float) -> float:
    """Round a monetary amount to 2 decimal places, half-up."""
    return float(Decimal(str(amount)).quantize(_CENTS, rounding=ROUND_HALF_UP))
