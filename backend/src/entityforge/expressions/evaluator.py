"""Evaluator for the EntityForge expression language.

Walks a parsed tree against an Environment holding the candidate record,
the stored record (``old``), prefetched relations, the calling user, the
action and the evaluation time.

Truthiness conventions differ by caller and are kept apart on purpose:

- ``is_violated`` (field/expression rules): true means the rule is violated.
- ``should_fire`` (webhook conditions): true means the webhook fires.
- ``is_allowed`` (state-machine guards): true means the transition proceeds.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Callable

from entityforge.expressions.errors import EvaluationError, ExpressionError
from entityforge.expressions.functions import FunctionRegistry
from entityforge.expressions.parser import (
    ASTNode,
    ArrayLiteral,
    BinaryOp,
    FunctionCall,
    Identifier,
    IndexAccess,
    Literal,
    MemberAccess,
    UnaryOp,
    parse,
)

_NUMBER = (int, float, Decimal)


@dataclass
class Environment:
    """Values visible to an expression.

    Bare identifiers resolve to these keys first and then to fields of
    ``record``, so ``total`` and ``record.total`` are equivalent.
    """

    record: dict[str, Any]
    old: dict[str, Any] | None = None
    related: dict[str, list[dict[str, Any]]] = field(default_factory=dict)
    user: dict[str, Any] | None = None
    action: str | None = None
    now: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def lookup(self, name: str) -> Any:
        if name == "record":
            return self.record
        if name == "old":
            return self.old
        if name == "related":
            return self.related
        if name == "user":
            return self.user
        if name == "action":
            return self.action
        if name == "now":
            return self.now
        return self.record.get(name)


# Functions whose result depends on the environment rather than wall clock
_CONTEXT_FUNCTIONS: dict[str, Callable[[Environment], Any]] = {
    "now": lambda env: env.now,
    "today": lambda env: env.now.date(),
}


class Evaluator:
    """Evaluates an AST against an Environment."""

    def __init__(self, env: Environment):
        self.env = env

    def evaluate(self, node: ASTNode) -> Any:
        method = getattr(self, f"_eval_{type(node).__name__.lower()}", None)
        if method is None:
            raise EvaluationError(f"Unknown node type: {type(node).__name__}")
        return method(node)

    def _eval_literal(self, node: Literal) -> Any:
        return node.value

    def _eval_identifier(self, node: Identifier) -> Any:
        return self.env.lookup(node.name)

    def _eval_memberaccess(self, node: MemberAccess) -> Any:
        obj = self.evaluate(node.object)
        if isinstance(obj, dict):
            return obj.get(node.member)
        return None

    def _eval_indexaccess(self, node: IndexAccess) -> Any:
        obj = self.evaluate(node.object)
        index = self.evaluate(node.index)
        if isinstance(obj, dict):
            return obj.get(index)
        if isinstance(obj, (list, tuple, str)) and isinstance(index, int) and not isinstance(index, bool):
            if -len(obj) <= index < len(obj):
                return obj[index]
        return None

    def _eval_arrayliteral(self, node: ArrayLiteral) -> list[Any]:
        return [self.evaluate(element) for element in node.elements]

    def _eval_unaryop(self, node: UnaryOp) -> Any:
        operand = self.evaluate(node.operand)
        if node.operator == "!":
            return not is_truthy(operand)
        if operand is None:
            return None
        if isinstance(operand, _NUMBER) and not isinstance(operand, bool):
            return -operand
        raise EvaluationError(f"Cannot negate {type(operand).__name__}")

    def _eval_binaryop(self, node: BinaryOp) -> Any:
        op = node.operator

        if op == "&&":
            return is_truthy(self.evaluate(node.left)) and is_truthy(self.evaluate(node.right))
        if op == "||":
            return is_truthy(self.evaluate(node.left)) or is_truthy(self.evaluate(node.right))

        left = self.evaluate(node.left)
        right = self.evaluate(node.right)

        if op == "==":
            return _equals(left, right)
        if op == "!=":
            return not _equals(left, right)
        if op in ("<", "<=", ">", ">="):
            if left is None or right is None:
                return False
            cmp = _compare(left, right)
            return {"<": cmp < 0, "<=": cmp <= 0, ">": cmp > 0, ">=": cmp >= 0}[op]
        if op == "in":
            return _contains(right, left)
        if op == "not in":
            return not _contains(right, left)
        return _arithmetic(op, left, right)

    def _eval_functioncall(self, node: FunctionCall) -> Any:
        if node.name in _CONTEXT_FUNCTIONS and not node.arguments:
            return _CONTEXT_FUNCTIONS[node.name](self.env)

        if not FunctionRegistry.is_registered(node.name):
            raise EvaluationError(f"Unknown function: {node.name}")
        func_def = FunctionRegistry.get(node.name)

        problem = func_def.check_arity(len(node.arguments))
        if problem:
            raise EvaluationError(problem)

        args = [self.evaluate(arg) for arg in node.arguments]
        try:
            return func_def.implementation(*args)
        except (TypeError, ValueError, ArithmeticError, AttributeError) as e:
            raise EvaluationError(f"Error calling {node.name}: {e}") from e


# -----------------------------------------------------------------------------
# Value semantics
# -----------------------------------------------------------------------------


def is_truthy(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, _NUMBER):
        return value != 0
    if isinstance(value, (str, list, tuple, dict)):
        return len(value) > 0
    return True


def _temporal(value: Any) -> Any:
    """Parse ISO strings so they compare against date/datetime values."""
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return value
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed
    if isinstance(value, datetime) and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _align(left: Any, right: Any) -> tuple[Any, Any]:
    if isinstance(left, (date, datetime)) or isinstance(right, (date, datetime)):
        left, right = _temporal(left), _temporal(right)
        if isinstance(left, datetime) and type(right) is date:
            left = left.date()
        elif isinstance(right, datetime) and type(left) is date:
            right = right.date()
    return left, right


def _equals(left: Any, right: Any) -> bool:
    if left is None or right is None:
        return left is None and right is None
    if isinstance(left, _NUMBER) and isinstance(right, _NUMBER):
        return float(left) == float(right)
    left, right = _align(left, right)
    return left == right


def _compare(left: Any, right: Any) -> int:
    if isinstance(left, _NUMBER) and isinstance(right, _NUMBER):
        left, right = float(left), float(right)
    else:
        left, right = _align(left, right)
    try:
        return (left > right) - (left < right)
    except TypeError:
        raise EvaluationError(
            f"Cannot compare {type(left).__name__} and {type(right).__name__}"
        ) from None


def _contains(collection: Any, item: Any) -> bool:
    if collection is None:
        return False
    if isinstance(collection, str):
        return item is not None and str(item) in collection
    if isinstance(collection, (list, tuple, dict)):
        return item in collection
    raise EvaluationError(f"'in' requires a collection, got {type(collection).__name__}")


def _arithmetic(op: str, left: Any, right: Any) -> Any:
    if left is None or right is None:
        return None
    if op == "+" and (isinstance(left, str) or isinstance(right, str)):
        return f"{left}{right}"
    if not (isinstance(left, _NUMBER) and isinstance(right, _NUMBER)):
        raise EvaluationError(
            f"Cannot apply '{op}' to {type(left).__name__} and {type(right).__name__}"
        )
    if isinstance(left, Decimal) != isinstance(right, Decimal):
        left, right = float(left), float(right)
    if op in ("/", "%") and right == 0:
        raise EvaluationError("Division by zero")
    if op == "+":
        return left + right
    if op == "-":
        return left - right
    if op == "*":
        return left * right
    if op == "/":
        return left / right
    if op == "%":
        return left % right
    raise EvaluationError(f"Unknown operator: {op}")


# -----------------------------------------------------------------------------
# Entry points
# -----------------------------------------------------------------------------


def evaluate(expression: str, env: Environment) -> Any:
    """Evaluate an expression string.

    Raises:
        ExpressionError: LexerError/ParseError for malformed text,
            EvaluationError for runtime failures.
    """
    ast = parse(expression)
    try:
        return Evaluator(env).evaluate(ast)
    except ExpressionError as e:
        if e.expression is None:
            e.expression = expression
        raise
    except RecursionError as e:
        raise EvaluationError("Expression nesting too deep", expression) from e


def is_violated(expression: str, env: Environment) -> bool:
    """Rule convention: a truthy result means the rule is violated."""
    return is_truthy(evaluate(expression, env))


def should_fire(condition: str | None, env: Environment) -> bool:
    """Webhook convention: a truthy condition fires; no condition always fires."""
    if not condition:
        return True
    return is_truthy(evaluate(condition, env))


def is_allowed(guard: str | None, env: Environment) -> bool:
    """Guard convention: a truthy result lets the transition proceed."""
    if not guard:
        return True
    return is_truthy(evaluate(guard, env))
