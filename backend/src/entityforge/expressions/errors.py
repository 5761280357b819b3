"""Typed expression errors.

Callers (rules, guards, webhook conditions) catch ExpressionError and
report it against the rule or transition that owns the expression.
"""


class ExpressionError(Exception):
    """Base class for every expression failure."""

    def __init__(self, message: str, expression: str | None = None):
        self.expression = expression
        super().__init__(message)


class LexerError(ExpressionError):
    """Error during lexical analysis."""

    def __init__(self, message: str, expression: str, position: int):
        self.position = position
        super().__init__(f"{message} at position {position}", expression)


class ParseError(ExpressionError):
    """Error while building the syntax tree."""

    def __init__(self, message: str, expression: str, position: int):
        self.position = position
        super().__init__(f"{message} at position {position}", expression)


class EvaluationError(ExpressionError):
    """Error while evaluating a syntax tree."""
