"""Expression language shared by rules, guards and webhook conditions.

This module provides:
- Lexer / Parser: source text to a cached, immutable AST
- Evaluator / Environment: evaluation against record, old, related, user, action, now
- FunctionRegistry: builtins callable from expressions
"""

from entityforge.expressions.builtins import register_all_builtins
from entityforge.expressions.errors import (
    EvaluationError,
    ExpressionError,
    LexerError,
    ParseError,
)
from entityforge.expressions.evaluator import (
    Environment,
    Evaluator,
    evaluate,
    is_allowed,
    is_truthy,
    is_violated,
    should_fire,
)
from entityforge.expressions.functions import (
    FunctionCategory,
    FunctionDefinition,
    FunctionRegistry,
)
from entityforge.expressions.lexer import Lexer, Token, TokenType
from entityforge.expressions.parser import ASTNode, Parser, parse

register_all_builtins()

__all__ = [
    "ASTNode",
    "Environment",
    "EvaluationError",
    "Evaluator",
    "ExpressionError",
    "FunctionCategory",
    "FunctionDefinition",
    "FunctionRegistry",
    "Lexer",
    "LexerError",
    "ParseError",
    "Parser",
    "Token",
    "TokenType",
    "evaluate",
    "is_allowed",
    "is_truthy",
    "is_violated",
    "parse",
    "register_all_builtins",
    "should_fire",
]
