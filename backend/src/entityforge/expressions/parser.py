"""Parser for the EntityForge expression language.

Recursive descent with operator precedence (lowest to highest):
1. || (or)
2. && (and)
3. == != < <= > >= in not_in
4. + -
5. * / %
6. ! (not) - (unary)
7. . (member access) () (function call) [] (index)

Parsed trees are immutable and cached by source text, so the same
expression is only tokenized once per process.
"""

from dataclasses import dataclass
from functools import lru_cache
from typing import Any

from entityforge.expressions.errors import ParseError
from entityforge.expressions.lexer import Lexer, Token, TokenType


# -----------------------------------------------------------------------------
# AST Node Types
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class ASTNode:
    """Base class for AST nodes."""


@dataclass(frozen=True)
class Literal(ASTNode):
    value: Any


@dataclass(frozen=True)
class Identifier(ASTNode):
    name: str


@dataclass(frozen=True)
class MemberAccess(ASTNode):
    """Dot path access (e.g. record.customer.name)."""
    object: ASTNode
    member: str


@dataclass(frozen=True)
class IndexAccess(ASTNode):
    object: ASTNode
    index: ASTNode


@dataclass(frozen=True)
class BinaryOp(ASTNode):
    operator: str
    left: ASTNode
    right: ASTNode


@dataclass(frozen=True)
class UnaryOp(ASTNode):
    operator: str
    operand: ASTNode


@dataclass(frozen=True)
class FunctionCall(ASTNode):
    name: str
    arguments: tuple[ASTNode, ...]


@dataclass(frozen=True)
class ArrayLiteral(ASTNode):
    elements: tuple[ASTNode, ...]


# -----------------------------------------------------------------------------
# Parser
# -----------------------------------------------------------------------------


_COMPARISON_OPS = {
    TokenType.EQ: "==",
    TokenType.NEQ: "!=",
    TokenType.LT: "<",
    TokenType.LTE: "<=",
    TokenType.GT: ">",
    TokenType.GTE: ">=",
    TokenType.IN: "in",
    TokenType.NOT_IN: "not in",
}

_ADDITIVE_OPS = {TokenType.PLUS: "+", TokenType.MINUS: "-"}

_MULTIPLICATIVE_OPS = {
    TokenType.MULTIPLY: "*",
    TokenType.DIVIDE: "/",
    TokenType.MODULO: "%",
}


class Parser:
    """Recursive descent parser.

    Usage:
        ast = Parser('payment_amount >= total').parse()
    """

    def __init__(self, source: str):
        self.source = source
        self.tokens = Lexer(source).tokenize()
        self.position = 0

    def parse(self) -> ASTNode:
        if self._current().type == TokenType.EOF:
            raise ParseError("Empty expression", self.source, 0)

        ast = self._parse_or()

        if self._current().type != TokenType.EOF:
            self._fail(f"Unexpected token '{self._current().value}'")

        return ast

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _current(self) -> Token:
        return self.tokens[min(self.position, len(self.tokens) - 1)]

    def _advance(self) -> Token:
        token = self._current()
        self.position += 1
        return token

    def _match(self, *types: TokenType) -> bool:
        return self._current().type in types

    def _consume(self, token_type: TokenType, message: str) -> Token:
        if self._current().type == token_type:
            return self._advance()
        self._fail(message)

    def _fail(self, message: str):
        raise ParseError(message, self.source, self._current().position)

    # -------------------------------------------------------------------------
    # Grammar
    # -------------------------------------------------------------------------

    def _parse_or(self) -> ASTNode:
        left = self._parse_and()
        while self._match(TokenType.OR):
            self._advance()
            left = BinaryOp("||", left, self._parse_and())
        return left

    def _parse_and(self) -> ASTNode:
        left = self._parse_comparison()
        while self._match(TokenType.AND):
            self._advance()
            left = BinaryOp("&&", left, self._parse_comparison())
        return left

    def _parse_comparison(self) -> ASTNode:
        left = self._parse_additive()
        while self._current().type in _COMPARISON_OPS:
            op = _COMPARISON_OPS[self._advance().type]
            left = BinaryOp(op, left, self._parse_additive())
        return left

    def _parse_additive(self) -> ASTNode:
        left = self._parse_multiplicative()
        while self._current().type in _ADDITIVE_OPS:
            op = _ADDITIVE_OPS[self._advance().type]
            left = BinaryOp(op, left, self._parse_multiplicative())
        return left

    def _parse_multiplicative(self) -> ASTNode:
        left = self._parse_unary()
        while self._current().type in _MULTIPLICATIVE_OPS:
            op = _MULTIPLICATIVE_OPS[self._advance().type]
            left = BinaryOp(op, left, self._parse_unary())
        return left

    def _parse_unary(self) -> ASTNode:
        if self._match(TokenType.NOT):
            self._advance()
            return UnaryOp("!", self._parse_unary())
        if self._match(TokenType.MINUS):
            self._advance()
            return UnaryOp("-", self._parse_unary())
        return self._parse_postfix()

    def _parse_postfix(self) -> ASTNode:
        expr = self._parse_primary()

        while True:
            if self._match(TokenType.DOT):
                self._advance()
                member = self._consume(TokenType.IDENTIFIER, "Expected identifier after '.'")
                expr = MemberAccess(expr, str(member.value))
            elif self._match(TokenType.LBRACKET):
                self._advance()
                index = self._parse_or()
                self._consume(TokenType.RBRACKET, "Expected ']' after index")
                expr = IndexAccess(expr, index)
            else:
                return expr

    def _parse_primary(self) -> ASTNode:
        token = self._current()

        if token.type in (TokenType.NUMBER, TokenType.STRING, TokenType.BOOLEAN, TokenType.NULL):
            self._advance()
            return Literal(token.value)

        if token.type == TokenType.IDENTIFIER:
            self._advance()
            if self._match(TokenType.LPAREN):
                return FunctionCall(str(token.value), self._parse_list(TokenType.LPAREN, TokenType.RPAREN))
            return Identifier(str(token.value))

        if token.type == TokenType.LPAREN:
            self._advance()
            expr = self._parse_or()
            self._consume(TokenType.RPAREN, "Expected ')' after expression")
            return expr

        if token.type == TokenType.LBRACKET:
            return ArrayLiteral(self._parse_list(TokenType.LBRACKET, TokenType.RBRACKET))

        self._fail(f"Unexpected token '{token.value}'")

    def _parse_list(self, open_type: TokenType, close_type: TokenType) -> tuple[ASTNode, ...]:
        """Parse a comma-separated list between open/close tokens."""
        self._consume(open_type, "Expected opening bracket")
        items: list[ASTNode] = []
        if not self._match(close_type):
            items.append(self._parse_or())
            while self._match(TokenType.COMMA):
                self._advance()
                items.append(self._parse_or())
        self._consume(close_type, "Expected closing bracket")
        return tuple(items)


@lru_cache(maxsize=1024)
def parse(source: str) -> ASTNode:
    """Parse an expression string into an AST (cached by source text)."""
    return Parser(source).parse()
