"""Lexer/tokenizer for the EntityForge expression language.

Token types:
- Literals: NUMBER, STRING, BOOLEAN, NULL (``null`` or ``nil``)
- Identifiers: IDENTIFIER (field names, environment keys, function names)
- Operators: comparison, membership, logical, arithmetic
- Punctuation: LPAREN, RPAREN, LBRACKET, RBRACKET, COMMA, DOT
"""

import re
from dataclasses import dataclass
from enum import Enum, auto
from typing import Iterator

from entityforge.expressions.errors import LexerError


class TokenType(Enum):
    NUMBER = auto()
    STRING = auto()
    BOOLEAN = auto()
    NULL = auto()

    IDENTIFIER = auto()

    EQ = auto()          # ==
    NEQ = auto()         # !=
    LT = auto()          # <
    LTE = auto()         # <=
    GT = auto()          # >
    GTE = auto()         # >=

    AND = auto()         # && or and
    OR = auto()          # || or or
    NOT = auto()         # ! or not

    PLUS = auto()
    MINUS = auto()
    MULTIPLY = auto()
    DIVIDE = auto()
    MODULO = auto()

    IN = auto()          # in
    NOT_IN = auto()      # not in

    LPAREN = auto()
    RPAREN = auto()
    LBRACKET = auto()
    RBRACKET = auto()
    COMMA = auto()
    DOT = auto()

    EOF = auto()


@dataclass(frozen=True)
class Token:
    type: TokenType
    value: str | int | float | bool | None
    position: int

    def __repr__(self) -> str:
        return f"Token({self.type.name}, {self.value!r}, pos={self.position})"


# Order matters: longer operators before their prefixes
TOKEN_PATTERNS = [
    (r"\s+", None),
    (r"==", TokenType.EQ),
    (r"!=", TokenType.NEQ),
    (r"<=", TokenType.LTE),
    (r">=", TokenType.GTE),
    (r"&&", TokenType.AND),
    (r"\|\|", TokenType.OR),
    (r"<", TokenType.LT),
    (r">", TokenType.GT),
    (r"!", TokenType.NOT),
    (r"\+", TokenType.PLUS),
    (r"-", TokenType.MINUS),
    (r"\*", TokenType.MULTIPLY),
    (r"/", TokenType.DIVIDE),
    (r"%", TokenType.MODULO),
    (r"\(", TokenType.LPAREN),
    (r"\)", TokenType.RPAREN),
    (r"\[", TokenType.LBRACKET),
    (r"\]", TokenType.RBRACKET),
    (r",", TokenType.COMMA),
    (r"\.", TokenType.DOT),
    (r"\d+\.\d+", TokenType.NUMBER),
    (r"\d+", TokenType.NUMBER),
    (r'"([^"\\]|\\.)*"', TokenType.STRING),
    (r"'([^'\\]|\\.)*'", TokenType.STRING),
    (r"[a-zA-Z_][a-zA-Z0-9_]*", TokenType.IDENTIFIER),
]

_COMPILED = [(re.compile(pattern), token_type) for pattern, token_type in TOKEN_PATTERNS]

KEYWORDS = {
    "true": (TokenType.BOOLEAN, True),
    "false": (TokenType.BOOLEAN, False),
    "null": (TokenType.NULL, None),
    "nil": (TokenType.NULL, None),
    "and": (TokenType.AND, "and"),
    "or": (TokenType.OR, "or"),
    "not": (TokenType.NOT, "not"),
    "in": (TokenType.IN, "in"),
}

_ESCAPES = {"n": "\n", "t": "\t", "r": "\r"}

_NOT_IN = re.compile(r"\s*in\b", re.IGNORECASE)


class Lexer:
    """Tokenizer for the expression language.

    Usage:
        tokens = Lexer('status == "paid" && total > 0').tokenize()
    """

    def __init__(self, source: str):
        self.source = source
        self.position = 0

    def __iter__(self) -> Iterator[Token]:
        while True:
            token = self.next_token()
            yield token
            if token.type == TokenType.EOF:
                break

    def tokenize(self) -> list[Token]:
        return list(self)

    def next_token(self) -> Token:
        while self.position < len(self.source):
            for pattern, token_type in _COMPILED:
                match = pattern.match(self.source, self.position)
                if match:
                    break
            else:
                raise LexerError(
                    f"Unexpected character '{self.source[self.position]}'",
                    self.source,
                    self.position,
                )

            start = self.position
            text = match.group()
            self.position = match.end()

            if token_type is None:
                continue
            if token_type == TokenType.NUMBER:
                return Token(token_type, float(text) if "." in text else int(text), start)
            if token_type == TokenType.STRING:
                return Token(token_type, self._unescape(text[1:-1]), start)
            if token_type == TokenType.IDENTIFIER:
                return self._keyword_or_identifier(text, start)
            return Token(token_type, text, start)

        return Token(TokenType.EOF, None, self.position)

    def _keyword_or_identifier(self, text: str, start: int) -> Token:
        keyword = KEYWORDS.get(text.lower())
        if keyword is None:
            return Token(TokenType.IDENTIFIER, text, start)

        keyword_type, keyword_value = keyword
        if keyword_type == TokenType.NOT:
            follow = _NOT_IN.match(self.source, self.position)
            if follow:
                self.position = follow.end()
                return Token(TokenType.NOT_IN, "not in", start)
        return Token(keyword_type, keyword_value, start)

    @staticmethod
    def _unescape(s: str) -> str:
        result = []
        chars = iter(s)
        for ch in chars:
            if ch == "\\":
                nxt = next(chars, "")
                result.append(_ESCAPES.get(nxt, nxt))
            else:
                result.append(ch)
        return "".join(result)
