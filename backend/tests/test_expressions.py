"""Tests for the EntityForge expression language.

Tests cover:
- Lexer: Tokenization of expression strings
- Parser: AST generation from tokens
- Evaluator: Expression evaluation against an Environment
- Built-in functions
- Rule/guard/condition conventions
"""

from datetime import date, datetime, timezone

import pytest

from entityforge.expressions import (
    Environment,
    EvaluationError,
    ExpressionError,
    FunctionRegistry,
    Lexer,
    LexerError,
    ParseError,
    Token,
    TokenType,
    evaluate,
    is_allowed,
    is_violated,
    parse,
    should_fire,
)
from entityforge.expressions.builtins import register_all_builtins
from entityforge.expressions.parser import (
    ArrayLiteral,
    BinaryOp,
    FunctionCall,
    Identifier,
    IndexAccess,
    Literal,
    MemberAccess,
    UnaryOp,
)


@pytest.fixture(autouse=True)
def setup_functions():
    """Register built-in functions before each test."""
    FunctionRegistry.clear()
    register_all_builtins()
    yield
    FunctionRegistry.clear()
    register_all_builtins()


def ev(expression, record=None, **env):
    return evaluate(expression, Environment(record=record or {}, **env))


# =============================================================================
# Lexer Tests
# =============================================================================


class TestLexer:
    def test_tokenize_numbers(self):
        tokens = Lexer("42 3.14 0").tokenize()

        assert tokens[0] == Token(TokenType.NUMBER, 42, 0)
        assert tokens[1] == Token(TokenType.NUMBER, 3.14, 3)
        assert tokens[2] == Token(TokenType.NUMBER, 0, 8)
        assert tokens[3].type == TokenType.EOF

    def test_tokenize_strings(self):
        tokens = Lexer('"hello" \'world\'').tokenize()

        assert tokens[0].type == TokenType.STRING
        assert tokens[0].value == "hello"
        assert tokens[1].value == "world"

    def test_tokenize_string_escapes(self):
        tokens = Lexer(r'"hello\nworld" "say \"hi\""').tokenize()

        assert tokens[0].value == "hello\nworld"
        assert tokens[1].value == 'say "hi"'

    def test_keywords_are_case_insensitive(self):
        tokens = Lexer("true FALSE null nil AND or").tokenize()

        assert [t.type for t in tokens[:-1]] == [
            TokenType.BOOLEAN,
            TokenType.BOOLEAN,
            TokenType.NULL,
            TokenType.NULL,
            TokenType.AND,
            TokenType.OR,
        ]
        assert tokens[1].value is False
        assert tokens[3].value is None

    def test_not_in_is_one_token(self):
        tokens = Lexer("status not   in ['a']").tokenize()

        assert tokens[1] == Token(TokenType.NOT_IN, "not in", 7)

    def test_not_alone(self):
        tokens = Lexer("not active").tokenize()

        assert tokens[0].type == TokenType.NOT
        assert tokens[1] == Token(TokenType.IDENTIFIER, "active", 4)

    def test_comparison_operators(self):
        tokens = Lexer("== != < <= > >=").tokenize()

        assert [t.type for t in tokens[:-1]] == [
            TokenType.EQ,
            TokenType.NEQ,
            TokenType.LT,
            TokenType.LTE,
            TokenType.GT,
            TokenType.GTE,
        ]

    def test_unexpected_character(self):
        with pytest.raises(LexerError) as exc_info:
            Lexer("total # 2").tokenize()

        assert exc_info.value.position == 6
        assert "Unexpected character '#'" in str(exc_info.value)


# =============================================================================
# Parser Tests
# =============================================================================


class TestParser:
    def test_precedence_multiplication_over_addition(self):
        ast = parse("1 + 2 * 3")

        assert ast == BinaryOp("+", Literal(1), BinaryOp("*", Literal(2), Literal(3)))

    def test_and_binds_tighter_than_or(self):
        ast = parse("a || b && c")

        assert ast == BinaryOp("||", Identifier("a"), BinaryOp("&&", Identifier("b"), Identifier("c")))

    def test_member_and_index_access(self):
        ast = parse("related.items[0].qty")

        assert ast == MemberAccess(
            IndexAccess(MemberAccess(Identifier("related"), "items"), Literal(0)),
            "qty",
        )

    def test_function_call_and_array(self):
        ast = parse("contains(['a', 'b'], status)")

        assert isinstance(ast, FunctionCall)
        assert ast.name == "contains"
        assert ast.arguments[0] == ArrayLiteral((Literal("a"), Literal("b")))
        assert ast.arguments[1] == Identifier("status")

    def test_unary(self):
        assert parse("!active") == UnaryOp("!", Identifier("active"))
        assert parse("-total") == UnaryOp("-", Identifier("total"))

    def test_parse_is_cached(self):
        assert parse("total > 0") is parse("total > 0")

    @pytest.mark.parametrize("source", ["", "total >", "(a", "f(a,", "a b"])
    def test_malformed(self, source):
        with pytest.raises(ParseError):
            parse(source)


# =============================================================================
# Evaluator Tests
# =============================================================================


class TestEvaluator:
    def test_field_lookup(self):
        assert ev("total", {"total": 10}) == 10
        assert ev("record.total", {"total": 10}) == 10
        assert ev("missing", {"total": 10}) is None

    def test_old_user_action(self):
        env = {"old": {"status": "draft"}, "user": {"id": "u1", "roles": ["sales"]}, "action": "update"}

        assert ev("old.status == 'draft'", {"status": "sent"}, **env) is True
        assert ev("'sales' in user.roles", **env) is True
        assert ev("action", **env) == "update"

    def test_old_is_null_on_create(self):
        assert ev("old == null", {"status": "draft"}) is True
        assert ev("old.status", {"status": "draft"}) is None

    def test_arithmetic(self):
        assert ev("qty * price", {"qty": 3, "price": 2.5}) == 7.5
        assert ev("10 % 4") == 2
        assert ev("'INV-' + number", {"number": 7}) == "INV-7"

    def test_arithmetic_with_null_is_null(self):
        assert ev("total * 2", {"total": None}) is None

    def test_division_by_zero(self):
        with pytest.raises(EvaluationError):
            ev("1 / 0")

    def test_comparisons_with_null_are_false(self):
        assert ev("total > 0", {"total": None}) is False
        assert ev("total < 0", {"total": None}) is False
        assert ev("total == null", {"total": None}) is True

    def test_numeric_equality_across_types(self):
        assert ev("total == 10", {"total": 10.0}) is True

    def test_membership(self):
        assert ev("status in ['draft', 'sent']", {"status": "sent"}) is True
        assert ev("status not in ['draft', 'sent']", {"status": "paid"}) is True
        assert ev("'vip' in name", {"name": "a vip customer"}) is True

    def test_membership_requires_collection(self):
        with pytest.raises(EvaluationError):
            ev("1 in 2")

    def test_short_circuit_and_truthiness(self):
        assert ev("items && size(items) > 0", {"items": []}) is False
        assert ev("!name", {"name": ""}) is True

    def test_date_comparison_with_iso_strings(self):
        record = {"due": "2026-03-10", "issued": "2026-03-01T09:00:00+00:00"}

        assert ev("due > issued", record) is True
        assert ev("due > now", record, now=datetime(2026, 3, 5, tzinfo=timezone.utc)) is True

    def test_compare_incompatible_types(self):
        with pytest.raises(EvaluationError):
            ev("name > 3", {"name": "abc"})

    def test_unknown_function(self):
        with pytest.raises(EvaluationError, match="Unknown function"):
            ev("explode(1)")

    def test_arity_checked(self):
        with pytest.raises(EvaluationError, match="at most 1"):
            ev("upper('a', 'b')")

    def test_error_carries_expression(self):
        with pytest.raises(ExpressionError) as exc_info:
            ev("1 / 0")

        assert exc_info.value.expression == "1 / 0"


# =============================================================================
# Built-in Function Tests
# =============================================================================


class TestBuiltins:
    def test_string_functions(self):
        assert ev("len(name)", {"name": "abc"}) == 3
        assert ev("len(name)", {"name": None}) == 0
        assert ev("upper(trim('  x '))") == "X"
        assert ev("concat('a', null, 1)") == "a1"
        assert ev("matches(number, '^INV-[0-9]+$')", {"number": "INV-12"}) is True
        assert ev("startsWith('INV-1', 'INV')") is True
        assert ev("isEmpty(' ')") is True

    def test_collection_functions(self):
        items = [{"qty": 2}, {"qty": 3}, {"qty": None}]

        assert ev("sum(related.items, 'qty')", related={"items": items}) == 5
        assert ev("size(related.items)", related={"items": items}) == 3
        assert ev("pluck(related.items, 'qty')", related={"items": items}) == [2, 3, None]
        assert ev("sum([1, 2, 3])") == 6
        assert ev("contains(tags, 'a')", {"tags": ["a", "b"]}) is True

    def test_math_functions(self):
        assert ev("round(12.346, 2)") == 12.35
        assert ev("round(2.6)") == 3
        assert ev("abs(-4)") == 4
        assert ev("min(3, 1, 2)") == 1
        assert ev("max([3, 9, 2])") == 9

    def test_date_functions_use_environment_time(self):
        now = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

        assert ev("today()", now=now) == date(2026, 3, 1)
        assert ev("now()", now=now) == now
        assert ev("daysBetween('2026-03-01', '2026-03-31')") == 30

    def test_logic_functions(self):
        assert ev("coalesce(a, b, 3)", {"a": None, "b": None}) == 3
        assert ev("if(total > 100, 'big', 'small')", {"total": 150}) == "big"


# =============================================================================
# Conventions
# =============================================================================


class TestConventions:
    def test_rule_true_means_violated(self):
        env = Environment(record={"total": -1})

        assert is_violated("total < 0", env) is True
        assert is_violated("total > 0", env) is False

    def test_guard_true_means_proceed(self):
        env = Environment(record={"total": 5})

        assert is_allowed("total > 0", env) is True
        assert is_allowed(None, env) is True
        assert is_allowed("total > 10", env) is False

    def test_condition_empty_always_fires(self):
        env = Environment(record={})

        assert should_fire(None, env) is True
        assert should_fire("", env) is True
        assert should_fire("status == 'paid'", env) is False
