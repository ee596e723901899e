"""Tests for the federated SQL parser."""

import random

import pytest

from docfed.errors import QuerySyntaxError
from docfed.query import (
    ComparisonOp,
    Condition,
    FieldRef,
    JoinClause,
    Literal,
    OrderKey,
    Param,
    ParsedQuery,
    QueryParser,
    parse_query,
    validate_query_syntax,
)


@pytest.fixture
def parser():
    return QueryParser()


# =============================================================================
# SELECT / FROM
# =============================================================================

class TestSelect:
    """Tests for the SELECT list and FROM clause."""

    def test_select_star(self, parser):
        q = parser.parse("SELECT * FROM users")
        assert q.from_collection == "users"
        assert q.select_fields == []
        assert q.is_select_all()

    def test_select_fields(self, parser):
        q = parser.parse("SELECT name, email FROM users")
        assert q.select_fields == [FieldRef("name"), FieldRef("email")]

    def test_qualified_fields(self, parser):
        q = parser.parse("SELECT users.name, orders.amount FROM users")
        assert q.select_fields == [
            FieldRef("name", table="users"),
            FieldRef("amount", table="orders"),
        ]

    def test_keywords_case_insensitive(self, parser):
        q = parser.parse("select name from users where age > 3 order by name desc limit 2")
        assert q.from_collection == "users"
        assert q.limit == 2
        assert q.order_by == [OrderKey(FieldRef("name"), ascending=False)]

    def test_identifier_starting_with_keyword(self, parser):
        q = parser.parse("SELECT order_id, selection FROM orders_archive")
        assert q.select_fields == [FieldRef("order_id"), FieldRef("selection")]
        assert q.from_collection == "orders_archive"

    def test_trailing_semicolon_and_comment(self, parser):
        q = parser.parse("SELECT * FROM users; -- all users")
        assert q.from_collection == "users"


# =============================================================================
# JOIN
# =============================================================================

class TestJoin:
    """Tests for JOIN ... ON clauses."""

    def test_single_join(self, parser):
        q = parser.parse(
            "SELECT users.name, orders.amount FROM users "
            "JOIN orders ON users.uid = orders.userId"
        )
        assert q.joins == [
            JoinClause(
                collection="orders",
                left=FieldRef("uid", table="users"),
                right=FieldRef("userId", table="orders"),
            )
        ]

    def test_multiple_joins_keep_order(self, parser):
        q = parser.parse(
            "SELECT * FROM users "
            "JOIN orders ON users.uid = orders.userId "
            "JOIN items ON orders.itemId = items.id"
        )
        assert [j.collection for j in q.joins] == ["orders", "items"]
        assert q.collections() == ["users", "orders", "items"]

    def test_join_requires_qualified_fields(self, parser):
        with pytest.raises(QuerySyntaxError) as exc_info:
            parser.parse("SELECT * FROM users JOIN orders ON uid = userId")
        assert "JOIN" in exc_info.value.message

    def test_join_requires_equality(self, parser):
        with pytest.raises(QuerySyntaxError):
            parser.parse("SELECT * FROM users JOIN orders ON users.uid > orders.userId")

    def test_join_missing_on(self, parser):
        with pytest.raises(QuerySyntaxError) as exc_info:
            parser.parse("SELECT * FROM users JOIN orders")
        assert "JOIN" in exc_info.value.message

    def test_aliases_resolve_to_collections(self, parser):
        q = parser.parse(
            "SELECT u.name, o.amount FROM users u "
            "JOIN orders o ON u.uid = o.userId "
            "WHERE o.amount > 5 ORDER BY o.amount DESC"
        )
        assert q == parser.parse(
            "SELECT users.name, orders.amount FROM users "
            "JOIN orders ON users.uid = orders.userId "
            "WHERE orders.amount > 5 ORDER BY orders.amount DESC"
        )

    def test_alias_with_as(self, parser):
        q = parser.parse("SELECT p.name FROM users AS p WHERE p.uid = :id")
        assert q.select_fields == [FieldRef("name", table="users")]
        assert q.where[0].field == FieldRef("uid", table="users")
        assert str(q) == "SELECT users.name FROM users WHERE users.uid = :id"

    def test_alias_in_field_comparison(self, parser):
        q = parser.parse("SELECT * FROM users u WHERE u.created < u.updated")
        assert q.where[0].value == FieldRef("updated", table="users")

    def test_alias_reused_for_two_collections(self, parser):
        with pytest.raises(QuerySyntaxError, match="Alias 'x'"):
            parser.parse("SELECT * FROM users x JOIN orders x ON x.uid = x.userId")

    def test_alias_shadowing_collection(self, parser):
        with pytest.raises(QuerySyntaxError, match="Alias 'orders'"):
            parser.parse(
                "SELECT * FROM users orders JOIN orders o ON orders.uid = o.userId"
            )


# =============================================================================
# WHERE
# =============================================================================

class TestWhere:
    """Tests for WHERE conditions."""

    def test_string_literal(self, parser):
        q = parser.parse("SELECT * FROM users WHERE name = 'Ann'")
        assert q.where == [Condition(FieldRef("name"), ComparisonOp.EQ, Literal("Ann"))]

    def test_escaped_quote(self, parser):
        q = parser.parse("SELECT * FROM users WHERE name = 'O''Brien'")
        assert q.where[0].value == Literal("O'Brien")

    def test_double_quoted_string(self, parser):
        q = parser.parse('SELECT * FROM users WHERE name = "Ann"')
        assert q.where[0].value == Literal("Ann")

    def test_numbers(self, parser):
        q = parser.parse("SELECT * FROM orders WHERE amount > 9.5 AND qty <= -2")
        assert q.where[0].value == Literal(9.5)
        assert q.where[1].value == Literal(-2)
        assert q.where[1].operator is ComparisonOp.LE

    def test_booleans_and_null(self, parser):
        q = parser.parse("SELECT * FROM users WHERE active = true AND deleted = FALSE AND note = null")
        assert [c.value for c in q.where] == [Literal(True), Literal(False), Literal(None)]

    def test_parameter(self, parser):
        q = parser.parse("SELECT name FROM users WHERE uid = :id")
        assert q.where[0].value == Param("id")
        assert q.parameters() == ["id"]

    def test_field_comparison(self, parser):
        q = parser.parse("SELECT * FROM users WHERE users.created < users.updated")
        cond = q.where[0]
        assert cond.is_field_comparison
        assert cond.value == FieldRef("updated", table="users")

    @pytest.mark.parametrize("op,expected", [
        ("=", ComparisonOp.EQ),
        ("==", ComparisonOp.EQ),
        ("!=", ComparisonOp.NE),
        ("<>", ComparisonOp.NE),
        ("<", ComparisonOp.LT),
        ("<=", ComparisonOp.LE),
        (">", ComparisonOp.GT),
        (">=", ComparisonOp.GE),
    ])
    def test_operators(self, parser, op, expected):
        q = parser.parse(f"SELECT * FROM t WHERE a {op} 1")
        assert q.where[0].operator is expected

    def test_multiple_and(self, parser):
        q = parser.parse("SELECT * FROM t WHERE a = 1 AND b = 2 AND c = 3")
        assert len(q.where) == 3

    def test_keyword_inside_string_is_not_rejected(self, parser):
        q = parser.parse("SELECT * FROM t WHERE note = 'this OR that (maybe)'")
        assert q.where[0].value == Literal("this OR that (maybe)")


# =============================================================================
# Unsupported constructs
# =============================================================================

class TestUnsupported:
    """The parser rejects SQL outside the supported subset."""

    @pytest.mark.parametrize("text,fragment", [
        ("SELECT * FROM t WHERE a = 1 OR b = 2", "OR"),
        ("SELECT a FROM t GROUP BY a", "GROUP BY"),
        ("SELECT COUNT(a) FROM t", "aggregate"),
        ("SELECT * FROM t WHERE a = (SELECT b FROM u)", "subqueries"),
        ("SELECT * FROM t UNION SELECT * FROM u", "UNION"),
    ])
    def test_rejected(self, parser, text, fragment):
        with pytest.raises(QuerySyntaxError) as exc_info:
            parser.parse(text)
        assert fragment in exc_info.value.message
        assert exc_info.value.kind == "SyntaxError"

    def test_missing_select(self, parser):
        with pytest.raises(QuerySyntaxError, match="SELECT"):
            parser.parse("UPDATE users SET a = 1")

    def test_missing_from(self, parser):
        with pytest.raises(QuerySyntaxError, match="FROM"):
            parser.parse("SELECT name")

    def test_error_has_position(self, parser):
        with pytest.raises(QuerySyntaxError) as exc_info:
            parser.parse("SELECT * FROM users WHERE")
        assert exc_info.value.line == 1
        assert exc_info.value.column is not None

    def test_limit_must_be_integer(self, parser):
        with pytest.raises(QuerySyntaxError):
            parser.parse("SELECT * FROM t LIMIT ten")


# =============================================================================
# Round trip
# =============================================================================

class TestRoundTrip:
    """str(ast) re-serializes to text that parses to the same AST."""

    QUERIES = [
        "SELECT * FROM users",
        "SELECT name FROM users WHERE uid = :id",
        "SELECT users.name, orders.amount FROM users JOIN orders ON users.uid = orders.userId",
        "SELECT amount FROM orders ORDER BY amount DESC LIMIT 1",
        "SELECT * FROM t WHERE a != 'x''y' AND b >= 2.5 AND c < -3 AND d = null AND e = true",
        "SELECT a FROM t JOIN u ON u.x = t.y JOIN v ON t.z = v.w WHERE t.a = t.b ORDER BY a, t.b DESC",
        "select a from t where s = \"dq\" limit 0",
    ]

    OPERATORS = ["=", "==", "!=", "<>", "<", "<=", ">", ">="]
    VALUES = [":id", "'Ann'", "'O''Brien'", "42", "-3", "2.5", "1e3", "true", "FALSE", "null", "name", "orders.userId"]

    @pytest.mark.parametrize("text", QUERIES)
    def test_round_trip(self, text):
        first = parse_query(text)
        second = parse_query(str(first))
        assert first == second

    @pytest.mark.parametrize("op", OPERATORS)
    @pytest.mark.parametrize("value", VALUES)
    def test_round_trip_operator_and_value(self, op, value):
        first = parse_query(f"SELECT * FROM users WHERE users.uid {op} {value}")
        assert parse_query(str(first)) == first

    def test_round_trip_generated(self):
        rng = random.Random(1729)
        for _ in range(300):
            text = _random_query(rng)
            first = parse_query(text)
            second = parse_query(str(first))
            assert first == second, text
            assert str(second) == str(first)

    def test_canonical_form(self):
        q = parse_query("select  name from users  where uid=:id order by name asc limit 5")
        assert str(q) == "SELECT name FROM users WHERE uid = :id ORDER BY name LIMIT 5"

    def test_ast_built_by_hand(self):
        q = ParsedQuery(
            from_collection="orders",
            select_fields=[FieldRef("amount")],
            where=[Condition(FieldRef("amount"), ComparisonOp.GT, Literal(5))],
            order_by=[OrderKey(FieldRef("amount"), ascending=False)],
            limit=3,
        )
        assert parse_query(str(q)) == q


_TABLES = ["users", "orders", "items", "t_1"]
_FIELDS = ["uid", "name", "amount", "_score", "createdAt"]


def _random_query(rng: random.Random) -> str:
    """Build a random query within the supported grammar."""

    def kw(word):
        return word if rng.random() < 0.5 else word.lower()

    base = rng.choice(_TABLES)
    joined = rng.sample([t for t in _TABLES if t != base], rng.randint(0, 2))
    names = {}
    for i, table in enumerate([base] + joined):
        names[table] = f"x{i}" if rng.random() < 0.3 else table

    def target(table):
        alias = names[table]
        if alias == table:
            return table
        return f"{table} {kw('AS') + ' ' if rng.random() < 0.5 else ''}{alias}"

    def field():
        name = rng.choice(_FIELDS)
        if rng.random() < 0.5:
            return f"{names[rng.choice([base] + joined)]}.{name}"
        return name

    def value():
        choice = rng.randrange(6)
        if choice == 0:
            return ":" + rng.choice(["id", "min_amount", "p1"])
        if choice == 1:
            return rng.choice(["'Ann'", "'O''Brien'", "'a b'"])
        if choice == 2:
            return str(rng.randint(-50, 50))
        if choice == 3:
            return rng.choice(["2.5", "-0.75", "1e3"])
        if choice == 4:
            return kw(rng.choice(["TRUE", "FALSE", "NULL"]))
        return field()

    if rng.random() < 0.3:
        select = "*"
    else:
        select = ", ".join(field() for _ in range(rng.randint(1, 3)))
    parts = [f"{kw('SELECT')} {select} {kw('FROM')} {target(base)}"]

    scope = [base]
    for table in joined:
        left = f"{names[rng.choice(scope)]}.{rng.choice(_FIELDS)}"
        right = f"{names[table]}.{rng.choice(_FIELDS)}"
        parts.append(f"{kw('JOIN')} {target(table)} {kw('ON')} {left} = {right}")
        scope.append(table)

    conditions = [
        f"{field()} {rng.choice(TestRoundTrip.OPERATORS)} {value()}"
        for _ in range(rng.randint(0, 3))
    ]
    if conditions:
        parts.append(f"{kw('WHERE')} " + f" {kw('AND')} ".join(conditions))

    keys = [
        field() + rng.choice(["", " " + kw("ASC"), " " + kw("DESC")])
        for _ in range(rng.randint(0, 2))
    ]
    if keys:
        parts.append(f"{kw('ORDER')} {kw('BY')} " + ", ".join(keys))

    if rng.random() < 0.5:
        parts.append(f"{kw('LIMIT')} {rng.randint(0, 100)}")
    return " ".join(parts)


# =============================================================================
# Validation
# =============================================================================

class TestValidation:
    """Tests for validate_query_syntax."""

    def test_valid(self):
        result = validate_query_syntax("SELECT * FROM users")
        assert result.valid
        assert result.to_dict() == {"isValid": True}

    def test_invalid(self):
        result = validate_query_syntax("SELECT * FROM t WHERE a = 1 OR b = 2")
        assert not result.valid
        assert "OR" in result.error
        assert result.to_dict()["isValid"] is False
