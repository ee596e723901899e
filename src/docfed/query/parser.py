"""
Federated SQL parser using pyparsing.

Supports a deliberately small SQL subset:

    SELECT <field>[, <field>...] FROM <collection> [[AS] <alias>]
      [JOIN <collection> [[AS] <alias>] ON <table>.<field> = <table>.<field>]*
      [WHERE <cond> [AND <cond>]*]
      [ORDER BY <field> [ASC|DESC][, ...]]
      [LIMIT <integer>]

Aliases are resolved at parse time, so the AST only names collections.
Anything else (OR, parentheses, subqueries, aggregates, GROUP BY) is a
syntax error rather than a silently ignored clause.
"""

import re
from dataclasses import dataclass, replace
from typing import Dict, Optional

import pyparsing as pp
from pyparsing import (
    CaselessKeyword, Combine, DelimitedList, Group, Literal as Lit,
    MatchFirst, Optional as Opt, Suppress, QuotedString, Word, ZeroOrMore,
    alphanums, alphas, pyparsing_common,
)

from docfed.errors import QuerySyntaxError
from docfed.query.ast import (
    ComparisonOp, Condition, FieldRef, JoinClause, Literal, OrderKey,
    Param, ParsedQuery,
)


_SELECT_RE = re.compile(r"\bSELECT\b", re.IGNORECASE)
_FROM_RE = re.compile(r"\bFROM\b", re.IGNORECASE)
_QUOTED_RE = re.compile(r"'(?:[^']|'')*'|\"(?:[^\"\\]|\\.)*\"")

# Constructs outside the supported subset, reported by name when a parse fails
_UNSUPPORTED = [
    (re.compile(r"\bOR\b", re.IGNORECASE), "OR conditions are not supported"),
    (re.compile(r"\bGROUP\s+BY\b", re.IGNORECASE), "GROUP BY is not supported"),
    (re.compile(r"\bUNION\b", re.IGNORECASE), "UNION is not supported"),
    (re.compile(r"\b(COUNT|SUM|AVG|MIN|MAX)\s*\(", re.IGNORECASE), "aggregate functions are not supported"),
    (re.compile(r"\(\s*SELECT\b", re.IGNORECASE), "subqueries are not supported"),
    (re.compile(r"[()]"), "parentheses are not supported"),
]


class QueryParser:
    """
    Parser for federated SQL queries.

    Builds a typed ``ParsedQuery`` AST; every parse failure is raised as
    ``QuerySyntaxError`` with line/column information.
    """

    def __init__(self):
        self._build_grammar()

    def _build_grammar(self):
        """Build the pyparsing grammar."""

        pp.ParserElement.enable_packrat()

        # =================================================================
        # Keywords (case-insensitive)
        # =================================================================

        SELECT = CaselessKeyword("SELECT")
        FROM = CaselessKeyword("FROM")
        JOIN = CaselessKeyword("JOIN")
        ON = CaselessKeyword("ON")
        WHERE = CaselessKeyword("WHERE")
        AND = CaselessKeyword("AND")
        OR = CaselessKeyword("OR")
        ORDER = CaselessKeyword("ORDER")
        BY = CaselessKeyword("BY")
        ASC = CaselessKeyword("ASC")
        DESC = CaselessKeyword("DESC")
        LIMIT = CaselessKeyword("LIMIT")
        TRUE = CaselessKeyword("TRUE")
        FALSE = CaselessKeyword("FALSE")
        NULL = CaselessKeyword("NULL")
        AS = CaselessKeyword("AS")

        reserved = MatchFirst([
            SELECT, FROM, JOIN, ON, WHERE, AND, OR, ORDER, BY, ASC, DESC,
            LIMIT, TRUE, FALSE, NULL, AS,
        ])

        STAR = Lit("*")

        comp_op = (
            Lit("<=") | Lit(">=") | Lit("!=") | Lit("<>") |
            Lit("==") | Lit("=") | Lit("<") | Lit(">")
        )

        # =================================================================
        # Names
        # =================================================================

        identifier = ~reserved + Word(alphas + "_", alphanums + "_")

        def make_field_ref(tokens):
            parts = tokens[0].split(".")
            if len(parts) == 2:
                return FieldRef(name=parts[1], table=parts[0])
            return FieldRef(name=parts[0])

        def field_ref_expr():
            # Fresh copy per use so parse actions never interfere
            return Combine(
                identifier + Opt(Lit(".") + Word(alphas + "_", alphanums + "_"))
            ).set_parse_action(make_field_ref)

        collection = Combine(identifier)

        def alias_expr(results_name=None):
            alias = Combine(identifier)
            if results_name:
                alias = alias(results_name)
            return Suppress(Opt(AS)) + alias

        # =================================================================
        # Values
        # =================================================================

        def make_literal(tokens):
            return Literal(tokens[0])

        string_literal = (
            QuotedString("'", esc_quote="''", multiline=False) |
            QuotedString('"', esc_char="\\", multiline=False)
        ).set_parse_action(make_literal)

        number_literal = (
            pyparsing_common.sci_real.copy() |
            pyparsing_common.signed_integer.copy()
        ).add_parse_action(make_literal)

        boolean_literal = (
            TRUE.copy().set_parse_action(lambda: Literal(True)) |
            FALSE.copy().set_parse_action(lambda: Literal(False))
        )
        null_literal = NULL.copy().set_parse_action(lambda: Literal(None))

        def make_param(tokens):
            return Param(tokens[0][1:])

        param = Combine(
            Lit(":") + Word(alphas + "_", alphanums + "_")
        ).set_parse_action(make_param)

        value = (
            param | string_literal | number_literal |
            boolean_literal | null_literal | field_ref_expr()
        )

        # =================================================================
        # SELECT list
        # =================================================================

        def make_star(tokens):
            return []

        select_list = (
            STAR.copy().set_parse_action(make_star) |
            DelimitedList(field_ref_expr())
        )

        # =================================================================
        # JOIN
        # =================================================================

        def make_join(s, loc, tokens):
            target, left, op, right = tokens
            if op != "=" or not left.table or not right.table:
                raise pp.ParseFatalException(
                    s, loc,
                    "JOIN ... ON must have the form "
                    "<collection> ON <table>.<field> = <table>.<field>",
                )
            join = JoinClause(collection=target[0], left=left, right=right)
            return _AliasedJoin(join, target[1] if len(target) > 1 else None)

        join_clause = (
            Suppress(JOIN) + Group(collection.copy() + Opt(alias_expr())) + Suppress(ON) +
            field_ref_expr() + comp_op.copy() + field_ref_expr()
        ).set_parse_action(make_join)

        # =================================================================
        # WHERE
        # =================================================================

        def make_condition(tokens):
            return Condition(
                field=tokens[0],
                operator=ComparisonOp.from_str(tokens[1]),
                value=tokens[2],
            )

        condition = (
            field_ref_expr() + comp_op.copy() + value
        ).set_parse_action(make_condition)

        where_clause = Suppress(WHERE) + condition + ZeroOrMore(Suppress(AND) + condition)

        # =================================================================
        # ORDER BY / LIMIT
        # =================================================================

        def make_order_key(tokens):
            ascending = len(tokens) == 1 or tokens[1].upper() == "ASC"
            return OrderKey(field=tokens[0], ascending=ascending)

        order_key = (field_ref_expr() + Opt(ASC | DESC)).set_parse_action(make_order_key)

        order_clause = Suppress(ORDER) + Suppress(BY) + DelimitedList(order_key)

        limit_clause = Suppress(LIMIT) + pyparsing_common.integer.copy()("limit")

        # =================================================================
        # Query
        # =================================================================

        self.query = (
            Suppress(SELECT) + Group(select_list)("select") +
            Suppress(FROM) + collection("from") +
            Opt(alias_expr("from_alias")) +
            Group(ZeroOrMore(join_clause))("joins") +
            Opt(Group(where_clause)("where")) +
            Opt(Group(order_clause)("order_by")) +
            Opt(limit_clause) +
            Opt(Suppress(Lit(";")))
        )

        self.query.ignore(Lit("--") + pp.rest_of_line)

    def parse(self, query_string: str) -> ParsedQuery:
        """
        Parse query text into an AST.

        Args:
            query_string: The query to parse

        Returns:
            Parsed query AST

        Raises:
            QuerySyntaxError: If the query is malformed or unsupported
        """
        if not _SELECT_RE.search(query_string):
            raise QuerySyntaxError("Query must start with SELECT")
        if not _FROM_RE.search(query_string):
            raise QuerySyntaxError("Query must include FROM clause")

        try:
            result = self.query.parse_string(query_string, parse_all=True)
        except pp.ParseBaseException as e:
            raise QuerySyntaxError(
                _describe_failure(query_string, e), line=e.lineno, column=e.col
            ) from e

        aliases: Dict[str, str] = {}
        from_collection = result["from"]
        if "from_alias" in result:
            _add_alias(aliases, result["from_alias"], from_collection)
        joins = []
        for item in result["joins"]:
            if item.alias:
                _add_alias(aliases, item.alias, item.join.collection)
            joins.append(item.join)

        limit = result.get("limit")
        query = ParsedQuery(
            from_collection=from_collection,
            select_fields=list(result["select"]),
            joins=joins,
            where=list(result["where"]) if "where" in result else [],
            order_by=list(result["order_by"]) if "order_by" in result else [],
            limit=int(limit) if limit is not None else None,
        )
        if not aliases:
            return query

        collections = query.collections()
        for alias, name in aliases.items():
            if alias != name and alias in collections:
                raise QuerySyntaxError(
                    f"Alias '{alias}' for '{name}' is also a collection name in this query"
                )
        return _resolve_aliases(query, aliases)


@dataclass
class _AliasedJoin:
    join: JoinClause
    alias: Optional[str]


def _add_alias(aliases: Dict[str, str], alias: str, collection: str) -> None:
    existing = aliases.get(alias)
    if existing is not None and existing != collection:
        raise QuerySyntaxError(
            f"Alias '{alias}' is used for both '{existing}' and '{collection}'"
        )
    aliases[alias] = collection


def _resolve_aliases(query: ParsedQuery, aliases: Dict[str, str]) -> ParsedQuery:
    """Rewrite alias-qualified references to the collections they stand for."""

    def resolve(operand):
        if isinstance(operand, FieldRef) and operand.table in aliases:
            return replace(operand, table=aliases[operand.table])
        return operand

    return replace(
        query,
        select_fields=[resolve(f) for f in query.select_fields],
        joins=[replace(j, left=resolve(j.left), right=resolve(j.right)) for j in query.joins],
        where=[replace(c, field=resolve(c.field), value=resolve(c.value)) for c in query.where],
        order_by=[replace(k, field=resolve(k.field)) for k in query.order_by],
    )


def _describe_failure(query_string: str, error: pp.ParseBaseException) -> str:
    if isinstance(error, pp.ParseFatalException):
        return error.msg
    if query_string[error.loc:].lstrip().upper().startswith("JOIN"):
        return (
            "JOIN ... ON must have the form "
            f"<collection> ON <table>.<field> = <table>.<field> (line {error.lineno})"
        )
    unquoted = _QUOTED_RE.sub("''", query_string)
    for pattern, message in _UNSUPPORTED:
        if pattern.search(unquoted):
            return f"{message} (line {error.lineno}, column {error.col})"
    return f"Invalid query near line {error.lineno}, column {error.col}: {error.msg}"


@dataclass
class ValidationResult:
    """Outcome of a syntax check."""
    valid: bool
    error: Optional[str] = None

    def to_dict(self) -> dict:
        result = {"isValid": self.valid}
        if self.error:
            result["error"] = self.error
        return result


# Module-level parser instance for convenience
_parser: Optional[QueryParser] = None


def parse_query(query_string: str) -> ParsedQuery:
    """
    Parse a federated query string.

    This is a convenience function that uses a cached parser instance.
    """
    global _parser
    if _parser is None:
        _parser = QueryParser()
    return _parser.parse(query_string)


def validate_query_syntax(query_string: str) -> ValidationResult:
    """Check query text without raising."""
    try:
        parse_query(query_string)
    except QuerySyntaxError as e:
        return ValidationResult(valid=False, error=e.message)
    return ValidationResult(valid=True)
