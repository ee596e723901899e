"""
Federated SQL query support: typed AST and pyparsing-based parser.
"""

from docfed.query.ast import (
    ComparisonOp,
    Condition,
    FieldRef,
    JoinClause,
    Literal,
    OrderKey,
    Param,
    ParsedQuery,
)
from docfed.query.parser import (
    QueryParser,
    ValidationResult,
    parse_query,
    validate_query_syntax,
)

__all__ = [
    "ComparisonOp",
    "Condition",
    "FieldRef",
    "JoinClause",
    "Literal",
    "OrderKey",
    "Param",
    "ParsedQuery",
    "QueryParser",
    "ValidationResult",
    "parse_query",
    "validate_query_syntax",
]
