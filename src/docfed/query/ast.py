"""
Abstract Syntax Tree (AST) nodes for federated queries.

These classes represent the parsed structure of a query in the restricted
SQL dialect. ``str()`` on any node re-serializes it to canonical query text
that parses back to an equal node.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union


class ComparisonOp(Enum):
    """Comparison operators allowed in WHERE conditions."""
    EQ = "="
    NE = "!="
    LT = "<"
    LE = "<="
    GT = ">"
    GE = ">="

    @classmethod
    def from_str(cls, op: str) -> "ComparisonOp":
        mapping = {
            "=": cls.EQ, "==": cls.EQ,
            "!=": cls.NE, "<>": cls.NE,
            "<": cls.LT, "<=": cls.LE,
            ">": cls.GT, ">=": cls.GE,
        }
        return mapping[op]


# =============================================================================
# Operands
# =============================================================================

@dataclass(frozen=True)
class FieldRef:
    """
    A field reference, either bare (``name``) or qualified (``table.name``).
    """
    name: str
    table: Optional[str] = None

    @property
    def qualified(self) -> str:
        """The ``table.name`` key, or the bare name when unqualified."""
        if self.table:
            return f"{self.table}.{self.name}"
        return self.name

    def __str__(self) -> str:
        return self.qualified


@dataclass(frozen=True)
class Param:
    """A ``:name`` parameter bound at execution time."""
    name: str

    def __str__(self) -> str:
        return f":{self.name}"


@dataclass(frozen=True)
class Literal:
    """A constant: string, number, boolean or null."""
    value: Any

    def __str__(self) -> str:
        if self.value is None:
            return "null"
        if isinstance(self.value, bool):
            return "true" if self.value else "false"
        if isinstance(self.value, (int, float)):
            return repr(self.value)
        text = str(self.value).replace("'", "''")
        return f"'{text}'"


Operand = Union[FieldRef, Param, Literal]


# =============================================================================
# Clauses
# =============================================================================

@dataclass(frozen=True)
class Condition:
    """A WHERE comparison (e.g., ``amount > 10`` or ``uid = :id``)."""
    field: FieldRef
    operator: ComparisonOp
    value: Operand

    @property
    def is_field_comparison(self) -> bool:
        """True when the right-hand side names another field of the row."""
        return isinstance(self.value, FieldRef)

    def __str__(self) -> str:
        return f"{self.field} {self.operator.value} {self.value}"


@dataclass(frozen=True)
class JoinClause:
    """``JOIN <collection> ON <table>.<field> = <table>.<field>``."""
    collection: str
    left: FieldRef
    right: FieldRef

    def __str__(self) -> str:
        return f"JOIN {self.collection} ON {self.left} = {self.right}"


@dataclass(frozen=True)
class OrderKey:
    """One ORDER BY key."""
    field: FieldRef
    ascending: bool = True

    def __str__(self) -> str:
        return str(self.field) if self.ascending else f"{self.field} DESC"


# =============================================================================
# Query
# =============================================================================

@dataclass
class ParsedQuery:
    """
    A parsed federated SELECT query.

    SELECT users.name, orders.amount
    FROM users
    JOIN orders ON users.uid = orders.userId
    WHERE orders.amount > 5
    ORDER BY orders.amount DESC
    LIMIT 10
    """
    from_collection: str
    select_fields: list[FieldRef] = field(default_factory=list)  # Empty list means SELECT *
    joins: list[JoinClause] = field(default_factory=list)
    where: list[Condition] = field(default_factory=list)
    order_by: list[OrderKey] = field(default_factory=list)
    limit: Optional[int] = None

    def is_select_all(self) -> bool:
        """Check if this is a SELECT * query."""
        return len(self.select_fields) == 0

    def collections(self) -> list[str]:
        """FROM collection followed by joined collections, in query order."""
        names = [self.from_collection]
        for join in self.joins:
            if join.collection not in names:
                names.append(join.collection)
        return names

    def parameters(self) -> list[str]:
        """Names of all ``:name`` parameters referenced in WHERE."""
        names = []
        for cond in self.where:
            if isinstance(cond.value, Param) and cond.value.name not in names:
                names.append(cond.value.name)
        return names

    def __str__(self) -> str:
        if self.is_select_all():
            parts = ["SELECT *"]
        else:
            parts = ["SELECT " + ", ".join(str(f) for f in self.select_fields)]

        parts.append(f"FROM {self.from_collection}")

        for join in self.joins:
            parts.append(str(join))

        if self.where:
            parts.append("WHERE " + " AND ".join(str(c) for c in self.where))

        if self.order_by:
            parts.append("ORDER BY " + ", ".join(str(k) for k in self.order_by))

        if self.limit is not None:
            parts.append(f"LIMIT {self.limit}")

        return " ".join(parts)
