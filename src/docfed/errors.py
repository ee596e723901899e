"""
Error taxonomy for the federation engine.

Every error carries a ``kind`` token and a human-readable message so the API
layer can surface it as an explicit error object. Errors fall in two groups:

- Caller-visible, raised before any source I/O:
  QuerySyntaxError, UnknownParameterError, UnknownStrategyError,
  UnknownDataSourceError, UnknownQueryError, ConfigError
- Recovered locally and logged (raised internally, caught by the engine):
  SourceConnectionError, JoinConditionError, MappingSynthesisError
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class FederationError(Exception):
    """Base class for all federation engine errors."""

    kind: str = "FederationError"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Serialize as an API error object."""
        return {
            "kind": self.kind,
            "message": self.message,
            "details": dict(self.details),
        }

    def __str__(self) -> str:
        return f"{self.kind}: {self.message}"


class QuerySyntaxError(FederationError):
    """Query text is outside the supported SQL subset."""

    kind = "SyntaxError"

    def __init__(
        self,
        message: str,
        line: Optional[int] = None,
        column: Optional[int] = None,
    ):
        details = {}
        if line is not None:
            details["line"] = line
        if column is not None:
            details["column"] = column
        super().__init__(message, details)
        self.line = line
        self.column = column


class UnknownParameterError(FederationError):
    """A ``:name`` parameter referenced by the query has no binding."""

    kind = "UnknownParameterError"

    def __init__(self, name: str):
        super().__init__(f"Parameter ':{name}' was not provided", {"parameter": name})
        self.name = name


MissingParameterError = UnknownParameterError


class UnknownStrategyError(FederationError):
    """Federation strategy token is not virtual, materialized or hybrid."""

    kind = "UnknownStrategyError"

    def __init__(self, strategy: Any):
        super().__init__(
            f"Unknown federation strategy {strategy!r}; "
            "expected one of: virtual, materialized, hybrid",
            {"strategy": str(strategy)},
        )


class UnknownDataSourceError(FederationError):
    """Query names a data source the engine does not know about."""

    kind = "UnknownDataSourceError"


class SourceConnectionError(FederationError):
    """Adapter connect or fetch failed (including timeouts)."""

    kind = "SourceConnectionError"

    def __init__(
        self,
        message: str,
        source_id: Any = None,
        collection: Optional[str] = None,
    ):
        details: Dict[str, Any] = {}
        if source_id is not None:
            details["source_id"] = source_id
        if collection is not None:
            details["collection"] = collection
        super().__init__(message, details)
        self.source_id = source_id
        self.collection = collection


class JoinConditionError(FederationError):
    """JOIN ... ON clause does not reference the joined collection."""

    kind = "JoinConditionError"


class MappingSynthesisError(FederationError):
    """A mapping rule could not be applied (unknown or failing transform)."""

    kind = "MappingSynthesisError"


class ConfigError(FederationError):
    """Engine configuration is invalid."""

    kind = "ConfigError"


class UnknownQueryError(FederationError):
    """Saved query id is not known to the configuration store."""

    kind = "UnknownQueryError"

    def __init__(self, query_id: Any):
        super().__init__(f"Saved query {query_id!r} not found", {"query_id": str(query_id)})
        self.query_id = query_id
