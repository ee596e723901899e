"""
Source adapter interface and registry.

A source adapter gives the engine uniform async access to one external
document store: list its collections, describe a collection's schema, and
fetch a collection's documents with an optional push-down filter.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from docfed.errors import ConfigError
from docfed.models import Field
from docfed.values import Row, compare

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FilterCondition:
    """A literal comparison on one field of a collection's documents."""
    field: str
    operator: str
    value: Any

    def matches(self, row: Row) -> bool:
        return compare(row.get(self.field), self.operator, self.value)

    def to_dict(self) -> Dict[str, Any]:
        return {"field": self.field, "op": self.operator, "value": self.value}


@dataclass(frozen=True)
class FilterSpec:
    """
    Push-down filter handed to adapters.

    Only holds conditions the adapter can evaluate on the raw documents of the
    collection being fetched. Adapters may ignore it; the executor re-applies
    every WHERE condition after the merge.
    """
    conditions: tuple[FilterCondition, ...] = field(default_factory=tuple)

    def __bool__(self) -> bool:
        return bool(self.conditions)

    def matches(self, row: Row) -> bool:
        return all(c.matches(row) for c in self.conditions)

    def apply(self, rows: List[Row]) -> List[Row]:
        if not self.conditions:
            return list(rows)
        return [row for row in rows if self.matches(row)]

    def to_dict(self) -> Dict[str, Any]:
        return {"conditions": [c.to_dict() for c in self.conditions]}


class SourceAdapter(ABC):
    """Uniform async access to one external document store."""

    type_name: str = "abstract"

    def __init__(self):
        self._connected = False

    @property
    def connected(self) -> bool:
        return self._connected

    @abstractmethod
    async def connect(self, config: Dict[str, Any]) -> bool:
        """
        Open the connection.

        Raises:
            SourceConnectionError: If the store cannot be reached
        """

    @abstractmethod
    async def list_collections(self) -> List[str]:
        """Names of the collections held by the store."""

    @abstractmethod
    async def get_collection_schema(self, name: str) -> Optional[List[Field]]:
        """Schema of a collection, or None if the store does not describe it."""

    @abstractmethod
    async def execute_query(
        self, name: str, filter_spec: Optional[FilterSpec] = None
    ) -> List[Row]:
        """
        Fetch a collection's documents.

        Raises:
            SourceConnectionError: If the fetch fails
        """

    @abstractmethod
    async def disconnect(self) -> None:
        """Close the connection. Safe to call more than once."""


AdapterFactory = Callable[[], SourceAdapter]


class AdapterRegistry:
    """Registry of adapter factories keyed by data source type."""

    def __init__(self):
        self._factories: Dict[str, AdapterFactory] = {}
        self._aliases: Dict[str, str] = {}  # alias -> type

    def register(
        self,
        type_name: str,
        factory: AdapterFactory,
        aliases: Optional[List[str]] = None,
    ) -> None:
        """Register an adapter factory for a data source type."""
        self._factories[type_name] = factory
        for alias in aliases or []:
            self._aliases[alias] = type_name

    def unregister(self, type_name: str) -> bool:
        """Remove a data source type and its aliases."""
        type_name = self._aliases.get(type_name, type_name)
        if type_name in self._factories:
            del self._factories[type_name]
            self._aliases = {k: v for k, v in self._aliases.items() if v != type_name}
            return True
        return False

    def resolve_type(self, type_name: str) -> str:
        """Resolve an alias to its registered type."""
        return self._aliases.get(type_name, type_name)

    def supports(self, type_name: str) -> bool:
        return self.resolve_type(type_name) in self._factories

    def list_types(self) -> List[str]:
        return sorted(self._factories)

    def create(self, type_name: str) -> SourceAdapter:
        """
        Create an unconnected adapter for a data source type.

        Raises:
            ConfigError: If no adapter is registered for the type
        """
        factory = self._factories.get(self.resolve_type(type_name))
        if factory is None:
            raise ConfigError(
                f"No adapter registered for data source type '{type_name}'",
                {"type": type_name, "available": self.list_types()},
            )
        return factory()


def default_registry() -> AdapterRegistry:
    """Registry with the adapters shipped in this package."""
    from docfed.adapters.http import HttpJsonAdapter
    from docfed.adapters.memory import InMemoryAdapter

    registry = AdapterRegistry()
    registry.register("memory", InMemoryAdapter, aliases=["inmemory"])
    registry.register("http", HttpJsonAdapter, aliases=["rest", "json"])
    return registry
