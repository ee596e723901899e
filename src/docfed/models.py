"""
Core data model for federated queries.

Configuration entities (data sources, saved queries) are owned by an
external configuration store; these classes are the engine's read-only view
of them plus the request/result types exchanged with the API layer.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field as PydanticField

from docfed.errors import UnknownStrategyError
from docfed.values import Row, ValueKind, kind_of

SourceId = Union[int, str]


class FederationStrategy(Enum):
    """Caching/refresh policy for a federated query."""
    VIRTUAL = "virtual"            # Always execute against live sources
    MATERIALIZED = "materialized"  # Serve cache until the refresh window expires
    HYBRID = "hybrid"              # Serve cache, refresh in the background

    @classmethod
    def parse(cls, value: Union[str, "FederationStrategy"]) -> "FederationStrategy":
        """Parse a strategy token, raising UnknownStrategyError if invalid."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise UnknownStrategyError(value) from None


class DataSourceStatus(Enum):
    """Connection state of a data source."""
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


@dataclass(frozen=True)
class Field:
    """A named, typed field of a collection schema."""
    name: str
    type: str

    def to_dict(self) -> Dict[str, str]:
        return {"name": self.name, "type": self.type}


def infer_schema(rows: List[Row]) -> List[Field]:
    """
    Infer a collection schema from its documents.

    Fields are listed in first-seen order across all rows. A field whose
    non-null values have different kinds is typed ``mixed``; a field that is
    only ever null is typed ``null``.
    """
    kinds: Dict[str, set] = {}
    for row in rows:
        for name, value in row.items():
            seen = kinds.setdefault(name, set())
            kind = kind_of(value)
            if kind is not ValueKind.NULL:
                seen.add(kind.value)

    schema = []
    for name, seen in kinds.items():
        if not seen:
            type_name = ValueKind.NULL.value
        elif len(seen) == 1:
            type_name = next(iter(seen))
        else:
            type_name = "mixed"
        schema.append(Field(name=name, type=type_name))
    return schema


@dataclass
class DataSource:
    """A registered external document store."""
    id: SourceId
    type: str
    name: str = ""
    config: Dict[str, Any] = field(default_factory=dict)
    known_collections: List[str] = field(default_factory=list)
    status: DataSourceStatus = DataSourceStatus.DISCONNECTED

    def __post_init__(self):
        if not self.name:
            self.name = f"{self.type}-{self.id}"
        if isinstance(self.status, str):
            self.status = DataSourceStatus(self.status)

    def same_connection(self, other: "DataSource") -> bool:
        """True if connecting ``other`` would reach the same store."""
        return self.type == other.type and self.config == other.config

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "collections": list(self.known_collections),
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DataSource":
        return cls(
            id=data["id"],
            type=data["type"],
            name=data.get("name", ""),
            config=dict(data.get("config") or {}),
            known_collections=list(data.get("collections") or []),
            status=data.get("status", DataSourceStatus.DISCONNECTED.value),
        )


@dataclass
class SavedQuery:
    """A named query stored by the configuration layer."""
    id: SourceId
    text: str
    data_source_ids: List[SourceId]
    strategy: FederationStrategy = FederationStrategy.VIRTUAL
    name: str = ""
    collections: List[str] = field(default_factory=list)

    def __post_init__(self):
        self.strategy = FederationStrategy.parse(self.strategy)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SavedQuery":
        return cls(
            id=data["id"],
            text=data["query"] if "query" in data else data["text"],
            data_source_ids=list(data.get("dataSources") or data.get("data_source_ids") or []),
            strategy=data.get("federationStrategy") or data.get("strategy") or "virtual",
            name=data.get("name", ""),
            collections=list(data.get("collections") or []),
        )


class FederatedQuery(BaseModel):
    """A federated query request from the API layer."""
    text: str = PydanticField(..., description="Query text in the federated SQL dialect")
    data_source_ids: List[SourceId] = PydanticField(..., description="Sources the query spans")
    params: Dict[str, Any] = PydanticField(default_factory=dict)
    strategy: Optional[str] = PydanticField(None, description="One of: virtual, materialized, hybrid; engine default when omitted")
    query_id: Optional[SourceId] = PydanticField(None, description="Saved query id, used as the cache key")


@dataclass(frozen=True)
class FederatedResult:
    """Rows and execution metadata of one federated query execution."""
    rows: List[Row]
    execution_time_ms: float
    cache_hit: bool
    last_updated: datetime
    next_update: Optional[datetime] = None
    strategy: FederationStrategy = FederationStrategy.VIRTUAL
    query_id: Optional[str] = None
    sources_used: List[SourceId] = field(default_factory=list)
    sources_failed: List[SourceId] = field(default_factory=list)

    @property
    def row_count(self) -> int:
        return len(self.rows)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize in the API layer's wire shape."""
        return {
            "results": [_jsonable_row(row) for row in self.rows],
            "executionTime": round(self.execution_time_ms, 3),
            "cacheHit": self.cache_hit,
            "lastUpdated": self.last_updated.isoformat(),
            "nextUpdate": self.next_update.isoformat() if self.next_update else None,
            "strategy": self.strategy.value,
            "sourcesUsed": list(self.sources_used),
            "sourcesFailed": list(self.sources_failed),
        }


def _jsonable_row(row: Row) -> Dict[str, Any]:
    return {
        key: value.isoformat() if isinstance(value, datetime) else value
        for key, value in row.items()
    }
