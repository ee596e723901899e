"""
DocFed: a query federation engine for document-style data sources.

Runs one SQL-like query across several document stores as if they were a
single logical database, with schema mappings and virtual, materialized or
hybrid caching.
"""

__version__ = "0.1.0"

from docfed.engine import FederationEngine, ConfigurationStore
from docfed.config import EngineConfig
from docfed.models import (
    DataSource,
    DataSourceStatus,
    FederatedQuery,
    FederatedResult,
    FederationStrategy,
    Field,
    SavedQuery,
)
from docfed.mapping import (
    CollectionRef,
    MappingRule,
    RuleKind,
    SchemaMapping,
    TransformRegistry,
    apply_mapping,
    synthesize,
)
from docfed.query import parse_query, validate_query_syntax, ParsedQuery
from docfed.executor import FederationExecutor
from docfed.strategy import StrategyController, CacheSlot
from docfed.snapshots import CollectionSnapshot, InMemorySnapshotStore, ParquetSnapshotStore
from docfed.adapters import AdapterRegistry, HttpJsonAdapter, InMemoryAdapter, SourceAdapter
from docfed.errors import (
    FederationError,
    QuerySyntaxError,
    UnknownParameterError,
    MissingParameterError,
    UnknownStrategyError,
    UnknownDataSourceError,
    UnknownQueryError,
    SourceConnectionError,
    JoinConditionError,
    MappingSynthesisError,
    ConfigError,
)

__all__ = [
    "FederationEngine",
    "ConfigurationStore",
    "EngineConfig",
    # Models
    "DataSource",
    "DataSourceStatus",
    "FederatedQuery",
    "FederatedResult",
    "FederationStrategy",
    "Field",
    "SavedQuery",
    # Mapping
    "CollectionRef",
    "MappingRule",
    "RuleKind",
    "SchemaMapping",
    "TransformRegistry",
    "apply_mapping",
    "synthesize",
    # Query
    "parse_query",
    "validate_query_syntax",
    "ParsedQuery",
    "FederationExecutor",
    # Strategy / storage
    "StrategyController",
    "CacheSlot",
    "CollectionSnapshot",
    "InMemorySnapshotStore",
    "ParquetSnapshotStore",
    # Adapters
    "AdapterRegistry",
    "HttpJsonAdapter",
    "InMemoryAdapter",
    "SourceAdapter",
    # Errors
    "FederationError",
    "QuerySyntaxError",
    "UnknownParameterError",
    "MissingParameterError",
    "UnknownStrategyError",
    "UnknownDataSourceError",
    "UnknownQueryError",
    "SourceConnectionError",
    "JoinConditionError",
    "MappingSynthesisError",
    "ConfigError",
]
