"""
Federation engine.

Owns the working sets (data sources, connected adapters, schema mappings)
and runs federated queries:

    request -> strategy controller -> parse -> fetch collections (adapters,
    falling back to snapshots) -> mapping synthesis -> executor -> result

Working sets are copy-on-write dictionaries replaced under a lock held only
by configuration handlers. Queries take a reference to the current
dictionaries and never observe a half-applied configuration change.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from typing import Any, Dict, List, Optional, Protocol, Sequence, Set, Tuple, Union

from docfed.adapters.base import (
    AdapterRegistry, FilterCondition, FilterSpec, SourceAdapter, default_registry,
)
from docfed.config import EngineConfig
from docfed.context import ExplainPlan, bounded
from docfed.errors import (
    SourceConnectionError, UnknownDataSourceError, UnknownQueryError,
)
from docfed.executor import FederationExecutor, bind_parameters
from docfed.mapping import (
    SchemaMapping, TransformRegistry, default_transforms, synthesize,
    synthesize_schema,
)
from docfed.metrics import MetricsCollector, federation_metrics
from docfed.models import (
    DataSource, DataSourceStatus, FederatedQuery, FederatedResult,
    FederationStrategy, Field, SavedQuery, SourceId,
)
from docfed.query.ast import Literal, Param, ParsedQuery
from docfed.query.parser import ValidationResult, parse_query, validate_query_syntax
from docfed.snapshots import InMemorySnapshotStore, ParquetSnapshotStore, SnapshotStore
from docfed.strategy import Clock, PipelineOutcome, StrategyController, make_query_id
from docfed.values import Row

logger = logging.getLogger(__name__)


class ConfigurationStore(Protocol):
    """Configuration/storage layer the engine reads its working sets from."""

    async def list_data_sources(self) -> List[Union[DataSource, Dict[str, Any]]]:
        ...

    async def list_active_mappings(self) -> List[Union[SchemaMapping, Dict[str, Any]]]:
        ...

    async def get_query_by_id(self, query_id: SourceId) -> Optional[Union[SavedQuery, Dict[str, Any]]]:
        ...

    async def save_query_result(self, query_id: str, result: FederatedResult) -> None:
        ...


def _key(source_id: SourceId) -> str:
    return str(source_id)


class FederationEngine:
    """
    Facade over the query federation pipeline.

    Usage:
        engine = FederationEngine()
        await engine.add_data_source(DataSource(id=1, type="memory", config={...}))
        result = await engine.execute_federated_query({
            "text": "SELECT name FROM users WHERE uid = :id",
            "data_source_ids": [1],
            "params": {"id": "1"},
        })
        await engine.close()
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        adapters: Optional[AdapterRegistry] = None,
        snapshots: Optional[SnapshotStore] = None,
        metrics: Optional[MetricsCollector] = None,
        transforms: Optional[TransformRegistry] = None,
        config_store: Optional[ConfigurationStore] = None,
        clock: Optional[Clock] = None,
    ):
        self.config = config or EngineConfig()
        self.adapter_registry = adapters or default_registry()
        self.metrics = metrics or federation_metrics()
        self.transforms = transforms or default_transforms
        self.config_store = config_store
        self.executor = FederationExecutor()

        if snapshots is not None:
            self.snapshots = snapshots
        elif self.config.cache.snapshot_dir:
            self.snapshots = ParquetSnapshotStore(
                self.config.cache.snapshot_dir,
                max_history=self.config.cache.snapshot_history,
            )
        else:
            self.snapshots = InMemorySnapshotStore(max_history=self.config.cache.snapshot_history)

        strategy_kwargs = {"clock": clock} if clock is not None else {}
        self.strategy = StrategyController(
            refresh_interval=self.config.cache.refresh_interval,
            result_sink=self._save_result,
            **strategy_kwargs,
        )

        self._sources: Dict[str, DataSource] = {}
        self._adapters: Dict[str, SourceAdapter] = {}
        self._mappings: Dict[str, SchemaMapping] = {}
        self._lock = asyncio.Lock()

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def execute_federated_query(
        self, query: Union[FederatedQuery, Dict[str, Any]]
    ) -> FederatedResult:
        """
        Execute a federated query under its strategy.

        Raises:
            UnknownStrategyError: Strategy token is invalid
            QuerySyntaxError: Query text is outside the supported subset
            UnknownParameterError: A ``:name`` parameter has no binding
            UnknownDataSourceError: No source ids, or an unregistered one
            SourceConnectionError: No selected source yields the FROM
                collection and at least one source failed
        """
        if not isinstance(query, FederatedQuery):
            query = FederatedQuery.model_validate(query)

        # Everything caller-visible is checked before any source I/O
        strategy = FederationStrategy.parse(query.strategy or self.config.query.default_strategy)
        ast = parse_query(query.text)
        bind_parameters(ast, query.params)
        source_ids = self._check_sources(query.data_source_ids)

        if query.query_id is not None:
            query_id = str(query.query_id)
        else:
            query_id = make_query_id(query.text, source_ids, query.params)

        params = dict(query.params)

        async def runner() -> PipelineOutcome:
            return await self._run_pipeline(ast, source_ids, params)

        labels = {"strategy": strategy.value}
        with self.metrics.timer("query_duration_seconds") as timer:
            result = await self.strategy.run(query_id, strategy, runner)

        self.metrics.inc("queries_total", labels=labels)
        if result.cache_hit:
            self.metrics.inc("cache_hits_total", labels=labels)

        if timer.duration > self.config.query.slow_query_threshold_seconds:
            logger.warning(
                f"Slow federated query {query_id} ({strategy.value}): "
                f"{timer.duration:.3f}s, {result.row_count} rows"
            )
        else:
            logger.debug(
                f"Federated query {query_id} ({strategy.value}) returned "
                f"{result.row_count} rows in {result.execution_time_ms:.2f}ms "
                f"(cache_hit={result.cache_hit})"
            )
        return result

    async def execute_saved_query(
        self,
        query_id: SourceId,
        params: Optional[Dict[str, Any]] = None,
    ) -> FederatedResult:
        """
        Execute a query saved in the configuration store.

        Raises:
            UnknownQueryError: No configuration store, or the id is unknown
        """
        if self.config_store is None:
            raise UnknownQueryError(query_id)

        saved = await self.config_store.get_query_by_id(query_id)
        if saved is None:
            raise UnknownQueryError(query_id)
        if not isinstance(saved, SavedQuery):
            saved = SavedQuery.from_dict(saved)

        return await self.execute_federated_query(FederatedQuery(
            text=saved.text,
            data_source_ids=saved.data_source_ids,
            params=params or {},
            strategy=saved.strategy.value,
            query_id=saved.id,
        ))

    def validate_query_syntax(self, text: str) -> ValidationResult:
        return validate_query_syntax(text)

    def explain_query(self, text: str) -> ExplainPlan:
        """Execution plan of a query, without touching any source."""
        return self.executor.explain(parse_query(text))

    def _check_sources(self, data_source_ids: Sequence[SourceId]) -> List[SourceId]:
        if not data_source_ids:
            raise UnknownDataSourceError("Query must name at least one data source")

        sources = self._sources
        unknown = [s for s in data_source_ids if _key(s) not in sources]
        if unknown:
            raise UnknownDataSourceError(
                f"Unknown data source(s): {', '.join(str(s) for s in unknown)}",
                {"data_source_ids": [str(s) for s in unknown]},
            )

        # Deduplicate, keeping the caller's order
        seen: Set[str] = set()
        ordered = []
        for source_id in data_source_ids:
            if _key(source_id) not in seen:
                seen.add(_key(source_id))
                ordered.append(source_id)
        return ordered

    # -------------------------------------------------------------------------
    # Pipeline
    # -------------------------------------------------------------------------

    async def _run_pipeline(
        self,
        ast: ParsedQuery,
        source_ids: List[SourceId],
        params: Dict[str, Any],
    ) -> PipelineOutcome:
        adapters = self._adapters
        mappings = list(self._mappings.values())

        wanted = self._wanted_collections(ast, mappings)
        filter_spec = self._push_down_filter(ast, params, mappings)

        failed: Set[str] = set()

        listings = await asyncio.gather(*[
            self._list_collections(source_id, adapters.get(_key(source_id)))
            for source_id in source_ids
        ])

        jobs = []
        for source_id, (available, error) in zip(source_ids, listings):
            if error is not None:
                failed.add(_key(source_id))
                # Unreachable source: every wanted collection may have a snapshot
                for name in wanted:
                    jobs.append((source_id, name, None))
                continue
            for name in wanted:
                if name in available:
                    jobs.append((source_id, name, adapters.get(_key(source_id))))

        fetched = await asyncio.gather(*[
            self._fetch(source_id, name, adapter,
                        filter_spec if name == ast.from_collection else None)
            for source_id, name, adapter in jobs
        ])

        # Concatenate per collection in data_source_ids order
        per_source: Dict[Tuple[str, str], List[Row]] = {}
        for (source_id, name, _), (rows, error) in zip(jobs, fetched):
            if error is not None:
                failed.add(_key(source_id))
            if rows is not None:
                per_source[(_key(source_id), name)] = rows

        collections: Dict[str, List[Row]] = {}
        for source_id in source_ids:
            for name in wanted:
                rows = per_source.get((_key(source_id), name))
                if rows is not None:
                    collections.setdefault(name, []).extend(rows)

        derived = synthesize(mappings, collections, self.transforms)
        collections.update(derived)

        if ast.from_collection not in collections and failed:
            raise SourceConnectionError(
                f"No data available for collection '{ast.from_collection}': "
                f"source(s) {', '.join(sorted(failed))} failed",
                collection=ast.from_collection,
            )

        rows, stats = self.executor.execute_with_stats(ast, collections, params)
        if stats.joins_skipped:
            self.metrics.inc("joins_skipped_total", stats.joins_skipped)

        max_rows = self.config.query.max_result_rows
        if max_rows is not None and len(rows) > max_rows:
            logger.warning(f"Truncating result from {len(rows)} to {max_rows} rows")
            rows = rows[:max_rows]

        return PipelineOutcome(
            rows=rows,
            sources_used=[s for s in source_ids if _key(s) not in failed],
            sources_failed=[s for s in source_ids if _key(s) in failed],
        )

    def _wanted_collections(
        self, ast: ParsedQuery, mappings: List[SchemaMapping]
    ) -> List[str]:
        """Collections the query names, plus the sources of mappings onto them."""
        wanted = list(ast.collections())
        for name in list(wanted):
            for mapping in mappings:
                if mapping.is_active and mapping.target.collection == name:
                    if mapping.source.collection not in wanted:
                        wanted.append(mapping.source.collection)
        return wanted

    def _push_down_filter(
        self,
        ast: ParsedQuery,
        params: Dict[str, Any],
        mappings: List[SchemaMapping],
    ) -> Optional[FilterSpec]:
        """
        Literal conditions on the FROM collection's own fields.

        Nothing is pushed down when the FROM collection's rows are also
        needed unfiltered (self-join or mapping source).
        """
        base = ast.from_collection
        if base in {j.collection for j in ast.joins}:
            return None
        if any(m.is_active and m.source.collection == base for m in mappings):
            return None

        conditions = []
        for cond in ast.where:
            if cond.field.table not in (None, base):
                continue
            if isinstance(cond.value, Param):
                value = params[cond.value.name]
            elif isinstance(cond.value, Literal):
                value = cond.value.value
            else:
                continue
            conditions.append(FilterCondition(cond.field.name, cond.operator.value, value))

        return FilterSpec(tuple(conditions)) if conditions else None

    async def _list_collections(
        self, source_id: SourceId, adapter: Optional[SourceAdapter]
    ) -> Tuple[List[str], Optional[SourceConnectionError]]:
        try:
            if adapter is None or not adapter.connected:
                raise SourceConnectionError(
                    f"Data source {source_id} is not connected", source_id=source_id
                )
            names = await bounded(
                adapter.list_collections(),
                self.config.sources.connect_timeout_seconds,
                f"Listing collections of source {source_id}",
                source_id=source_id,
            )
            return list(names), None
        except SourceConnectionError as e:
            self._record_failure(source_id, e)
            return [], e

    async def _fetch(
        self,
        source_id: SourceId,
        name: str,
        adapter: Optional[SourceAdapter],
        filter_spec: Optional[FilterSpec],
    ) -> Tuple[Optional[List[Row]], Optional[SourceConnectionError]]:
        """
        Fetch one collection from one source.

        Returns ``(rows, error)``. On failure rows come from the latest
        snapshot, or are None when there is none.
        """
        error = None
        if adapter is not None:
            if filter_spec and await self.snapshots.get_latest(source_id, name) is None:
                # Nothing to fall back on yet: fetch the whole collection once
                filter_spec = None
            try:
                rows = await bounded(
                    adapter.execute_query(name, filter_spec),
                    self.config.sources.fetch_timeout_seconds,
                    f"Fetching {source_id}/{name}",
                    source_id=source_id,
                    collection=name,
                )
            except SourceConnectionError as e:
                self._record_failure(source_id, e)
                error = e
            else:
                # A filtered fetch is not the whole collection
                if not filter_spec:
                    await self._store_snapshot(source_id, name, rows)
                return rows, None

        snapshot = await self.snapshots.get_latest(source_id, name)
        if snapshot is None:
            return None, error
        logger.info(
            f"Serving {source_id}/{name} from snapshot of "
            f"{snapshot.fetched_at.isoformat()} ({snapshot.row_count} rows)"
        )
        return [dict(row) for row in snapshot.rows], error

    async def _store_snapshot(self, source_id: SourceId, name: str, rows: List[Row]) -> None:
        try:
            await self.snapshots.put(source_id, name, rows)
        except Exception as e:
            # The fetched rows are still served
            logger.warning(f"Could not store snapshot of {source_id}/{name}: {e}")

    def _record_failure(self, source_id: SourceId, error: SourceConnectionError) -> None:
        self.metrics.inc("source_failures_total", labels={"source": _key(source_id)})
        logger.warning(f"{error.kind} for source {source_id}: {error.message}")

    async def _save_result(self, query_id: str, result: FederatedResult) -> None:
        if self.config_store is not None:
            await self.config_store.save_query_result(query_id, result)

    # -------------------------------------------------------------------------
    # Schemas
    # -------------------------------------------------------------------------

    async def get_logical_collection_schema(
        self, source_id: SourceId, name: str
    ) -> Optional[List[Field]]:
        """
        Schema of a collection as the engine sees it.

        Looks at the latest snapshot first, then at mappings that synthesize
        the collection on this source, then asks the adapter.

        Raises:
            UnknownDataSourceError: If the source is not registered
        """
        if _key(source_id) not in self._sources:
            raise UnknownDataSourceError(f"Unknown data source: {source_id}")

        snapshot = await self.snapshots.get_latest(source_id, name)
        if snapshot is not None:
            return list(snapshot.schema)

        for mapping in self._mappings.values():
            if not mapping.is_active:
                continue
            if _key(mapping.target.source_id) != _key(source_id) or mapping.target.collection != name:
                continue
            source_schema = await self._physical_schema(
                mapping.source.source_id, mapping.source.collection
            )
            if source_schema is not None:
                return synthesize_schema(mapping, source_schema, self.transforms)

        return await self._adapter_schema(source_id, name)

    async def _physical_schema(self, source_id: SourceId, name: str) -> Optional[List[Field]]:
        snapshot = await self.snapshots.get_latest(source_id, name)
        if snapshot is not None:
            return list(snapshot.schema)
        return await self._adapter_schema(source_id, name)

    async def _adapter_schema(self, source_id: SourceId, name: str) -> Optional[List[Field]]:
        adapter = self._adapters.get(_key(source_id))
        if adapter is None or not adapter.connected:
            return None
        try:
            return await bounded(
                adapter.get_collection_schema(name),
                self.config.sources.fetch_timeout_seconds,
                f"Describing {source_id}/{name}",
                source_id=source_id,
                collection=name,
            )
        except SourceConnectionError as e:
            self._record_failure(source_id, e)
            return None

    # -------------------------------------------------------------------------
    # Configuration handlers
    # -------------------------------------------------------------------------

    async def load_from(self, store: ConfigurationStore) -> None:
        """Load data sources and active mappings from a configuration store."""
        self.config_store = store

        sources = await store.list_data_sources()
        await asyncio.gather(*[self.add_data_source(s) for s in sources])

        mappings = await store.list_active_mappings()
        for mapping in mappings:
            await self.add_mapping(mapping)

        logger.info(
            f"Loaded {len(self._sources)} data sources and "
            f"{len(self._mappings)} mappings"
        )

    async def add_data_source(
        self,
        source: Union[DataSource, Dict[str, Any]],
        adapter: Optional[SourceAdapter] = None,
    ) -> DataSource:
        """
        Register a data source and connect its adapter.

        A connection failure, including ``connect`` returning False, is
        logged and leaves the source registered with status ``error``; its
        collections are then served from snapshots.

        Raises:
            ConfigError: If no adapter is registered for the source type
        """
        if not isinstance(source, DataSource):
            source = DataSource.from_dict(source)
        if adapter is None:
            adapter = self.adapter_registry.create(source.type)

        try:
            connected = await bounded(
                adapter.connect(source.config),
                self.config.sources.connect_timeout_seconds,
                f"Connecting to source {source.id}",
                source_id=source.id,
            )
            if not connected:
                raise SourceConnectionError(
                    f"Connecting to source {source.id} failed",
                    source_id=source.id,
                )
            collections = await bounded(
                adapter.list_collections(),
                self.config.sources.connect_timeout_seconds,
                f"Listing collections of source {source.id}",
                source_id=source.id,
            )
            source = dataclasses.replace(
                source,
                status=DataSourceStatus.CONNECTED,
                known_collections=list(collections),
            )
            logger.info(f"Connected data source {source.id} ({source.type}) with {len(collections)} collections")
        except SourceConnectionError as e:
            self._record_failure(source.id, e)
            source = dataclasses.replace(source, status=DataSourceStatus.ERROR)

        async with self._lock:
            previous = self._adapters.get(_key(source.id))
            sources = dict(self._sources)
            adapters = dict(self._adapters)
            sources[_key(source.id)] = source
            adapters[_key(source.id)] = adapter
            self._sources = sources
            self._adapters = adapters
            self._update_connected_gauge()

        if previous is not None and previous is not adapter:
            await self._disconnect(source.id, previous)
        return source

    async def update_data_source(
        self,
        source: Union[DataSource, Dict[str, Any]],
        adapter: Optional[SourceAdapter] = None,
    ) -> DataSource:
        """
        Apply a changed data source definition.

        A changed type or config forces a disconnect and reconnect; otherwise
        only the metadata is replaced.
        """
        if not isinstance(source, DataSource):
            source = DataSource.from_dict(source)

        current = self._sources.get(_key(source.id))
        if current is None or adapter is not None or not current.same_connection(source):
            return await self.add_data_source(source, adapter)

        updated = dataclasses.replace(
            source,
            status=current.status,
            known_collections=current.known_collections,
        )
        async with self._lock:
            sources = dict(self._sources)
            sources[_key(source.id)] = updated
            self._sources = sources
        return updated

    async def remove_data_source(self, source_id: SourceId) -> bool:
        """Unregister a data source and disconnect its adapter."""
        async with self._lock:
            if _key(source_id) not in self._sources:
                return False
            sources = dict(self._sources)
            adapters = dict(self._adapters)
            sources.pop(_key(source_id))
            adapter = adapters.pop(_key(source_id), None)
            self._sources = sources
            self._adapters = adapters
            self._update_connected_gauge()

        if adapter is not None:
            await self._disconnect(source_id, adapter)
        logger.info(f"Removed data source {source_id}")
        return True

    async def add_mapping(self, mapping: Union[SchemaMapping, Dict[str, Any]]) -> SchemaMapping:
        """Add or replace a schema mapping."""
        if not isinstance(mapping, SchemaMapping):
            mapping = SchemaMapping.from_dict(mapping)
        async with self._lock:
            mappings = dict(self._mappings)
            mappings[_key(mapping.id)] = mapping
            self._mappings = mappings
        logger.info(f"Added mapping {mapping.id}: {mapping.source} -> {mapping.target}")
        return mapping

    async def remove_mapping(self, mapping_id: SourceId) -> bool:
        async with self._lock:
            if _key(mapping_id) not in self._mappings:
                return False
            mappings = dict(self._mappings)
            mappings.pop(_key(mapping_id))
            self._mappings = mappings
        logger.info(f"Removed mapping {mapping_id}")
        return True

    def list_data_sources(self) -> List[DataSource]:
        return list(self._sources.values())

    def list_mappings(self) -> List[SchemaMapping]:
        return list(self._mappings.values())

    def get_data_source(self, source_id: SourceId) -> Optional[DataSource]:
        return self._sources.get(_key(source_id))

    async def close(self) -> None:
        """Cancel background refreshes and disconnect every adapter."""
        await self.strategy.close()
        async with self._lock:
            adapters = self._adapters
            self._adapters = {}
            self._sources = {
                k: dataclasses.replace(s, status=DataSourceStatus.DISCONNECTED)
                for k, s in self._sources.items()
            }
            self._update_connected_gauge()
        for key, adapter in adapters.items():
            await self._disconnect(key, adapter)

    async def _disconnect(self, source_id: SourceId, adapter: SourceAdapter) -> None:
        try:
            await bounded(
                adapter.disconnect(),
                self.config.sources.connect_timeout_seconds,
                f"Disconnecting source {source_id}",
                source_id=source_id,
            )
        except SourceConnectionError as e:
            logger.warning(f"{e.kind} while disconnecting source {source_id}: {e.message}")

    def _update_connected_gauge(self) -> None:
        connected = sum(
            1 for s in self._sources.values() if s.status is DataSourceStatus.CONNECTED
        )
        self.metrics.set("connected_sources", connected)

    async def __aenter__(self) -> "FederationEngine":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
