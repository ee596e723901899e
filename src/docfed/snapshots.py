"""
Collection snapshot store.

A snapshot is the rows and schema of one (source, collection) pair as fetched
at a point in time. Snapshots are immutable; each fetch produces a new one and
the latest (maximum ``fetched_at``) is what degraded queries fall back to.

Implementations:
- InMemorySnapshotStore: process-local history, bounded per collection
- ParquetSnapshotStore: one parquet file per collection history (polars)
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import os
import re
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

import polars as pl

from docfed.models import Field, SourceId, infer_schema
from docfed.values import Row

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class CollectionSnapshot:
    """Rows and schema of one collection at ``fetched_at``."""
    source_id: SourceId
    collection: str
    schema: Tuple[Field, ...]
    rows: Tuple[Row, ...]
    fetched_at: datetime

    @property
    def row_count(self) -> int:
        return len(self.rows)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_id": self.source_id,
            "collection": self.collection,
            "schema": [f.to_dict() for f in self.schema],
            "row_count": self.row_count,
            "fetched_at": self.fetched_at.isoformat(),
        }


class SnapshotStore(Protocol):
    """Storage for collection snapshots."""

    async def get_latest(
        self, source_id: SourceId, collection: str
    ) -> Optional[CollectionSnapshot]:
        ...

    async def put(
        self,
        source_id: SourceId,
        collection: str,
        rows: List[Row],
        schema: Optional[List[Field]] = None,
    ) -> CollectionSnapshot:
        ...


class InMemorySnapshotStore:
    """
    Snapshot store backed by process memory.

    Keeps up to ``max_history`` snapshots per collection.
    """

    def __init__(
        self,
        max_history: int = 5,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.max_history = max(1, max_history)
        self._clock = clock
        self._history: Dict[Tuple[str, str], List[CollectionSnapshot]] = {}

    async def get_latest(
        self, source_id: SourceId, collection: str
    ) -> Optional[CollectionSnapshot]:
        history = self._history.get((str(source_id), collection))
        if not history:
            return None
        # Ties on fetched_at go to the most recently stored snapshot
        return max(reversed(history), key=lambda s: s.fetched_at)

    async def put(
        self,
        source_id: SourceId,
        collection: str,
        rows: List[Row],
        schema: Optional[List[Field]] = None,
    ) -> CollectionSnapshot:
        snapshot = _make_snapshot(source_id, collection, rows, schema, self._clock())
        key = (str(source_id), collection)
        history = list(self._history.get(key, []))
        history.append(snapshot)
        self._history[key] = history[-self.max_history:]
        return snapshot

    def history(self, source_id: SourceId, collection: str) -> List[CollectionSnapshot]:
        """All retained snapshots for a collection, oldest first."""
        return sorted(
            self._history.get((str(source_id), collection), []),
            key=lambda s: s.fetched_at,
        )

    def clear(self, source_id: Optional[SourceId] = None) -> None:
        """Drop retained snapshots, for one source or all of them."""
        if source_id is None:
            self._history = {}
        else:
            self._history = {
                k: v for k, v in self._history.items() if k[0] != str(source_id)
            }


class ParquetSnapshotStore:
    """
    Snapshot store persisted as parquet files.

    File layout:
        base_path/
            <source_id>/
                <collection>.parquet   - one row per snapshot

    Columns: ``fetched_at`` (datetime, UTC), ``schema`` (JSON text) and
    ``rows`` (JSON text). Documents are heterogeneous, so rows are kept as
    JSON rather than as typed columns.
    """

    def __init__(
        self,
        base_path: str | Path,
        max_history: int = 10,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.base_path = Path(base_path)
        self.max_history = max(1, max_history)
        self._clock = clock
        self._lock = asyncio.Lock()

    def _path(self, source_id: SourceId, collection: str) -> Path:
        return self.base_path / _safe_name(str(source_id)) / f"{_safe_name(collection)}.parquet"

    async def get_latest(
        self, source_id: SourceId, collection: str
    ) -> Optional[CollectionSnapshot]:
        path = self._path(source_id, collection)
        async with self._lock:
            return await asyncio.to_thread(self._read_latest, path, source_id, collection)

    async def put(
        self,
        source_id: SourceId,
        collection: str,
        rows: List[Row],
        schema: Optional[List[Field]] = None,
    ) -> CollectionSnapshot:
        snapshot = _make_snapshot(source_id, collection, rows, schema, self._clock())
        path = self._path(source_id, collection)
        async with self._lock:
            await asyncio.to_thread(self._append, path, snapshot)
        return snapshot

    def _read_latest(
        self, path: Path, source_id: SourceId, collection: str
    ) -> Optional[CollectionSnapshot]:
        if not path.exists():
            return None

        df = pl.read_parquet(path)
        if df.height == 0:
            return None

        df = df.sort("fetched_at", maintain_order=True)
        latest = df.row(df.height - 1, named=True)
        schema = tuple(
            Field(name=f["name"], type=f["type"])
            for f in json.loads(latest["schema"])
        )
        rows = tuple(json.loads(latest["rows"], object_hook=_decode_value))
        fetched_at = latest["fetched_at"]
        if fetched_at.tzinfo is None:
            fetched_at = fetched_at.replace(tzinfo=timezone.utc)

        return CollectionSnapshot(
            source_id=source_id,
            collection=collection,
            schema=schema,
            rows=rows,
            fetched_at=fetched_at,
        )

    def _append(self, path: Path, snapshot: CollectionSnapshot) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)

        new_df = pl.DataFrame({
            "fetched_at": pl.Series(
                [snapshot.fetched_at], dtype=pl.Datetime("us", "UTC")
            ),
            "schema": pl.Series(
                [json.dumps([f.to_dict() for f in snapshot.schema])], dtype=pl.Utf8
            ),
            "rows": pl.Series(
                [json.dumps(list(snapshot.rows), default=_encode_value)], dtype=pl.Utf8
            ),
        })

        if path.exists():
            df = pl.concat([pl.read_parquet(path), new_df], how="vertical")
        else:
            df = new_df

        df = df.sort("fetched_at", maintain_order=True).tail(self.max_history)
        # Readers in other processes never see a partially written file
        tmp_path = path.with_name(path.name + ".tmp")
        df.write_parquet(tmp_path)
        os.replace(tmp_path, path)
        logger.debug(
            f"Stored snapshot {snapshot.source_id}/{snapshot.collection} "
            f"({snapshot.row_count} rows) at {path}"
        )


def _make_snapshot(
    source_id: SourceId,
    collection: str,
    rows: List[Row],
    schema: Optional[List[Field]],
    fetched_at: datetime,
) -> CollectionSnapshot:
    copied = tuple(dict(row) for row in rows)
    if schema is None:
        schema = infer_schema(list(copied))
    return CollectionSnapshot(
        source_id=source_id,
        collection=collection,
        schema=tuple(schema),
        rows=copied,
        fetched_at=fetched_at,
    )


_UNSAFE_RE = re.compile(r"[^A-Za-z0-9_.-]")


def _safe_name(name: str) -> str:
    return _UNSAFE_RE.sub("_", name) or "_"


def _encode_value(value: Any) -> Any:
    # datetime before date: datetime is a date subclass
    if isinstance(value, datetime):
        return {"$date": value.isoformat()}
    if isinstance(value, date):
        return {"$day": value.isoformat()}
    if isinstance(value, Decimal):
        return {"$decimal": str(value)}
    if isinstance(value, (bytes, bytearray)):
        return {"$bytes": base64.b64encode(bytes(value)).decode("ascii")}
    if isinstance(value, (set, frozenset)):
        return list(value)
    # Anything else compares as a string, so it is stored as one
    return str(value)


def _decode_value(obj: Dict[str, Any]) -> Any:
    if len(obj) != 1:
        return obj
    if "$date" in obj:
        return datetime.fromisoformat(obj["$date"])
    if "$day" in obj:
        return date.fromisoformat(obj["$day"])
    if "$decimal" in obj:
        return Decimal(obj["$decimal"])
    if "$bytes" in obj:
        return base64.b64decode(obj["$bytes"])
    return obj
