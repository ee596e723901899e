"""
Execution context for federated queries.

Provides:
- Execution statistics (rows scanned/returned, joins, filters, timing)
- EXPLAIN plan output
- Timeout bounding for source I/O
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import IntEnum, auto
from typing import Any, Awaitable, Optional, TypeVar

from docfed.errors import SourceConnectionError


class QueryState(IntEnum):
    """Query execution states."""
    PENDING = auto()     # Created but not started
    RUNNING = auto()     # Currently executing
    COMPLETED = auto()   # Finished successfully
    FAILED = auto()      # Failed with error


@dataclass
class ExecutionStats:
    """Statistics for one executor run."""
    start_time: Optional[float] = None
    end_time: Optional[float] = None
    state: QueryState = QueryState.PENDING
    rows_scanned: int = 0
    rows_returned: int = 0
    filter_count: int = 0
    deferred_filter_count: int = 0
    join_count: int = 0
    joins_skipped: int = 0
    error: Optional[str] = None

    def start(self):
        self.start_time = time.perf_counter()
        self.state = QueryState.RUNNING

    def complete(self, rows_returned: int):
        self.end_time = time.perf_counter()
        self.state = QueryState.COMPLETED
        self.rows_returned = rows_returned

    def fail(self, error: str):
        self.end_time = time.perf_counter()
        self.state = QueryState.FAILED
        self.error = error

    @property
    def duration_ms(self) -> float:
        """Execution duration in milliseconds."""
        if self.start_time is None:
            return 0.0
        end = self.end_time or time.perf_counter()
        return (end - self.start_time) * 1000

    def to_dict(self) -> dict:
        return {
            "duration_ms": self.duration_ms,
            "state": self.state.name,
            "rows_scanned": self.rows_scanned,
            "rows_returned": self.rows_returned,
            "filter_count": self.filter_count,
            "deferred_filter_count": self.deferred_filter_count,
            "join_count": self.join_count,
            "joins_skipped": self.joins_skipped,
            "error": self.error,
        }


@dataclass
class ExplainPlan:
    """Execution plan for EXPLAIN."""
    from_collection: str
    base_rows: Optional[int] = None
    filters: list[str] = field(default_factory=list)
    deferred_filters: list[str] = field(default_factory=list)
    joins: list[dict] = field(default_factory=list)
    projection: list[str] = field(default_factory=list)
    order_by: list[str] = field(default_factory=list)
    limit: Optional[int] = None
    parameters: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "from_collection": self.from_collection,
            "base_rows": self.base_rows,
            "filters": self.filters,
            "deferred_filters": self.deferred_filters,
            "joins": self.joins,
            "projection": self.projection,
            "order_by": self.order_by,
            "limit": self.limit,
            "parameters": self.parameters,
        }

    def __str__(self) -> str:
        """Pretty-print the execution plan."""
        rows = "unknown" if self.base_rows is None else str(self.base_rows)
        lines = [f"Scan: {self.from_collection} ({rows} rows)"]

        if self.filters:
            lines.extend(["", "Filters:"])
            for f in self.filters:
                lines.append(f"  - {f}")

        if self.joins:
            lines.extend(["", "Joins (left outer):"])
            for j in self.joins:
                lines.append(f"  - {j['collection']} ON {j['on']} [{j['status']}]")

        if self.deferred_filters:
            lines.extend(["", "Filters after join:"])
            for f in self.deferred_filters:
                lines.append(f"  - {f}")

        lines.extend(["", f"Projection: {', '.join(self.projection) or '*'}"])

        if self.order_by:
            lines.append(f"Order By: {', '.join(self.order_by)}")
        if self.limit is not None:
            lines.append(f"Limit: {self.limit}")
        if self.parameters:
            lines.append(f"Parameters: {', '.join(':' + p for p in self.parameters)}")

        return "\n".join(lines)


T = TypeVar("T")


async def bounded(
    awaitable: Awaitable[T],
    timeout_seconds: Optional[float],
    what: str,
    source_id: Any = None,
    collection: Optional[str] = None,
) -> T:
    """
    Await source I/O with a timeout.

    Raises:
        SourceConnectionError: If the call exceeds ``timeout_seconds``
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout_seconds)
    except asyncio.TimeoutError:
        raise SourceConnectionError(
            f"{what} exceeded timeout of {timeout_seconds}s",
            source_id=source_id,
            collection=collection,
        ) from None
