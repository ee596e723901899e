"""
Federation strategy controller.

Decides per query whether to run the federation pipeline or serve a cached
result:

- virtual: always run; never cached
- materialized: serve the cached result until ``next_update``, then re-run
- hybrid: serve the cached result immediately and refresh it in the
  background for the next caller

Cache slots are immutable and replaced only after a run completes, so a
caller never observes a partially refreshed result.
"""

from __future__ import annotations

import asyncio
import dataclasses
import hashlib
import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence

from docfed.models import FederatedResult, FederationStrategy, SourceId
from docfed.values import Row

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]
ResultSink = Callable[[str, FederatedResult], Awaitable[Any]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class PipelineOutcome:
    """Rows and source bookkeeping of one pipeline run."""
    rows: List[Row]
    sources_used: List[SourceId] = field(default_factory=list)
    sources_failed: List[SourceId] = field(default_factory=list)


Runner = Callable[[], Awaitable[PipelineOutcome]]


@dataclass(frozen=True)
class CacheSlot:
    """The cached result of a query. Replaced, never mutated."""
    result: FederatedResult
    last_updated: datetime
    next_update: Optional[datetime] = None

    def is_fresh(self, now: datetime) -> bool:
        return self.next_update is not None and now < self.next_update


def make_query_id(
    text: str,
    data_source_ids: Sequence[SourceId],
    params: Optional[Mapping[str, Any]] = None,
) -> str:
    """Stable cache key for an ad-hoc query."""
    content = json.dumps(
        {
            "text": text.strip(),
            "sources": sorted(str(s) for s in data_source_ids),
            "params": params or {},
        },
        sort_keys=True,
        default=str,
    )
    return "q_" + hashlib.sha256(content.encode()).hexdigest()[:16]


class StrategyController:
    """
    Applies a federation strategy around a pipeline runner.

    Args:
        refresh_interval: Validity window of a materialized result
        clock: Source of the current time
        result_sink: Called with ``(query_id, result)`` after every fresh
            materialized or hybrid run
    """

    def __init__(
        self,
        refresh_interval: timedelta = timedelta(minutes=15),
        clock: Clock = _utcnow,
        result_sink: Optional[ResultSink] = None,
    ):
        self.refresh_interval = refresh_interval
        self.clock = clock
        self.result_sink = result_sink
        self._slots: Dict[str, CacheSlot] = {}
        self._refreshing: Dict[str, asyncio.Task] = {}

    async def run(
        self,
        query_id: str,
        strategy: FederationStrategy,
        runner: Runner,
    ) -> FederatedResult:
        """Return the result of ``runner`` according to ``strategy``."""
        start_time = time.perf_counter()

        if strategy is FederationStrategy.VIRTUAL:
            outcome = await runner()
            return self._result(query_id, strategy, outcome, start_time, self.clock(), None)

        slot = self._slots.get(query_id)

        if slot is not None:
            if strategy is FederationStrategy.MATERIALIZED and slot.is_fresh(self.clock()):
                return self._hit(slot, strategy, start_time)
            if strategy is FederationStrategy.HYBRID:
                self._schedule_refresh(query_id, strategy, runner)
                return self._hit(slot, strategy, start_time)

        slot = await self._execute(query_id, strategy, runner, start_time)
        return slot.result

    async def _execute(
        self,
        query_id: str,
        strategy: FederationStrategy,
        runner: Runner,
        start_time: float,
    ) -> CacheSlot:
        outcome = await runner()
        now = self.clock()
        next_update = now + self.refresh_interval
        result = self._result(query_id, strategy, outcome, start_time, now, next_update)
        slot = CacheSlot(result=result, last_updated=now, next_update=next_update)
        self._slots[query_id] = slot
        logger.debug(f"Cached {strategy.value} result for {query_id} until {next_update.isoformat()}")
        await self._sink(query_id, result)
        return slot

    def _result(
        self,
        query_id: str,
        strategy: FederationStrategy,
        outcome: PipelineOutcome,
        start_time: float,
        last_updated: datetime,
        next_update: Optional[datetime],
    ) -> FederatedResult:
        return FederatedResult(
            rows=outcome.rows,
            execution_time_ms=(time.perf_counter() - start_time) * 1000,
            cache_hit=False,
            last_updated=last_updated,
            next_update=next_update,
            strategy=strategy,
            query_id=query_id,
            sources_used=list(outcome.sources_used),
            sources_failed=list(outcome.sources_failed),
        )

    def _hit(
        self,
        slot: CacheSlot,
        strategy: FederationStrategy,
        start_time: float,
    ) -> FederatedResult:
        return dataclasses.replace(
            slot.result,
            rows=[dict(row) for row in slot.result.rows],
            cache_hit=True,
            strategy=strategy,
            last_updated=slot.last_updated,
            next_update=slot.next_update,
            execution_time_ms=(time.perf_counter() - start_time) * 1000,
        )

    async def _sink(self, query_id: str, result: FederatedResult) -> None:
        if self.result_sink is None:
            return
        try:
            await self.result_sink(query_id, result)
        except Exception as e:
            logger.warning(f"Failed to save result for {query_id}: {e}")

    # -------------------------------------------------------------------------
    # Background refresh
    # -------------------------------------------------------------------------

    def _schedule_refresh(
        self,
        query_id: str,
        strategy: FederationStrategy,
        runner: Runner,
    ) -> None:
        if query_id in self._refreshing:
            return
        task = asyncio.create_task(self._refresh(query_id, strategy, runner))
        self._refreshing[query_id] = task
        task.add_done_callback(lambda t, qid=query_id: self._forget(qid, t))

    def _forget(self, query_id: str, task: asyncio.Task) -> None:
        if self._refreshing.get(query_id) is task:
            del self._refreshing[query_id]

    async def _refresh(
        self,
        query_id: str,
        strategy: FederationStrategy,
        runner: Runner,
    ) -> None:
        try:
            await self._execute(query_id, strategy, runner, time.perf_counter())
            logger.info(f"Background refresh of {query_id} completed")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Background refresh of {query_id} failed, keeping previous result: {e}")

    def is_refreshing(self, query_id: str) -> bool:
        return query_id in self._refreshing

    async def wait_for_refreshes(self) -> None:
        """Wait until every in-flight background refresh has finished."""
        while self._refreshing:
            tasks = list(self._refreshing.values())
            await asyncio.gather(*tasks, return_exceptions=True)
            for task in tasks:
                for qid in [q for q, t in self._refreshing.items() if t is task]:
                    del self._refreshing[qid]

    # -------------------------------------------------------------------------
    # Slots
    # -------------------------------------------------------------------------

    def get_slot(self, query_id: str) -> Optional[CacheSlot]:
        return self._slots.get(query_id)

    def invalidate(self, query_id: Optional[str] = None) -> int:
        """Drop one cached slot, or all of them. Returns the number dropped."""
        if query_id is None:
            count = len(self._slots)
            self._slots = {}
            return count
        return 1 if self._slots.pop(query_id, None) is not None else 0

    async def close(self) -> None:
        """Cancel in-flight background refreshes."""
        tasks = list(self._refreshing.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._refreshing = {}
