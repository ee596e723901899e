"""
Federation executor: runs a parsed query over already-fetched collections.

Pipeline, in fixed order:

1. Resolve base rows from the FROM collection (absent -> empty)
2. Filter on the base rows
3. Left-outer nested-loop join for each JOIN, in declared order
4. Projection
5. Stable multi-key ordering
6. Limit

The executor is a pure function of its inputs; it never performs I/O and
never mutates the collections it is given.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, Tuple

from docfed.context import ExecutionStats, ExplainPlan
from docfed.errors import JoinConditionError, UnknownParameterError
from docfed.query.ast import (
    Condition, FieldRef, JoinClause, Param, ParsedQuery,
)
from docfed.values import Row, compare, sort_key, values_equal

logger = logging.getLogger(__name__)

_MISSING = object()


def lookup(row: Mapping[str, Any], ref: FieldRef) -> Any:
    """
    Resolve a field reference on a row.

    Tries the qualified ``table.name`` key first, then the bare name.
    Returns the ``_MISSING`` sentinel when neither is present.
    """
    if ref.table:
        key = ref.qualified
        if key in row:
            return row[key]
    return row.get(ref.name, _MISSING)


def _value(row: Mapping[str, Any], ref: FieldRef) -> Any:
    value = lookup(row, ref)
    return None if value is _MISSING else value


def _condition_value(row: Mapping[str, Any], ref: FieldRef, base: str) -> Any:
    # Exact key first; the bare name only for unqualified or base-qualified refs
    if ref.qualified in row:
        return row[ref.qualified]
    if ref.table is None or ref.table == base:
        return row.get(ref.name)
    return None


def bind_parameters(query: ParsedQuery, params: Optional[Mapping[str, Any]]) -> None:
    """
    Check that every ``:name`` in the query has a binding.

    Raises:
        UnknownParameterError: For the first unbound parameter
    """
    params = params or {}
    for name in query.parameters():
        if name not in params:
            raise UnknownParameterError(name)


def split_join(join: JoinClause) -> Tuple[FieldRef, FieldRef]:
    """
    Return ``(join_field, main_field)`` for a JOIN.

    The join field is the side of the ON condition that names the joined
    collection.

    Raises:
        JoinConditionError: If neither side names the joined collection
    """
    if join.right.table == join.collection:
        return join.right, join.left
    if join.left.table == join.collection:
        return join.left, join.right
    raise JoinConditionError(
        f"ON clause '{join.left} = {join.right}' does not reference "
        f"joined collection '{join.collection}'",
        {"collection": join.collection},
    )


class FederationExecutor:
    """
    Executes a ParsedQuery against a name -> rows mapping.

    WHERE conditions that only reference the FROM collection (or are
    unqualified) are evaluated before joins. Conditions qualified with a
    joined collection's name cannot hold on base rows, so they are evaluated
    after the joins instead.
    """

    def execute(
        self,
        query: ParsedQuery,
        collections: Mapping[str, List[Row]],
        params: Optional[Mapping[str, Any]] = None,
    ) -> List[Row]:
        rows, _ = self.execute_with_stats(query, collections, params)
        return rows

    def execute_with_stats(
        self,
        query: ParsedQuery,
        collections: Mapping[str, List[Row]],
        params: Optional[Mapping[str, Any]] = None,
    ) -> Tuple[List[Row], ExecutionStats]:
        """
        Execute a query and return rows plus execution statistics.

        Raises:
            UnknownParameterError: If a ``:name`` parameter has no binding
        """
        params = params or {}
        stats = ExecutionStats()
        stats.start()

        try:
            bind_parameters(query, params)

            base = list(collections.get(query.from_collection, []))
            stats.rows_scanned += len(base)

            pre, post = self._partition_conditions(query)

            rows = self._filter(base, pre, params, query.from_collection, stats)

            for join in query.joins:
                rows = self._join(rows, join, collections, stats)

            if post:
                rows = self._filter(rows, post, params, query.from_collection, stats)
                stats.deferred_filter_count += len(post)

            projected = self._project(rows, query)

            if query.order_by:
                projected = self._order(projected, rows, query)

            if query.limit is not None:
                projected = projected[:query.limit]
        except Exception as e:
            stats.fail(str(e))
            raise

        stats.complete(len(projected))
        logger.debug(
            f"Executed query on '{query.from_collection}': "
            f"{stats.rows_scanned} scanned, {stats.rows_returned} returned "
            f"in {stats.duration_ms:.2f}ms"
        )
        return projected, stats

    def explain(
        self,
        query: ParsedQuery,
        collections: Optional[Mapping[str, List[Row]]] = None,
    ) -> ExplainPlan:
        """Describe how a query would be executed, without running it."""
        pre, post = self._partition_conditions(query)

        joins = []
        for join in query.joins:
            try:
                split_join(join)
                status = "ok"
            except JoinConditionError:
                status = "skipped: ON clause does not reference joined collection"
            if collections is not None and join.collection not in collections:
                status = "no rows: collection absent"
            joins.append({
                "collection": join.collection,
                "on": f"{join.left} = {join.right}",
                "status": status,
            })

        base_rows = None
        if collections is not None:
            base_rows = len(collections.get(query.from_collection, []))

        return ExplainPlan(
            from_collection=query.from_collection,
            base_rows=base_rows,
            filters=[str(c) for c in pre],
            deferred_filters=[str(c) for c in post],
            joins=joins,
            projection=[str(f) for f in query.select_fields],
            order_by=[str(k) for k in query.order_by],
            limit=query.limit,
            parameters=query.parameters(),
        )

    # -------------------------------------------------------------------------
    # Filter
    # -------------------------------------------------------------------------

    def _partition_conditions(
        self, query: ParsedQuery
    ) -> Tuple[List[Condition], List[Condition]]:
        joined = {j.collection for j in query.joins} - {query.from_collection}
        pre, post = [], []
        for cond in query.where:
            refs = [cond.field]
            if isinstance(cond.value, FieldRef):
                refs.append(cond.value)
            if any(ref.table in joined for ref in refs):
                post.append(cond)
            else:
                pre.append(cond)
        return pre, post

    def _filter(
        self,
        rows: List[Row],
        conditions: List[Condition],
        params: Mapping[str, Any],
        base: str,
        stats: ExecutionStats,
    ) -> List[Row]:
        if not conditions:
            return rows
        stats.filter_count += len(conditions)
        return [
            row for row in rows
            if all(self._holds(row, cond, params, base) for cond in conditions)
        ]

    def _holds(
        self, row: Row, cond: Condition, params: Mapping[str, Any], base: str
    ) -> bool:
        left = _condition_value(row, cond.field, base)
        operand = cond.value
        if isinstance(operand, Param):
            if operand.name not in params:
                raise UnknownParameterError(operand.name)
            right = params[operand.name]
        elif isinstance(operand, FieldRef):
            right = _condition_value(row, operand, base)
        else:
            right = operand.value
        return compare(left, cond.operator.value, right)

    # -------------------------------------------------------------------------
    # Join
    # -------------------------------------------------------------------------

    def _join(
        self,
        rows: List[Row],
        join: JoinClause,
        collections: Mapping[str, List[Row]],
        stats: ExecutionStats,
    ) -> List[Row]:
        try:
            join_field, main_field = split_join(join)
        except JoinConditionError as e:
            stats.joins_skipped += 1
            logger.warning(f"{e.kind}: {e.message}; skipping join")
            return rows

        join_rows = collections.get(join.collection, [])
        stats.rows_scanned += len(join_rows)
        stats.join_count += 1

        prefix = f"{join.collection}."
        result = []
        for row in rows:
            main_value = _value(row, main_field)
            matched = False
            if main_value is not None:
                for join_row in join_rows:
                    if values_equal(join_row.get(join_field.name), main_value):
                        combined = dict(row)
                        for key, value in join_row.items():
                            combined[prefix + key] = value
                        result.append(combined)
                        matched = True
            if not matched:
                result.append(row)
        return result

    # -------------------------------------------------------------------------
    # Projection / order
    # -------------------------------------------------------------------------

    def _project(self, rows: List[Row], query: ParsedQuery) -> List[Row]:
        if query.is_select_all():
            return [dict(row) for row in rows]

        # Output key is the bare name; a repeated bare name keeps its qualifier
        output_keys = []
        used = set()
        for ref in query.select_fields:
            key = ref.name if ref.name not in used else ref.qualified
            used.add(key)
            output_keys.append(key)

        projected = []
        for row in rows:
            out: Row = {}
            for ref, key in zip(query.select_fields, output_keys):
                value = lookup(row, ref)
                if value is not _MISSING:
                    out[key] = value
            projected.append(out)
        return projected

    def _order(
        self,
        projected: List[Row],
        originals: List[Row],
        query: ParsedQuery,
    ) -> List[Row]:
        pairs = list(zip(projected, originals))

        def resolve(pair: Tuple[Row, Row], ref: FieldRef) -> Any:
            value = lookup(pair[0], ref)
            if value is _MISSING:
                value = lookup(pair[1], ref)
            return None if value is _MISSING else value

        # Stable sorts from the least significant key to the most significant
        for key in reversed(query.order_by):
            def key_fn(pair, ref=key.field):
                value = resolve(pair, ref)
                if value is None:
                    return (0,)
                return (1, sort_key(value))

            # reverse=True keeps equal elements in their original order,
            # and puts nulls last
            pairs.sort(key=key_fn, reverse=not key.ascending)

        return [p for p, _ in pairs]


def execute_query(
    query: ParsedQuery,
    collections: Dict[str, List[Row]],
    params: Optional[Mapping[str, Any]] = None,
) -> List[Row]:
    """Convenience wrapper around ``FederationExecutor().execute``."""
    return FederationExecutor().execute(query, collections, params)
