"""Tests for the collection snapshot stores."""

import asyncio
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

import polars as pl
import pytest

from docfed.models import Field
from docfed.snapshots import InMemorySnapshotStore, ParquetSnapshotStore


class TestInMemorySnapshotStore:
    """Tests for the in-memory snapshot store."""

    async def test_missing_returns_none(self, clock):
        store = InMemorySnapshotStore(clock=clock)
        assert await store.get_latest(1, "users") is None

    async def test_latest_wins(self, clock):
        store = InMemorySnapshotStore(clock=clock)
        await store.put(1, "users", [{"uid": 1}])
        clock.advance(minutes=5)
        await store.put(1, "users", [{"uid": 1}, {"uid": 2}])

        latest = await store.get_latest(1, "users")
        assert latest.row_count == 2
        assert latest.fetched_at == clock()

    async def test_tie_goes_to_last_stored(self, clock):
        store = InMemorySnapshotStore(clock=clock)
        await store.put(1, "users", [{"uid": 1}])
        await store.put(1, "users", [{"uid": 2}])
        latest = await store.get_latest(1, "users")
        assert latest.rows == ({"uid": 2},)

    async def test_snapshot_is_a_copy(self, clock):
        store = InMemorySnapshotStore(clock=clock)
        rows = [{"uid": 1}]
        await store.put(1, "users", rows)
        rows[0]["uid"] = 99
        latest = await store.get_latest(1, "users")
        assert latest.rows[0]["uid"] == 1

    async def test_schema_inferred(self, clock):
        store = InMemorySnapshotStore(clock=clock)
        snapshot = await store.put(1, "users", [{"uid": 1, "name": "Ann"}])
        assert snapshot.schema == (Field("uid", "number"), Field("name", "string"))

    async def test_explicit_schema_kept(self, clock):
        store = InMemorySnapshotStore(clock=clock)
        snapshot = await store.put(1, "users", [], schema=[Field("uid", "string")])
        assert snapshot.schema == (Field("uid", "string"),)

    async def test_history_bounded(self, clock):
        store = InMemorySnapshotStore(max_history=2, clock=clock)
        for i in range(4):
            await store.put(1, "users", [{"i": i}])
            clock.advance(seconds=1)
        history = store.history(1, "users")
        assert [s.rows[0]["i"] for s in history] == [2, 3]

    async def test_keyed_by_source_and_collection(self, clock):
        store = InMemorySnapshotStore(clock=clock)
        await store.put(1, "users", [{"from": 1}])
        await store.put(2, "users", [{"from": 2}])
        assert (await store.get_latest("1", "users")).rows == ({"from": 1},)
        assert (await store.get_latest(2, "users")).rows == ({"from": 2},)

        store.clear(1)
        assert await store.get_latest(1, "users") is None
        assert await store.get_latest(2, "users") is not None

    async def test_to_dict(self, clock):
        store = InMemorySnapshotStore(clock=clock)
        snapshot = await store.put(1, "users", [{"uid": 1}])
        data = snapshot.to_dict()
        assert data["row_count"] == 1
        assert data["schema"] == [{"name": "uid", "type": "number"}]
        assert data["fetched_at"] == clock().isoformat()


class TestParquetSnapshotStore:
    """Tests for the parquet-backed snapshot store."""

    async def test_missing_returns_none(self, tmp_path, clock):
        store = ParquetSnapshotStore(tmp_path, clock=clock)
        assert await store.get_latest(1, "users") is None

    async def test_round_trip(self, tmp_path, clock):
        store = ParquetSnapshotStore(tmp_path, clock=clock)
        joined = datetime(2023, 5, 1, 8, 30, tzinfo=timezone.utc)
        rows = [
            {"uid": 1, "name": "Ann", "joined": joined, "tags": ["a"], "meta": {"x": 1}},
            {"uid": 2, "name": None},
        ]
        await store.put(1, "users", rows)

        latest = await store.get_latest(1, "users")
        assert latest.rows == tuple(rows)
        assert latest.fetched_at == clock()
        assert Field("joined", "date") in latest.schema

    async def test_latest_and_history(self, tmp_path, clock):
        store = ParquetSnapshotStore(tmp_path, max_history=2, clock=clock)
        for i in range(3):
            await store.put(1, "users", [{"i": i}])
            clock.advance(minutes=1)

        latest = await store.get_latest(1, "users")
        assert latest.rows == ({"i": 2},)

        df = pl.read_parquet(tmp_path / "1" / "users.parquet")
        assert df.height == 2

    async def test_survives_new_store_instance(self, tmp_path, clock):
        await ParquetSnapshotStore(tmp_path, clock=clock).put("crm", "users", [{"uid": 1}])
        reopened = ParquetSnapshotStore(tmp_path, clock=clock)
        latest = await reopened.get_latest("crm", "users")
        assert latest.rows == ({"uid": 1},)

    async def test_unsafe_names(self, tmp_path, clock):
        store = ParquetSnapshotStore(tmp_path, clock=clock)
        await store.put("a/b", "../users", [{"uid": 1}])
        assert (await store.get_latest("a/b", "../users")).rows == ({"uid": 1},)
        assert all(p.is_relative_to(tmp_path) for p in tmp_path.rglob("*.parquet"))

    async def test_date_decimal_and_bytes_round_trip(self, tmp_path, clock):
        store = ParquetSnapshotStore(tmp_path, clock=clock)
        rows = [{
            "born": date(2000, 1, 1),
            "seen": datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc),
            "balance": Decimal("10.50"),
            "avatar": b"\x89PNG",
        }]
        await store.put(1, "users", rows)

        latest = await store.get_latest(1, "users")
        assert latest.rows == tuple(rows)
        assert type(latest.rows[0]["born"]) is date
        assert type(latest.rows[0]["seen"]) is datetime

    async def test_other_objects_stored_as_strings(self, tmp_path, clock):
        store = ParquetSnapshotStore(tmp_path, clock=clock)
        uid = uuid.UUID("12345678-1234-5678-1234-567812345678")
        await store.put(1, "users", [{"id": uid}])
        latest = await store.get_latest(1, "users")
        assert latest.rows == ({"id": str(uid)},)

    async def test_concurrent_writes_and_reads(self, tmp_path, clock):
        store = ParquetSnapshotStore(tmp_path, max_history=3, clock=clock)
        await store.put(1, "users", [{"i": -1}])

        writes = [store.put(1, "users", [{"i": i}]) for i in range(10)]
        reads = [store.get_latest(1, "users") for _ in range(10)]
        results = await asyncio.gather(*[op for pair in zip(writes, reads) for op in pair])

        for snapshot in results[1::2]:
            assert snapshot is not None
            assert len(snapshot.rows) == 1
        assert (await store.get_latest(1, "users")).rows == ({"i": 9},)
        assert list(tmp_path.rglob("*.tmp")) == []


@pytest.mark.parametrize("store_factory", [
    lambda path, clock: InMemorySnapshotStore(clock=clock),
    lambda path, clock: ParquetSnapshotStore(path, clock=clock),
])
async def test_empty_collection_snapshot(store_factory, tmp_path, clock):
    store = store_factory(tmp_path, clock)
    await store.put(1, "empty", [])
    latest = await store.get_latest(1, "empty")
    assert latest.rows == ()
    assert latest.schema == ()
