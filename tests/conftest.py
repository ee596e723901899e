"""Shared fixtures for the federation engine tests."""

from datetime import datetime, timedelta, timezone

import pytest

from docfed.adapters.memory import InMemoryAdapter
from docfed.config import EngineConfig
from docfed.engine import FederationEngine
from docfed.errors import SourceConnectionError
from docfed.models import DataSource


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start=None):
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class FailingAdapter(InMemoryAdapter):
    """In-memory adapter whose fetches can be switched to fail."""

    def __init__(self, collections=None):
        super().__init__(collections)
        self.failing = False
        self.filters = []

    async def list_collections(self):
        if self.failing:
            raise SourceConnectionError("source is down")
        return await super().list_collections()

    async def execute_query(self, name, filter_spec=None):
        if self.failing:
            raise SourceConnectionError("source is down", collection=name)
        self.filters.append(filter_spec)
        return await super().execute_query(name, filter_spec)


class MemoryConfigStore:
    """Configuration store held in memory."""

    def __init__(self, data_sources=None, mappings=None, queries=None):
        self.data_sources = list(data_sources or [])
        self.mappings = list(mappings or [])
        self.queries = dict(queries or {})
        self.saved_results = []

    async def list_data_sources(self):
        return list(self.data_sources)

    async def list_active_mappings(self):
        return list(self.mappings)

    async def get_query_by_id(self, query_id):
        return self.queries.get(query_id)

    async def save_query_result(self, query_id, result):
        self.saved_results.append((query_id, result))


@pytest.fixture
def users():
    return [
        {"uid": 1, "name": "Ann"},
        {"uid": 2, "name": "Bob"},
    ]


@pytest.fixture
def orders():
    return [
        {"userId": 1, "amount": 9.5},
        {"userId": 1, "amount": 20},
        {"userId": 3, "amount": 7},
    ]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
async def engine(clock):
    """Engine with one in-memory source holding users and orders."""
    eng = FederationEngine(config=EngineConfig(), clock=clock)
    await eng.add_data_source(
        DataSource(id=1, type="memory", name="crm"),
        InMemoryAdapter({
            "users": [{"uid": 1, "name": "Ann"}],
            "orders": [{"userId": 1, "amount": 9.5}],
        }),
    )
    yield eng
    await eng.close()
