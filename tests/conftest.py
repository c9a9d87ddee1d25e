"""
Shared test fixtures.

Collaborators (classifier, image source, tie-break judge, job store) are
replaced with in-memory fakes so tests never touch the network.
"""

import sys
from pathlib import Path

# Add project root to Python path
backend_dir = Path(__file__).parent.parent
sys.path.insert(0, str(backend_dir))

import time

import pytest
from collections import Counter
from unittest.mock import patch
from typing import Generator, Optional

from config.pairing import PairingConfig, RetryPolicy
from integrations.image_source import FetchedImage
from models.image_insight import ImageInsight
from services.insight_cache import InsightCache
from services.job_store_service import InMemoryJobStore
from services.pairing_job_service import PairingJobService


# ===================
# MOCK SUPABASE CLIENT
# ===================

class MockSupabaseResponse:
    """Mock Supabase query response."""

    def __init__(self, data: list = None, count: int = None):
        self.data = data or []
        self.count = count if count is not None else len(self.data)


class MockSupabaseQuery:
    """Mock Supabase query builder with chainable methods; records calls."""

    def __init__(self, table: "MockSupabaseTable", data: list = None):
        self._table = table
        self._data = data or []
        self.filters: list[tuple] = []

    def select(self, *args, **kwargs):
        return self

    def insert(self, data):
        self._table.inserted.append(data)
        if self._table.insert_error is not None:
            raise self._table.insert_error
        self._data = [data]
        return self

    def upsert(self, data):
        self._table.upserted.append(data)
        self._data = [data]
        return self

    def delete(self):
        self._table.deletes += 1
        return self

    def eq(self, column, value):
        self.filters.append(("eq", column, value))
        return self

    def gt(self, column, value):
        self.filters.append(("gt", column, value))
        return self

    def lt(self, column, value):
        self.filters.append(("lt", column, value))
        return self

    def limit(self, count):
        return self

    def execute(self) -> MockSupabaseResponse:
        return MockSupabaseResponse(data=self._data)


class MockSupabaseTable:
    """Mock Supabase table with configurable rows and insert failure."""

    def __init__(self, data: list = None):
        self._data = data or []
        self.inserted: list = []
        self.upserted: list = []
        self.deletes = 0
        self.insert_error: Optional[Exception] = None

    def select(self, *args, **kwargs):
        return MockSupabaseQuery(self, self._data.copy())

    def insert(self, data):
        return MockSupabaseQuery(self).insert(data)

    def upsert(self, data):
        return MockSupabaseQuery(self).upsert(data)

    def delete(self):
        return MockSupabaseQuery(self).delete()


class MockSupabaseClient:
    """Mock Supabase client."""

    def __init__(self):
        self._tables: dict[str, MockSupabaseTable] = {}

    def set_table_data(self, table_name: str, data: list):
        """Configure rows returned by select() on a table."""
        self._tables[table_name] = MockSupabaseTable(data)

    def table(self, name: str) -> MockSupabaseTable:
        if name not in self._tables:
            self._tables[name] = MockSupabaseTable()
        return self._tables[name]


@pytest.fixture
def mock_supabase() -> MockSupabaseClient:
    """
    Create a mock Supabase client.

    Usage:
        def test_something(mock_supabase):
            mock_supabase.set_table_data("pairing_jobs", [
                {"payload": {...}, "expires_at": "..."}
            ])
    """
    return MockSupabaseClient()


@pytest.fixture
def mock_db(mock_supabase) -> Generator:
    """Patch the Supabase client getter with the mock."""
    with patch("config.database.get_supabase_client", return_value=mock_supabase):
        with patch("services.job_store_service.get_supabase_client", return_value=mock_supabase):
            yield mock_supabase


# ===================
# FAKE COLLABORATORS
# ===================

class FakeImageSource:
    """
    Returns placeholder bytes; keys in `failing` come back as per-image
    failures. `delay` (seconds) simulates a slow download.
    """

    def __init__(self, failing: Optional[set[str]] = None, message: str = "404 Not Found", delay: float = 0.0):
        self.failing = failing or set()
        self.message = message
        self.delay = delay
        self.fetched: list[str] = []

    def fetch_many(self, keys: list[str]) -> tuple[list[FetchedImage], dict[str, str]]:
        if self.delay:
            time.sleep(self.delay)
        images, failures = [], {}
        for key in keys:
            if key in self.failing:
                failures[key] = self.message
            else:
                self.fetched.append(key)
                images.append(FetchedImage(key=key, content=b"\xff\xd8fake"))
        return images, failures


class FakeClassifier:
    """Looks insights up in a library; counts calls per image key."""

    def __init__(self, library: dict[str, ImageInsight]):
        self.library = library
        self.calls: Counter = Counter()

    def classify(self, images: list[FetchedImage]) -> list[ImageInsight]:
        results = []
        for image in images:
            self.calls[image.key] += 1
            results.append(self.library.get(image.key) or ImageInsight(key=image.key))
        return results


class FakeJudge:
    """Tie-break judge returning a fixed answer (index, None, or an exception)."""

    def __init__(self, answer=0):
        self.answer = answer
        self.calls: list[tuple[str, list[str], dict[str, str]]] = []

    def resolve(self, front, candidates, truncated_texts):
        self.calls.append((front.key, [c.key for c in candidates], truncated_texts))
        if isinstance(self.answer, Exception):
            raise self.answer
        return self.answer


# ===================
# FIXTURES
# ===================

@pytest.fixture
def pairing_config() -> PairingConfig:
    """Default thresholds with instant retries."""
    return PairingConfig(tiebreak_retry=RetryPolicy(max_attempts=2, base_delay_seconds=0))


@pytest.fixture
def memory_store() -> InMemoryJobStore:
    return InMemoryJobStore()


@pytest.fixture
def fake_source() -> FakeImageSource:
    return FakeImageSource()


@pytest.fixture
def make_job_service(memory_store, fake_source, pairing_config):
    """
    Build an orchestrator wired to in-memory fakes.

    Usage:
        def test_something(make_job_service):
            service, classifier = make_job_service(insights)
    """
    def _make(insights: list[ImageInsight], judge=None, **kwargs):
        classifier = FakeClassifier({i.key: i for i in insights})
        service = PairingJobService(
            store=kwargs.pop("store", memory_store),
            classifier=classifier,
            judge=judge or FakeJudge(answer=None),
            source_factory=lambda job: kwargs.get("source", fake_source),
            config=kwargs.pop("config", pairing_config),
            cache=kwargs.pop("cache", InsightCache(ttl_seconds=900)),
            chunk_size=kwargs.pop("chunk_size", 2),
            parallel_chunks=kwargs.pop("parallel_chunks", 2),
            lock_ttl_seconds=60,
            max_chunk_attempts=kwargs.pop("max_chunk_attempts", 3),
            invocation_budget_seconds=kwargs.pop("invocation_budget_seconds", 5.0),
            job_ttl_seconds=3600,
        )
        return service, classifier

    return _make


# ===================
# API TEST CLIENT
# ===================

@pytest.fixture
def test_client_with_memory_store(make_job_service):
    """
    FastAPI test client whose routes use an in-memory orchestrator.

    Usage:
        def test_endpoint(test_client_with_memory_store):
            client, service = test_client_with_memory_store
            response = client.post("/api/pairing-jobs", json={...})
    """
    from fastapi.testclient import TestClient
    from main import app

    service, _ = make_job_service([])
    with patch("routes.pairing_jobs.get_pairing_job_service", return_value=service):
        with patch("main.check_connection", return_value={"status": "healthy", "backend": "memory"}):
            yield TestClient(app), service
