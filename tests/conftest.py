"""OEE Monitor - Pytest Configuration & Fixtures.

Provides:
1. A frozen, advanceable clock for services and a fake monotonic clock for the breaker.
2. In-memory stores, including a switchable ``FlakyStore`` that records calls.
3. A gateway and fully wired services on top of them.
4. An httpx AsyncClient bound to the FastAPI app.

Usage:
    async def test_my_endpoint(client):
        response = await client.get("/health")
        assert response.status_code == 200
"""

import asyncio
import os
from datetime import datetime, timedelta, timezone

os.environ.setdefault("ENVIRONMENT", "test")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from oee_monitor.config import Settings
from oee_monitor.main import create_app
from oee_monitor.monitoring.application_metrics import ApplicationMetrics
from oee_monitor.persistence.gateway import CircuitBreaker, HybridPersistenceGateway
from oee_monitor.persistence.local_store import LocalDocumentStore
from oee_monitor.services import build_services


NOW = datetime(2025, 3, 15, 12, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Wall clock that only moves when told to."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeMonotonic:
    """Monotonic seconds for the circuit breaker."""

    def __init__(self):
        self.value = 1000.0

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


class FlakyStore(LocalDocumentStore):
    """In-memory store that can be switched into an outage and records every call."""

    name = "flaky"

    def __init__(self, fail: bool = False, error: Exception = None, delay: float = 0.0):
        super().__init__()
        self.fail = fail
        self.error = error or ConnectionError("store unreachable")
        self.delay = delay
        self.calls = []

    async def _enter(self, operation: str) -> None:
        self.calls.append(operation)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise self.error

    async def get(self, collection, doc_id):
        await self._enter("get")
        return await super().get(collection, doc_id)

    async def list(self, collection, query):
        await self._enter("list")
        return await super().list(collection, query)

    async def count(self, collection, query):
        await self._enter("count")
        return await super().count(collection, query)

    async def create(self, collection, document):
        await self._enter("create")
        return await super().create(collection, document)

    async def update(self, collection, doc_id, changes):
        await self._enter("update")
        return await super().update(collection, doc_id, changes)

    async def delete(self, collection, doc_id):
        await self._enter("delete")
        return await super().delete(collection, doc_id)

    async def put(self, collection, document):
        await self._enter("put")
        return await super().put(collection, document)


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def monotonic():
    return FakeMonotonic()


@pytest.fixture
def metrics():
    return ApplicationMetrics()


@pytest.fixture
def settings():
    return Settings(ENVIRONMENT="test", PLANT_TIMEZONE="UTC")


@pytest.fixture
def primary():
    return FlakyStore()


@pytest.fixture
def fallback():
    return LocalDocumentStore()


@pytest.fixture
def gateway(primary, fallback, metrics, monotonic):
    return HybridPersistenceGateway(
        primary=primary,
        fallback=fallback,
        primary_timeout=1.0,
        breaker=CircuitBreaker(failure_threshold=3, cooldown_seconds=30.0, clock=monotonic),
        metrics=metrics
    )


@pytest.fixture
def services(gateway, settings, clock, metrics):
    return build_services(gateway, settings, clock=clock, metrics=metrics)


@pytest_asyncio.fixture
async def machine(services):
    """A registered machine with target_production=1000."""
    return await services.machines.create_machine({
        "code": "ext-001",
        "name": "Extrusora 1",
        "target_production": 1000
    })


@pytest_asyncio.fixture
async def client(services):
    """Create async test client."""
    app = create_app(services)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


def record_payload(machine_id: str, start: datetime, **overrides) -> dict:
    """A valid production record payload starting at ``start``."""
    payload = {
        "machine_id": machine_id,
        "start_time": start,
        "end_time": start + timedelta(hours=4),
        "good_production": 400,
        "planned_time": 240,
        "downtime_minutes": 10,
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def make_record():
    return record_payload
