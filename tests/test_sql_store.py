"""Tests for the SQL document store against in-memory SQLite."""

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from oee_monitor.database import check_database_health, close_db, init_db
from oee_monitor.persistence.base import Collections, DocumentQuery
from oee_monitor.persistence.sql_store import SqlDocumentStore
from oee_monitor.utils.exceptions import NotFoundError, ValidationError

BASE = datetime(2025, 3, 1, tzinfo=timezone.utc)


def record(doc_id, machine_id="m1", hours=0, **extra):
    moment = (BASE + timedelta(hours=hours)).isoformat()
    return {
        "id": doc_id,
        "machine_id": machine_id,
        "start_time": moment,
        "created_at": moment,
        "good_production": 100,
        **extra
    }


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False}
    )
    await init_db(engine)
    yield engine
    await close_db(engine)


@pytest_asyncio.fixture
async def store(engine):
    store = SqlDocumentStore(engine)
    for document in (
        record("a", hours=0, shift="morning"),
        record("b", hours=1, shift="night"),
        record("c", machine_id="m2", hours=2, shift="morning"),
        record("d", hours=3, shift="morning"),
    ):
        await store.create(Collections.PRODUCTION_RECORDS, document)
    return store


class TestSqlDocumentStore:

    async def test_create_and_get(self, store):
        document = await store.get(Collections.PRODUCTION_RECORDS, "a")
        assert document["machine_id"] == "m1"
        assert document["good_production"] == 100

    async def test_duplicate_create_is_rejected(self, store):
        with pytest.raises(ValidationError):
            await store.create(Collections.PRODUCTION_RECORDS, record("a"))

    async def test_collections_are_isolated(self, store):
        with pytest.raises(NotFoundError):
            await store.get(Collections.OEE_HISTORY, "a")

    async def test_update_merges_and_moves_time_index(self, store):
        moved = (BASE + timedelta(hours=10)).isoformat()
        updated = await store.update(
            Collections.PRODUCTION_RECORDS, "a", {"start_time": moved, "good_production": 250}
        )
        assert updated["good_production"] == 250
        assert updated["shift"] == "morning"

        query = DocumentQuery(time_field="start_time", start=BASE + timedelta(hours=9))
        ids = [d["id"] for d in await store.list(Collections.PRODUCTION_RECORDS, query)]
        assert ids == ["a"]

    async def test_update_missing_raises_not_found(self, store):
        with pytest.raises(NotFoundError):
            await store.update(Collections.PRODUCTION_RECORDS, "zzz", {"good_production": 1})

    async def test_machine_and_time_range_are_pushed_down(self, store):
        query = DocumentQuery(
            filters={"machine_id": "m1"},
            time_field="start_time",
            start=BASE + timedelta(hours=1),
            end=BASE + timedelta(hours=3)
        )
        ids = [d["id"] for d in await store.list(Collections.PRODUCTION_RECORDS, query)]
        assert ids == ["d", "b"]

    async def test_residual_filters_and_paging(self, store):
        query = DocumentQuery(filters={"shift": "morning"}, limit=2)
        ids = [d["id"] for d in await store.list(Collections.PRODUCTION_RECORDS, query)]
        assert ids == ["d", "c"]

    async def test_count(self, store):
        assert await store.count(Collections.PRODUCTION_RECORDS, DocumentQuery()) == 4
        assert await store.count(
            Collections.PRODUCTION_RECORDS, DocumentQuery(filters={"machine_id": "m1"})
        ) == 3
        assert await store.count(
            Collections.PRODUCTION_RECORDS, DocumentQuery(filters={"shift": "morning"}, limit=1)
        ) == 3

    async def test_delete(self, store):
        await store.delete(Collections.PRODUCTION_RECORDS, "b")
        with pytest.raises(NotFoundError):
            await store.get(Collections.PRODUCTION_RECORDS, "b")
        with pytest.raises(NotFoundError):
            await store.delete(Collections.PRODUCTION_RECORDS, "b")

    async def test_put_inserts_then_replaces(self, store):
        await store.put(Collections.MACHINES, {"id": "m9", "code": "X", "created_at": BASE.isoformat()})
        await store.put(Collections.MACHINES, {"id": "m9", "code": "Y", "created_at": BASE.isoformat()})
        document = await store.get(Collections.MACHINES, "m9")
        assert document["code"] == "Y"
        assert await store.count(Collections.MACHINES, DocumentQuery()) == 1


async def test_database_health_reports_dialect(engine):
    health = await check_database_health(engine)
    assert health["status"] == "healthy"
    assert health["dialect"] == "sqlite"


async def test_database_health_without_engine():
    assert (await check_database_health(None))["status"] == "unavailable"
