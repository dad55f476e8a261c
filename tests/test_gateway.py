"""Tests for the hybrid persistence gateway and its circuit breaker."""

import asyncio

import pytest

from oee_monitor.persistence.base import DocumentQuery
from oee_monitor.persistence.gateway import CircuitBreaker, CircuitState, HybridPersistenceGateway
from oee_monitor.persistence.local_store import LocalDocumentStore
from oee_monitor.utils.exceptions import NotFoundError, TerminalStoreError, ValidationError

from conftest import FakeMonotonic, FlakyStore

LABELS = {"collection": "records", "operation": "list"}


class TestPrimaryPath:

    async def test_primary_result_is_returned_and_writes_replicate(self, gateway, primary, fallback):
        created = await gateway.create("records", {"id": "r1", "value": 1})

        assert created == {"id": "r1", "value": 1}
        assert await primary.get("records", "r1") == created
        assert await fallback.get("records", "r1") == created

    async def test_update_and_delete_replicate(self, gateway, fallback):
        await gateway.create("records", {"id": "r1", "value": 1})
        await gateway.update("records", "r1", {"value": 2})
        assert (await fallback.get("records", "r1"))["value"] == 2

        await gateway.delete("records", "r1")
        with pytest.raises(NotFoundError):
            await fallback.get("records", "r1")

    async def test_replication_failure_is_swallowed(self, primary, metrics):
        broken_fallback = FlakyStore(fail=True)
        gateway = HybridPersistenceGateway(primary, broken_fallback, metrics=metrics)

        created = await gateway.create("records", {"id": "r1"})

        assert created == {"id": "r1"}
        assert metrics.value(
            "oee_replication_failures_total", {"collection": "records", "operation": "create"}
        ) == 1

    async def test_replication_can_be_disabled(self, primary, fallback, metrics):
        gateway = HybridPersistenceGateway(primary, fallback, replicate_writes=False, metrics=metrics)
        await gateway.create("records", {"id": "r1"})
        assert await fallback.count("records", DocumentQuery()) == 0


class TestFallbackPath:

    async def test_primary_list_failure_returns_fallback_result(self, gateway, primary, fallback, metrics):
        await fallback.put("records", {"id": "local", "created_at": "2025-03-01T00:00:00Z"})
        primary.fail = True

        documents = await gateway.list("records", DocumentQuery())

        assert [d["id"] for d in documents] == ["local"]
        assert metrics.value("oee_primary_failures_total", LABELS) == 1
        assert metrics.value("oee_fallback_calls_total", LABELS) == 1

    async def test_both_failing_surfaces_the_fallback_error(self, primary, metrics):
        primary.fail = True
        fallback_error = OSError("disk gone")
        gateway = HybridPersistenceGateway(primary, FlakyStore(fail=True, error=fallback_error), metrics=metrics)

        with pytest.raises(TerminalStoreError) as exc_info:
            await gateway.list("records")

        assert exc_info.value.fallback_error is fallback_error
        assert exc_info.value.__cause__ is fallback_error
        assert exc_info.value.details["fallback_error"] == "disk gone"
        assert "store unreachable" in exc_info.value.details["primary_error"]
        assert exc_info.value.status_code == 503
        assert metrics.value("oee_terminal_failures_total", LABELS) == 1

    async def test_domain_errors_never_reach_the_fallback(self, primary, metrics):
        spy = FlakyStore()
        gateway = HybridPersistenceGateway(primary, spy, metrics=metrics)

        with pytest.raises(NotFoundError):
            await gateway.get("records", "missing")

        primary.error = ValidationError("bad document")
        primary.fail = True
        with pytest.raises(ValidationError):
            await gateway.list("records")

        assert spy.calls == []
        assert gateway.breaker.state == CircuitState.CLOSED

    async def test_fallback_not_found_propagates(self, gateway, primary):
        primary.fail = True
        with pytest.raises(NotFoundError):
            await gateway.get("records", "missing")

    async def test_slow_primary_times_out_to_fallback(self, fallback, metrics):
        await fallback.put("records", {"id": "local"})
        slow = FlakyStore(delay=0.5)
        await slow.put("records", {"id": "remote"})
        slow.calls.clear()
        gateway = HybridPersistenceGateway(slow, fallback, primary_timeout=0.01, metrics=metrics)

        document = await gateway.get("records", "local")

        assert document == {"id": "local"}
        assert "timed out" in gateway.status()["last_primary_error"]


class TestCircuitBreaker:

    async def test_breaker_opens_and_skips_the_primary(self, gateway, primary, monotonic):
        primary.fail = True
        for _ in range(3):
            await gateway.list("records")
        assert gateway.breaker.state == CircuitState.OPEN

        await gateway.list("records")
        await gateway.list("records")
        assert primary.calls.count("list") == 3

    async def test_half_open_trial_reopens_on_failure(self, gateway, primary, monotonic):
        primary.fail = True
        for _ in range(3):
            await gateway.list("records")

        monotonic.advance(30)
        assert gateway.breaker.state == CircuitState.HALF_OPEN
        await gateway.list("records")
        assert primary.calls.count("list") == 4
        assert gateway.breaker.state == CircuitState.OPEN

        await gateway.list("records")
        assert primary.calls.count("list") == 4

    async def test_half_open_trial_closes_on_success(self, gateway, primary, monotonic):
        primary.fail = True
        for _ in range(3):
            await gateway.list("records")

        primary.fail = False
        monotonic.advance(31)
        await gateway.list("records")

        assert gateway.breaker.state == CircuitState.CLOSED
        assert gateway.status()["consecutive_failures"] == 0

    async def test_threshold_zero_always_tries_the_primary(self, primary, fallback, metrics):
        gateway = HybridPersistenceGateway(
            primary, fallback, breaker=CircuitBreaker(failure_threshold=0), metrics=metrics
        )
        primary.fail = True
        for _ in range(5):
            await gateway.list("records")

        assert primary.calls.count("list") == 5
        assert gateway.breaker.state == CircuitState.CLOSED

    def test_only_one_trial_call_while_half_open(self):
        clock = FakeMonotonic()
        breaker = CircuitBreaker(failure_threshold=1, cooldown_seconds=10, clock=clock)
        breaker.record_failure()
        assert not breaker.allow_primary()

        clock.advance(10)
        assert breaker.allow_primary()
        assert not breaker.allow_primary()

    async def test_cancelled_trial_does_not_wedge_the_breaker(self, gateway, primary, monotonic):
        primary.fail = True
        for _ in range(3):
            await gateway.list("records")

        primary.fail = False
        primary.delay = 0.5
        monotonic.advance(31)
        trial = asyncio.create_task(gateway.list("records"))
        await asyncio.sleep(0.01)
        trial.cancel()
        with pytest.raises(asyncio.CancelledError):
            await trial
        assert primary.calls.count("list") == 4

        primary.delay = 0.0
        await gateway.list("records")

        assert primary.calls.count("list") == 5
        assert gateway.breaker.state == CircuitState.CLOSED


class TestSeeding:

    async def test_seeding_runs_once(self, gateway, fallback):
        snapshot = {"machines": [{"id": "m1"}, {"id": "m2"}], "alerts": [{"id": "a1"}]}

        assert await gateway.seed_fallback(snapshot) == 3
        assert await gateway.seed_fallback({"machines": [{"id": "m3"}]}) == 0
        assert await fallback.count("machines", DocumentQuery()) == 2
        assert gateway.status()["fallback_seeded"] is True

    async def test_seeding_failure_is_swallowed(self, gateway, fallback):
        snapshot = {"machines": [{"id": "m1"}, {"code": "no id"}, {"id": "m3"}]}

        assert await gateway.seed_fallback(snapshot) == 1
        assert await fallback.count("machines", DocumentQuery()) == 1


def test_status_reports_breaker_state(gateway):
    status = gateway.status()
    assert status["circuit_state"] == "closed"
    assert status["primary"] == "flaky"
    assert status["fallback"] == LocalDocumentStore.name
