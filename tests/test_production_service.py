"""Tests for the production record repository and the machine rollup."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from oee_monitor.models.production import ProductionRecordCreate, UpsertAction
from oee_monitor.persistence.base import Collections, DocumentQuery
from oee_monitor.utils.exceptions import NotFoundError, ValidationError

from conftest import NOW


DERIVED = ("availability_calculated", "performance_calculated", "quality_calculated", "oee_calculated")


def derived(record):
    return {name: getattr(record, name) for name in DERIVED}


async def history_for(services, record_id):
    return await services.gateway.list(
        Collections.OEE_HISTORY, DocumentQuery(filters={"production_record_id": record_id})
    )


class TestCreate:

    async def test_create_derives_metrics_and_writes_history(self, services, make_record):
        record = await services.production.create(
            make_record("m1", NOW - timedelta(hours=5), film_waste=30, organic_waste=10)
        )

        assert record.id
        assert record.created_at == NOW
        # target = 240 * 65 * 0.85 = 13260; runtime 230 -> expected ~12707.5
        assert record.availability_calculated == pytest.approx(230 / 240 * 100)
        assert record.quality_calculated == pytest.approx(400 / 440 * 100)
        assert 0 < record.oee_calculated < 100

        history = await history_for(services, record.id)
        assert len(history) == 1
        assert history[0]["total_waste"] == 40
        assert history[0]["timestamp"].startswith("2025-03-15T07:00:00")

    async def test_shift_is_resolved_from_start_time(self, services, make_record):
        record = await services.production.create(make_record("m1", NOW - timedelta(hours=5)))
        assert record.shift == "morning"

        explicit = await services.production.create(
            make_record("m1", NOW - timedelta(hours=5), shift="extra")
        )
        assert explicit.shift == "extra"

    async def test_naive_timestamps_are_taken_as_utc(self, services, make_record):
        record = await services.production.create(make_record("m1", datetime(2025, 3, 15, 6, 0)))
        assert record.start_time == datetime(2025, 3, 15, 6, 0, tzinfo=timezone.utc)

    async def test_unknown_fields_are_rejected(self, services, make_record):
        with pytest.raises(ValidationError) as exc_info:
            await services.production.create(make_record("m1", NOW, oee_calculated=99))
        assert exc_info.value.details["errors"][0]["loc"] == ["oee_calculated"]

    async def test_missing_required_fields_are_rejected(self, services, make_record):
        payload = make_record("m1", NOW)
        del payload["planned_time"]
        with pytest.raises(ValidationError):
            await services.production.create(payload)

    async def test_negative_values_are_rejected(self, services, make_record):
        with pytest.raises(ValidationError):
            await services.production.create(make_record("m1", NOW, good_production=-1))

    async def test_equal_start_and_end_are_rejected(self, services, make_record):
        with pytest.raises(ValidationError):
            await services.production.create(make_record("m1", NOW, end_time=NOW))

    async def test_end_before_start_on_the_same_date_is_rejected(self, services, make_record):
        with pytest.raises(ValidationError):
            await services.production.create(make_record("m1", NOW, end_time=NOW - timedelta(hours=2)))

    async def test_overnight_run_wraps(self, services, make_record):
        start = datetime(2025, 3, 15, 22, 0, tzinfo=timezone.utc)
        end = datetime(2025, 3, 14, 23, 30, tzinfo=timezone.utc)
        record = await services.production.create(make_record("m1", start, end_time=end))
        assert record.end_time == end
        assert ProductionRecordCreate(**make_record("m1", start, end_time=end)).run_duration_minutes == 90

    async def test_end_a_day_or_more_earlier_is_rejected(self, services, make_record):
        with pytest.raises(ValidationError):
            await services.production.create(make_record("m1", NOW, end_time=NOW - timedelta(hours=36)))

    async def test_unregistered_machine_does_not_block_creation(self, services, make_record):
        record = await services.production.create(make_record("unknown", NOW - timedelta(hours=1)))
        assert await services.production.get(record.id) == record
        assert await services.production.rollup_machine("unknown") is None


class TestUpdateAndDelete:

    async def test_empty_update_keeps_derived_metrics(self, services, make_record, clock):
        created = await services.production.create(make_record("m1", NOW - timedelta(hours=5)))
        clock.advance(minutes=5)

        updated = await services.production.update(created.id, {})

        assert derived(updated) == derived(created)
        assert updated.updated_at == clock.now
        assert updated.created_at == created.created_at
        assert len(await history_for(services, created.id)) == 2

    async def test_metric_input_change_recomputes(self, services, make_record):
        created = await services.production.create(make_record("m1", NOW - timedelta(hours=5)))

        updated = await services.production.update(created.id, {"downtime_minutes": 120})

        assert updated.availability_calculated == pytest.approx(50.0)
        assert updated.oee_calculated != created.oee_calculated

    async def test_waste_change_recomputes_quality(self, services, make_record):
        created = await services.production.create(make_record("m1", NOW - timedelta(hours=5)))
        updated = await services.production.update(created.id, {"film_waste": 100})
        assert updated.quality_calculated == pytest.approx(80.0)

    async def test_non_metric_change_keeps_metrics(self, services, make_record):
        created = await services.production.create(make_record("m1", NOW - timedelta(hours=5)))
        updated = await services.production.update(created.id, {"notes": "roll change", "operator_id": "op-7"})
        assert derived(updated) == derived(created)
        assert updated.notes == "roll change"

    async def test_update_revalidates_the_merged_record(self, services, make_record):
        created = await services.production.create(make_record("m1", NOW - timedelta(hours=5)))
        with pytest.raises(ValidationError):
            await services.production.update(created.id, {"end_time": created.start_time})
        with pytest.raises(ValidationError):
            await services.production.update(created.id, {"oee_calculated": 12})

    async def test_update_unknown_record(self, services):
        with pytest.raises(NotFoundError):
            await services.production.update("missing", {"notes": "x"})

    async def test_delete_removes_record_and_history(self, services, make_record):
        record = await services.production.create(make_record("m1", NOW - timedelta(hours=5)))
        await services.production.update(record.id, {"notes": "x"})

        await services.production.delete(record.id)

        with pytest.raises(NotFoundError):
            await services.production.get(record.id)
        assert await history_for(services, record.id) == []

    async def test_delete_unknown_record(self, services):
        with pytest.raises(NotFoundError):
            await services.production.delete("missing")


class TestUpsert:

    async def test_upsert_without_id_creates(self, services, make_record):
        record, action = await services.production.upsert(make_record("m1", NOW - timedelta(hours=2)))
        assert action == UpsertAction.CREATED
        assert await services.production.get(record.id) == record

    async def test_upsert_is_idempotent(self, services, make_record):
        payload = make_record("m1", NOW - timedelta(hours=2), film_waste=12)
        first, _ = await services.production.upsert(payload)

        second, action = await services.production.upsert({**payload, "id": first.id})
        third, _ = await services.production.upsert({**payload, "id": first.id})

        assert action == UpsertAction.UPDATED
        assert second.id == first.id
        assert derived(second) == derived(first)
        assert derived(third) == derived(first)

    async def test_upsert_with_unknown_id(self, services, make_record):
        with pytest.raises(NotFoundError):
            await services.production.upsert({**make_record("m1", NOW), "id": "missing"})


class TestListAndStatistics:

    async def test_list_is_newest_first_with_filters_and_paging(self, services, make_record, clock):
        ids = []
        for index, machine_id in enumerate(["m1", "m2", "m1", "m1"]):
            record = await services.production.create(
                make_record(machine_id, NOW - timedelta(hours=10 - index))
            )
            ids.append(record.id)
            clock.advance(minutes=1)

        everything = await services.production.list()
        assert [r.id for r in everything] == list(reversed(ids))

        machine_records = await services.production.list({"machine_id": "m1", "limit": 2})
        assert [r.id for r in machine_records] == [ids[3], ids[2]]

        paged = await services.production.list({"machine_id": "m1", "offset": 2})
        assert [r.id for r in paged] == [ids[0]]

        ranged = await services.production.list({"start": NOW - timedelta(hours=9), "end": NOW - timedelta(hours=8)})
        assert [r.id for r in ranged] == [ids[2], ids[1]]

    async def test_list_limit_is_bounded(self, services):
        with pytest.raises(ValidationError):
            await services.production.list({"limit": 1001})

    async def test_statistics(self, services, make_record):
        await services.production.create(make_record("m1", NOW - timedelta(hours=6), film_waste=10))
        await services.production.create(
            make_record("m1", NOW - timedelta(hours=3), good_production=350, downtime_minutes=20, organic_waste=5)
        )

        stats = await services.production.statistics({"machine_id": "m1"})

        assert stats.total_records == 2
        assert stats.total_production == 750
        assert stats.total_waste == 15
        assert stats.total_downtime == 30
        assert stats.total_planned_time == 480
        assert 0 < stats.average_oee < 100

    async def test_statistics_without_records(self, services):
        stats = await services.production.statistics({"machine_id": "nobody"})
        assert stats.total_records == 0
        assert stats.average_oee == 0


class TestMachineRollup:

    async def test_rollup_recomputes_from_the_window(self, services, machine, make_record):
        await services.production.create(
            make_record(machine.id, NOW - timedelta(hours=6), good_production=400, planned_time=240, downtime_minutes=10)
        )
        await services.production.create(
            make_record(machine.id, NOW - timedelta(hours=3), good_production=350, planned_time=240, downtime_minutes=20)
        )

        refreshed = await services.machines.get_machine(machine.id)

        assert refreshed.current_production == 750
        assert refreshed.availability == pytest.approx(93.75)
        assert refreshed.performance == pytest.approx(80.0)
        assert refreshed.quality == 100
        assert refreshed.oee == pytest.approx(75.0)
        assert refreshed.metrics_synthetic is False
        assert refreshed.last_production_update is not None

    async def test_records_outside_the_window_are_ignored(self, services, machine, make_record):
        await services.production.create(make_record(machine.id, NOW - timedelta(hours=30)))

        rollup = await services.production.rollup_machine(machine.id)

        assert rollup.synthetic is True
        assert rollup.record_count == 0

    async def test_no_data_default_is_flagged_synthetic(self, services, machine):
        rollup = await services.production.rollup_machine(machine.id)

        assert rollup.synthetic is True
        assert rollup.current_production == 850
        assert rollup.availability == pytest.approx(93.75)
        refreshed = await services.machines.get_machine(machine.id)
        assert refreshed.metrics_synthetic is True

    async def test_delete_rolls_back_to_remaining_records(self, services, machine, make_record):
        keep = await services.production.create(make_record(machine.id, NOW - timedelta(hours=6)))
        drop = await services.production.create(
            make_record(machine.id, NOW - timedelta(hours=3), good_production=350)
        )

        await services.production.delete(drop.id)

        refreshed = await services.machines.get_machine(machine.id)
        assert refreshed.current_production == keep.good_production

    async def test_concurrent_writes_do_not_lose_updates(self, services, machine, make_record):
        await asyncio.gather(*[
            services.production.create(
                make_record(machine.id, NOW - timedelta(hours=1, minutes=index), good_production=10)
            )
            for index in range(10)
        ])

        refreshed = await services.machines.get_machine(machine.id)
        assert refreshed.current_production == 100

    async def test_writes_survive_a_primary_outage(self, services, machine, primary, make_record):
        primary.fail = True

        record = await services.production.create(make_record(machine.id, NOW - timedelta(hours=1)))

        assert await services.production.get(record.id) == record
        refreshed = await services.machines.get_machine(machine.id)
        assert refreshed.current_production == 400

    async def test_rollup_locks_are_released_after_use(self, services, machine, make_record):
        await asyncio.gather(*[
            services.production.create(make_record(machine_id, NOW - timedelta(hours=1)))
            for machine_id in (machine.id, machine.id, "unknown-1", "unknown-2")
        ])

        assert services.production._rollup_locks == {}
        assert services.production._rollup_users == {}


class TestMachineDeletion:

    async def test_delete_removes_records_and_history(self, services, machine, make_record):
        await services.production.create(make_record(machine.id, NOW - timedelta(hours=6)))
        await services.production.create(make_record(machine.id, NOW - timedelta(hours=3)))
        other = await services.production.create(make_record("m2", NOW - timedelta(hours=3)))

        removed = await services.machines.delete_machine(machine.id)

        assert removed == {Collections.OEE_HISTORY: 2, Collections.PRODUCTION_RECORDS: 2}
        with pytest.raises(NotFoundError):
            await services.machines.get_machine(machine.id)
        assert await services.production.list({"machine_id": machine.id}) == []
        assert await services.production.list({"machine_id": "m2"}) == [other]
        assert len(await history_for(services, other.id)) == 1

    async def test_delete_unknown_machine(self, services):
        with pytest.raises(NotFoundError):
            await services.machines.delete_machine("missing")
