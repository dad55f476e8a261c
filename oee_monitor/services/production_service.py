"""
OEE Monitor - Production Record Service

This module contains the production record repository: validated CRUD over
production records with derived OEE metrics, the OEE history written on every
record write, and the per-machine metric rollup.
"""

import asyncio
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple
from uuid import uuid4

import structlog

from oee_monitor.models.production import (
    MachineRollup,
    OeeHistoryEntry,
    ProductionRecordCreate,
    ProductionRecordFilters,
    ProductionRecordResponse,
    ProductionRecordUpdate,
    ProductionStatistics,
    UpsertAction,
    utc_now,
)
from oee_monitor.monitoring.application_metrics import ApplicationMetrics, application_metrics
from oee_monitor.persistence.base import Collections, DocumentQuery
from oee_monitor.persistence.gateway import HybridPersistenceGateway
from oee_monitor.services.machine_service import MachineService
from oee_monitor.services.oee_calculator import (
    ProductionRatePolicy,
    calculate_oee_metrics,
    calculate_quality,
    calculate_record_metrics,
)
from oee_monitor.services.shifts import resolve_shift
from oee_monitor.utils.exceptions import NotFoundError, ValidationError, parse_input

logger = structlog.get_logger()

# Fields whose change invalidates a record's derived metrics
METRIC_INPUT_FIELDS = (
    "good_production",
    "planned_time",
    "downtime_minutes",
    "film_waste",
    "organic_waste",
)

RECORD_FIELDS = tuple(ProductionRecordCreate.model_fields)


@dataclass(frozen=True)
class RollupPolicy:
    """Rolling window and no-data default of the machine rollup."""

    window_hours: int = 24
    no_data_target_ratio: float = 0.85
    no_data_planned_time: float = 480.0
    no_data_downtime: float = 30.0

    @classmethod
    def from_settings(cls, settings) -> "RollupPolicy":
        return cls(
            window_hours=settings.ROLLUP_WINDOW_HOURS,
            no_data_target_ratio=settings.NO_DATA_TARGET_RATIO,
            no_data_planned_time=settings.NO_DATA_PLANNED_TIME,
            no_data_downtime=settings.NO_DATA_DOWNTIME
        )


class ProductionRecordService:
    """Service for production records and the machine metric rollup."""

    def __init__(
        self,
        gateway: HybridPersistenceGateway,
        machine_service: MachineService,
        rate_policy: Optional[ProductionRatePolicy] = None,
        rollup_policy: Optional[RollupPolicy] = None,
        plant_timezone: str = "UTC",
        clock: Callable[[], datetime] = utc_now,
        metrics: Optional[ApplicationMetrics] = None
    ):
        self.gateway = gateway
        self.machine_service = machine_service
        self.rate_policy = rate_policy or ProductionRatePolicy()
        self.rollup_policy = rollup_policy or RollupPolicy()
        self.plant_timezone = plant_timezone
        self.clock = clock
        self.metrics = metrics or application_metrics
        self._rollup_locks: Dict[str, asyncio.Lock] = {}
        self._rollup_users: Dict[str, int] = defaultdict(int)

    # Repository operations

    async def create(self, record_data) -> ProductionRecordResponse:
        """Create a production record with derived metrics."""
        record_in = parse_input(ProductionRecordCreate, record_data)
        fields = record_in.model_dump()
        if not fields.get("shift"):
            fields["shift"] = resolve_shift(record_in.start_time, self.plant_timezone).value

        now = self.clock()
        record = ProductionRecordResponse(
            id=str(uuid4()),
            created_at=now,
            updated_at=now,
            **fields,
            **self._derive_metrics(record_in)
        )
        stored = ProductionRecordResponse.model_validate(
            await self.gateway.create(Collections.PRODUCTION_RECORDS, record.model_dump(mode="json"))
        )

        await self._append_history(stored, timestamp=stored.start_time)
        self.metrics.production_records_written_total.labels(operation="create").inc()
        logger.info(
            "Production record created",
            record_id=stored.id,
            machine_id=stored.machine_id,
            duration_minutes=record_in.run_duration_minutes,
            oee=stored.oee_calculated
        )

        await self.rollup_machine(stored.machine_id)
        return stored

    async def get(self, record_id: str) -> ProductionRecordResponse:
        """Get a production record by ID."""
        try:
            document = await self.gateway.get(Collections.PRODUCTION_RECORDS, record_id)
        except NotFoundError:
            raise NotFoundError("Production record", record_id)
        return ProductionRecordResponse.model_validate(document)

    async def update(self, record_id: str, update_data) -> ProductionRecordResponse:
        """
        Update a production record.

        The merged record is re-validated. Derived metrics are recomputed only
        when one of their inputs changed; every update appends a history entry.
        """
        changes = parse_input(ProductionRecordUpdate, update_data).model_dump(exclude_unset=True)
        current = await self.get(record_id)

        merged = {**current.model_dump(include=set(RECORD_FIELDS)), **changes}
        record_in = parse_input(ProductionRecordCreate, merged)

        metric_inputs_changed = any(
            field in changes and changes[field] != getattr(current, field)
            for field in METRIC_INPUT_FIELDS
        )
        if metric_inputs_changed:
            derived = self._derive_metrics(record_in)
        else:
            derived = {
                "availability_calculated": current.availability_calculated,
                "performance_calculated": current.performance_calculated,
                "quality_calculated": current.quality_calculated,
                "oee_calculated": current.oee_calculated,
            }

        now = self.clock()
        record = ProductionRecordResponse(
            id=current.id,
            created_at=current.created_at,
            updated_at=now,
            **record_in.model_dump(),
            **derived
        )
        stored = ProductionRecordResponse.model_validate(
            await self.gateway.update(
                Collections.PRODUCTION_RECORDS, record_id, record.model_dump(mode="json")
            )
        )

        await self._append_history(stored, timestamp=now)
        self.metrics.production_records_written_total.labels(operation="update").inc()
        logger.info(
            "Production record updated",
            record_id=record_id,
            machine_id=stored.machine_id,
            fields=sorted(changes),
            metrics_recomputed=metric_inputs_changed
        )

        await self.rollup_machine(stored.machine_id)
        if current.machine_id != stored.machine_id:
            await self.rollup_machine(current.machine_id)
        return stored

    async def delete(self, record_id: str) -> None:
        """Delete a production record together with its OEE history."""
        current = await self.get(record_id)
        await self.gateway.delete(Collections.PRODUCTION_RECORDS, record_id)

        history = await self.gateway.list(
            Collections.OEE_HISTORY,
            DocumentQuery(filters={"production_record_id": record_id})
        )
        for entry in history:
            try:
                await self.gateway.delete(Collections.OEE_HISTORY, entry["id"])
            except NotFoundError:
                continue

        self.metrics.production_records_written_total.labels(operation="delete").inc()
        logger.info(
            "Production record deleted",
            record_id=record_id,
            machine_id=current.machine_id,
            history_entries=len(history)
        )

        await self.rollup_machine(current.machine_id)

    async def upsert(self, record_data) -> Tuple[ProductionRecordResponse, UpsertAction]:
        """Update when the payload carries an id, create otherwise."""
        if hasattr(record_data, "model_dump"):
            payload = record_data.model_dump(exclude_unset=True)
        elif isinstance(record_data, dict):
            payload = dict(record_data)
        else:
            raise ValidationError("Production record payload must be an object")

        record_id = payload.pop("id", None)
        if record_id:
            return await self.update(str(record_id), payload), UpsertAction.UPDATED
        return await self.create(payload), UpsertAction.CREATED

    async def list(self, filters=None) -> List[ProductionRecordResponse]:
        """List production records, newest first."""
        record_filters = parse_input(ProductionRecordFilters, filters or {})
        query = self._records_query(record_filters)
        documents = await self.gateway.list(Collections.PRODUCTION_RECORDS, query)
        return [ProductionRecordResponse.model_validate(doc) for doc in documents]

    async def statistics(self, filters=None) -> ProductionStatistics:
        """Totals and metric averages over every record matching the filters."""
        record_filters = parse_input(ProductionRecordFilters, filters or {})
        query = self._records_query(record_filters).without_paging()
        records = [
            ProductionRecordResponse.model_validate(doc)
            for doc in await self.gateway.list(Collections.PRODUCTION_RECORDS, query)
        ]
        if not records:
            return ProductionStatistics()

        count = len(records)
        return ProductionStatistics(
            total_records=count,
            total_production=sum(r.good_production for r in records),
            total_waste=sum(r.film_waste + r.organic_waste for r in records),
            total_downtime=sum(r.downtime_minutes for r in records),
            total_planned_time=sum(r.planned_time for r in records),
            average_oee=sum(r.oee_calculated for r in records) / count,
            average_availability=sum(r.availability_calculated for r in records) / count,
            average_performance=sum(r.performance_calculated for r in records) / count,
            average_quality=sum(r.quality_calculated for r in records) / count
        )

    async def list_history(
        self,
        machine_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: Optional[int] = None
    ) -> List[OeeHistoryEntry]:
        """OEE history entries, newest first."""
        query = DocumentQuery(
            filters={"machine_id": machine_id} if machine_id else {},
            time_field="timestamp",
            start=start,
            end=end,
            order_by="timestamp",
            limit=limit
        )
        documents = await self.gateway.list(Collections.OEE_HISTORY, query)
        return [OeeHistoryEntry.model_validate(doc) for doc in documents]

    # Machine rollup

    async def rollup_machine(self, machine_id: str) -> Optional[MachineRollup]:
        """
        Recompute a machine's rolling metrics from its persisted records.

        Rollups for one machine run one at a time. Unregistered machines are
        skipped.
        """
        lock = self._rollup_locks.setdefault(machine_id, asyncio.Lock())
        self._rollup_users[machine_id] += 1
        try:
            async with lock:
                return await self._rollup_locked(machine_id)
        finally:
            # Drop the lock once nobody holds or waits for it
            self._rollup_users[machine_id] -= 1
            if not self._rollup_users[machine_id]:
                del self._rollup_users[machine_id]
                del self._rollup_locks[machine_id]

    async def _rollup_locked(self, machine_id: str) -> Optional[MachineRollup]:
        machine = await self.machine_service.get_machine_lookup(machine_id)
        if machine is None:
            logger.info("Machine not registered, skipping rollup", machine_id=machine_id)
            return None

        window_end = self.clock()
        window_start = window_end - timedelta(hours=self.rollup_policy.window_hours)
        records = await self.gateway.list(
            Collections.PRODUCTION_RECORDS,
            DocumentQuery(
                filters={"machine_id": machine_id},
                time_field="start_time",
                start=window_start,
                end=window_end
            )
        )

        rollup = self._compute_rollup(
            machine_id, machine.target_production, records, window_start, window_end
        )
        await self.machine_service.apply_rollup(rollup)
        self.metrics.machine_oee.labels(machine_id=machine_id).set(rollup.oee)

        logger.debug(
            "Machine rollup applied",
            machine_id=machine_id,
            oee=rollup.oee,
            records=rollup.record_count,
            synthetic=rollup.synthetic
        )
        return rollup

    def _compute_rollup(
        self,
        machine_id: str,
        target_production: float,
        records: List[Dict[str, Any]],
        window_start: datetime,
        window_end: datetime
    ) -> MachineRollup:
        if not records:
            good_production = self.rollup_policy.no_data_target_ratio * target_production
            metrics = calculate_oee_metrics(
                good_production=good_production,
                planned_time=self.rollup_policy.no_data_planned_time,
                downtime_minutes=self.rollup_policy.no_data_downtime,
                target_production=target_production
            )
            return MachineRollup(
                machine_id=machine_id,
                current_production=round(good_production),
                window_start=window_start,
                window_end=window_end,
                record_count=0,
                synthetic=True,
                **metrics.model_dump()
            )

        good_production = sum(float(r.get("good_production") or 0) for r in records)
        planned_time = sum(float(r.get("planned_time") or 0) for r in records)
        downtime = sum(float(r.get("downtime_minutes") or 0) for r in records)
        film_waste = sum(float(r.get("film_waste") or 0) for r in records)
        organic_waste = sum(float(r.get("organic_waste") or 0) for r in records)

        metrics = calculate_oee_metrics(
            good_production=good_production,
            planned_time=planned_time,
            downtime_minutes=downtime,
            target_production=target_production,
            quality=calculate_quality(good_production, film_waste, organic_waste)
        )
        return MachineRollup(
            machine_id=machine_id,
            current_production=good_production,
            window_start=window_start,
            window_end=window_end,
            record_count=len(records),
            synthetic=False,
            **metrics.model_dump()
        )

    # Helpers

    def _derive_metrics(self, record: ProductionRecordCreate) -> Dict[str, float]:
        metrics = calculate_record_metrics(
            good_production=record.good_production,
            film_waste=record.film_waste,
            organic_waste=record.organic_waste,
            planned_time=record.planned_time,
            downtime_minutes=record.downtime_minutes,
            policy=self.rate_policy
        )
        return {
            "availability_calculated": metrics.availability,
            "performance_calculated": metrics.performance,
            "quality_calculated": metrics.quality,
            "oee_calculated": metrics.oee,
        }

    async def _append_history(self, record: ProductionRecordResponse, timestamp: datetime) -> OeeHistoryEntry:
        entry = OeeHistoryEntry(
            id=str(uuid4()),
            machine_id=record.machine_id,
            production_record_id=record.id,
            timestamp=timestamp,
            oee=record.oee_calculated,
            availability=record.availability_calculated,
            performance=record.performance_calculated,
            quality=record.quality_calculated,
            good_production=record.good_production,
            total_waste=record.film_waste + record.organic_waste,
            downtime_minutes=record.downtime_minutes,
            planned_time=record.planned_time,
            shift=record.shift,
            operator_id=record.operator_id,
            created_at=self.clock()
        )
        await self.gateway.create(Collections.OEE_HISTORY, entry.model_dump(mode="json"))
        return entry

    @staticmethod
    def _records_query(record_filters: ProductionRecordFilters) -> DocumentQuery:
        filters = {
            name: getattr(record_filters, name)
            for name in ("machine_id", "shift", "operator_id", "material_code", "batch_number")
            if getattr(record_filters, name) is not None
        }
        return DocumentQuery(
            filters=filters,
            time_field="start_time",
            start=record_filters.start,
            end=record_filters.end,
            order_by="created_at",
            descending=True,
            limit=record_filters.limit,
            offset=record_filters.offset
        )
