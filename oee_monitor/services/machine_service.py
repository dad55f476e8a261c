"""
OEE Monitor - Machine Service

Machine registry and the target of the per-machine OEE rollup.
"""

from typing import Callable, Dict, List, Optional
from datetime import datetime
from uuid import uuid4

import structlog

from oee_monitor.models.production import (
    MachineCreate,
    MachineLookup,
    MachineResponse,
    MachineRollup,
    MachineStatus,
    MachineUpdate,
    utc_now,
)
from oee_monitor.persistence.base import Collections, DocumentQuery
from oee_monitor.persistence.gateway import HybridPersistenceGateway
from oee_monitor.services.oee_calculator import clamp_percentage
from oee_monitor.utils.exceptions import ConflictError, NotFoundError, parse_input

logger = structlog.get_logger()

PERCENTAGE_FIELDS = ("oee", "availability", "performance", "quality")


class MachineService:
    """Service for machine management."""

    def __init__(self, gateway: HybridPersistenceGateway, clock: Callable[[], datetime] = utc_now):
        self.gateway = gateway
        self.clock = clock

    async def create_machine(self, machine_data) -> MachineResponse:
        """Register a new machine. Codes are unique and stored upper-case."""
        machine_in = parse_input(MachineCreate, machine_data)
        code = machine_in.code.strip().upper()

        existing = await self.gateway.count(
            Collections.MACHINES, DocumentQuery(filters={"code": code})
        )
        if existing:
            raise ConflictError("Machine with this code already exists", {"code": code})

        now = self.clock()
        machine = MachineResponse(
            id=str(uuid4()),
            code=code,
            name=machine_in.name,
            status=machine_in.status,
            target_production=machine_in.target_production,
            capacity=machine_in.capacity,
            created_at=now,
            updated_at=now
        )
        stored = await self.gateway.create(Collections.MACHINES, machine.model_dump(mode="json"))

        logger.info("Machine created", machine_id=machine.id, code=code)
        return MachineResponse.model_validate(stored)

    async def get_machine(self, machine_id: str) -> MachineResponse:
        """Get a machine by ID."""
        try:
            document = await self.gateway.get(Collections.MACHINES, machine_id)
        except NotFoundError:
            raise NotFoundError("Machine", machine_id)
        return MachineResponse.model_validate(document)

    async def get_machine_lookup(self, machine_id: str) -> Optional[MachineLookup]:
        """Target and status of a machine, or None when it is not registered."""
        try:
            machine = await self.get_machine(machine_id)
        except NotFoundError:
            return None
        return MachineLookup(
            id=machine.id,
            target_production=machine.target_production,
            status=machine.status
        )

    async def list_machines(self, status: Optional[MachineStatus] = None) -> List[MachineResponse]:
        """List machines, optionally by status, in code order."""
        filters = {}
        if status is not None:
            filters["status"] = MachineStatus(status).value
        documents = await self.gateway.list(Collections.MACHINES, DocumentQuery(filters=filters))
        machines = [MachineResponse.model_validate(doc) for doc in documents]
        return sorted(machines, key=lambda machine: machine.code)

    async def update_machine(self, machine_id: str, update_data) -> MachineResponse:
        """Apply operator edits to a machine."""
        changes = parse_input(MachineUpdate, update_data).model_dump(mode="json", exclude_unset=True)
        await self.get_machine(machine_id)

        for field in PERCENTAGE_FIELDS:
            if changes.get(field) is not None:
                changes[field] = clamp_percentage(changes[field])

        changes["updated_at"] = self._now_json()
        stored = await self.gateway.update(Collections.MACHINES, machine_id, changes)

        logger.info("Machine updated", machine_id=machine_id, fields=sorted(changes))
        return MachineResponse.model_validate(stored)

    async def delete_machine(self, machine_id: str) -> Dict[str, int]:
        """Delete a machine with its production records and OEE history.

        Returns how many documents were removed per collection.
        """
        machine = await self.get_machine(machine_id)

        removed = {}
        for collection in (Collections.OEE_HISTORY, Collections.PRODUCTION_RECORDS):
            documents = await self.gateway.list(
                collection, DocumentQuery(filters={"machine_id": machine_id})
            )
            removed[collection] = 0
            for document in documents:
                try:
                    await self.gateway.delete(collection, document["id"])
                except NotFoundError:
                    continue
                removed[collection] += 1

        await self.gateway.delete(Collections.MACHINES, machine_id)

        logger.info("Machine deleted", machine_id=machine_id, code=machine.code, removed=removed)
        return removed

    async def apply_rollup(self, rollup: MachineRollup) -> MachineResponse:
        """Write rolling metrics onto the machine."""
        now = self._now_json()
        changes = {
            "oee": rollup.oee,
            "availability": rollup.availability,
            "performance": rollup.performance,
            "quality": rollup.quality,
            "current_production": rollup.current_production,
            "metrics_synthetic": rollup.synthetic,
            "last_production_update": now,
            "updated_at": now,
        }
        try:
            stored = await self.gateway.update(Collections.MACHINES, rollup.machine_id, changes)
        except NotFoundError:
            raise NotFoundError("Machine", rollup.machine_id)
        return MachineResponse.model_validate(stored)

    def _now_json(self) -> str:
        return self.clock().isoformat()
