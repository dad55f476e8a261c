"""
OEE Monitor - Downtime Event Service

Records unplanned stops per machine. Events feed the downtime breakdown, MTBF
and risk figures of the historical analytics.
"""

from datetime import datetime
from typing import Callable, List, Optional
from uuid import uuid4

import structlog

from oee_monitor.models.production import DowntimeEventCreate, DowntimeEventResponse, utc_now
from oee_monitor.persistence.base import Collections, DocumentQuery
from oee_monitor.persistence.gateway import HybridPersistenceGateway
from oee_monitor.utils.exceptions import parse_input

logger = structlog.get_logger()


class DowntimeEventService:
    """Service for downtime event tracking."""

    def __init__(self, gateway: HybridPersistenceGateway, clock: Callable[[], datetime] = utc_now):
        self.gateway = gateway
        self.clock = clock

    async def create_event(self, event_data) -> DowntimeEventResponse:
        """Record a downtime event. Minutes are derived from end_time when omitted."""
        event_in = parse_input(DowntimeEventCreate, event_data)
        event = DowntimeEventResponse(
            id=str(uuid4()),
            created_at=self.clock(),
            **event_in.model_dump()
        )
        stored = await self.gateway.create(Collections.DOWNTIME_EVENTS, event.model_dump(mode="json"))

        logger.info(
            "Downtime event recorded",
            event_id=event.id,
            machine_id=event.machine_id,
            reason=event.reason,
            minutes=event.minutes
        )
        return DowntimeEventResponse.model_validate(stored)

    async def list_events(
        self,
        machine_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: Optional[int] = None
    ) -> List[DowntimeEventResponse]:
        """List downtime events by start time, newest first."""
        query = DocumentQuery(
            filters={"machine_id": machine_id} if machine_id else {},
            time_field="start_time",
            start=start,
            end=end,
            order_by="start_time",
            limit=limit
        )
        documents = await self.gateway.list(Collections.DOWNTIME_EVENTS, query)
        return [DowntimeEventResponse.model_validate(doc) for doc in documents]
