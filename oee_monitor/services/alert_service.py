"""
OEE Monitor - Alert Service

Machine alerts raised by operators or integrations. Critical alerts count
towards the monthly risk analysis.
"""

from datetime import datetime
from typing import Callable, List, Optional
from uuid import uuid4

import structlog

from oee_monitor.models.production import AlertCreate, AlertResponse, AlertSeverity, utc_now
from oee_monitor.persistence.base import Collections, DocumentQuery
from oee_monitor.persistence.gateway import HybridPersistenceGateway
from oee_monitor.utils.exceptions import NotFoundError, parse_input

logger = structlog.get_logger()


class AlertService:
    """Service for machine alerts."""

    def __init__(self, gateway: HybridPersistenceGateway, clock: Callable[[], datetime] = utc_now):
        self.gateway = gateway
        self.clock = clock

    async def create_alert(self, alert_data) -> AlertResponse:
        """Raise an alert."""
        alert_in = parse_input(AlertCreate, alert_data)
        alert = AlertResponse(
            id=str(uuid4()),
            created_at=self.clock(),
            **alert_in.model_dump()
        )
        stored = await self.gateway.create(Collections.ALERTS, alert.model_dump(mode="json"))

        log = logger.warning if alert.severity == AlertSeverity.CRITICAL else logger.info
        log("Alert raised", alert_id=alert.id, machine_id=alert.machine_id, severity=alert.severity)
        return AlertResponse.model_validate(stored)

    async def list_alerts(
        self,
        machine_id: Optional[str] = None,
        severity: Optional[AlertSeverity] = None,
        acknowledged: Optional[bool] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: Optional[int] = None
    ) -> List[AlertResponse]:
        """List alerts, newest first."""
        filters = {}
        if machine_id:
            filters["machine_id"] = machine_id
        if severity is not None:
            filters["severity"] = AlertSeverity(severity).value
        if acknowledged is not None:
            filters["acknowledged"] = acknowledged

        query = DocumentQuery(
            filters=filters,
            time_field="created_at",
            start=start,
            end=end,
            limit=limit
        )
        documents = await self.gateway.list(Collections.ALERTS, query)
        return [AlertResponse.model_validate(doc) for doc in documents]

    async def acknowledge_alert(self, alert_id: str) -> AlertResponse:
        """Mark an alert acknowledged. Acknowledging twice keeps the first timestamp."""
        try:
            current = AlertResponse.model_validate(await self.gateway.get(Collections.ALERTS, alert_id))
        except NotFoundError:
            raise NotFoundError("Alert", alert_id)

        if current.acknowledged:
            return current

        stored = await self.gateway.update(
            Collections.ALERTS,
            alert_id,
            {"acknowledged": True, "acknowledged_at": self.clock().isoformat()}
        )
        logger.info("Alert acknowledged", alert_id=alert_id)
        return AlertResponse.model_validate(stored)
