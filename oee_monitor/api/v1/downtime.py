"""
OEE Monitor - Downtime & Alert API Routes

This module provides API endpoints for downtime events and machine alerts.
"""

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status

from oee_monitor.api.dependencies import get_alert_service, get_downtime_service
from oee_monitor.models.production import (
    AlertCreate,
    AlertResponse,
    AlertSeverity,
    DowntimeEventCreate,
    DowntimeEventResponse,
)
from oee_monitor.services.alert_service import AlertService
from oee_monitor.services.downtime_service import DowntimeEventService

router = APIRouter()
alerts_router = APIRouter()


@router.post("/events", response_model=DowntimeEventResponse, status_code=status.HTTP_201_CREATED)
async def create_downtime_event(
    event_data: DowntimeEventCreate,
    service: DowntimeEventService = Depends(get_downtime_service)
) -> DowntimeEventResponse:
    """Record a downtime event."""
    return await service.create_event(event_data)


@router.get("/events", response_model=List[DowntimeEventResponse])
async def list_downtime_events(
    machine_id: Optional[str] = Query(None, description="Filter by machine"),
    start: Optional[datetime] = Query(None, description="Earliest start_time"),
    end: Optional[datetime] = Query(None, description="Latest start_time"),
    limit: int = Query(100, ge=1, le=1000),
    service: DowntimeEventService = Depends(get_downtime_service)
) -> List[DowntimeEventResponse]:
    """List downtime events, newest first."""
    return await service.list_events(machine_id=machine_id, start=start, end=end, limit=limit)


@alerts_router.post("", response_model=AlertResponse, status_code=status.HTTP_201_CREATED)
async def create_alert(
    alert_data: AlertCreate,
    service: AlertService = Depends(get_alert_service)
) -> AlertResponse:
    """Raise an alert."""
    return await service.create_alert(alert_data)


@alerts_router.get("", response_model=List[AlertResponse])
async def list_alerts(
    machine_id: Optional[str] = Query(None),
    severity: Optional[AlertSeverity] = Query(None),
    acknowledged: Optional[bool] = Query(None),
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    service: AlertService = Depends(get_alert_service)
) -> List[AlertResponse]:
    """List alerts, newest first."""
    return await service.list_alerts(
        machine_id=machine_id,
        severity=severity,
        acknowledged=acknowledged,
        start=start,
        end=end,
        limit=limit
    )


@alerts_router.post("/{alert_id}/acknowledge", response_model=AlertResponse)
async def acknowledge_alert(
    alert_id: str,
    service: AlertService = Depends(get_alert_service)
) -> AlertResponse:
    """Acknowledge an alert."""
    return await service.acknowledge_alert(alert_id)
