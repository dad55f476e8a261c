"""
OEE Monitor - OEE & Analytics API Routes

This module provides API endpoints for ad-hoc OEE calculations, the OEE
history and the monthly historical analytics.
"""

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
import structlog

from oee_monitor.api.dependencies import get_analytics_service, get_production_service
from oee_monitor.models.production import (
    HistoricalAnalytics,
    OEECalculationRequest,
    OEEMetrics,
    OeeHistoryEntry,
)
from oee_monitor.services.historical_analytics_service import HistoricalAnalyticsService
from oee_monitor.services.oee_calculator import calculate_oee_metrics
from oee_monitor.services.production_service import ProductionRecordService

logger = structlog.get_logger()

router = APIRouter()
analytics_router = APIRouter()


@router.post("/calculate", response_model=OEEMetrics)
async def calculate_oee(request: OEECalculationRequest) -> OEEMetrics:
    """Calculate OEE from production counts and times."""
    metrics = calculate_oee_metrics(
        good_production=request.good_production,
        planned_time=request.planned_time,
        downtime_minutes=request.downtime_minutes,
        target_production=request.target_production,
        quality=request.quality if request.quality is not None else 100.0
    )
    logger.debug("OEE calculated via API", oee=metrics.oee)
    return metrics


@router.get("/history", response_model=List[OeeHistoryEntry])
async def get_oee_history(
    machine_id: Optional[str] = Query(None, description="Filter by machine"),
    start: Optional[datetime] = Query(None, description="Earliest timestamp"),
    end: Optional[datetime] = Query(None, description="Latest timestamp"),
    limit: int = Query(100, ge=1, le=1000, description="Number of entries to return"),
    service: ProductionRecordService = Depends(get_production_service)
) -> List[OeeHistoryEntry]:
    """Get OEE history entries, newest first."""
    return await service.list_history(machine_id=machine_id, start=start, end=end, limit=limit)


@analytics_router.get("/historical", response_model=HistoricalAnalytics)
async def get_historical_analytics(
    machine_id: Optional[str] = Query(None, description="Machine to analyse; whole plant when omitted"),
    service: HistoricalAnalyticsService = Depends(get_analytics_service)
) -> HistoricalAnalytics:
    """Monthly analytics for the current calendar month."""
    return await service.get_historical_analytics(machine_id)
