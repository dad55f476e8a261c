"""
OEE Monitor - Production Record API Routes

This module provides API endpoints for production records: CRUD, upsert and
statistics. Derived OEE metrics are always computed server-side.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, Query, Response, status
import structlog

from oee_monitor.api.dependencies import get_production_service
from oee_monitor.models.production import (
    ProductionRecordCreate,
    ProductionRecordResponse,
    ProductionRecordUpdate,
    ProductionRecordUpsertResponse,
    ProductionStatistics,
    UpsertAction,
)
from oee_monitor.services.production_service import ProductionRecordService

logger = structlog.get_logger()

router = APIRouter()


@router.post("/records", response_model=ProductionRecordResponse, status_code=status.HTTP_201_CREATED)
async def create_production_record(
    record_data: ProductionRecordCreate,
    service: ProductionRecordService = Depends(get_production_service)
) -> ProductionRecordResponse:
    """Create a production record."""
    return await service.create(record_data)


@router.post("/records/upsert", response_model=ProductionRecordUpsertResponse)
async def upsert_production_record(
    response: Response,
    payload: Dict[str, Any] = Body(..., description="Record fields, with an id to update an existing record"),
    service: ProductionRecordService = Depends(get_production_service)
) -> ProductionRecordUpsertResponse:
    """Create a production record, or update it when the payload carries an id."""
    record, action = await service.upsert(payload)
    if action == UpsertAction.CREATED:
        response.status_code = status.HTTP_201_CREATED
    return ProductionRecordUpsertResponse(**record.model_dump(), action=action)


@router.get("/records", response_model=List[ProductionRecordResponse])
async def list_production_records(
    machine_id: Optional[str] = Query(None, description="Filter by machine"),
    start: Optional[datetime] = Query(None, description="Earliest start_time"),
    end: Optional[datetime] = Query(None, description="Latest start_time"),
    shift: Optional[str] = Query(None),
    operator_id: Optional[str] = Query(None),
    material_code: Optional[str] = Query(None),
    batch_number: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=1000, description="Number of records to return"),
    offset: int = Query(0, ge=0, description="Number of records to skip"),
    service: ProductionRecordService = Depends(get_production_service)
) -> List[ProductionRecordResponse]:
    """List production records, newest first."""
    return await service.list({
        "machine_id": machine_id,
        "start": start,
        "end": end,
        "shift": shift,
        "operator_id": operator_id,
        "material_code": material_code,
        "batch_number": batch_number,
        "limit": limit,
        "offset": offset,
    })


@router.get("/records/{record_id}", response_model=ProductionRecordResponse)
async def get_production_record(
    record_id: str,
    service: ProductionRecordService = Depends(get_production_service)
) -> ProductionRecordResponse:
    """Get a production record by ID."""
    return await service.get(record_id)


@router.put("/records/{record_id}", response_model=ProductionRecordResponse)
async def update_production_record(
    record_id: str,
    update_data: ProductionRecordUpdate,
    service: ProductionRecordService = Depends(get_production_service)
) -> ProductionRecordResponse:
    """Update a production record."""
    return await service.update(record_id, update_data)


@router.delete("/records/{record_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_production_record(
    record_id: str,
    service: ProductionRecordService = Depends(get_production_service)
) -> Response:
    """Delete a production record and its OEE history."""
    await service.delete(record_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/statistics", response_model=ProductionStatistics)
async def get_production_statistics(
    machine_id: Optional[str] = Query(None),
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    shift: Optional[str] = Query(None),
    service: ProductionRecordService = Depends(get_production_service)
) -> ProductionStatistics:
    """Totals and averages over the matching production records."""
    return await service.statistics({
        "machine_id": machine_id,
        "start": start,
        "end": end,
        "shift": shift,
    })
