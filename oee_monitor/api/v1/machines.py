"""
OEE Monitor - Machine API Routes

This module provides API endpoints for the machine registry.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Response, status

from oee_monitor.api.dependencies import get_machine_service
from oee_monitor.models.production import MachineCreate, MachineResponse, MachineStatus, MachineUpdate
from oee_monitor.services.machine_service import MachineService

router = APIRouter()


@router.get("", response_model=List[MachineResponse])
async def list_machines(
    status_filter: Optional[MachineStatus] = Query(None, alias="status", description="Filter by status"),
    service: MachineService = Depends(get_machine_service)
) -> List[MachineResponse]:
    """List machines."""
    return await service.list_machines(status=status_filter)


@router.post("", response_model=MachineResponse, status_code=status.HTTP_201_CREATED)
async def create_machine(
    machine_data: MachineCreate,
    service: MachineService = Depends(get_machine_service)
) -> MachineResponse:
    """Register a machine."""
    return await service.create_machine(machine_data)


@router.get("/{machine_id}", response_model=MachineResponse)
async def get_machine(
    machine_id: str,
    service: MachineService = Depends(get_machine_service)
) -> MachineResponse:
    """Get a machine by ID."""
    return await service.get_machine(machine_id)


@router.put("/{machine_id}", response_model=MachineResponse)
async def update_machine(
    machine_id: str,
    update_data: MachineUpdate,
    service: MachineService = Depends(get_machine_service)
) -> MachineResponse:
    """Apply operator edits to a machine."""
    return await service.update_machine(machine_id, update_data)


@router.delete("/{machine_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_machine(
    machine_id: str,
    service: MachineService = Depends(get_machine_service)
) -> Response:
    """Delete a machine with its production records and OEE history."""
    await service.delete_machine(machine_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
