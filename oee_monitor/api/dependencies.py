"""
OEE Monitor - API Dependencies

FastAPI dependencies resolving the services attached to the application at
startup.
"""

from fastapi import Request

from oee_monitor.services import (
    AlertService,
    DowntimeEventService,
    HistoricalAnalyticsService,
    MachineService,
    ProductionRecordService,
    ServiceContainer,
)


def get_services(request: Request) -> ServiceContainer:
    return request.app.state.services


def get_machine_service(request: Request) -> MachineService:
    return get_services(request).machines


def get_production_service(request: Request) -> ProductionRecordService:
    return get_services(request).production


def get_downtime_service(request: Request) -> DowntimeEventService:
    return get_services(request).downtime


def get_alert_service(request: Request) -> AlertService:
    return get_services(request).alerts


def get_analytics_service(request: Request) -> HistoricalAnalyticsService:
    return get_services(request).analytics
