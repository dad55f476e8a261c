"""
OEE Monitor - Services Package

This package contains the business services. ``build_services`` wires them
onto one gateway so the application and the tests share the same assembly.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from oee_monitor.models.production import utc_now
from oee_monitor.monitoring.application_metrics import ApplicationMetrics
from oee_monitor.persistence.gateway import HybridPersistenceGateway

from .alert_service import AlertService
from .downtime_service import DowntimeEventService
from .historical_analytics_service import HistoricalAnalyticsService
from .machine_service import MachineService
from .oee_calculator import ProductionRatePolicy
from .production_service import ProductionRecordService, RollupPolicy


@dataclass
class ServiceContainer:
    """Services sharing one persistence gateway."""

    gateway: HybridPersistenceGateway
    machines: MachineService
    production: ProductionRecordService
    downtime: DowntimeEventService
    alerts: AlertService
    analytics: HistoricalAnalyticsService


def build_services(
    gateway: HybridPersistenceGateway,
    settings,
    clock: Callable[[], datetime] = utc_now,
    metrics: Optional[ApplicationMetrics] = None
) -> ServiceContainer:
    """Assemble every service on top of a gateway."""
    machines = MachineService(gateway, clock=clock)
    downtime = DowntimeEventService(gateway, clock=clock)
    alerts = AlertService(gateway, clock=clock)
    production = ProductionRecordService(
        gateway,
        machines,
        rate_policy=ProductionRatePolicy.from_settings(settings),
        rollup_policy=RollupPolicy.from_settings(settings),
        plant_timezone=settings.PLANT_TIMEZONE,
        clock=clock,
        metrics=metrics or gateway.metrics
    )
    analytics = HistoricalAnalyticsService(
        gateway,
        downtime,
        alerts,
        plant_timezone=settings.PLANT_TIMEZONE,
        clock=clock
    )
    return ServiceContainer(
        gateway=gateway,
        machines=machines,
        production=production,
        downtime=downtime,
        alerts=alerts,
        analytics=analytics
    )


__all__ = [
    "AlertService",
    "DowntimeEventService",
    "HistoricalAnalyticsService",
    "MachineService",
    "ProductionRecordService",
    "ServiceContainer",
    "build_services",
]
