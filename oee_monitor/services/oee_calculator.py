"""
OEE Monitor - OEE Calculator Service

This module provides the pure OEE (Overall Equipment Effectiveness) arithmetic.
OEE is calculated as Availability × Performance × Quality.

Nothing here performs I/O; the repository and rollup call into these functions
and persist the results.
"""

from dataclasses import dataclass
from typing import Optional

from oee_monitor.models.production import OEEMetrics


def clamp_percentage(value: float) -> float:
    """Clamp a value into [0, 100]."""
    return max(0.0, min(100.0, float(value)))


def calculate_oee_metrics(
    good_production: float,
    planned_time: float,
    downtime_minutes: float,
    target_production: float,
    quality: float = 100.0
) -> OEEMetrics:
    """
    Calculate OEE from production counts and times.

    OEE = Availability × Performance × Quality

    Where:
    - Availability = (Actual Runtime / Planned Time) × 100
    - Performance = (Good Production / Expected Production) × 100, capped at 100
    - Expected Production = Target Production × Actual Runtime / Planned Time

    All outputs are clamped to [0, 100]. Zero planned time or zero target
    yields zero availability and performance instead of an error.
    """
    actual_runtime = planned_time - downtime_minutes

    availability = (actual_runtime / planned_time) * 100 if planned_time > 0 else 0.0

    performance = 0.0
    if planned_time > 0 and actual_runtime > 0 and target_production > 0:
        expected_production = target_production * actual_runtime / planned_time
        performance = min((good_production / expected_production) * 100, 100.0)

    availability = clamp_percentage(availability)
    performance = clamp_percentage(performance)
    quality = clamp_percentage(quality)
    oee = clamp_percentage(availability * performance * quality / 10000)

    return OEEMetrics(
        oee=oee,
        availability=availability,
        performance=performance,
        quality=quality
    )


def calculate_quality(good_production: float, film_waste: float, organic_waste: float) -> float:
    """Quality as good / (good + waste) × 100; 100 when nothing was produced."""
    total_output = good_production + film_waste + organic_waste
    if total_output <= 0:
        return 100.0
    return clamp_percentage((good_production / total_output) * 100)


@dataclass(frozen=True)
class ProductionRatePolicy:
    """Nominal line rate used to derive a record's target from its planned time."""

    production_rate: float = 65.0  # units per minute
    expected_efficiency: float = 0.85

    @classmethod
    def from_settings(cls, settings) -> "ProductionRatePolicy":
        return cls(
            production_rate=settings.DEFAULT_PRODUCTION_RATE,
            expected_efficiency=settings.EXPECTED_EFFICIENCY
        )

    def target_for(self, planned_time: float) -> float:
        return planned_time * self.production_rate * self.expected_efficiency


def calculate_record_metrics(
    good_production: float,
    film_waste: float,
    organic_waste: float,
    planned_time: float,
    downtime_minutes: float,
    policy: Optional[ProductionRatePolicy] = None
) -> OEEMetrics:
    """Derive the metrics stored on a single production record."""
    policy = policy or ProductionRatePolicy()
    quality = calculate_quality(good_production, film_waste, organic_waste)
    return calculate_oee_metrics(
        good_production=good_production,
        planned_time=planned_time,
        downtime_minutes=downtime_minutes,
        target_production=policy.target_for(planned_time),
        quality=quality
    )
