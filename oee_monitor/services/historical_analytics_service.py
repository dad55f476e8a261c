"""
OEE Monitor - Historical Analytics Service

This module builds the monthly analytics report for one machine or the whole
plant: metric averages and trend, downtime breakdown and MTBF, month-over-month
productivity, daily variation and a risk assessment with recommendations.

Every figure degrades to zero when its source has no data; those zeros feed the
risk triggers and opportunities like any measured value.
"""

import calendar
from collections import defaultdict
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo

import numpy as np
import structlog

from oee_monitor.models.production import (
    AlertSeverity,
    DailyOEEPoint,
    DowntimeCategoryBreakdown,
    DowntimeEventResponse,
    HistoricalAnalytics,
    ImprovementOpportunity,
    MonthlyProductivity,
    OeeHistoryEntry,
    PerformanceVariations,
    ProductionRecordResponse,
    ProductivityTrend,
    RiskAnalysis,
    RiskLevel,
    utc_now,
)
from oee_monitor.persistence.base import Collections, DocumentQuery
from oee_monitor.persistence.gateway import HybridPersistenceGateway
from oee_monitor.services.alert_service import AlertService
from oee_monitor.services.downtime_service import DowntimeEventService

logger = structlog.get_logger()

DEFAULT_DOWNTIME_CATEGORY = "other"

# Improvement opportunity thresholds and the share of the shortfall deemed recoverable
AVAILABILITY_TARGET = 85.0
PERFORMANCE_TARGET = 90.0
QUALITY_TARGET = 95.0
AVAILABILITY_MULTIPLIER = 0.7
PERFORMANCE_MULTIPLIER = 0.8
QUALITY_MULTIPLIER = 0.9

PRODUCTIVITY_CHANGE_THRESHOLD = 5.0  # percent
SIGNIFICANT_VARIATION = 20.0  # percent
RISK_VARIATION = 30.0  # percent
RISK_OEE = 70.0
RISK_DOWNTIME_HOURS = 100.0


def _mean(values: List[float]) -> float:
    return float(np.mean(values)) if values else 0.0


def month_bounds(moment: datetime, tz: ZoneInfo) -> Tuple[datetime, datetime, int]:
    """Local start of the month containing ``moment``, start of the next month, day count."""
    local = moment.astimezone(tz)
    start = local.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    days = calendar.monthrange(start.year, start.month)[1]
    return start, start + timedelta(days=days), days


class HistoricalAnalyticsService:
    """Service for monthly historical analytics."""

    def __init__(
        self,
        gateway: HybridPersistenceGateway,
        downtime_service: DowntimeEventService,
        alert_service: AlertService,
        plant_timezone: str = "UTC",
        clock: Callable[[], datetime] = utc_now
    ):
        self.gateway = gateway
        self.downtime_service = downtime_service
        self.alert_service = alert_service
        self.tz = ZoneInfo(plant_timezone)
        self.clock = clock

    async def get_historical_analytics(self, machine_id: Optional[str] = None) -> HistoricalAnalytics:
        """Build the analytics report for the current calendar month."""
        now = self.clock()
        month_start, next_month_start, days_in_month = month_bounds(now, self.tz)
        previous_start, _, _ = month_bounds(month_start - timedelta(days=1), self.tz)

        period_start = month_start.astimezone(timezone.utc)
        period_end = next_month_start.astimezone(timezone.utc) - timedelta(microseconds=1)
        previous_start_utc = previous_start.astimezone(timezone.utc)
        previous_end = period_start - timedelta(microseconds=1)

        history = await self._history(machine_id, period_start, period_end)
        records = await self._records(machine_id, period_start, period_end)
        previous_records = await self._records(machine_id, previous_start_utc, previous_end)
        downtime_events = await self.downtime_service.list_events(
            machine_id=machine_id, start=period_start, end=period_end
        )
        critical_alerts = await self.alert_service.list_alerts(
            machine_id=machine_id, severity=AlertSeverity.CRITICAL, start=period_start, end=period_end
        )

        avg_oee = _mean([entry.oee for entry in history])
        avg_availability = _mean([entry.availability for entry in history])
        avg_performance = _mean([entry.performance for entry in history])
        avg_quality = _mean([entry.quality for entry in history])

        total_production = sum(record.good_production for record in records)
        total_planned_time = sum(record.planned_time for record in records)
        total_downtime_hours = sum(event.minutes for event in downtime_events) / 60
        mtbf_hours = total_planned_time / len(downtime_events) / 60 if downtime_events else 0.0

        daily_production = self._daily_production(records, month_start.date(), days_in_month)
        monthly_productivity = self.calculate_monthly_productivity(
            total_production, sum(record.good_production for record in previous_records)
        )
        performance_variations = self.calculate_performance_variations(list(daily_production.values()))

        analytics = HistoricalAnalytics(
            machine_id=machine_id,
            period_start=period_start,
            period_end=period_end,
            generated_at=now,
            avg_oee=round(avg_oee, 2),
            avg_availability=round(avg_availability, 2),
            avg_performance=round(avg_performance, 2),
            avg_quality=round(avg_quality, 2),
            total_production=total_production,
            total_planned_time=total_planned_time,
            total_downtime_hours=round(total_downtime_hours, 2),
            downtime_events=len(downtime_events),
            mtbf_hours=round(mtbf_hours, 2),
            trend=round(self.calculate_trend(history), 2),
            critical_alerts=len(critical_alerts),
            downtime_by_category=self.calculate_downtime_by_category(downtime_events),
            oee_history=self._daily_oee(history, month_start.date(), days_in_month),
            improvement_opportunities=self.calculate_improvement_opportunities(
                avg_availability, avg_performance, avg_quality
            ),
            monthly_productivity=monthly_productivity,
            performance_variations=performance_variations,
            risk_analysis=self.calculate_risk(
                monthly_productivity,
                performance_variations,
                avg_oee,
                total_downtime_hours
            )
        )

        logger.info(
            "Historical analytics generated",
            machine_id=machine_id,
            history_entries=len(history),
            records=len(records),
            downtime_events=len(downtime_events),
            risk_level=analytics.risk_analysis.risk_level
        )
        return analytics

    # Sources

    async def _history(self, machine_id, start, end) -> List[OeeHistoryEntry]:
        query = DocumentQuery(
            filters={"machine_id": machine_id} if machine_id else {},
            time_field="timestamp",
            start=start,
            end=end,
            order_by="timestamp",
            descending=False
        )
        documents = await self.gateway.list(Collections.OEE_HISTORY, query)
        return [OeeHistoryEntry.model_validate(doc) for doc in documents]

    async def _records(self, machine_id, start, end) -> List[ProductionRecordResponse]:
        query = DocumentQuery(
            filters={"machine_id": machine_id} if machine_id else {},
            time_field="start_time",
            start=start,
            end=end,
            order_by="start_time",
            descending=False
        )
        documents = await self.gateway.list(Collections.PRODUCTION_RECORDS, query)
        return [ProductionRecordResponse.model_validate(doc) for doc in documents]

    # Calculations

    @staticmethod
    def calculate_trend(history: List[OeeHistoryEntry]) -> float:
        """Average OEE of the later half minus the earlier half."""
        ordered = sorted(history, key=lambda entry: entry.timestamp)
        middle = len(ordered) // 2
        first_half = [entry.oee for entry in ordered[:middle]]
        second_half = [entry.oee for entry in ordered[middle:]]
        return _mean(second_half) - _mean(first_half)

    @staticmethod
    def calculate_downtime_by_category(
        events: List[DowntimeEventResponse]
    ) -> List[DowntimeCategoryBreakdown]:
        """Downtime hours per category, largest first, with each category's share."""
        minutes_by_category: Dict[str, float] = defaultdict(float)
        for event in events:
            minutes_by_category[event.category or DEFAULT_DOWNTIME_CATEGORY] += event.minutes

        total_hours = sum(minutes_by_category.values()) / 60
        breakdown = []
        for category, minutes in minutes_by_category.items():
            hours = minutes / 60
            percentage = hours / total_hours * 100 if total_hours > 0 else 0.0
            breakdown.append(DowntimeCategoryBreakdown(
                category=category,
                total_hours=round(hours, 2),
                percentage=round(percentage, 2)
            ))
        return sorted(breakdown, key=lambda item: item.total_hours, reverse=True)

    @staticmethod
    def calculate_monthly_productivity(current_month: float, previous_month: float) -> MonthlyProductivity:
        """Month-over-month change in good production."""
        change = (current_month - previous_month) / previous_month * 100 if previous_month > 0 else 0.0

        if change >= PRODUCTIVITY_CHANGE_THRESHOLD:
            trend = ProductivityTrend.IMPROVEMENT
        elif change <= -PRODUCTIVITY_CHANGE_THRESHOLD:
            trend = ProductivityTrend.DECLINE
        else:
            trend = ProductivityTrend.STABLE

        return MonthlyProductivity(
            current_month=current_month,
            previous_month=previous_month,
            percentage_change=round(change, 2),
            trend=trend
        )

    @staticmethod
    def calculate_performance_variations(daily_production: List[float]) -> PerformanceVariations:
        """Deviation of each producing day from the mean producing day."""
        producing_days = np.array([value for value in daily_production if value > 0], dtype=float)
        if producing_days.size == 0:
            return PerformanceVariations(
                has_significant_variations=False,
                max_variation=0.0,
                variation_days=0,
                average_daily_production=0.0
            )

        mean = float(np.mean(producing_days))
        deviations = np.abs(producing_days - mean) / mean * 100
        max_variation = float(np.max(deviations))

        return PerformanceVariations(
            has_significant_variations=max_variation > SIGNIFICANT_VARIATION,
            max_variation=round(max_variation, 2),
            variation_days=int(np.count_nonzero(deviations > SIGNIFICANT_VARIATION)),
            average_daily_production=round(mean, 2)
        )

    @staticmethod
    def calculate_improvement_opportunities(
        availability: float,
        performance: float,
        quality: float
    ) -> List[ImprovementOpportunity]:
        """Opportunities for each metric below its target."""
        opportunities = []
        if availability < AVAILABILITY_TARGET:
            opportunities.append(ImprovementOpportunity(
                area="Availability",
                suggestion="Reduce unplanned stops and shorten changeovers",
                potential=round((AVAILABILITY_TARGET - availability) * AVAILABILITY_MULTIPLIER, 2)
            ))
        if performance < PERFORMANCE_TARGET:
            opportunities.append(ImprovementOpportunity(
                area="Performance",
                suggestion="Run closer to nominal speed and remove micro-stops",
                potential=round((PERFORMANCE_TARGET - performance) * PERFORMANCE_MULTIPLIER, 2)
            ))
        if quality < QUALITY_TARGET:
            opportunities.append(ImprovementOpportunity(
                area="Quality",
                suggestion="Cut film and organic waste at the source",
                potential=round((QUALITY_TARGET - quality) * QUALITY_MULTIPLIER, 2)
            ))
        return opportunities

    @staticmethod
    def calculate_risk(
        monthly_productivity: MonthlyProductivity,
        performance_variations: PerformanceVariations,
        avg_oee: float,
        total_downtime_hours: float
    ) -> RiskAnalysis:
        """
        Risk level from four independent triggers.

        High when OEE is below target or two or more triggers fire, medium for
        a single trigger, low otherwise.
        """
        factors: List[str] = []
        recommendations: List[str] = []

        if monthly_productivity.trend == ProductivityTrend.DECLINE:
            factors.append(
                f"Production fell {abs(monthly_productivity.percentage_change):.1f}% versus last month"
            )
            recommendations.append("Review changes in staffing, materials and setups since last month")

        if performance_variations.max_variation > RISK_VARIATION:
            factors.append(
                f"Daily production varies up to {performance_variations.max_variation:.1f}% from the mean"
            )
            recommendations.append("Standardize shift procedures to stabilize daily output")

        oee_below_target = avg_oee < RISK_OEE
        if oee_below_target:
            factors.append(f"Average OEE {avg_oee:.1f}% is below {RISK_OEE:.0f}%")
            recommendations.append("Prioritize the largest OEE loss from the improvement opportunities")

        if total_downtime_hours > RISK_DOWNTIME_HOURS:
            factors.append(f"{total_downtime_hours:.1f} hours of downtime this month")
            recommendations.append("Schedule preventive maintenance on the top downtime categories")

        if oee_below_target or len(factors) >= 2:
            level = RiskLevel.HIGH
        elif len(factors) == 1:
            level = RiskLevel.MEDIUM
        else:
            level = RiskLevel.LOW

        return RiskAnalysis(risk_level=level, factors=factors, recommendations=recommendations)

    # Daily series

    def _local_date(self, moment: datetime) -> date:
        return moment.astimezone(self.tz).date()

    def _daily_production(
        self,
        records: List[ProductionRecordResponse],
        first_day: date,
        days: int
    ) -> Dict[date, float]:
        daily = {first_day + timedelta(days=offset): 0.0 for offset in range(days)}
        for record in records:
            day = self._local_date(record.start_time)
            if day in daily:
                daily[day] += record.good_production
        return daily

    def _daily_oee(self, history: List[OeeHistoryEntry], first_day: date, days: int) -> List[DailyOEEPoint]:
        by_day: Dict[date, List[OeeHistoryEntry]] = defaultdict(list)
        for entry in history:
            by_day[self._local_date(entry.timestamp)].append(entry)

        points = []
        for offset in range(days):
            day = first_day + timedelta(days=offset)
            entries = by_day.get(day, [])
            points.append(DailyOEEPoint(
                day=day,
                oee=round(_mean([e.oee for e in entries]), 2),
                availability=round(_mean([e.availability for e in entries]), 2),
                performance=round(_mean([e.performance for e in entries]), 2),
                quality=round(_mean([e.quality for e in entries]), 2)
            ))
        return points
