"""
OEE Monitor - Production Models

This module defines Pydantic models for the OEE core: machines, production
records, OEE history snapshots, downtime events, alerts and the computed
analytics objects.
"""

from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Annotated, List, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, model_validator


def ensure_utc(value: datetime) -> datetime:
    """Normalize a datetime to timezone-aware UTC. Naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


UtcDatetime = Annotated[datetime, AfterValidator(ensure_utc)]
Percentage = Annotated[float, Field(ge=0, le=100)]


def run_duration_minutes(start_time: datetime, end_time: datetime) -> float:
    """Duration of a run in minutes; a run that crosses midnight wraps by +24h."""
    minutes = (end_time - start_time).total_seconds() / 60
    if minutes < 0:
        minutes += 24 * 60
    return minutes


def check_run_window(start_time: datetime, end_time: datetime) -> None:
    """Raise ValueError when end_time does not follow start_time."""
    if end_time == start_time:
        raise ValueError("end_time must be after start_time")
    if end_time < start_time:
        # Only an overnight run may end "before" it started
        if end_time.date() == start_time.date() or start_time - end_time >= timedelta(hours=24):
            raise ValueError("end_time must be after start_time")


# Enums for status and types
class MachineStatus(str, Enum):
    """Machine lifecycle status enumeration."""
    ACTIVE = "active"
    MAINTENANCE = "maintenance"
    STOPPED = "stopped"
    INACTIVE = "inactive"


class AlertSeverity(str, Enum):
    """Alert severity enumeration."""
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class RiskLevel(str, Enum):
    """Risk level enumeration, ordered low < medium < high."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _RISK_RANK[self]


_RISK_RANK = {RiskLevel.LOW: 0, RiskLevel.MEDIUM: 1, RiskLevel.HIGH: 2}


class ProductivityTrend(str, Enum):
    """Month-over-month productivity trend."""
    IMPROVEMENT = "improvement"
    DECLINE = "decline"
    STABLE = "stable"


class UpsertAction(str, Enum):
    """Outcome of an upsert."""
    CREATED = "created"
    UPDATED = "updated"


# Base models
class BaseOEEModel(BaseModel):
    """Base model for OEE entities."""

    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


class BaseInputModel(BaseOEEModel):
    """Base model for caller input. Unknown fields are rejected."""

    model_config = ConfigDict(extra="forbid")


# OEE Metrics
class OEEMetrics(BaseOEEModel):
    """The four OEE figures, each in [0, 100]."""
    oee: Percentage
    availability: Percentage
    performance: Percentage
    quality: Percentage


class OEECalculationRequest(BaseInputModel):
    """Model for an ad-hoc OEE calculation."""
    good_production: float = Field(..., ge=0)
    planned_time: float = Field(..., ge=0, description="Planned time in minutes")
    downtime_minutes: float = Field(..., ge=0)
    target_production: float = Field(..., ge=1)
    quality: Optional[Percentage] = Field(None, description="Quality override, defaults to 100")


# Machine Models
class MachineCreate(BaseInputModel):
    """Model for registering a machine."""
    code: str = Field(..., min_length=1, max_length=50, description="Unique machine code")
    name: str = Field(..., min_length=1, max_length=100, description="Machine name")
    status: MachineStatus = MachineStatus.ACTIVE
    target_production: float = Field(1, ge=1, description="Target production per planned period")
    capacity: float = Field(1000, ge=1)


class MachineUpdate(BaseInputModel):
    """Model for operator edits on a machine."""
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    status: Optional[MachineStatus] = None
    target_production: Optional[float] = Field(None, ge=1)
    capacity: Optional[float] = Field(None, ge=1)
    # Percentages outside [0, 100] are clamped by the service
    oee: Optional[float] = None
    availability: Optional[float] = None
    performance: Optional[float] = None
    quality: Optional[float] = None
    current_production: Optional[float] = Field(None, ge=0)


class MachineResponse(BaseOEEModel):
    """Model for machine response."""
    id: str
    code: str
    name: str
    status: MachineStatus
    oee: Percentage = 0
    availability: Percentage = 0
    performance: Percentage = 0
    quality: Percentage = 100
    current_production: float = 0
    target_production: float = Field(1, ge=1)
    capacity: float = 1000
    metrics_synthetic: bool = False
    last_production_update: Optional[UtcDatetime] = None
    created_at: UtcDatetime
    updated_at: UtcDatetime


class MachineLookup(BaseOEEModel):
    """What the rollup needs to know about a machine."""
    id: str
    target_production: float = Field(..., ge=1)
    status: MachineStatus


class MachineRollup(BaseOEEModel):
    """Rolling machine metrics recomputed from persisted records."""
    machine_id: str
    oee: Percentage
    availability: Percentage
    performance: Percentage
    quality: Percentage
    current_production: float
    window_start: UtcDatetime
    window_end: UtcDatetime
    record_count: int
    synthetic: bool = Field(False, description="True when no records existed and the no-data default was used")


# Production Record Models
class ProductionRecordFields(BaseInputModel):
    """Caller-supplied fields of a production run."""
    machine_id: str = Field(..., min_length=1)
    start_time: UtcDatetime
    end_time: UtcDatetime
    good_production: float = Field(..., ge=0)
    film_waste: float = Field(0, ge=0, description="Film waste in units")
    organic_waste: float = Field(0, ge=0, description="Organic waste mass")
    planned_time: float = Field(..., ge=0, description="Planned time in minutes")
    downtime_minutes: float = Field(..., ge=0)
    downtime_reason: Optional[str] = None
    material_code: Optional[str] = None
    shift: Optional[str] = None
    operator_id: Optional[str] = None
    batch_number: Optional[str] = None
    notes: Optional[str] = Field(None, max_length=1000)
    quality_check: Optional[bool] = None
    temperature: Optional[float] = None
    pressure: Optional[float] = None
    speed: Optional[float] = None


class ProductionRecordCreate(ProductionRecordFields):
    """Model for creating a production record."""

    @model_validator(mode="after")
    def validate_run_window(self):
        """Validate that the run ends after it starts."""
        check_run_window(self.start_time, self.end_time)
        return self

    @property
    def run_duration_minutes(self) -> float:
        return run_duration_minutes(self.start_time, self.end_time)


class ProductionRecordUpdate(BaseInputModel):
    """Model for updating a production record."""
    machine_id: Optional[str] = Field(None, min_length=1)
    start_time: Optional[UtcDatetime] = None
    end_time: Optional[UtcDatetime] = None
    good_production: Optional[float] = Field(None, ge=0)
    film_waste: Optional[float] = Field(None, ge=0)
    organic_waste: Optional[float] = Field(None, ge=0)
    planned_time: Optional[float] = Field(None, ge=0)
    downtime_minutes: Optional[float] = Field(None, ge=0)
    downtime_reason: Optional[str] = None
    material_code: Optional[str] = None
    shift: Optional[str] = None
    operator_id: Optional[str] = None
    batch_number: Optional[str] = None
    notes: Optional[str] = Field(None, max_length=1000)
    quality_check: Optional[bool] = None
    temperature: Optional[float] = None
    pressure: Optional[float] = None
    speed: Optional[float] = None


class ProductionRecordResponse(ProductionRecordFields):
    """Model for a stored production record, derived metrics included."""

    model_config = ConfigDict(extra="ignore")

    id: str
    availability_calculated: Percentage
    performance_calculated: Percentage
    quality_calculated: Percentage
    oee_calculated: Percentage
    created_at: UtcDatetime
    updated_at: UtcDatetime


class ProductionRecordUpsertResponse(ProductionRecordResponse):
    """Stored record plus what the upsert did."""
    action: UpsertAction


class ProductionRecordFilters(BaseInputModel):
    """Filters for listing production records."""
    machine_id: Optional[str] = None
    start: Optional[UtcDatetime] = None
    end: Optional[UtcDatetime] = None
    shift: Optional[str] = None
    operator_id: Optional[str] = None
    material_code: Optional[str] = None
    batch_number: Optional[str] = None
    limit: int = Field(100, ge=1, le=1000)
    offset: int = Field(0, ge=0)


class ProductionStatistics(BaseOEEModel):
    """Totals and averages over a set of production records."""
    total_records: int = 0
    total_production: float = 0
    total_waste: float = 0
    total_downtime: float = 0
    total_planned_time: float = 0
    average_oee: float = 0
    average_availability: float = 0
    average_performance: float = 0
    average_quality: float = 0


# OEE History
class OeeHistoryEntry(BaseOEEModel):
    """Immutable OEE snapshot written once per production record write."""

    model_config = ConfigDict(frozen=True)

    id: str
    machine_id: str
    production_record_id: str
    timestamp: UtcDatetime
    oee: Percentage
    availability: Percentage
    performance: Percentage
    quality: Percentage
    good_production: float
    total_waste: float
    downtime_minutes: float
    planned_time: float
    shift: Optional[str] = None
    operator_id: Optional[str] = None
    created_at: UtcDatetime


# Downtime Event Models
class DowntimeEventCreate(BaseInputModel):
    """Model for recording a downtime event."""
    machine_id: str = Field(..., min_length=1)
    reason: str = Field(..., min_length=1, max_length=200)
    category: Optional[str] = Field(None, max_length=100)
    start_time: UtcDatetime
    end_time: Optional[UtcDatetime] = None
    minutes: Optional[float] = Field(None, ge=0)
    description: Optional[str] = Field(None, max_length=1000)

    @model_validator(mode="after")
    def validate_duration(self):
        """Require minutes, or an end_time they can be derived from."""
        if self.end_time is not None and self.end_time < self.start_time:
            raise ValueError("end_time must not be before start_time")
        if self.minutes is None:
            if self.end_time is None:
                raise ValueError("minutes or end_time is required")
            self.minutes = (self.end_time - self.start_time).total_seconds() / 60
        return self


class DowntimeEventResponse(BaseOEEModel):
    """Model for a stored downtime event."""
    id: str
    machine_id: str
    reason: str
    category: Optional[str] = None
    start_time: UtcDatetime
    end_time: Optional[UtcDatetime] = None
    minutes: float = Field(0, ge=0)
    description: Optional[str] = None
    created_at: UtcDatetime


# Alert Models
class AlertCreate(BaseInputModel):
    """Model for raising an alert."""
    machine_id: str = Field(..., min_length=1)
    severity: AlertSeverity
    message: str = Field(..., min_length=1, max_length=500)


class AlertResponse(BaseOEEModel):
    """Model for a stored alert."""
    id: str
    machine_id: str
    severity: AlertSeverity
    message: str
    acknowledged: bool = False
    acknowledged_at: Optional[UtcDatetime] = None
    created_at: UtcDatetime


# Historical Analytics Models
class DowntimeCategoryBreakdown(BaseOEEModel):
    category: str
    total_hours: float
    percentage: float


class DailyOEEPoint(BaseOEEModel):
    day: date
    oee: float
    availability: float
    performance: float
    quality: float


class ImprovementOpportunity(BaseOEEModel):
    area: str
    suggestion: str
    potential: float = Field(..., description="Estimated OEE points to gain")


class MonthlyProductivity(BaseOEEModel):
    current_month: float
    previous_month: float
    percentage_change: float
    trend: ProductivityTrend


class PerformanceVariations(BaseOEEModel):
    has_significant_variations: bool
    max_variation: float
    variation_days: int
    average_daily_production: float


class RiskAnalysis(BaseOEEModel):
    risk_level: RiskLevel
    factors: List[str] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)


class HistoricalAnalytics(BaseOEEModel):
    """Monthly analytics report. Computed per query, never persisted."""
    machine_id: Optional[str] = None
    period_start: UtcDatetime
    period_end: UtcDatetime
    generated_at: UtcDatetime
    avg_oee: float
    avg_availability: float
    avg_performance: float
    avg_quality: float
    total_production: float
    total_planned_time: float
    total_downtime_hours: float
    downtime_events: int
    mtbf_hours: float
    trend: float
    critical_alerts: int
    downtime_by_category: List[DowntimeCategoryBreakdown] = Field(default_factory=list)
    oee_history: List[DailyOEEPoint] = Field(default_factory=list)
    improvement_opportunities: List[ImprovementOpportunity] = Field(default_factory=list)
    monthly_productivity: MonthlyProductivity
    performance_variations: PerformanceVariations
    risk_analysis: RiskAnalysis
