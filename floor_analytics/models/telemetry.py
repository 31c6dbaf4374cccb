"""
Floor Analytics - Telemetry Models

This module defines Pydantic models for machine telemetry, availability
aggregation, OEE calculation, fleet synchronization and analytics requests.
"""

from datetime import date, datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator
from pydantic.alias_generators import to_camel


# Enums for status and types
class MachineStatus(str, Enum):
    """Machine status enumeration."""
    RUNNING = "running"
    IDLE = "idle"
    WARNING = "warning"
    ERROR = "error"
    STOPPED = "stopped"
    SETUP = "setup"


DOWNTIME_STATUSES = [
    MachineStatus.IDLE.value,
    MachineStatus.WARNING.value,
    MachineStatus.ERROR.value,
    MachineStatus.STOPPED.value,
    MachineStatus.SETUP.value,
]

PRODUCTION_AREAS = ("drawing", "stranding", "armoring", "sheathing")


class CalculationType(str, Enum):
    """Availability aggregation mode."""
    ROLLING_WINDOW = "rolling_window"
    SHIFT = "shift"


class AnalyticsRange(str, Enum):
    """Analytics range selector."""
    SHIFT = "shift"
    TODAY = "today"
    YESTERDAY = "yesterday"
    LAST7 = "last7"
    WEEK = "week"
    MONTH = "month"


class SyncState(str, Enum):
    """Freshness of a machine's latest shift aggregation."""
    CURRENT = "current"
    RECENT = "recent"
    STALE = "stale"
    NOT_SYNCED = "not_synced"


# Base models
class BaseTelemetryModel(BaseModel):
    """Base model for telemetry data."""

    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


class PatchModel(BaseModel):
    """Base for entity patches: a closed set of updatable columns."""

    model_config = ConfigDict(
        extra="forbid",
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=True,
    )

    def to_columns(self) -> Dict[str, Any]:
        """Column/value pairs for every field the client actually sent."""
        return self.model_dump(exclude_unset=True, exclude={"entity"})


# Patches
class MachinePatch(PatchModel):
    """Telemetry/registry patch for a machine."""

    entity: Literal["machine"] = "machine"
    status: Optional[MachineStatus] = None
    line_speed: Optional[float] = Field(None, ge=0)
    target_speed: Optional[float] = Field(None, ge=0)
    length_counter: Optional[float] = Field(None, ge=0)
    produced_length_ok: Optional[float] = Field(None, ge=0)
    produced_length_ng: Optional[float] = Field(None, ge=0)
    target_length: Optional[float] = Field(None, ge=0)
    production_order_id: Optional[str] = None
    production_order_name: Optional[str] = None
    operator_name: Optional[str] = None
    current: Optional[float] = None
    power: Optional[float] = None
    temperature: Optional[float] = None
    health_score: Optional[float] = Field(None, ge=0, le=100)
    vibration_level: Optional[str] = None
    runtime_hours: Optional[float] = Field(None, ge=0)


class ProductionOrderPatch(PatchModel):
    """Patch for a production order."""

    entity: Literal["production_order"] = "production_order"
    name: Optional[str] = None
    status: Optional[Literal["planned", "running", "paused", "completed", "cancelled"]] = None
    target_length: Optional[float] = Field(None, ge=0)
    produced_length: Optional[float] = Field(None, ge=0)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None


EntityPatch = Annotated[Union[MachinePatch, ProductionOrderPatch], Field(discriminator="entity")]

_entity_patch_adapter = TypeAdapter(EntityPatch)


def parse_patch(payload: Dict[str, Any]) -> Union[MachinePatch, ProductionOrderPatch]:
    """Validate a raw patch carrying an ``entity`` tag."""
    return _entity_patch_adapter.validate_python(payload)


# Live machine data and OEE
class LiveMachineData(BaseTelemetryModel):
    """Live values read from the machine registry for an OEE calculation."""

    status: Optional[MachineStatus] = None
    line_speed: float = 0.0
    target_speed: float = 0.0
    produced_length: Optional[float] = None
    produced_length_ok: Optional[float] = None
    produced_length_ng: Optional[float] = None

    @classmethod
    def from_machine_row(cls, row: Dict[str, Any]) -> "LiveMachineData":
        return cls(
            status=row.get("status"),
            line_speed=float(row.get("line_speed") or 0),
            target_speed=float(row.get("target_speed") or 0),
            produced_length=row.get("produced_length"),
            produced_length_ok=row.get("produced_length_ok"),
            produced_length_ng=row.get("produced_length_ng"),
        )


class OEEResult(BaseTelemetryModel):
    """Result of a real-time OEE calculation."""

    machine_id: str
    availability: float
    performance: float
    quality: float
    oee: float
    is_preliminary: bool
    availability_substituted: bool = False
    period_start: datetime
    period_end: datetime
    calculated_at: datetime


class OEETrendPoint(BaseTelemetryModel):
    """One stored OEE calculation."""

    calculated_at: datetime
    availability: float
    performance: float
    quality: float
    oee: float


# Availability
class AvailabilityResult(BaseTelemetryModel):
    """Availability over a window, stored or computed on the fly."""

    machine_id: str
    calculation_type: CalculationType
    window_start: datetime
    window_end: datetime
    availability_percentage: float = Field(..., ge=0, le=100)
    running_time_seconds: float = Field(..., ge=0)
    downtime_seconds: float = Field(..., ge=0)
    durations: Dict[str, float] = Field(default_factory=dict)
    calculated_at: datetime
    shift_id: Optional[str] = None
    production_order_id: Optional[str] = None
    from_aggregation: bool = True


class LengthCounterResult(BaseTelemetryModel):
    """Outcome of a length counter update."""

    applied: bool
    delta_length: float = 0.0
    shift_id: Optional[str] = None
    reset_detected: bool = False
    machine_fields: Dict[str, Any] = Field(default_factory=dict)


# Fleet sync
class MachineSyncResult(BaseTelemetryModel):
    """Per-machine result of a sync cycle."""

    machine_id: str
    machine_name: Optional[str] = None
    area: Optional[str] = None
    current_status: Optional[str] = None
    success: bool
    availability_percentage: Optional[float] = None
    running_time_seconds: Optional[float] = None
    downtime_seconds: Optional[float] = None
    production_order_id: Optional[str] = None
    error: Optional[str] = None
    retried: bool = False


class SyncSummary(BaseTelemetryModel):
    """Summary of a sync cycle."""

    success: bool
    total_machines: int
    synced_machines: int
    failed_machines: int
    timestamp: datetime
    area: Optional[str] = None
    message: Optional[str] = None
    results: List[MachineSyncResult] = Field(default_factory=list)


class MachineSyncStatus(BaseTelemetryModel):
    """Latest shift aggregation and freshness for one machine."""

    machine_id: str
    machine_name: Optional[str] = None
    area: Optional[str] = None
    current_status: Optional[str] = None
    production_order_id: Optional[str] = None
    production_order_name: Optional[str] = None
    availability_percentage: Optional[float] = None
    running_time_seconds: Optional[float] = None
    downtime_seconds: Optional[float] = None
    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None
    calculated_at: Optional[datetime] = None
    sync_status: SyncState


# Analytics
class AnalyticsRequest(BaseModel):
    """Scope selector for an analytics computation."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, use_enum_values=True)

    range: AnalyticsRange = AnalyticsRange.TODAY
    area: str = "all"
    machine_id: Optional[str] = None
    shift_date: Optional[date] = None
    shift_number: Optional[int] = Field(None, ge=1, le=3)

    @field_validator("area")
    @classmethod
    def validate_area(cls, v):
        if v != "all" and v not in PRODUCTION_AREAS:
            raise ValueError(f"area must be 'all' or one of {list(PRODUCTION_AREAS)}")
        return v


class AnalyticsScope(BaseModel):
    """Resolved analytics scope; also the cache key."""

    range: str
    start: datetime
    end: datetime
    shift_id: Optional[str] = None
    area: str = "all"
    machine_id: Optional[str] = None

    def cache_key(self) -> tuple:
        return (self.range, self.start, self.end, self.area, self.machine_id or "")


class CachedAnalytics(BaseModel):
    """Analytics payload with cache provenance."""

    payload: Dict[str, Any]
    cached: bool
    computed_at: datetime


# API envelope
class ApiResponse(BaseModel):
    """Envelope returned by every API route."""

    data: Any = None
    success: bool = True
    timestamp: datetime
    message: Optional[str] = None
    cached: Optional[bool] = None


class SyncRequest(BaseModel):
    """Body of a manual fleet sync; a window size selects a rolling window."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    window_minutes: Optional[int] = Field(None, ge=1, le=1440)
    retry_failed: bool = True
