from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Annotated, Any, List, Optional

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, field_validator, model_validator
from pydantic_core import PydanticCustomError

DEVICE_ID_PATTERN = r"^[a-zA-Z0-9_-]+$"
MAX_READINGS_PER_REQUEST = 10000

# Tolerancia de reloj entre dispositivo y servidor
FUTURE_SKEW = timedelta(minutes=5)


def _split_csv(value: Any) -> Any:
    # ?status=a&status=b  |  ?status=a,b  |  ?status=a
    if value is None:
        return None
    items = value if isinstance(value, list) else [value]
    result = []
    for item in items:
        if isinstance(item, str):
            result.extend(part.strip() for part in item.split(",") if part.strip())
        else:
            result.append(item)
    return result


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


DeviceId = Annotated[str, Field(min_length=1, max_length=100, pattern=DEVICE_ID_PATTERN)]


class DeviceStatus(str, Enum):
    ACTIVE = "active"
    MAINTENANCE = "maintenance"
    OFFLINE = "offline"
    DECOMMISSIONED = "decommissioned"
    ERROR = "error"


class DeviceType(str, Enum):
    TEMPERATURE = "temperature"
    HUMIDITY = "humidity"
    OCCUPANCY = "occupancy"
    POWER = "power"
    CO2 = "co2"
    PRESSURE = "pressure"
    LIGHT = "light"
    MOTION = "motion"
    AIR_QUALITY = "air_quality"
    WATER_FLOW = "water_flow"
    GAS = "gas"
    VIBRATION = "vibration"


class ServiceType(str, Enum):
    FIRMWARE_UPDATE = "firmware_update"
    CALIBRATION = "calibration"
    EMERGENCY_FIX = "emergency_fix"
    GENERAL_MAINTENANCE = "general_maintenance"


class ScheduleStatus(str, Enum):
    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class SortOrder(str, Enum):
    ASC = "asc"
    DESC = "desc"


DEFAULT_UNITS = {
    "temperature": "celsius",
    "humidity": "percent",
    "occupancy": "count",
    "power": "watts",
    "co2": "ppm",
    "pressure": "hpa",
    "light": "lux",
    "motion": "boolean",
    "air_quality": "ppm",
    "water_flow": "liters_per_minute",
    "gas": "ppm",
    "vibration": "raw",
    "voltage": "volts",
    "current": "amperes",
    "energy": "kilowatt_hours",
}


def default_unit(reading_type: str) -> str:
    return DEFAULT_UNITS.get(reading_type, "raw")


# ---------------------------------------------------------------------------
# Devices
# ---------------------------------------------------------------------------


def _not_null(value: Any) -> Any:
    """Un PATCH puede omitir estos campos, pero no vaciarlos con null."""
    if value is None:
        raise PydanticCustomError("null_not_allowed", "Field cannot be null")
    return value


class DeviceLocation(BaseModel):
    model_config = ConfigDict(extra="forbid")

    building_id: str = Field(..., min_length=1, max_length=100)
    floor: int = Field(..., ge=-10, le=200)
    room_name: str = Field(..., min_length=1, max_length=200)
    zone: Optional[str] = Field(default=None, max_length=100)


class DeviceMetadataIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    tags: List[Annotated[str, Field(min_length=1, max_length=50)]] = Field(default_factory=list, max_length=20)
    department: str = Field(default="unknown", max_length=100)


class DeviceCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: DeviceId
    serial_number: str = Field(..., min_length=1, max_length=50, pattern=r"^[A-Za-z0-9-]+$")
    manufacturer: str = Field(..., min_length=1, max_length=100)
    model: str = Field(..., min_length=1, max_length=100)
    firmware_version: str = Field(..., min_length=1, max_length=50, pattern=r"^[0-9]+(\.[0-9]+)*(-[a-zA-Z0-9]+)?$")
    type: DeviceType
    location: DeviceLocation
    metadata: DeviceMetadataIn = Field(default_factory=DeviceMetadataIn)
    status: DeviceStatus = DeviceStatus.ACTIVE
    status_reason: Optional[str] = Field(default=None, max_length=200)
    battery_level: Optional[float] = Field(default=None, ge=0, le=100)


class DeviceLocationUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    building_id: Optional[str] = Field(default=None, min_length=1, max_length=100)
    floor: Optional[int] = Field(default=None, ge=-10, le=200)
    room_name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    zone: Optional[str] = Field(default=None, max_length=100)

    @field_validator("building_id", "floor", "room_name")
    @classmethod
    def _required(cls, value: Any) -> Any:
        return _not_null(value)


class DeviceMetadataUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    tags: Optional[List[Annotated[str, Field(min_length=1, max_length=50)]]] = Field(default=None, max_length=20)
    department: Optional[str] = Field(default=None, max_length=100)


class DeviceUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    serial_number: Optional[str] = Field(default=None, min_length=1, max_length=50, pattern=r"^[A-Za-z0-9-]+$")
    manufacturer: Optional[str] = Field(default=None, min_length=1, max_length=100)
    model: Optional[str] = Field(default=None, min_length=1, max_length=100)
    firmware_version: Optional[str] = Field(
        default=None, min_length=1, max_length=50, pattern=r"^[0-9]+(\.[0-9]+)*(-[a-zA-Z0-9]+)?$"
    )
    location: Optional[DeviceLocationUpdate] = None
    metadata: Optional[DeviceMetadataUpdate] = None
    status: Optional[DeviceStatus] = None
    status_reason: Optional[str] = Field(default=None, max_length=200)
    battery_level: Optional[float] = Field(default=None, ge=0, le=100)

    @field_validator("serial_number", "manufacturer", "model", "firmware_version", "location", "metadata", "status")
    @classmethod
    def _required(cls, value: Any) -> Any:
        return _not_null(value)

    @model_validator(mode="after")
    def _not_empty(self) -> "DeviceUpdate":
        if not self.model_fields_set:
            raise PydanticCustomError("empty_update", "At least one field must be provided for update")
        return self


class DeviceSortField(str, Enum):
    CREATED_AT = "created_at"
    UPDATED_AT = "updated_at"
    LAST_SEEN = "last_seen"
    SERIAL_NUMBER = "serial_number"
    STATUS = "status"
    FLOOR = "floor"
    BUILDING_ID = "building_id"
    MANUFACTURER = "manufacturer"
    BATTERY_LEVEL = "battery_level"


class DeviceListQuery(BaseModel):
    model_config = ConfigDict(extra="forbid")

    page: int = Field(default=1, ge=1)
    limit: int = Field(default=20, ge=1, le=100)
    sort_by: DeviceSortField = DeviceSortField.CREATED_AT
    sort_order: SortOrder = SortOrder.DESC
    status: Annotated[Optional[List[DeviceStatus]], BeforeValidator(_split_csv)] = None
    type: Annotated[Optional[List[DeviceType]], BeforeValidator(_split_csv)] = None
    building_id: Optional[str] = Field(default=None, max_length=100)
    floor: Optional[int] = Field(default=None, ge=-10, le=200)
    zone: Optional[str] = Field(default=None, max_length=100)
    department: Optional[str] = Field(default=None, max_length=100)
    search: Optional[str] = Field(default=None, max_length=100)

    def cache_params(self) -> dict:
        return self.model_dump(mode="json")


# ---------------------------------------------------------------------------
# Readings
# ---------------------------------------------------------------------------


class ReadingIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    device_id: DeviceId
    type: str = Field(..., min_length=1, max_length=50)
    value: float = Field(..., allow_inf_nan=False)
    timestamp: datetime
    unit: Optional[str] = Field(default=None, min_length=1, max_length=50)
    source: str = Field(default="sensor", max_length=30)

    @field_validator("timestamp")
    @classmethod
    def _not_in_future(cls, value: datetime) -> datetime:
        value = _aware(value)
        if value > datetime.now(timezone.utc) + FUTURE_SKEW:
            raise PydanticCustomError("future_timestamp", "Timestamp cannot be in the future")
        return value

    @property
    def resolved_unit(self) -> str:
        return self.unit or default_unit(self.type)


class ReadingsIngest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    readings: List[ReadingIn] = Field(..., min_length=1, max_length=MAX_READINGS_PER_REQUEST)


def _check_device_selector(device_id: Optional[str], device_ids: Optional[List[str]]) -> None:
    if device_id and device_ids:
        raise PydanticCustomError(
            "conflicting_filters",
            "Cannot specify both device_id and device_ids",
            {"field": "device_id"},
        )


class ReadingsQuery(BaseModel):
    model_config = ConfigDict(extra="forbid")

    device_id: Optional[DeviceId] = None
    device_ids: Annotated[Optional[List[DeviceId]], BeforeValidator(_split_csv)] = None
    type: Annotated[Optional[List[str]], BeforeValidator(_split_csv)] = None
    min_value: Optional[float] = Field(default=None, allow_inf_nan=False)
    max_value: Optional[float] = Field(default=None, allow_inf_nan=False)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=100, ge=1, le=1000)
    sort_order: SortOrder = SortOrder.DESC

    @model_validator(mode="after")
    def _check_ranges(self) -> "ReadingsQuery":
        _check_device_selector(self.device_id, self.device_ids)
        if self.min_value is not None and self.max_value is not None and self.min_value > self.max_value:
            raise PydanticCustomError(
                "invalid_range",
                "min_value must be less than or equal to max_value",
                {"field": "min_value"},
            )
        if self.start_date and self.end_date and _aware(self.start_date) > _aware(self.end_date):
            raise PydanticCustomError(
                "invalid_range",
                "start_date must be before or equal to end_date",
                {"field": "start_date"},
            )
        return self

    @property
    def selected_devices(self) -> List[str]:
        if self.device_id:
            return [self.device_id]
        return list(self.device_ids or [])


class LatestReadingsQuery(BaseModel):
    model_config = ConfigDict(extra="forbid")

    device_id: Optional[DeviceId] = None
    device_ids: Annotated[Optional[List[DeviceId]], BeforeValidator(_split_csv)] = None
    type: Annotated[Optional[List[str]], BeforeValidator(_split_csv)] = None

    @model_validator(mode="after")
    def _check_selector(self) -> "LatestReadingsQuery":
        _check_device_selector(self.device_id, self.device_ids)
        return self

    @property
    def selected_devices(self) -> List[str]:
        if self.device_id:
            return [self.device_id]
        return list(self.device_ids or [])


# ---------------------------------------------------------------------------
# Schedules
# ---------------------------------------------------------------------------


def _future(value: datetime) -> datetime:
    value = _aware(value)
    if value <= datetime.now(timezone.utc):
        raise PydanticCustomError("past_date", "Scheduled date must be in the future")
    return value


class ScheduleCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    device_ids: List[DeviceId] = Field(..., min_length=1, max_length=100)
    service_type: ServiceType
    scheduled_date: datetime
    notes: Optional[str] = Field(default=None, max_length=1000)

    @field_validator("scheduled_date")
    @classmethod
    def _check_date(cls, value: datetime) -> datetime:
        return _future(value)


class ScheduleTransition(str, Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ScheduleUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    scheduled_date: Optional[datetime] = None
    status: Optional[ScheduleTransition] = None
    notes: Optional[str] = Field(default=None, max_length=1000)

    @field_validator("scheduled_date")
    @classmethod
    def _check_date(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _future(_not_null(value))

    @field_validator("status")
    @classmethod
    def _required(cls, value: Any) -> Any:
        return _not_null(value)

    @model_validator(mode="after")
    def _not_empty(self) -> "ScheduleUpdate":
        if not self.model_fields_set:
            raise PydanticCustomError("empty_update", "At least one field must be provided for update")
        return self


class ScheduleListQuery(BaseModel):
    model_config = ConfigDict(extra="forbid")

    page: int = Field(default=1, ge=1)
    limit: int = Field(default=20, ge=1, le=100)
    sort_order: SortOrder = SortOrder.ASC
    device_id: Optional[DeviceId] = None
    status: Annotated[Optional[List[ScheduleStatus]], BeforeValidator(_split_csv)] = None
    service_type: Annotated[Optional[List[ServiceType]], BeforeValidator(_split_csv)] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    include_all: bool = False

    @property
    def effective_statuses(self) -> List[str]:
        # Por defecto solo pendientes; include_all o un filtro explícito lo amplían
        if self.status:
            return [s.value for s in self.status]
        if self.include_all:
            return []
        return [ScheduleStatus.SCHEDULED.value]


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------


class AuditAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    COMPLETE = "complete"
    CANCEL = "cancel"


class AuditResource(str, Enum):
    DEVICE = "device"
    SCHEDULE = "schedule"


def _check_date_range(start: Optional[datetime], end: Optional[datetime]) -> None:
    if start and end and _aware(start) > _aware(end):
        raise PydanticCustomError(
            "invalid_range",
            "start_date must be before or equal to end_date",
            {"field": "start_date"},
        )


class AuditFilters(BaseModel):
    """Filtros comunes del trail y del historial de un dispositivo.

    ``user`` busca sin distinguir mayúsculas dentro de la identidad
    guardada en ``*_by``.
    """

    model_config = ConfigDict(extra="forbid")

    action: Annotated[Optional[List[AuditAction]], BeforeValidator(_split_csv)] = None
    user: Optional[str] = Field(default=None, min_length=1, max_length=200)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=50, ge=1, le=200)
    sort_order: SortOrder = SortOrder.DESC

    @model_validator(mode="after")
    def _check_range(self) -> "AuditFilters":
        _check_date_range(self.start_date, self.end_date)
        return self

    @property
    def action_values(self) -> List[str]:
        return [a.value for a in self.action or ()]


class AuditQuery(AuditFilters):
    resource_type: Optional[AuditResource] = None
    device_id: Annotated[Optional[List[DeviceId]], BeforeValidator(_split_csv)] = None
    include_deleted: bool = True


class DeviceHistoryQuery(AuditFilters):
    include_schedules: bool = False
