from pydantic import BaseModel, Field, validator
from datetime import datetime
from typing import Any, Literal, Optional

WEEKDAYS = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")

Mode = Literal["manual", "automatic"]


def parse_hhmm(v: str) -> tuple[int, int]:
    parts = (v or "").strip().split(":")
    if len(parts) != 2:
        raise ValueError("time must be HH:MM")
    hour, minute = parts
    if not hour.isdigit() or not minute.isdigit() or len(minute) != 2:
        raise ValueError("time must be numeric HH:MM")
    h, m = int(hour), int(minute)
    if h < 0 or h > 23 or m < 0 or m > 59:
        raise ValueError("time must be a valid 24h time")
    return h, m


def validate_duration(v: int) -> int:
    if v < 1 or v > 240:
        raise ValueError("duration_minutes must be between 1 and 240")
    return v


class ScheduleEntry(BaseModel):
    time: str  # "HH:MM"
    days: list[str] = Field(default_factory=list)

    @validator("time")
    def validate_time(cls, v: str) -> str:
        h, m = parse_hhmm(v)
        return f"{h:02d}:{m:02d}"

    @validator("days")
    def validate_days(cls, v: list[str]) -> list[str]:
        days = [str(d).strip().lower() for d in v]
        unknown = [d for d in days if d not in WEEKDAYS]
        if unknown:
            raise ValueError(f"Unsupported day values: {', '.join(unknown)}")
        if len(set(days)) != len(days):
            raise ValueError("days must not contain duplicates")
        return days

    def hour_minute(self) -> tuple[int, int]:
        return parse_hhmm(self.time)


class IrrigationConfig(BaseModel):
    pump_active: bool = False
    mode: Mode = "manual"
    avoid_rain: bool = True
    duration_minutes: int = 5
    schedules: list[ScheduleEntry] = Field(default_factory=list)

    @validator("duration_minutes")
    def check_duration(cls, v: int) -> int:
        return validate_duration(v)


class SensorReading(BaseModel):
    temperature: float = 0
    humidity: float = 0
    gas_level: float = 0
    gas_alert: bool = False
    device: str = "ESP32"
    heartbeat: bool = False
    wifi_rssi: float = 0
    timestamp: datetime


class DeviceState(BaseModel):
    lights: dict[str, bool]
    outlets: dict[str, bool]
    irrigation: IrrigationConfig = Field(default_factory=IrrigationConfig)
    sensor_data: list[SensorReading] = Field(default_factory=list)  # newest first


# ---- requests ----

class ControlRequest(BaseModel):
    category: str
    key: str
    value: Any = None


class PumpControl(BaseModel):
    state: Any = None


class SensorPush(BaseModel):
    temperature: Any = None
    humidity: Any = None
    gas_level: Any = None
    gas_alert: Optional[bool] = None
    device: Optional[str] = None
    heartbeat: Optional[bool] = None
    wifi_rssi: Any = None
    irrigation_auto: Optional[bool] = None


class ConfirmIrrigation(BaseModel):
    pump_active: Optional[bool] = None
    automatic_mode: Optional[bool] = None


class ConfirmRequest(BaseModel):
    lights: Optional[dict[str, bool]] = None
    outlets: Optional[dict[str, bool]] = None
    irrigation: Optional[ConfirmIrrigation] = None


class IrrigationSave(BaseModel):
    mode: Mode = "manual"
    schedules: list[ScheduleEntry] = Field(default_factory=list)
    avoid_rain: bool = True
    duration_minutes: int = 5

    @validator("duration_minutes")
    def check_duration(cls, v: int) -> int:
        return validate_duration(v)


# ---- responses ----

class CommandsIrrigation(BaseModel):
    pump_active: bool
    automatic_mode: bool
    duration_minutes: int
    schedules: list[ScheduleEntry]


class CommandsOut(BaseModel):
    lights: dict[str, bool]
    outlets: dict[str, bool]
    irrigation: CommandsIrrigation


class RunOut(BaseModel):
    id: int
    source: str
    outcome: str
    duration_minutes: int
    ts: datetime
    class Config:
        from_attributes = True
