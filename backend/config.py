from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


class ConfigError(RuntimeError):
    """Raised when the environment holds an unusable setting."""


def _env_bool(value: str) -> bool:
    v = value.strip().lower()
    if v in ("1", "true", "yes", "on"):
        return True
    if v in ("0", "false", "no", "off", ""):
        return False
    raise ConfigError(f"Not a boolean: {value!r}")


@dataclass(frozen=True)
class Settings:
    db_url: str = "sqlite:///./home_gateway.db"
    api_key: str = ""
    timezone: str = "America/Sao_Paulo"

    weather_api_key: str = ""
    weather_lat: float = -22.9068
    weather_lon: float = -43.1729
    weather_url: str = "https://api.openweathermap.org/data/2.5/weather"
    weather_cache_seconds: int = 600
    weather_timeout_seconds: float = 8.0

    tick_seconds: int = 10
    schedule_tolerance_seconds: int = 60

    link_timeout_seconds: int = 120
    link_check_seconds: int = 60

    rain_guard_manual_mode: bool = False
    require_device_link: bool = True
    sensor_log_size: int = 100
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if self.tick_seconds <= 0:
            raise ConfigError("SCHEDULE_TICK_SECONDS must be positive")
        # a tick longer than the window could step over a schedule entry
        if self.tick_seconds > self.schedule_tolerance_seconds:
            raise ConfigError(
                "SCHEDULE_TICK_SECONDS must not exceed SCHEDULE_TOLERANCE_SECONDS"
            )
        if self.sensor_log_size < 1:
            raise ConfigError("SENSOR_LOG_SIZE must be at least 1")
        if self.link_timeout_seconds <= 0:
            raise ConfigError("LINK_TIMEOUT_SECONDS must be positive")
        try:
            ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ConfigError(f"Unknown TIMEZONE: {self.timezone}") from exc

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if environ is None else environ
        defaults = cls.__dataclass_fields__

        def get(name: str, field: str, cast=str):
            raw = env.get(name)
            if raw is None:
                return defaults[field].default
            try:
                return cast(raw.strip())
            except ValueError as exc:
                raise ConfigError(f"Invalid value for {name}: {raw!r}") from exc

        return cls(
            db_url=get("DB_URL", "db_url"),
            api_key=get("API_KEY", "api_key"),
            timezone=get("TIMEZONE", "timezone"),
            weather_api_key=get("OPENWEATHER_API_KEY", "weather_api_key"),
            weather_lat=get("WEATHER_LAT", "weather_lat", float),
            weather_lon=get("WEATHER_LON", "weather_lon", float),
            weather_url=get("WEATHER_URL", "weather_url"),
            weather_cache_seconds=get("WEATHER_CACHE_SECONDS", "weather_cache_seconds", int),
            weather_timeout_seconds=get("WEATHER_TIMEOUT_SECONDS", "weather_timeout_seconds", float),
            tick_seconds=get("SCHEDULE_TICK_SECONDS", "tick_seconds", int),
            schedule_tolerance_seconds=get(
                "SCHEDULE_TOLERANCE_SECONDS", "schedule_tolerance_seconds", int
            ),
            link_timeout_seconds=get("LINK_TIMEOUT_SECONDS", "link_timeout_seconds", int),
            link_check_seconds=get("LINK_CHECK_SECONDS", "link_check_seconds", int),
            rain_guard_manual_mode=get("RAIN_GUARD_MANUAL_MODE", "rain_guard_manual_mode", _env_bool),
            require_device_link=get("REQUIRE_DEVICE_LINK", "require_device_link", _env_bool),
            sensor_log_size=get("SENSOR_LOG_SIZE", "sensor_log_size", int),
            log_level=get("LOG_LEVEL", "log_level"),
        )
