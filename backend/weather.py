from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable

import requests

from config import Settings
from errors import UpstreamUnavailableError

log = logging.getLogger("weather")

RAIN_KEYWORDS = ("rain", "drizzle", "storm")


def describes_rain(conditions: dict[str, Any]) -> bool:
    """Match the first reported condition against the rain keywords."""
    if not isinstance(conditions, dict):
        return False
    weather = conditions.get("weather")
    if not isinstance(weather, list) or not weather:
        return False
    first = weather[0]
    if not isinstance(first, dict):
        return False
    text = f"{first.get('main', '')} {first.get('description', '')}".lower()
    return any(k in text for k in RAIN_KEYWORDS)


class WeatherOracle:
    """
    Answers "is it raining at the configured location?".

    Any upstream failure answers False so a broken weather service never
    blocks irrigation. Successful lookups are cached in a single slot for
    ``weather_cache_seconds``.
    """

    def __init__(self, settings: Settings, clock: Callable[[], float] = time.monotonic):
        self.settings = settings
        self._clock = clock
        self._lock = threading.Lock()
        self._cached: bool | None = None
        self._cached_at = 0.0

    def fetch_conditions(self) -> dict[str, Any]:
        s = self.settings
        if not s.weather_api_key:
            raise UpstreamUnavailableError("Weather API key not configured")
        params = {
            "lat": s.weather_lat,
            "lon": s.weather_lon,
            "appid": s.weather_api_key,
            "units": "metric",
        }
        try:
            resp = requests.get(s.weather_url, params=params, timeout=s.weather_timeout_seconds)
        except requests.RequestException as exc:
            raise UpstreamUnavailableError(f"Weather request failed: {exc}") from exc
        if not resp.ok:
            raise UpstreamUnavailableError(f"Weather API answered {resp.status_code}")
        try:
            payload = resp.json()
        except ValueError as exc:
            raise UpstreamUnavailableError("Weather API returned invalid JSON") from exc
        if not isinstance(payload, dict):
            raise UpstreamUnavailableError("Weather API returned an unexpected document")
        return payload

    def is_raining(self) -> bool:
        with self._lock:
            if self._cached is not None and self._clock() - self._cached_at < self.settings.weather_cache_seconds:
                return self._cached

        try:
            raining = describes_rain(self.fetch_conditions())
        except UpstreamUnavailableError as exc:
            log.warning("Weather unavailable, assuming dry: %s", exc.detail)
            return False

        with self._lock:
            self._cached = raining
            self._cached_at = self._clock()
        log.info("Weather checked: raining=%s", raining)
        return raining
