"""Domain errors raised by the gateway services.

Each error carries the HTTP status and a short machine-readable code so the
API layer can render it without knowing the individual classes.
"""
from __future__ import annotations


class GatewayError(Exception):
    status_code = 500
    code = "error"

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class ValidationError(GatewayError):
    """Bad category, key or value shape. Nothing was mutated."""

    status_code = 400
    code = "validation_error"


class NotFoundError(GatewayError):
    """Unknown device key for an existing category."""

    status_code = 404
    code = "not_found"


class WeatherBlockedError(GatewayError):
    """Pump activation refused because rain was detected."""

    status_code = 409
    code = "weather_blocked"


class DeviceOfflineError(GatewayError):
    """The remote controller has not been seen within the liveness timeout."""

    status_code = 503
    code = "device_offline"


class PersistenceError(GatewayError):
    """The state document could not be written."""

    status_code = 500
    code = "persistence_error"


class UpstreamUnavailableError(GatewayError):
    """Weather lookup failed. Recovered locally except on the raw weather route."""

    status_code = 502
    code = "upstream_unavailable"
