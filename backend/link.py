from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable

log = logging.getLogger("link")

DEFAULT_DEVICE_ID = "ESP32"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeviceLink:
    """Liveness of the remote controller, derived from its last contact."""

    def __init__(self, timeout_seconds: int = 120, clock: Callable[[], datetime] = _utcnow):
        self.timeout = timedelta(seconds=timeout_seconds)
        self._clock = clock
        self._lock = threading.Lock()
        self._connected = False
        self.last_heartbeat_at: datetime | None = None
        self.device_id: str | None = None
        self.ip_address: str | None = None

    def touch(self, device_id: str | None = None, ip_address: str | None = None) -> None:
        with self._lock:
            if not self._connected:
                log.info("Remote device connected (%s)", device_id or self.device_id or DEFAULT_DEVICE_ID)
            self._connected = True
            self.last_heartbeat_at = self._clock()
            self.device_id = device_id or self.device_id or DEFAULT_DEVICE_ID
            if ip_address:
                self.ip_address = ip_address

    def check(self) -> bool:
        """Re-evaluate the timeout; used both on read and by the periodic job."""
        with self._lock:
            if self._connected and self.last_heartbeat_at is not None:
                if self._clock() - self.last_heartbeat_at > self.timeout:
                    self._connected = False
                    log.warning(
                        "Remote device lost: no contact since %s", self.last_heartbeat_at.isoformat()
                    )
            return self._connected

    @property
    def connected(self) -> bool:
        return self.check()

    def status(self) -> dict:
        connected = self.check()
        return {
            "connected": connected,
            "last_seen": self.last_heartbeat_at.isoformat() if self.last_heartbeat_at else None,
            "device_id": self.device_id,
            "ip_address": self.ip_address,
        }
