"""Poll/confirm protocol between the server, the remote controller and the browser.

The remote controller never receives pushes. It polls ``commands`` for the
desired state, pushes readings to ``push_data`` and reports what it actually
applied through ``confirm``. Every contact counts as a heartbeat.
"""
from __future__ import annotations

import logging
import math
from datetime import datetime, timezone
from typing import Any, Callable

from config import Settings
from link import DEFAULT_DEVICE_ID, DeviceLink
from scheduler import IrrigationScheduler
from schemas import (
    CommandsIrrigation,
    CommandsOut,
    ConfirmRequest,
    DeviceState,
    IrrigationConfig,
    IrrigationSave,
    SensorPush,
    SensorReading,
)
from state import DeviceStateStore

log = logging.getLogger("gateway")

GAS_ALERT_LEVEL = 300


def coerce_number(value: Any) -> float:
    """Numbers may arrive as strings; anything unparseable becomes 0."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(number) or math.isinf(number):
        return 0.0
    return number


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncGateway:
    def __init__(
        self,
        store: DeviceStateStore,
        scheduler: IrrigationScheduler,
        link: DeviceLink,
        settings: Settings,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.scheduler = scheduler
        self.link = link
        self.settings = settings
        self._clock = clock

    # ---- remote device ----

    def commands(self, device_id: str | None = None, ip_address: str | None = None) -> CommandsOut:
        self.link.touch(device_id, ip_address)
        state = self.store.get()
        irrigation = state.irrigation
        log.debug("Commands polled: pump=%s mode=%s", irrigation.pump_active, irrigation.mode)
        return CommandsOut(
            lights=state.lights,
            outlets=state.outlets,
            irrigation=CommandsIrrigation(
                pump_active=irrigation.pump_active,
                automatic_mode=irrigation.mode == "automatic",
                duration_minutes=irrigation.duration_minutes,
                schedules=irrigation.schedules,
            ),
        )

    def push_data(self, payload: SensorPush, ip_address: str | None = None) -> SensorReading:
        self.link.touch(payload.device, ip_address)

        gas_level = coerce_number(payload.gas_level)
        reading = SensorReading(
            temperature=coerce_number(payload.temperature),
            humidity=coerce_number(payload.humidity),
            gas_level=gas_level,
            gas_alert=bool(payload.gas_alert) or gas_level > GAS_ALERT_LEVEL,
            device=payload.device or DEFAULT_DEVICE_ID,
            heartbeat=bool(payload.heartbeat),
            wifi_rssi=coerce_number(payload.wifi_rssi),
            timestamp=self._clock(),
        )
        capacity = self.settings.sensor_log_size

        def append(state: DeviceState) -> None:
            state.sensor_data.insert(0, reading)
            del state.sensor_data[capacity:]
            if payload.irrigation_auto is not None:
                mode = "automatic" if payload.irrigation_auto else "manual"
                if state.irrigation.mode != mode:
                    log.info("Irrigation mode set to %s by remote device", mode)
                    state.irrigation.mode = mode

        self.store.update(append)
        if reading.gas_alert:
            log.warning("Gas alert reported: level=%s", gas_level)
        log.debug(
            "Reading stored: temp=%s humidity=%s gas=%s",
            reading.temperature,
            reading.humidity,
            reading.gas_level,
        )
        return reading

    def confirm(self, payload: ConfirmRequest, device_id: str | None = None, ip_address: str | None = None) -> dict:
        """Merge the subset of state the device reports as applied.

        Keys outside the fixed schema are ignored.
        """
        self.link.touch(device_id, ip_address)
        applied: dict[str, dict[str, bool]] = {}

        def merge(state: DeviceState) -> None:
            for category in ("lights", "outlets"):
                reported = getattr(payload, category)
                if not reported:
                    continue
                devices = getattr(state, category)
                for key, value in reported.items():
                    if key not in devices:
                        log.warning("Ignoring unknown %s key from device: %s", category, key)
                        continue
                    devices[key] = value
                    applied.setdefault(category, {})[key] = value
            if payload.irrigation is not None:
                irrigation = state.irrigation
                if payload.irrigation.pump_active is not None:
                    irrigation.pump_active = payload.irrigation.pump_active
                    applied.setdefault("irrigation", {})["pump_active"] = irrigation.pump_active
                if payload.irrigation.automatic_mode is not None:
                    irrigation.mode = "automatic" if payload.irrigation.automatic_mode else "manual"
                    applied.setdefault("irrigation", {})["automatic_mode"] = payload.irrigation.automatic_mode

        self.store.update(merge)
        if "irrigation" in applied:
            self.scheduler.reconcile()
        log.info("Device confirmed %s", applied or "nothing")
        return applied

    # ---- browser ----

    def devices(self) -> DeviceState:
        return self.store.get()

    def save_irrigation(self, payload: IrrigationSave) -> IrrigationConfig:
        """Replace the irrigation configuration, keeping the current pump flag."""

        def replace(state: DeviceState) -> IrrigationConfig:
            state.irrigation = IrrigationConfig(
                pump_active=state.irrigation.pump_active,
                mode=payload.mode,
                avoid_rain=payload.avoid_rain,
                duration_minutes=payload.duration_minutes,
                schedules=payload.schedules,
            )
            return state.irrigation.model_copy(deep=True)

        saved = self.store.update(replace)
        self.scheduler.reset_occurrences()
        self.scheduler.reconcile()
        log.info(
            "Irrigation config saved: mode=%s schedules=%d avoid_rain=%s duration=%d",
            saved.mode,
            len(saved.schedules),
            saved.avoid_rain,
            saved.duration_minutes,
        )
        return saved

    def sensor_feed(self) -> dict:
        readings = self.store.get().sensor_data
        latest = readings[0] if readings else None
        return {
            "data": [r.model_dump(mode="json") for r in readings],
            "link": {"connected": self.link.connected},
            "summary": {
                "total_readings": len(readings),
                "last_temperature": latest.temperature if latest else None,
                "last_humidity": latest.humidity if latest else None,
                "last_gas_level": latest.gas_level if latest else None,
                "last_gas_alert": latest.gas_alert if latest else False,
            },
        }
