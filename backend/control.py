from __future__ import annotations

import logging
from typing import Any

from config import Settings
from errors import DeviceOfflineError, NotFoundError, ValidationError, WeatherBlockedError
from link import DeviceLink
from scheduler import IrrigationScheduler
from schemas import DeviceState, IrrigationConfig
from state import CATEGORIES, IRRIGATION_SWITCHES, DeviceStateStore
from weather import WeatherOracle

log = logging.getLogger("control")


class ControlService:
    """Validates and applies single device commands from the browser."""

    def __init__(
        self,
        store: DeviceStateStore,
        scheduler: IrrigationScheduler,
        oracle: WeatherOracle,
        link: DeviceLink,
        settings: Settings,
    ):
        self.store = store
        self.scheduler = scheduler
        self.oracle = oracle
        self.link = link
        self.settings = settings

    def rain_gate_applies(self, irrigation: IrrigationConfig) -> bool:
        if not irrigation.avoid_rain:
            return False
        return irrigation.mode == "automatic" or self.settings.rain_guard_manual_mode

    def _ensure_dry(self) -> None:
        irrigation = self.store.get().irrigation
        if self.rain_gate_applies(irrigation) and self.oracle.is_raining():
            log.info("Pump activation refused: raining")
            raise WeatherBlockedError("Irrigation blocked: it is raining")

    def _ensure_link(self) -> None:
        if self.settings.require_device_link and not self.link.connected:
            raise DeviceOfflineError("Remote device disconnected")

    def control(self, category: str, key: str, value: Any) -> bool:
        if category not in CATEGORIES:
            raise ValidationError(f"Invalid category: {category}")
        if not isinstance(key, str) or not key:
            raise ValidationError("key must be a non-empty string")
        if not isinstance(value, bool):
            raise ValidationError("value must be a boolean")

        snapshot = self.store.get()
        if category == "irrigation":
            if key not in IRRIGATION_SWITCHES:
                raise NotFoundError(f"Device not found: {category}.{key}")
            if key == "pump_active":
                return self.set_pump(value, source="control")
        else:
            if key not in getattr(snapshot, category):
                raise NotFoundError(f"Device not found: {category}.{key}")
            self._ensure_link()

        applied = self.store.mutate(category, key, value)
        log.info("%s.%s -> %s", category, key, "on" if applied else "off")
        return applied

    def set_pump(self, value: Any, source: str = "manual") -> bool:
        if not isinstance(value, bool):
            raise ValidationError("state must be a boolean")
        if value:
            self._ensure_dry()
        return self.scheduler.set_pump(value, source=source)

    def reset(self) -> DeviceState:
        """Switch every light, outlet and the pump off."""
        self._ensure_link()

        def all_off(state: DeviceState) -> None:
            for key in state.lights:
                state.lights[key] = False
            for key in state.outlets:
                state.outlets[key] = False
            state.irrigation.pump_active = False

        self.store.update(all_off)
        self.scheduler.reconcile()
        log.info("All devices reset")
        return self.store.get()
