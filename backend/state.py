"""Device state store.

Owns the single DeviceState instance of the process. Every mutation runs as
one critical section: the change is applied to a copy, the copy is written to
the database in full, and only then does it replace the in-memory state. A
failed write therefore leaves memory equal to what was last persisted.
"""
from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Callable, TypeVar

from pydantic import ValidationError as SchemaError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

import models
from errors import NotFoundError, PersistenceError, ValidationError
from schemas import DeviceState, IrrigationConfig

log = logging.getLogger("state")

T = TypeVar("T")

CATEGORIES = ("lights", "outlets", "irrigation")

# irrigation fields that may be toggled as plain booleans
IRRIGATION_SWITCHES = ("pump_active", "avoid_rain")


def default_state() -> DeviceState:
    return DeviceState(
        lights={
            "living_room": False,
            "bedroom1": False,
            "bedroom2": False,
            "bedroom3": False,
            "hallway": False,
            "kitchen": False,
            "bathroom": False,
        },
        outlets={
            "living_room_outlet": False,
            "kitchen_outlet": False,
            "bedroom1_outlet": False,
            "bedroom2_outlet": False,
            "bedroom3_outlet": False,
        },
        irrigation=IrrigationConfig(),
        sensor_data=[],
    )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class DeviceStateStore:
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory
        self._lock = threading.RLock()
        self._state = default_state()

    # ---- lifecycle ----

    def load(self) -> DeviceState:
        """Read the persisted document, falling back to the default schema."""
        with self._lock:
            self._state = self._read() or default_state()
            return self.get()

    def _read(self) -> DeviceState | None:
        try:
            with self._session_factory() as db:
                row = db.get(models.DeviceStateRecord, models.STATE_ROW_ID)
                if row is None:
                    log.info("No saved state, starting from defaults")
                    return None
                document = row.document
        except SQLAlchemyError as exc:
            log.error("Could not read saved state: %s", exc)
            return None
        try:
            state = DeviceState.model_validate(document)
        except SchemaError as exc:
            log.error("Saved state is invalid, starting from defaults: %s", exc)
            return None
        log.info("State loaded from database")
        return state

    # ---- reads ----

    def get(self) -> DeviceState:
        """Consistent deep copy of the current state."""
        with self._lock:
            return self._state.model_copy(deep=True)

    # ---- writes ----

    def update(self, mutator: Callable[[DeviceState], T]) -> T:
        """Apply ``mutator`` to a working copy and persist it as one step.

        The mutator may raise to abort; nothing is written in that case.
        """
        with self._lock:
            working = self._state.model_copy(deep=True)
            result = mutator(working)
            self._write(working)
            self._state = working
            return result

    def mutate(self, category: str, key: str, value: bool) -> bool:
        if category not in CATEGORIES:
            raise ValidationError(f"Unknown category: {category}")

        def apply(state: DeviceState) -> bool:
            if category == "irrigation":
                if key not in IRRIGATION_SWITCHES:
                    raise NotFoundError(f"Unknown irrigation key: {key}")
                setattr(state.irrigation, key, value)
            else:
                devices = getattr(state, category)
                if key not in devices:
                    raise NotFoundError(f"Unknown device: {category}.{key}")
                devices[key] = value
            return value

        return self.update(apply)

    def persist(self) -> None:
        with self._lock:
            self._write(self._state)

    def _write(self, state: DeviceState) -> None:
        document = state.model_dump(mode="json")
        try:
            with self._session_factory() as db:
                db.merge(
                    models.DeviceStateRecord(
                        id=models.STATE_ROW_ID, document=document, updated_at=_utcnow()
                    )
                )
                db.commit()
        except SQLAlchemyError as exc:
            log.error("Could not save state: %s", exc)
            raise PersistenceError("Could not save device state") from exc
        log.debug("State saved")

    # ---- run history ----

    def record_run(self, source: str, duration_minutes: int, outcome: str = "started") -> None:
        """Append to the irrigation run log. Best effort: failures are only logged."""
        try:
            with self._session_factory() as db:
                db.add(
                    models.IrrigationRun(
                        source=source,
                        outcome=outcome,
                        duration_minutes=duration_minutes,
                        ts=_utcnow(),
                    )
                )
                db.commit()
        except SQLAlchemyError as exc:
            log.warning("Could not record irrigation run (%s): %s", source, exc)

