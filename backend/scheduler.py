"""Irrigation scheduler.

Every tick compares the wall clock against the configured schedule entries
and, in automatic mode, switches the pump on for ``duration_minutes``. All
timers are APScheduler jobs on one shared BackgroundScheduler:

- ``schedule_tick``: interval job driving :meth:`IrrigationScheduler.tick`
- ``rain_check``: one-shot job resolving the weather check of a candidate
  activation, so a slow weather API never delays the next tick
- ``pump_shutoff``: the single shutoff handle; arming replaces it and any
  switch-off path removes it
"""
from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from typing import Callable, Optional

from apscheduler.jobstores.base import JobLookupError

from config import Settings
from errors import PersistenceError
from schemas import WEEKDAYS, DeviceState, ScheduleEntry
from state import DeviceStateStore
from weather import WeatherOracle

log = logging.getLogger("scheduler")

TICK_JOB = "schedule_tick"
RAIN_CHECK_JOB = "rain_check"
SHUTOFF_JOB = "pump_shutoff"

SHUTOFF_RETRY = timedelta(seconds=60)


def weekday_tag(dt: datetime) -> str:
    return WEEKDAYS[dt.weekday()]


def matching_occurrence(entry: ScheduleEntry, now: datetime, tolerance_seconds: int) -> Optional[datetime]:
    """
    Return today's occurrence of ``entry`` if ``now`` is within
    ``tolerance_seconds`` of it, on either side.
    """
    if weekday_tag(now) not in entry.days:
        return None
    hour, minute = entry.hour_minute()
    occurrence = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    elapsed = (now - occurrence).total_seconds()
    if abs(elapsed) <= tolerance_seconds:
        return occurrence
    return None


class IrrigationScheduler:
    def __init__(
        self,
        store: DeviceStateStore,
        oracle: WeatherOracle,
        jobs,
        settings: Settings,
        clock: Callable[[], datetime] | None = None,
    ):
        self.store = store
        self.oracle = oracle
        self.jobs = jobs  # APScheduler BackgroundScheduler (or compatible)
        self.settings = settings
        self._clock = clock or (lambda: datetime.now(settings.tz))
        self._lock = threading.RLock()
        self._shutoff_token = 0
        self._rain_check_pending = False
        self._fired: set[str] = set()
        self.shutoff_deadline: datetime | None = None

    def now(self) -> datetime:
        return self._clock()

    # ---- lifecycle ----

    def start(self) -> None:
        self.jobs.add_job(
            self._run_tick,
            "interval",
            seconds=self.settings.tick_seconds,
            id=TICK_JOB,
            replace_existing=True,
        )
        self.reconcile()
        log.info(
            "Irrigation scheduler started (tick every %ss, window %ss)",
            self.settings.tick_seconds,
            self.settings.schedule_tolerance_seconds,
        )

    def _run_tick(self) -> None:
        try:
            self.tick()
        except Exception:
            # keep the interval job alive even if one tick fails
            log.exception("Schedule tick failed")

    # ---- schedule evaluation ----

    def tick(self, now: datetime | None = None) -> Optional[int]:
        """Evaluate the schedule once.

        Returns the index of the entry that started (or is awaiting the rain
        check for) an activation, or None.
        """
        now = now or self.now()
        with self._lock:
            irrigation = self.store.get().irrigation
            log.debug(
                "[%s %s] checking %d schedule(s), mode=%s",
                weekday_tag(now),
                now.strftime("%H:%M:%S"),
                len(irrigation.schedules),
                irrigation.mode,
            )
            if irrigation.mode != "automatic":
                return None

            today = now.strftime("%Y-%m-%d")
            self._fired = {k for k in self._fired if k.startswith(today)}

            for index, entry in enumerate(irrigation.schedules):
                occurrence = matching_occurrence(entry, now, self.settings.schedule_tolerance_seconds)
                if occurrence is None:
                    continue
                key = occurrence.strftime("%Y-%m-%dT%H:%M")
                if key in self._fired:
                    continue
                if irrigation.pump_active:
                    log.info("Schedule #%d matched but pump is already on", index + 1)
                    self._fired.add(key)
                    return None

                if irrigation.avoid_rain:
                    if self._rain_check_pending:
                        return None
                    self._rain_check_pending = True
                    self._fired.add(key)
                    log.info("Schedule #%d matched, checking weather", index + 1)
                    self.jobs.add_job(
                        self._activate_if_dry,
                        args=[index],
                        id=RAIN_CHECK_JOB,
                        replace_existing=True,
                    )
                else:
                    self._fired.add(key)
                    log.info("Schedule #%d matched", index + 1)
                    self._start_scheduled(index)
                return index
            return None

    def _activate_if_dry(self, index: int) -> None:
        try:
            if self.oracle.is_raining():
                log.info("It is raining, scheduled irrigation #%d skipped", index + 1)
                minutes = self.store.get().irrigation.duration_minutes
                self.store.record_run(f"schedule:{index + 1}", minutes, outcome="skipped_rain")
                return
            self._start_scheduled(index)
        finally:
            with self._lock:
                self._rain_check_pending = False

    def _start_scheduled(self, index: int) -> bool:
        def turn_on(state: DeviceState) -> Optional[int]:
            irrigation = state.irrigation
            # state may have changed while the rain check was in flight
            if irrigation.mode != "automatic" or irrigation.pump_active:
                return None
            irrigation.pump_active = True
            return irrigation.duration_minutes

        with self._lock:
            minutes = self.store.update(turn_on)
            if minutes is None:
                log.info("Scheduled irrigation #%d no longer applicable", index + 1)
                return False
            self._arm_shutoff(timedelta(minutes=minutes))

        log.info("Scheduled irrigation #%d started for %d min", index + 1, minutes)
        self.store.record_run(f"schedule:{index + 1}", minutes)
        return True

    def reset_occurrences(self) -> None:
        """Forget which occurrences already fired, e.g. after the schedule was replaced."""
        with self._lock:
            self._fired.clear()

    # ---- pump control ----

    def set_pump(self, on: bool, source: str = "manual") -> bool:
        """Switch the pump from any non-schedule path. Raises PersistenceError."""
        if not on:
            with self._lock:
                self.store.mutate("irrigation", "pump_active", False)
                self._cancel_shutoff()
            log.info("Pump switched off (%s)", source)
            return False

        def turn_on(state: DeviceState) -> tuple[bool, int]:
            was_on = state.irrigation.pump_active
            state.irrigation.pump_active = True
            return was_on, state.irrigation.duration_minutes

        with self._lock:
            was_on, minutes = self.store.update(turn_on)
            if was_on and self.shutoff_deadline is not None:
                return True
            self._arm_shutoff(timedelta(minutes=minutes))

        log.info("Pump switched on (%s) for %d min", source, minutes)
        self.store.record_run(source, minutes)
        return True

    def reconcile(self) -> None:
        """Make the shutoff timer agree with ``pump_active``.

        Called after anything other than this class changed the pump flag
        (start-up, device confirmation, config save, reset).
        """
        with self._lock:
            irrigation = self.store.get().irrigation
            if irrigation.pump_active and self.shutoff_deadline is None:
                log.info("Pump is on without a shutoff timer, arming %d min", irrigation.duration_minutes)
                self._arm_shutoff(timedelta(minutes=irrigation.duration_minutes))
            elif not irrigation.pump_active and self.shutoff_deadline is not None:
                self._cancel_shutoff()

    # ---- shutoff timer ----

    def _arm_shutoff(self, delay: timedelta) -> None:
        self._shutoff_token += 1
        run_date = self.now() + delay
        self.jobs.add_job(
            self._shutoff,
            "date",
            run_date=run_date,
            args=[self._shutoff_token],
            id=SHUTOFF_JOB,
            replace_existing=True,
            misfire_grace_time=None,
        )
        self.shutoff_deadline = run_date
        log.debug("Shutoff armed for %s", run_date.isoformat())

    def _cancel_shutoff(self) -> None:
        self._shutoff_token += 1
        if self.shutoff_deadline is None:
            return
        self.shutoff_deadline = None
        try:
            self.jobs.remove_job(SHUTOFF_JOB)
        except JobLookupError:
            log.debug("Shutoff timer already gone")
        log.debug("Shutoff cancelled")

    def _shutoff(self, token: int) -> None:
        with self._lock:
            if token != self._shutoff_token:
                log.debug("Stale shutoff timer ignored")
                return
            try:
                self.store.mutate("irrigation", "pump_active", False)
            except PersistenceError:
                log.error("Could not switch the pump off, retrying in %ds", SHUTOFF_RETRY.seconds)
                self._arm_shutoff(SHUTOFF_RETRY)
                return
            self.shutoff_deadline = None
        log.info("Irrigation finished, pump off")

    def status(self) -> dict:
        now = self.now()
        return {
            "current_time": now.strftime("%H:%M"),
            "current_day": weekday_tag(now),
            "shutoff_deadline": self.shutoff_deadline.isoformat() if self.shutoff_deadline else None,
            "rain_check_pending": self._rain_check_pending,
        }
