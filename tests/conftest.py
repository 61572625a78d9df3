from __future__ import annotations

import pathlib
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable
from zoneinfo import ZoneInfo

import pytest
from apscheduler.jobstores.base import ConflictingIdError, JobLookupError

from config import Settings
from control import ControlService
from db import init_db, make_engine, make_session_factory
from errors import UpstreamUnavailableError
from gateway import SyncGateway
from link import DeviceLink
from scheduler import IrrigationScheduler
from state import DeviceStateStore

TZ = ZoneInfo("America/Sao_Paulo")

# 2026-10-19 is a Monday
MONDAY_0800 = datetime(2026, 10, 19, 8, 0, tzinfo=TZ)


class FakeClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, value: datetime) -> None:
        self.now = value


@dataclass
class ManualJob:
    id: str
    func: Callable[..., Any]
    args: list = field(default_factory=list)
    trigger: str | None = None
    next_run: datetime | None = None
    seconds: float | None = None


class ManualJobs:
    """Stands in for BackgroundScheduler: records jobs and runs one-shot jobs on demand."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.jobs: dict[str, ManualJob] = {}
        self.started = False
        self.executed: list[str] = []

    def add_job(self, func, trigger=None, args=None, id=None, replace_existing=False,
                run_date=None, seconds=None, **kwargs):
        job_id = id or f"job-{len(self.jobs) + len(self.executed)}"
        if job_id in self.jobs and not replace_existing:
            raise ConflictingIdError(job_id)
        if trigger == "date":
            next_run = run_date
        elif trigger is None:
            next_run = self.clock()
        else:
            next_run = None
        self.jobs[job_id] = ManualJob(job_id, func, list(args or []), trigger, next_run, seconds)

    def remove_job(self, job_id: str) -> None:
        if job_id not in self.jobs:
            raise JobLookupError(job_id)
        del self.jobs[job_id]

    def get_job(self, job_id: str) -> ManualJob | None:
        return self.jobs.get(job_id)

    def start(self) -> None:
        self.started = True

    def shutdown(self, wait: bool = True) -> None:
        self.started = False

    def run_due(self) -> int:
        """Run every one-shot job whose time has come, earliest first."""
        ran = 0
        while True:
            due = [
                job for job in self.jobs.values()
                if job.next_run is not None and job.next_run <= self.clock()
            ]
            if not due:
                return ran
            job = min(due, key=lambda j: j.next_run)
            del self.jobs[job.id]
            self.executed.append(job.id)
            job.func(*job.args)
            ran += 1


class StubOracle:
    def __init__(self, raining: bool = False):
        self.raining = raining
        self.calls = 0
        self.conditions: dict | None = None

    def is_raining(self) -> bool:
        self.calls += 1
        return self.raining

    def fetch_conditions(self) -> dict:
        if self.conditions is None:
            raise UpstreamUnavailableError("Weather API key not configured")
        return self.conditions


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock(MONDAY_0800)


@pytest.fixture()
def db_path(tmp_path: pathlib.Path) -> pathlib.Path:
    return tmp_path / "gateway.sqlite"


@pytest.fixture()
def settings(db_path: pathlib.Path) -> Settings:
    return Settings(db_url=f"sqlite:///{db_path}", timezone="America/Sao_Paulo")


@pytest.fixture()
def session_factory(settings: Settings):
    engine = make_engine(settings.db_url)
    init_db(engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture()
def store(session_factory) -> DeviceStateStore:
    store = DeviceStateStore(session_factory)
    store.load()
    return store


@pytest.fixture()
def oracle() -> StubOracle:
    return StubOracle()


@pytest.fixture()
def jobs(clock: FakeClock) -> ManualJobs:
    return ManualJobs(clock)


@pytest.fixture()
def scheduler(store, oracle, jobs, settings, clock) -> IrrigationScheduler:
    return IrrigationScheduler(store, oracle, jobs, settings, clock=clock)


@pytest.fixture()
def link(clock: FakeClock) -> DeviceLink:
    return DeviceLink(120, clock=clock)


@pytest.fixture()
def control(store, scheduler, oracle, link, settings) -> ControlService:
    return ControlService(store, scheduler, oracle, link, settings)


@pytest.fixture()
def gateway(store, scheduler, link, settings, clock) -> SyncGateway:
    return SyncGateway(store, scheduler, link, settings, clock=clock)


def configure_irrigation(store: DeviceStateStore, **changes) -> None:
    """Test helper: overwrite irrigation fields in place and persist."""

    def apply(state):
        for name, value in changes.items():
            setattr(state.irrigation, name, value)

    store.update(apply)
