from fastapi import FastAPI, Depends, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from datetime import datetime
import logging

from apscheduler.schedulers.background import BackgroundScheduler

from config import Settings
from control import ControlService
from db import get_db, init_db, make_engine, make_session_factory
from errors import GatewayError, UpstreamUnavailableError
from gateway import SyncGateway
from link import DeviceLink
from logging_setup import configure_logging
from scheduler import IrrigationScheduler
from state import DeviceStateStore
from weather import WeatherOracle
import models
import schemas

log = logging.getLogger("api")

LINK_CHECK_JOB = "link_check"


def create_app(
    settings: Settings | None = None,
    *,
    jobs=None,
    oracle: WeatherOracle | None = None,
    clock=None,
) -> FastAPI:
    settings = settings or Settings.from_env()

    # -------------------------------------------------
    # APP SETUP
    # -------------------------------------------------

    app = FastAPI(title="Home Automation Gateway")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    engine = make_engine(settings.db_url)
    session_factory = make_session_factory(engine)
    jobs = jobs if jobs is not None else BackgroundScheduler(timezone=settings.tz)

    store = DeviceStateStore(session_factory)
    oracle = oracle or WeatherOracle(settings)
    link = DeviceLink(settings.link_timeout_seconds)
    scheduler = IrrigationScheduler(store, oracle, jobs, settings, clock=clock)
    control = ControlService(store, scheduler, oracle, link, settings)
    gateway = SyncGateway(store, scheduler, link, settings)

    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.jobs = jobs
    app.state.store = store
    app.state.oracle = oracle
    app.state.link = link
    app.state.scheduler = scheduler
    app.state.control = control
    app.state.gateway = gateway

    # -------------------------------------------------
    # LIFECYCLE
    # -------------------------------------------------

    @app.on_event("startup")
    def start_background():
        init_db(engine)
        state = store.load()
        log.info(
            "Gateway starting: %d lights, %d outlets, %d schedule(s), mode=%s",
            len(state.lights),
            len(state.outlets),
            len(state.irrigation.schedules),
            state.irrigation.mode,
        )
        scheduler.start()
        jobs.add_job(
            link.check,
            "interval",
            seconds=settings.link_check_seconds,
            id=LINK_CHECK_JOB,
            replace_existing=True,
        )
        jobs.start()

    @app.on_event("shutdown")
    def stop_background():
        jobs.shutdown(wait=False)
        engine.dispose()

    # -------------------------------------------------
    # ERRORS
    # -------------------------------------------------

    @app.exception_handler(GatewayError)
    async def gateway_error(request: Request, exc: GatewayError):
        if exc.status_code >= 500:
            log.error("%s %s failed: %s", request.method, request.url.path, exc.detail)
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail, "error": exc.code},
        )

    # -------------------------------------------------
    # AUTH (simple)
    # -------------------------------------------------

    def require_key(request: Request):
        if not settings.api_key:
            return  # gate disabled when no key is configured
        key = request.headers.get("x-api-key", "")
        if key != settings.api_key:
            raise HTTPException(status_code=401, detail="Unauthorized")

    def session(request: Request):
        yield from get_db(request.app.state.session_factory)

    def client_ip(request: Request) -> str | None:
        return request.client.host if request.client else None

    # -------------------------------------------------
    # HEALTH
    # -------------------------------------------------

    @app.get("/")
    def root():
        return {
            "message": "Home automation gateway",
            "status": "online",
            "link": {"connected": link.connected},
        }

    @app.get("/health")
    def health():
        return {
            "ok": True,
            "ts": datetime.now(settings.tz).isoformat(),
            "link": {"connected": link.connected},
        }

    @app.get("/link-status")
    def link_status():
        return link.status()

    # -------------------------------------------------
    # BROWSER
    # -------------------------------------------------

    @app.get("/devices")
    def devices():
        state = gateway.devices()
        return {
            "lights": state.lights,
            "outlets": state.outlets,
            "irrigation": state.irrigation.model_dump(mode="json"),
            "link": {"connected": link.connected},
        }

    @app.post("/control", dependencies=[Depends(require_key)])
    def control_device(body: schemas.ControlRequest):
        applied = control.control(body.category, body.key, body.value)
        return {"status": "OK", "category": body.category, "key": body.key, "value": applied}

    @app.post("/reset", dependencies=[Depends(require_key)])
    def reset():
        control.reset()
        return {"status": "OK", "message": "All devices switched off"}

    @app.get("/sensor-data")
    def sensor_data():
        return gateway.sensor_feed()

    # -------------------------------------------------
    # REMOTE DEVICE
    # -------------------------------------------------

    @app.get("/commands", response_model=schemas.CommandsOut)
    def commands(request: Request):
        return gateway.commands(request.headers.get("x-device-id"), client_ip(request))

    @app.post("/data")
    def push_data(body: schemas.SensorPush, request: Request):
        reading = gateway.push_data(body, client_ip(request))
        return {
            "status": "OK",
            "message": "Heartbeat received" if body.heartbeat else "Data saved",
            "reading": reading.model_dump(mode="json"),
        }

    @app.post("/confirm")
    def confirm(body: schemas.ConfirmRequest, request: Request):
        applied = gateway.confirm(body, request.headers.get("x-device-id"), client_ip(request))
        return {"status": "OK", "applied": applied, "timestamp": datetime.now(settings.tz).isoformat()}

    # -------------------------------------------------
    # IRRIGATION
    # -------------------------------------------------

    @app.get("/irrigation")
    def irrigation():
        return store.get().irrigation.model_dump(mode="json")

    @app.post("/irrigation/save", dependencies=[Depends(require_key)])
    def save_irrigation(body: schemas.IrrigationSave):
        saved = gateway.save_irrigation(body)
        return {"status": "OK", "saved": saved.model_dump(mode="json")}

    @app.post("/irrigation/control", dependencies=[Depends(require_key)])
    def irrigation_control(body: schemas.PumpControl):
        pump_active = control.set_pump(body.state, source="manual")
        return {"status": "OK", "pump_active": pump_active}

    @app.get("/irrigation/schedule-status")
    def schedule_status():
        return {
            **scheduler.status(),
            "irrigation": store.get().irrigation.model_dump(mode="json"),
        }

    @app.post("/irrigation/check-now", dependencies=[Depends(require_key)])
    def check_now():
        index = scheduler.tick()
        return {"status": "OK", "matched": None if index is None else index + 1}

    # -------------------------------------------------
    # RUN HISTORY
    # -------------------------------------------------

    @app.get("/irrigation/runs", response_model=list[schemas.RunOut])
    def list_runs(db: Session = Depends(session)):
        q = db.query(models.IrrigationRun).order_by(
            models.IrrigationRun.ts.desc(), models.IrrigationRun.id.desc()
        )
        return q.limit(100).all()

    # -------------------------------------------------
    # WEATHER
    # -------------------------------------------------

    @app.get("/weather")
    def weather():
        try:
            return oracle.fetch_conditions()
        except UpstreamUnavailableError as exc:
            log.warning("Weather lookup failed: %s", exc.detail)
            raise

    @app.get("/weather/raining")
    def raining():
        return {"raining": oracle.is_raining()}

    return app


def __getattr__(name: str):
    # `uvicorn main:app` builds the app from the environment on first access
    if name == "app":
        app = create_app()
        globals()["app"] = app
        return app
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


def run() -> None:
    import uvicorn

    settings = Settings.from_env()
    configure_logging(settings.log_level)
    uvicorn.run(create_app(settings), host="0.0.0.0", port=8000)


if __name__ == "__main__":
    run()
