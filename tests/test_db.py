from sqlalchemy import inspect, text

from db import init_db, make_engine, make_session_factory
from state import DeviceStateStore


def columns(engine, table):
    return {c["name"] for c in inspect(engine).get_columns(table)}


def test_init_db_adds_missing_columns(db_path):
    engine = make_engine(f"sqlite:///{db_path}")
    with engine.begin() as conn:
        conn.execute(text("CREATE TABLE device_state (id INTEGER PRIMARY KEY, document JSON NOT NULL)"))
        conn.execute(
            text(
                "CREATE TABLE irrigation_runs ("
                "id INTEGER PRIMARY KEY, source TEXT, duration_minutes INTEGER, ts DATETIME)"
            )
        )
        conn.execute(text("INSERT INTO irrigation_runs (source, duration_minutes) VALUES ('manual', 5)"))

    init_db(engine)

    assert "updated_at" in columns(engine, "device_state")
    assert "outcome" in columns(engine, "irrigation_runs")
    with engine.connect() as conn:
        assert conn.execute(text("SELECT outcome FROM irrigation_runs")).scalar() == "started"

    # the upgraded tables are usable by the store
    store = DeviceStateStore(make_session_factory(engine))
    store.load()
    store.mutate("lights", "kitchen", True)
    store.record_run("manual", 3)
    engine.dispose()


def test_init_db_is_idempotent(db_path):
    engine = make_engine(f"sqlite:///{db_path}")
    init_db(engine)
    init_db(engine)

    assert "outcome" in columns(engine, "irrigation_runs")
    engine.dispose()
