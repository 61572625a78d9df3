from datetime import datetime
from typing import Any
from sqlalchemy import JSON, String, Integer, DateTime
from sqlalchemy.orm import Mapped, mapped_column
from db import Base

STATE_ROW_ID = 1


class DeviceStateRecord(Base):
    """Single row holding the whole serialized DeviceState document."""

    __tablename__ = "device_state"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    document: Mapped[dict[str, Any]] = mapped_column(JSON)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class IrrigationRun(Base):
    __tablename__ = "irrigation_runs"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    source: Mapped[str] = mapped_column(String, index=True)  # "manual", "control", "schedule:<n>"
    outcome: Mapped[str] = mapped_column(String, default="started")  # "started" or "skipped_rain"
    duration_minutes: Mapped[int] = mapped_column(Integer)
    ts: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)
