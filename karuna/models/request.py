"""Request models for the proactive API."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from karuna.models.signal import Signal


class SignalBatch(BaseModel):
    """One or more collected signals for a user."""

    signals: list[Signal] = Field(..., min_length=1, max_length=100)


class MonitoringRequest(BaseModel):
    circle_id: Optional[str] = None


class TickRequest(BaseModel):
    """Manual tick. ``now`` overrides the clock (simulations, backfills)."""

    now: Optional[datetime] = None
