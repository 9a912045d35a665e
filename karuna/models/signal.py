"""Life-signal models consumed by the proactive engine."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class SignalType(str, Enum):
    """Data sources the engine can observe."""

    STEPS = "steps"
    WEATHER = "weather"
    CALENDAR = "calendar"
    MEDICATION = "medication"
    SLEEP = "sleep"
    INACTIVITY = "inactivity"
    WELLBEING = "wellbeing"


class ConcernLevel(str, Enum):
    """Inactivity concern grading."""

    NORMAL = "normal"
    MILD = "mild"
    MODERATE = "moderate"
    HIGH = "high"


class Signal(BaseModel):
    """A timestamped observation of one data source.

    ``value`` is either a scalar or a mapping. Collectors may send camelCase
    keys; condition and template lookups accept both spellings.
    """

    model_config = ConfigDict(frozen=True)

    type: SignalType
    timestamp: datetime
    value: Any = None
    metadata: dict = Field(default_factory=dict)

    @field_validator("timestamp")
    @classmethod
    def timestamp_is_aware(cls, v: datetime) -> datetime:
        """Treat naive timestamps as UTC so signals stay comparable."""
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v


class ActivityRecord(BaseModel):
    """Request model for recording a user interaction."""

    timestamp: Optional[datetime] = None
    activity_type: str = "app_interaction"
