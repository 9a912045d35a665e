"""Engine state and text-generation request models."""

from datetime import date, datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from karuna.models.checkin import CheckIn
from karuna.models.rule import CheckInType
from karuna.models.signal import Signal


class EngineState(BaseModel):
    """Mutable per-user engine state. One instance per monitored user."""

    user_id: str
    circle_id: Optional[str] = None
    is_running: bool = False
    last_check_time: Optional[datetime] = None
    day: Optional[date] = None  # local date the counters below belong to
    today_check_in_count: int = 0
    rule_counts_today: dict[str, int] = Field(default_factory=dict)
    pending_check_ins: list[CheckIn] = Field(default_factory=list)
    history: list[CheckIn] = Field(default_factory=list)
    recent_signals: list[Signal] = Field(default_factory=list)
    last_rule_triggers: dict[str, datetime] = Field(default_factory=dict)
    last_activity_at: Optional[datetime] = None
    unanswered_today: int = 0
    missed_checkin_alert_sent: bool = False


class TimeOfDay(str, Enum):
    MORNING = "morning"
    AFTERNOON = "afternoon"
    EVENING = "evening"
    NIGHT = "night"


class MessageTone(str, Enum):
    WARM = "warm"
    GENTLE = "gentle"
    ENCOURAGING = "encouraging"
    CONCERNED = "concerned"


class UserContext(BaseModel):
    name: Optional[str] = None
    time_of_day: TimeOfDay
    recent_mood: Optional[str] = None


class MessageConstraints(BaseModel):
    max_length: int = 150
    tone: MessageTone = MessageTone.WARM
    avoid_topics: list[str] = Field(default_factory=list)


class AIMessageRequest(BaseModel):
    """Input to the text-generation collaborator."""

    check_in_type: CheckInType
    signals: list[Signal] = Field(default_factory=list)
    user_context: UserContext
    constraints: MessageConstraints = Field(default_factory=MessageConstraints)


class AIMessageResponse(BaseModel):
    """Output of the text-generation collaborator."""

    message: str
    suggestion: Optional[str] = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
