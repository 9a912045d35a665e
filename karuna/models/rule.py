"""Check-in and rule configuration models."""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from karuna.models.signal import SignalType


class CheckInType(str, Enum):
    """Kinds of proactive check-ins."""

    STEP_NUDGE = "step_nudge"
    WEATHER_ALERT = "weather_alert"
    MEDICATION_REMINDER = "medication_reminder"
    APPOINTMENT_REMINDER = "appointment_reminder"
    WELLBEING_CHECK = "wellbeing_check"
    INACTIVITY_CHECK = "inactivity_check"
    HYDRATION_REMINDER = "hydration_reminder"
    REST_SUGGESTION = "rest_suggestion"


class CheckInPriority(str, Enum):
    """Check-in priority, lowest to highest."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


PRIORITY_RANK = {
    CheckInPriority.LOW: 0,
    CheckInPriority.MEDIUM: 1,
    CheckInPriority.HIGH: 2,
    CheckInPriority.URGENT: 3,
}


class ConditionOperator(str, Enum):
    """Comparison operators available to rule conditions."""

    LT = "lt"
    GT = "gt"
    EQ = "eq"
    LTE = "lte"
    GTE = "gte"
    BETWEEN = "between"
    CONTAINS = "contains"


class ActionType(str, Enum):
    """How a check-in action should be interpreted."""

    POSITIVE = "positive"
    NEGATIVE = "negative"
    NEUTRAL = "neutral"
    ACTION = "action"
    CALL_CAREGIVER = "call_caregiver"


class CheckInAction(BaseModel):
    """A response option offered with a check-in."""

    model_config = ConfigDict(frozen=True)

    id: str
    label: str
    type: ActionType
    icon: Optional[str] = None


class RuleCondition(BaseModel):
    """A single comparison against the current signal of one type.

    ``field`` selects a key inside the signal value; when omitted the
    per-signal default field is used.
    """

    model_config = ConfigDict(frozen=True)

    signal_type: SignalType
    operator: ConditionOperator
    value: Any = None
    secondary_value: Any = None
    field: Optional[str] = None


class TimeWindow(BaseModel):
    """Local hours ``[start_hour, end_hour)`` during which a rule may fire."""

    model_config = ConfigDict(frozen=True)

    start_hour: int = Field(..., ge=0, le=23)
    end_hour: int = Field(..., ge=0, le=24)


class ProactiveRule(BaseModel):
    """Declarative trigger rule. Immutable once loaded."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    name: str
    description: str = ""
    type: CheckInType
    priority: CheckInPriority
    enabled: bool = True
    conditions: tuple[RuleCondition, ...] = ()
    cooldown_minutes: int = Field(..., ge=0)
    max_per_day: int = Field(..., ge=0)
    time_window: Optional[TimeWindow] = None
    message_template: str
    suggestion: Optional[str] = None
    expires_after_minutes: Optional[int] = Field(default=None, gt=0)
    actions: tuple[CheckInAction, ...] = ()


class CheckInTypeInfo(BaseModel):
    """Display and preference metadata for a check-in type."""

    display_name: str
    icon: str
    category: str
    default_priority: CheckInPriority
    title: str


CHECK_IN_TYPE_INFO: dict[CheckInType, CheckInTypeInfo] = {
    CheckInType.STEP_NUDGE: CheckInTypeInfo(
        display_name="Step Reminder",
        icon="👟",
        category="steps",
        default_priority=CheckInPriority.LOW,
        title="Time to Move!",
    ),
    CheckInType.WEATHER_ALERT: CheckInTypeInfo(
        display_name="Weather Alert",
        icon="🌤️",
        category="weather",
        default_priority=CheckInPriority.MEDIUM,
        title="Weather Update",
    ),
    CheckInType.MEDICATION_REMINDER: CheckInTypeInfo(
        display_name="Medication Reminder",
        icon="💊",
        category="medication",
        default_priority=CheckInPriority.HIGH,
        title="Medication Check",
    ),
    CheckInType.APPOINTMENT_REMINDER: CheckInTypeInfo(
        display_name="Appointment Reminder",
        icon="📅",
        category="appointments",
        default_priority=CheckInPriority.HIGH,
        title="Upcoming Appointment",
    ),
    CheckInType.WELLBEING_CHECK: CheckInTypeInfo(
        display_name="Wellbeing Check",
        icon="💚",
        category="wellbeing",
        default_priority=CheckInPriority.MEDIUM,
        title="Hi there!",
    ),
    CheckInType.INACTIVITY_CHECK: CheckInTypeInfo(
        display_name="Activity Check",
        icon="🏃",
        category="wellbeing",
        default_priority=CheckInPriority.MEDIUM,
        title="Checking In",
    ),
    CheckInType.HYDRATION_REMINDER: CheckInTypeInfo(
        display_name="Hydration Reminder",
        icon="💧",
        category="hydration",
        default_priority=CheckInPriority.LOW,
        title="Stay Hydrated!",
    ),
    CheckInType.REST_SUGGESTION: CheckInTypeInfo(
        display_name="Rest Suggestion",
        icon="😴",
        category="wellbeing",
        default_priority=CheckInPriority.LOW,
        title="Rest Time",
    ),
}
