"""Models package exports."""

from karuna.models.checkin import (
    AlertSeverity,
    AlertType,
    CaregiverAlert,
    CheckIn,
    CheckInResponse,
    CheckInStatus,
)
from karuna.models.engine import AIMessageRequest, AIMessageResponse, EngineState
from karuna.models.preferences import ProactivePreferences
from karuna.models.rule import (
    CheckInAction,
    CheckInPriority,
    CheckInType,
    ConditionOperator,
    ProactiveRule,
    RuleCondition,
    TimeWindow,
)
from karuna.models.signal import Signal, SignalType

__all__ = [
    "AIMessageRequest",
    "AIMessageResponse",
    "AlertSeverity",
    "AlertType",
    "CaregiverAlert",
    "CheckIn",
    "CheckInAction",
    "CheckInPriority",
    "CheckInResponse",
    "CheckInStatus",
    "CheckInType",
    "ConditionOperator",
    "EngineState",
    "ProactivePreferences",
    "ProactiveRule",
    "RuleCondition",
    "Signal",
    "SignalType",
    "TimeWindow",
]
