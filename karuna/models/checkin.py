"""Check-in lifecycle and caregiver alert models."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from karuna.models.rule import CheckInAction, CheckInPriority, CheckInType
from karuna.models.signal import SignalType


class CheckInStatus(str, Enum):
    """Lifecycle state. Everything except PENDING is terminal."""

    PENDING = "pending"
    DISMISSED = "dismissed"
    RESPONDED = "responded"
    EXPIRED = "expired"
    SUPERSEDED = "superseded"  # replaced by a newer check-in from the same rule


class CheckInResponse(BaseModel):
    """The user's answer to a check-in. Attached once."""

    model_config = ConfigDict(frozen=True)

    action_id: str
    timestamp: datetime
    follow_up: Optional[str] = None


class CheckIn(BaseModel):
    """A generated proactive prompt shown to the user."""

    id: str
    rule_id: str
    type: CheckInType
    priority: CheckInPriority
    title: str
    message: str
    suggestion: Optional[str] = None
    created_at: datetime
    expires_at: Optional[datetime] = None
    trigger_signals: list[SignalType] = Field(default_factory=list)
    actions: list[CheckInAction] = Field(default_factory=list)
    status: CheckInStatus = CheckInStatus.PENDING
    dismissed: bool = False
    dismissed_at: Optional[datetime] = None
    snoozed_until: Optional[datetime] = None
    response: Optional[CheckInResponse] = None

    @property
    def is_terminal(self) -> bool:
        return self.status != CheckInStatus.PENDING

    def is_active(self, now: datetime) -> bool:
        """Pending and not past its expiry."""
        if self.is_terminal:
            return False
        return self.expires_at is None or self.expires_at > now

    def find_action(self, action_id: str) -> Optional[CheckInAction]:
        for action in self.actions:
            if action.id == action_id:
                return action
        return None


class AlertSeverity(str, Enum):
    """Caregiver alert severity (care circle schema)."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AlertType(str, Enum):
    """Why a caregiver alert was raised."""

    CHECKIN_CONCERN = "checkin_concern"
    CAREGIVER_REQUESTED = "caregiver_requested"
    UNANSWERED_CHECKIN = "unanswered_checkin"
    MISSED_CHECKIN = "missed_checkin"


class CaregiverAlert(BaseModel):
    """An alert handed to the care-circle notification system."""

    id: UUID
    user_id: str
    circle_id: Optional[str] = None
    alert_type: AlertType
    severity: AlertSeverity
    title: str
    message: str
    data: dict = Field(default_factory=dict)
    created_at: datetime


class RespondRequest(BaseModel):
    """Validated input for answering a check-in."""

    action_id: str = Field(..., min_length=1)


class SnoozeRequest(BaseModel):
    """Validated input for snoozing a check-in."""

    minutes: int = Field(default=30, ge=1, le=720)
