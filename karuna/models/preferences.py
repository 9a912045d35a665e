"""Per-user proactive preferences."""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class CaregiverAlertThreshold(str, Enum):
    """Lowest check-in priority that escalates to a caregiver when unanswered."""

    NEVER = "never"
    HIGH = "high"
    MODERATE = "moderate"
    LOW = "low"


class QuietHours(BaseModel):
    """Local hours during which non-urgent check-ins are suppressed."""

    enabled: bool = True
    start_hour: int = Field(default=22, ge=0, le=23)  # 10 PM
    end_hour: int = Field(default=7, ge=0, le=23)  # 7 AM


class CategoryToggles(BaseModel):
    """Per-category opt-outs."""

    steps: bool = True
    weather: bool = True
    medication: bool = True
    appointments: bool = True
    wellbeing: bool = True
    hydration: bool = True

    def is_enabled(self, category: str) -> bool:
        return bool(getattr(self, category, False))


class ProactivePreferences(BaseModel):
    """Per-user proactive configuration. Read-only input to the evaluator."""

    enabled: bool = True
    max_nudges_per_day: int = Field(default=3, ge=1, le=5)
    quiet_hours: QuietHours = Field(default_factory=QuietHours)
    categories: CategoryToggles = Field(default_factory=CategoryToggles)
    concerning_pattern_alert: bool = True
    caregiver_alert_threshold: CaregiverAlertThreshold = CaregiverAlertThreshold.HIGH
    timezone: str = "UTC"
    user_name: Optional[str] = None


class ProactivePreferencesUpdate(BaseModel):
    """Request model for updating proactive preferences."""

    enabled: Optional[bool] = None
    max_nudges_per_day: Optional[int] = Field(default=None, ge=1, le=5)
    quiet_hours: Optional[QuietHours] = None
    categories: Optional[CategoryToggles] = None
    concerning_pattern_alert: Optional[bool] = None
    caregiver_alert_threshold: Optional[CaregiverAlertThreshold] = None
    timezone: Optional[str] = None
    user_name: Optional[str] = None
