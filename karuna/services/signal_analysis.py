"""Signal value lookup, local-time helpers and derived signals."""

import re
from collections.abc import Mapping
from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog

from karuna.models.engine import TimeOfDay
from karuna.models.preferences import ProactivePreferences
from karuna.models.signal import ConcernLevel, Signal, SignalType

logger = structlog.get_logger(__name__)

# Field compared when a condition names no field
DEFAULT_FIELDS: dict[SignalType, str] = {
    SignalType.STEPS: "current",
    SignalType.WEATHER: "temperature",
    SignalType.CALENDAR: "today_event_count",
    SignalType.MEDICATION: "pending_doses",
    SignalType.INACTIVITY: "minutes_since_activity",
    SignalType.SLEEP: "hours",
    SignalType.WELLBEING: "concern_score",
}

# Field compared when the condition value is a string
CATEGORICAL_FIELDS: dict[SignalType, str] = {
    SignalType.STEPS: "trend",
    SignalType.WEATHER: "condition",
    SignalType.INACTIVITY: "concern_level",
    SignalType.WELLBEING: "mood",
}

# Concern scoring weights
CONCERN_THRESHOLD = 2
CAREGIVER_CALL_THRESHOLD = 4

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


def to_camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


def to_snake(name: str) -> str:
    return _CAMEL_BOUNDARY.sub("_", name).lower()


def read_field(value: Any, field: str) -> Any:
    """Read a (possibly dotted) field from a signal value.

    Accepts snake_case and camelCase keys. Raises KeyError when missing.
    """
    current = value
    for part in field.split("."):
        if not isinstance(current, Mapping):
            raise KeyError(field)
        for key in (part, to_camel(part), to_snake(part)):
            if key in current:
                current = current[key]
                break
        else:
            raise KeyError(field)
    return current


def condition_field(signal_type: SignalType, comparison_value: Any) -> Optional[str]:
    """Default field for a condition with no explicit field."""
    if isinstance(comparison_value, str) and signal_type in CATEGORICAL_FIELDS:
        return CATEGORICAL_FIELDS[signal_type]
    return DEFAULT_FIELDS.get(signal_type)


def extract_value(signal: Signal, field: Optional[str] = None, comparison_value: Any = None) -> Any:
    """Value of a signal that a condition compares against.

    Scalar signal values are returned as-is when no field is requested.
    """
    if not isinstance(signal.value, Mapping):
        if field:
            raise KeyError(field)
        return signal.value

    field = field or condition_field(signal.type, comparison_value)
    if field is None:
        raise KeyError(signal.type.value)
    return read_field(signal.value, field)


def local_now(now: datetime, tz_name: str) -> datetime:
    """Convert an instant to the user's local time, falling back to UTC."""
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    try:
        return now.astimezone(ZoneInfo(tz_name))
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("invalid_timezone", timezone=tz_name)
        return now.astimezone(timezone.utc)


def hour_in_range(hour: int, start_hour: int, end_hour: int) -> bool:
    """True if ``hour`` lies in ``[start_hour, end_hour)``; ranges may cross midnight."""
    if start_hour == end_hour:
        return False
    if start_hour < end_hour:
        return start_hour <= hour < end_hour
    return hour >= start_hour or hour < end_hour


def is_quiet_hours(preferences: ProactivePreferences, local: datetime) -> bool:
    quiet = preferences.quiet_hours
    if not quiet.enabled:
        return False
    return hour_in_range(local.hour, quiet.start_hour, quiet.end_hour)


def awake_minutes_between(
    start: datetime, end: datetime, preferences: ProactivePreferences
) -> int:
    """Minutes from ``start`` to ``end`` that fall outside the user's quiet hours.

    Walks the interval one local clock hour at a time, so quiet hours are
    judged in the user's timezone.
    """
    if end <= start:
        return 0
    if not preferences.quiet_hours.enabled:
        return int((end - start).total_seconds() // 60)

    awake = timedelta()
    cursor = start
    while cursor < end:
        local = local_now(cursor, preferences.timezone)
        next_hour = local.replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)
        boundary = min(end, max(next_hour.astimezone(timezone.utc), cursor + timedelta(minutes=1)))
        if not is_quiet_hours(preferences, local):
            awake += boundary - cursor
        cursor = boundary
    return int(awake.total_seconds() // 60)


def time_of_day(local: datetime) -> TimeOfDay:
    hour = local.hour
    if 5 <= hour < 12:
        return TimeOfDay.MORNING
    if 12 <= hour < 17:
        return TimeOfDay.AFTERNOON
    if 17 <= hour < 21:
        return TimeOfDay.EVENING
    return TimeOfDay.NIGHT


def concern_level_for(minutes_since_activity: int) -> ConcernLevel:
    if minutes_since_activity < 60:
        return ConcernLevel.NORMAL
    if minutes_since_activity < 120:
        return ConcernLevel.MILD
    if minutes_since_activity < 240:
        return ConcernLevel.MODERATE
    return ConcernLevel.HIGH


def derive_inactivity_signal(
    last_activity_at: datetime,
    now: datetime,
    preferences: Optional[ProactivePreferences] = None,
) -> Signal:
    """Inactivity signal computed from the last recorded user interaction.

    With ``preferences``, time spent inside quiet hours is not counted, so a
    night's sleep does not read as inactivity.
    """
    if preferences is not None:
        minutes = awake_minutes_between(last_activity_at, now, preferences)
    else:
        minutes = max(0, int((now - last_activity_at).total_seconds() // 60))
    return Signal(
        type=SignalType.INACTIVITY,
        timestamp=now,
        value={
            "minutes_since_activity": minutes,
            "last_activity_type": "app_interaction",
            "concern_level": concern_level_for(minutes).value,
        },
        metadata={"derived": True},
    )


def _safe_read(signal: Optional[Signal], field: str) -> Any:
    if signal is None:
        return None
    try:
        return read_field(signal.value, field)
    except KeyError:
        return None


def assess_concern(signals: Mapping[SignalType, Signal], local: datetime) -> dict:
    """Score the snapshot for patterns worth a wellbeing check.

    Returns the score, human-readable reasons and whether a caregiver call
    should be suggested.
    """
    reasons: list[str] = []
    score = 0

    concern_level = _safe_read(signals.get(SignalType.INACTIVITY), "concern_level")
    if concern_level == ConcernLevel.HIGH.value:
        reasons.append("Extended period of inactivity")
        score += 3
    elif concern_level == ConcernLevel.MODERATE.value:
        reasons.append("Long period without activity")
        score += 1

    medication = signals.get(SignalType.MEDICATION)
    missed = _safe_read(medication, "missed_doses")
    if isinstance(missed, (int, float)) and missed >= 2:
        reasons.append("Multiple missed medication doses")
        score += 2
    adherence = _safe_read(medication, "adherence_rate")
    if isinstance(adherence, (int, float)) and adherence < 50:
        reasons.append("Low medication adherence")
        score += 1

    # Low steps only matter late in the day
    percentage = _safe_read(signals.get(SignalType.STEPS), "percentage")
    if local.hour >= 14 and isinstance(percentage, (int, float)) and percentage < 20:
        reasons.append("Very low activity today")
        score += 1

    return {
        "concern_score": score,
        "reasons": reasons,
        "is_concerning": score >= CONCERN_THRESHOLD,
        "suggest_caregiver_call": score >= CAREGIVER_CALL_THRESHOLD,
    }


def derive_wellbeing_signal(
    signals: Mapping[SignalType, Signal], now: datetime, local: datetime
) -> Signal:
    """Wellbeing signal carrying the concern assessment of a snapshot."""
    return Signal(
        type=SignalType.WELLBEING,
        timestamp=now,
        value=assess_concern(signals, local),
        metadata={"derived": True},
    )
