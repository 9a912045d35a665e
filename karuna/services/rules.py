"""Default proactive rules and rule-file loading."""

import json
from pathlib import Path
from typing import Iterable, Optional

import structlog
from pydantic import ValidationError

from karuna.config import get_settings
from karuna.models.rule import (
    ActionType,
    CheckInAction,
    CheckInPriority,
    CheckInType,
    ConditionOperator,
    ProactiveRule,
    RuleCondition,
    TimeWindow,
)
from karuna.models.signal import SignalType
from karuna.services.errors import ConfigurationError

logger = structlog.get_logger(__name__)

CONCERNING_PATTERN_RULE_ID = "concerning_pattern"


def _action(action_id: str, label: str, action_type: ActionType, icon: str) -> CheckInAction:
    return CheckInAction(id=action_id, label=label, type=action_type, icon=icon)


DEFAULT_RULES: tuple[ProactiveRule, ...] = (
    ProactiveRule(
        id="step_nudge_afternoon",
        name="Afternoon Step Nudge",
        description="Encourage movement if steps are low in the afternoon",
        type=CheckInType.STEP_NUDGE,
        priority=CheckInPriority.LOW,
        conditions=(
            RuleCondition(signal_type=SignalType.STEPS, operator=ConditionOperator.LT, value=3000),
        ),
        cooldown_minutes=180,
        max_per_day=2,
        time_window=TimeWindow(start_hour=14, end_hour=17),
        message_template="You've taken {{steps}} steps today. A short walk could feel great!",
        actions=(
            _action("yes", "I'll go for a walk", ActionType.POSITIVE, "👍"),
            _action("later", "Remind me later", ActionType.NEUTRAL, "⏰"),
            _action("no", "Not today", ActionType.NEGATIVE, "🙅"),
        ),
    ),
    ProactiveRule(
        id="weather_alert_extreme",
        name="Extreme Weather Alert",
        description="Alert when weather is extremely hot",
        type=CheckInType.WEATHER_ALERT,
        priority=CheckInPriority.HIGH,
        conditions=(
            RuleCondition(signal_type=SignalType.WEATHER, operator=ConditionOperator.GT, value=95),
        ),
        cooldown_minutes=360,
        max_per_day=2,
        time_window=TimeWindow(start_hour=8, end_hour=20),
        message_template="It's very hot today ({{temperature}}°F). Please stay hydrated and avoid the heat.",
        actions=(
            _action("ok", "Got it", ActionType.POSITIVE, "✓"),
            _action("tips", "Show me tips", ActionType.ACTION, "💡"),
        ),
    ),
    ProactiveRule(
        id="weather_alert_rain",
        name="Rain Alert",
        description="Alert when rain is expected",
        type=CheckInType.WEATHER_ALERT,
        priority=CheckInPriority.MEDIUM,
        conditions=(
            RuleCondition(signal_type=SignalType.WEATHER, operator=ConditionOperator.EQ, value="rain"),
        ),
        cooldown_minutes=360,
        max_per_day=1,
        time_window=TimeWindow(start_hour=7, end_hour=10),
        message_template="It looks like rain today. Take an umbrella if you go out!",
        actions=(
            _action("ok", "Thanks!", ActionType.POSITIVE, "☂️"),
        ),
    ),
    ProactiveRule(
        id="medication_missed",
        name="Missed Medication Alert",
        description="Alert when medication doses are missed",
        type=CheckInType.MEDICATION_REMINDER,
        priority=CheckInPriority.HIGH,
        conditions=(
            RuleCondition(
                signal_type=SignalType.MEDICATION,
                operator=ConditionOperator.GT,
                value=0,
                field="missed_doses",
            ),
        ),
        cooldown_minutes=120,
        max_per_day=3,
        time_window=TimeWindow(start_hour=8, end_hour=21),
        message_template=(
            "It looks like you may have missed a medication dose. "
            "Would you like me to help you catch up?"
        ),
        actions=(
            _action("take", "Take it now", ActionType.POSITIVE, "💊"),
            _action("skip", "Skip this dose", ActionType.NEUTRAL, "⏭"),
            _action("help", "Call for help", ActionType.CALL_CAREGIVER, "📞"),
        ),
    ),
    ProactiveRule(
        id="appointment_today",
        name="Today Appointment Reminder",
        description="Remind about appointments today",
        type=CheckInType.APPOINTMENT_REMINDER,
        priority=CheckInPriority.HIGH,
        conditions=(
            RuleCondition(signal_type=SignalType.CALENDAR, operator=ConditionOperator.GT, value=0),
        ),
        cooldown_minutes=240,
        max_per_day=2,
        time_window=TimeWindow(start_hour=7, end_hour=20),
        message_template="You have an appointment today: {{next_event}}. Would you like help preparing?",
        actions=(
            _action("details", "Show details", ActionType.ACTION, "📋"),
            _action("remind", "Remind me in 1 hour", ActionType.NEUTRAL, "⏰"),
            _action("ok", "I remember", ActionType.POSITIVE, "✓"),
        ),
    ),
    ProactiveRule(
        id="wellbeing_morning",
        name="Morning Wellbeing Check",
        description="Check in on wellbeing in the morning",
        type=CheckInType.WELLBEING_CHECK,
        priority=CheckInPriority.MEDIUM,
        conditions=(),
        cooldown_minutes=1440,
        max_per_day=1,
        time_window=TimeWindow(start_hour=8, end_hour=10),
        message_template="{{greeting}}! How are you feeling today?",
        actions=(
            _action("great", "Feeling great!", ActionType.POSITIVE, "😊"),
            _action("ok", "Doing okay", ActionType.NEUTRAL, "😐"),
            _action("not_well", "Not so good", ActionType.NEGATIVE, "😔"),
        ),
    ),
    ProactiveRule(
        id="inactivity_check",
        name="Inactivity Check",
        description="Check in after extended inactivity",
        type=CheckInType.INACTIVITY_CHECK,
        priority=CheckInPriority.MEDIUM,
        conditions=(
            RuleCondition(
                signal_type=SignalType.INACTIVITY, operator=ConditionOperator.GTE, value=180
            ),
        ),
        cooldown_minutes=180,
        max_per_day=2,
        time_window=TimeWindow(start_hour=9, end_hour=20),
        message_template=(
            "I noticed it's been a while since we chatted. "
            "Just checking in. Is everything okay?"
        ),
        actions=(
            _action("fine", "I'm fine!", ActionType.POSITIVE, "👍"),
            _action("busy", "Just busy", ActionType.NEUTRAL, "📱"),
            _action("help", "Need some help", ActionType.NEGATIVE, "🤔"),
            _action("call", "Call my caregiver", ActionType.CALL_CAREGIVER, "📞"),
        ),
    ),
    ProactiveRule(
        id="hydration_reminder",
        name="Hydration Reminder",
        description="Remind to drink water on warm days",
        type=CheckInType.HYDRATION_REMINDER,
        priority=CheckInPriority.LOW,
        conditions=(
            RuleCondition(signal_type=SignalType.WEATHER, operator=ConditionOperator.GT, value=80),
        ),
        cooldown_minutes=120,
        max_per_day=3,
        time_window=TimeWindow(start_hour=10, end_hour=18),
        message_template="It's warm today! Have you had some water recently?",
        actions=(
            _action("yes", "Yes, I have", ActionType.POSITIVE, "💧"),
            _action("will", "I'll get some now", ActionType.NEUTRAL, "🥤"),
        ),
    ),
    ProactiveRule(
        id=CONCERNING_PATTERN_RULE_ID,
        name="Concerning Pattern Check",
        description="Urgent check-in when several signals look concerning together",
        type=CheckInType.INACTIVITY_CHECK,
        priority=CheckInPriority.URGENT,
        conditions=(
            RuleCondition(
                signal_type=SignalType.WELLBEING,
                operator=ConditionOperator.GTE,
                value=2,
                field="concern_score",
            ),
        ),
        cooldown_minutes=240,
        max_per_day=2,
        message_template=(
            "I noticed a few things that made me want to check on you. Is everything okay?"
        ),
        actions=(
            _action("fine", "I'm doing fine", ActionType.POSITIVE, "👍"),
            _action("help", "I need some help", ActionType.NEGATIVE, "🆘"),
            _action("call", "Call my caregiver", ActionType.CALL_CAREGIVER, "📞"),
        ),
    ),
)


def parse_rules(entries: Iterable[dict]) -> list[ProactiveRule]:
    """Validate raw rule entries, skipping malformed or duplicate ones."""
    rules: list[ProactiveRule] = []
    seen: set[str] = set()

    for index, entry in enumerate(entries):
        rule_id = entry.get("id") if isinstance(entry, dict) else None
        try:
            try:
                rule = ProactiveRule.model_validate(entry)
            except ValidationError as e:
                raise ConfigurationError(
                    f"rule #{index} is invalid: {e.error_count()} validation errors",
                    rule_id=rule_id,
                ) from e
            if rule.id in seen:
                raise ConfigurationError(f"duplicate rule id {rule.id}", rule_id=rule.id)
        except ConfigurationError as e:
            logger.error("rule_configuration_invalid", rule_id=e.rule_id, index=index, error=str(e))
            continue

        seen.add(rule.id)
        rules.append(rule)

    return rules


def load_rules(path: str | Path) -> list[ProactiveRule]:
    """Load rules from a JSON file (a list, or an object with a ``rules`` list).

    Raises:
        ConfigurationError: If the file cannot be read or is not a rule list
    """
    path = Path(path)
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"cannot read rules from {path}: {e}") from e

    if isinstance(data, dict):
        data = data.get("rules")
    if not isinstance(data, list):
        raise ConfigurationError(f"{path} does not contain a rule list")

    rules = parse_rules(data)
    logger.info("rules_loaded", path=str(path), count=len(rules), skipped=len(data) - len(rules))
    return rules


def get_rules(rules_path: Optional[str] = None) -> list[ProactiveRule]:
    """Configured rule set, falling back to the defaults."""
    path = rules_path if rules_path is not None else get_settings().proactive_rules_path
    if not path:
        return list(DEFAULT_RULES)

    try:
        return load_rules(path)
    except ConfigurationError as e:
        logger.error("rules_file_invalid", path=path, error=str(e), note="Using default rules")
        return list(DEFAULT_RULES)


def with_rule_enabled(
    rules: Iterable[ProactiveRule], rule_id: str, enabled: bool
) -> list[ProactiveRule]:
    """Copy of ``rules`` with one rule toggled. Rules themselves are never mutated."""
    return [
        rule.model_copy(update={"enabled": enabled}) if rule.id == rule_id else rule
        for rule in rules
    ]
