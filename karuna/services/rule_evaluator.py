"""Rule evaluation over a signal snapshot.

For each rule, in priority order (urgent first) and then by rule id, the
evaluator applies these gates and stops at the first one that fails:

1. rule disabled, or its category disabled in preferences
2. outside the rule's time window (urgent rules ignore windows)
3. cooldown since the rule's last trigger not yet elapsed
4. per-rule daily cap or global daily cap
5. inside quiet hours (urgent rules ignore quiet hours)
6. rule conditions, all of which must hold

Evaluation does not touch the engine state. The engine calls
:meth:`RuleEvaluator.record_trigger` once the check-in for a triggered rule
has been queued, so a trigger that never produced a check-in costs the rule
neither its cooldown nor a daily slot.
Evaluation is total: malformed conditions evaluate to False and an
unexpected error in one rule never stops the others.
"""

import operator
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Iterable, Optional

import structlog

from karuna.models.engine import EngineState
from karuna.models.preferences import ProactivePreferences
from karuna.models.rule import (
    CHECK_IN_TYPE_INFO,
    PRIORITY_RANK,
    CheckInPriority,
    ConditionOperator,
    ProactiveRule,
    RuleCondition,
)
from karuna.models.signal import Signal, SignalType
from karuna.services.errors import SignalMissingError
from karuna.services.rules import CONCERNING_PATTERN_RULE_ID
from karuna.services.signal_analysis import (
    extract_value,
    hour_in_range,
    is_quiet_hours,
    local_now,
)

logger = structlog.get_logger(__name__)

_COMPARATORS = {
    ConditionOperator.LT: operator.lt,
    ConditionOperator.GT: operator.gt,
    ConditionOperator.LTE: operator.le,
    ConditionOperator.GTE: operator.ge,
    ConditionOperator.EQ: operator.eq,
}


@dataclass
class TriggeredRule:
    """A rule that fired, with the signals its conditions matched."""

    rule: ProactiveRule
    triggered_at: datetime
    matched_signals: list[Signal] = field(default_factory=list)


def compare(op: ConditionOperator, actual: Any, expected: Any, secondary: Any = None) -> bool:
    """Apply a condition operator. May raise TypeError on mismatched types."""
    if op == ConditionOperator.BETWEEN:
        if expected is None or secondary is None:
            return False
        return bool(expected <= actual <= secondary)

    if op == ConditionOperator.CONTAINS:
        if isinstance(actual, str):
            return str(expected) in actual
        if isinstance(actual, (list, tuple, set, frozenset, Mapping)):
            return expected in actual
        return str(expected) in str(actual)

    comparator = _COMPARATORS.get(op)
    if comparator is None:
        return False
    return bool(comparator(actual, expected))


def evaluate_condition(condition: RuleCondition, signals: Mapping[SignalType, Signal]) -> bool:
    """Evaluate one condition. Missing signals and malformed conditions are False."""
    try:
        op = ConditionOperator(condition.operator)
        signal = signals.get(condition.signal_type)
        if signal is None:
            raise SignalMissingError(str(condition.signal_type))
        actual = extract_value(signal, condition.field, condition.value)
        return compare(op, actual, condition.value, condition.secondary_value)
    except SignalMissingError:
        return False
    except (KeyError, TypeError, ValueError) as e:
        logger.debug(
            "condition_not_evaluable",
            signal_type=str(condition.signal_type),
            operator=str(condition.operator),
            error=str(e),
        )
        return False


class RuleEvaluator:
    """Matches a signal snapshot against rules and records triggers."""

    def evaluate(
        self,
        rules: Iterable[ProactiveRule],
        signals: Mapping[SignalType, Signal],
        state: EngineState,
        preferences: ProactivePreferences,
        now: datetime,
    ) -> list[TriggeredRule]:
        """Return the rules that fire now. ``state`` is read, never written.

        Rules triggered earlier in the same pass count toward the global daily
        cap, so one pass never hands out more check-ins than the cap allows.
        """
        if not preferences.enabled:
            return []

        local = local_now(now, preferences.timezone)
        triggered: list[TriggeredRule] = []

        for rule in sorted(rules, key=lambda r: (-PRIORITY_RANK[r.priority], r.id)):
            try:
                reason = self.skip_reason(
                    rule, signals, state, preferences, now, local, len(triggered)
                )
            except Exception as e:
                logger.error("rule_evaluation_failed", rule_id=rule.id, error=str(e))
                continue

            if reason is not None:
                logger.debug("rule_skipped", rule_id=rule.id, reason=reason)
                continue

            triggered.append(
                TriggeredRule(
                    rule=rule,
                    triggered_at=now,
                    matched_signals=self._matched_signals(rule, signals),
                )
            )
            logger.info(
                "rule_triggered",
                user_id=state.user_id,
                rule_id=rule.id,
                priority=rule.priority.value,
            )

        return triggered

    def skip_reason(
        self,
        rule: ProactiveRule,
        signals: Mapping[SignalType, Signal],
        state: EngineState,
        preferences: ProactivePreferences,
        now: datetime,
        local: datetime,
        triggered_this_pass: int = 0,
    ) -> Optional[str]:
        """Name of the first gate the rule fails, or None if it should fire."""
        urgent = rule.priority == CheckInPriority.URGENT

        if not rule.enabled:
            return "disabled"
        category = CHECK_IN_TYPE_INFO[rule.type].category
        if not preferences.categories.is_enabled(category):
            return "category_disabled"
        if rule.id == CONCERNING_PATTERN_RULE_ID and not preferences.concerning_pattern_alert:
            return "concerning_pattern_alert_off"

        window = rule.time_window
        if window and not urgent and not hour_in_range(local.hour, window.start_hour, window.end_hour):
            return "outside_time_window"

        last_trigger = state.last_rule_triggers.get(rule.id)
        if last_trigger and now - last_trigger < timedelta(minutes=rule.cooldown_minutes):
            return "cooldown"

        if state.rule_counts_today.get(rule.id, 0) >= rule.max_per_day:
            return "rule_daily_cap"
        if state.today_check_in_count + triggered_this_pass >= preferences.max_nudges_per_day:
            return "global_daily_cap"

        if not urgent and is_quiet_hours(preferences, local):
            return "quiet_hours"

        if not all(evaluate_condition(c, signals) for c in rule.conditions):
            return "conditions_not_met"

        return None

    def record_trigger(self, rule: ProactiveRule, state: EngineState, now: datetime) -> None:
        """Start the rule's cooldown and spend one of its and the day's check-ins."""
        state.last_rule_triggers[rule.id] = now
        state.rule_counts_today[rule.id] = state.rule_counts_today.get(rule.id, 0) + 1
        state.today_check_in_count += 1

    def _matched_signals(
        self, rule: ProactiveRule, signals: Mapping[SignalType, Signal]
    ) -> list[Signal]:
        matched: list[Signal] = []
        for condition in rule.conditions:
            signal = signals.get(condition.signal_type)
            if signal is not None and signal not in matched:
                matched.append(signal)
        return matched
