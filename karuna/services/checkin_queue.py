"""Pending check-in queue, response tracking and caregiver escalation."""

from datetime import datetime, timedelta
from typing import Optional, Protocol
from uuid import uuid4

import structlog

from karuna.models.checkin import (
    AlertSeverity,
    AlertType,
    CaregiverAlert,
    CheckIn,
    CheckInResponse,
    CheckInStatus,
)
from karuna.models.engine import EngineState
from karuna.models.preferences import CaregiverAlertThreshold, ProactivePreferences
from karuna.models.rule import (
    PRIORITY_RANK,
    ActionType,
    CheckInAction,
    CheckInPriority,
    CheckInType,
)
from karuna.services.errors import CheckInNotFoundError, QueueStateError

logger = structlog.get_logger(__name__)

DEFAULT_EXPIRY = timedelta(hours=24)
URGENT_EXPIRY = timedelta(hours=1)
SNOOZE_GRACE = timedelta(hours=1)

# Unanswered check-ins in one day before the caregiver is told
MISSED_CHECKIN_ALERT_COUNT = 3

# Check-in types whose negative answers or silence are worth a caregiver's attention
ESCALATING_TYPES = frozenset({CheckInType.WELLBEING_CHECK, CheckInType.INACTIVITY_CHECK})

SEVERITY_FOR_PRIORITY = {
    CheckInPriority.LOW: AlertSeverity.LOW,
    CheckInPriority.MEDIUM: AlertSeverity.MEDIUM,
    CheckInPriority.HIGH: AlertSeverity.HIGH,
    CheckInPriority.URGENT: AlertSeverity.CRITICAL,
}

# Lowest priority that escalates when unanswered, per threshold
THRESHOLD_MIN_PRIORITY = {
    CaregiverAlertThreshold.HIGH: CheckInPriority.HIGH,
    CaregiverAlertThreshold.MODERATE: CheckInPriority.MEDIUM,
    CaregiverAlertThreshold.LOW: CheckInPriority.LOW,
}


class AlertSink(Protocol):
    async def send_alert(self, alert: CaregiverAlert) -> bool: ...


def meets_threshold(priority: CheckInPriority, threshold: CaregiverAlertThreshold) -> bool:
    minimum = THRESHOLD_MIN_PRIORITY.get(threshold)
    if minimum is None:
        return False
    return PRIORITY_RANK[priority] >= PRIORITY_RANK[minimum]


class CheckInQueue:
    """Lifecycle operations on a user's check-ins.

    Works directly on the ``pending_check_ins`` and ``history`` lists of an
    :class:`EngineState`. Check-ins leave the pending list exactly once, when
    they reach a terminal status, and are kept in history afterwards.
    """

    def __init__(self, state: EngineState, alerts: Optional[AlertSink] = None):
        self.state = state
        self.alerts = alerts

    def enqueue(
        self,
        check_in: CheckIn,
        now: datetime,
        expires_after_minutes: Optional[int] = None,
    ) -> CheckIn:
        if check_in.expires_at is None:
            if expires_after_minutes is not None:
                lifetime = timedelta(minutes=expires_after_minutes)
            elif check_in.priority == CheckInPriority.URGENT:
                lifetime = URGENT_EXPIRY
            else:
                lifetime = DEFAULT_EXPIRY
            check_in.expires_at = now + lifetime

        self._supersede(check_in, now)
        self.state.pending_check_ins.append(check_in)
        logger.info(
            "check_in_created",
            user_id=self.state.user_id,
            check_in_id=check_in.id,
            rule_id=check_in.rule_id,
            type=check_in.type.value,
            priority=check_in.priority.value,
            expires_at=check_in.expires_at.isoformat(),
        )
        return check_in

    def _supersede(self, check_in: CheckIn, now: datetime) -> None:
        """Retire pending check-ins from the same rule; one per rule stays pending.

        Superseded check-ins are not counted as unanswered.
        """
        stale = [
            c
            for c in self.state.pending_check_ins
            if c.rule_id == check_in.rule_id and c.is_active(now)
        ]
        for old in stale:
            self._retire(old, CheckInStatus.SUPERSEDED)
            logger.info(
                "check_in_superseded",
                user_id=self.state.user_id,
                check_in_id=old.id,
                replaced_by=check_in.id,
                rule_id=old.rule_id,
            )

    def get(self, check_in_id: str) -> Optional[CheckIn]:
        for check_in in self.state.pending_check_ins:
            if check_in.id == check_in_id:
                return check_in
        for check_in in self.state.history:
            if check_in.id == check_in_id:
                return check_in
        return None

    def _pending(self, check_in_id: str, now: datetime) -> CheckIn:
        for check_in in self.state.pending_check_ins:
            if check_in.id == check_in_id and check_in.is_active(now):
                return check_in
        raise CheckInNotFoundError(check_in_id)

    def active(self, now: datetime) -> list[CheckIn]:
        """Check-ins to show now: pending, unexpired and not snoozed.

        Ordered by priority (urgent first), then oldest first.
        """
        visible = [
            c
            for c in self.state.pending_check_ins
            if c.is_active(now) and (c.snoozed_until is None or c.snoozed_until <= now)
        ]
        return sorted(visible, key=lambda c: (-PRIORITY_RANK[c.priority], c.created_at))

    def _retire(self, check_in: CheckIn, status: CheckInStatus) -> None:
        check_in.status = status
        self.state.pending_check_ins.remove(check_in)
        self.state.history.append(check_in)

    def dismiss(self, check_in_id: str, now: datetime) -> CheckIn:
        """Dismiss a check-in. Dismissing a resolved check-in is a no-op.

        Raises:
            CheckInNotFoundError: If the id is unknown
        """
        check_in = self.get(check_in_id)
        if check_in is None:
            raise CheckInNotFoundError(check_in_id)
        if check_in.is_terminal:
            return check_in

        check_in.dismissed = True
        check_in.dismissed_at = now
        self._retire(check_in, CheckInStatus.DISMISSED)
        logger.info("check_in_dismissed", user_id=self.state.user_id, check_in_id=check_in_id)
        return check_in

    def snooze(self, check_in_id: str, now: datetime, minutes: int = 30) -> CheckIn:
        """Hide a pending check-in for ``minutes``, extending its expiry past the snooze."""
        check_in = self._pending(check_in_id, now)
        check_in.snoozed_until = now + timedelta(minutes=minutes)
        check_in.expires_at = check_in.snoozed_until + SNOOZE_GRACE
        logger.info(
            "check_in_snoozed",
            user_id=self.state.user_id,
            check_in_id=check_in_id,
            snoozed_until=check_in.snoozed_until.isoformat(),
        )
        return check_in

    async def respond(
        self,
        check_in_id: str,
        action_id: str,
        now: datetime,
        preferences: ProactivePreferences,
        follow_up: Optional[str] = None,
    ) -> CheckIn:
        """Record the user's answer and escalate when it calls for a caregiver.

        Raises:
            CheckInNotFoundError: If the id is unknown, resolved or expired
            QueueStateError: If the action is not one of the check-in's actions
        """
        check_in = self._pending(check_in_id, now)
        action = check_in.find_action(action_id)
        if action is None:
            raise QueueStateError(
                f"action {action_id} is not offered by check-in {check_in_id}",
                check_in_id=check_in_id,
            )

        check_in.response = CheckInResponse(action_id=action_id, timestamp=now, follow_up=follow_up)
        self._retire(check_in, CheckInStatus.RESPONDED)
        logger.info(
            "check_in_responded",
            user_id=self.state.user_id,
            check_in_id=check_in_id,
            action_id=action_id,
            action_type=action.type.value,
        )

        reason = self._response_escalation(check_in, action, preferences)
        if reason is not None:
            await self.escalate_to_caregiver(
                check_in, reason, now, message=f'Answered "{action.label}" to: {check_in.message}'
            )
        return check_in

    def _response_escalation(
        self, check_in: CheckIn, action: CheckInAction, preferences: ProactivePreferences
    ) -> Optional[AlertType]:
        if action.type == ActionType.CALL_CAREGIVER:
            return AlertType.CAREGIVER_REQUESTED
        if (
            action.type == ActionType.NEGATIVE
            and check_in.type in ESCALATING_TYPES
            and preferences.caregiver_alert_threshold != CaregiverAlertThreshold.NEVER
        ):
            return AlertType.CHECKIN_CONCERN
        return None

    async def sweep_expired(self, now: datetime, preferences: ProactivePreferences) -> list[CheckIn]:
        """Expire pending check-ins past ``expires_at``; returns the expired ones."""
        expired = [
            c for c in self.state.pending_check_ins if c.expires_at is not None and c.expires_at <= now
        ]

        for check_in in expired:
            self._retire(check_in, CheckInStatus.EXPIRED)
            self.state.unanswered_today += 1
            logger.info(
                "check_in_expired",
                user_id=self.state.user_id,
                check_in_id=check_in.id,
                rule_id=check_in.rule_id,
            )
            if check_in.type in ESCALATING_TYPES and meets_threshold(
                check_in.priority, preferences.caregiver_alert_threshold
            ):
                await self.escalate_to_caregiver(
                    check_in,
                    AlertType.UNANSWERED_CHECKIN,
                    now,
                    message=f"No response to: {check_in.message}",
                )

        if (
            self.state.unanswered_today >= MISSED_CHECKIN_ALERT_COUNT
            and not self.state.missed_checkin_alert_sent
        ):
            self.state.missed_checkin_alert_sent = True
            await self._send(
                CaregiverAlert(
                    id=uuid4(),
                    user_id=self.state.user_id,
                    circle_id=self.state.circle_id,
                    alert_type=AlertType.MISSED_CHECKIN,
                    severity=AlertSeverity.MEDIUM,
                    title="Missed check-ins",
                    message=f"{self.state.unanswered_today} check-ins went unanswered today.",
                    data={"unanswered_count": self.state.unanswered_today},
                    created_at=now,
                )
            )

        return expired

    async def escalate_to_caregiver(
        self,
        check_in: CheckIn,
        reason: AlertType,
        now: datetime,
        message: Optional[str] = None,
    ) -> CaregiverAlert:
        """Build a caregiver alert for a check-in and hand it to the alert sink."""
        severity = SEVERITY_FOR_PRIORITY[check_in.priority]
        if reason == AlertType.CAREGIVER_REQUESTED and severity != AlertSeverity.CRITICAL:
            severity = AlertSeverity.HIGH

        titles = {
            AlertType.CAREGIVER_REQUESTED: "Caregiver call requested",
            AlertType.CHECKIN_CONCERN: "Check-in concern",
            AlertType.UNANSWERED_CHECKIN: "Check-in not answered",
        }
        alert = CaregiverAlert(
            id=uuid4(),
            user_id=self.state.user_id,
            circle_id=self.state.circle_id,
            alert_type=reason,
            severity=severity,
            title=titles.get(reason, check_in.title),
            message=message or check_in.message,
            data={
                "check_in_id": check_in.id,
                "rule_id": check_in.rule_id,
                "check_in_type": check_in.type.value,
                "priority": check_in.priority.value,
                "action_id": check_in.response.action_id if check_in.response else None,
            },
            created_at=now,
        )
        await self._send(alert)
        return alert

    async def _send(self, alert: CaregiverAlert) -> None:
        logger.warning(
            "caregiver_escalation",
            user_id=alert.user_id,
            alert_type=alert.alert_type.value,
            severity=alert.severity.value,
        )
        if self.alerts is None:
            return
        try:
            await self.alerts.send_alert(alert)
        except Exception as e:
            logger.error(
                "caregiver_escalation_failed",
                user_id=alert.user_id,
                alert_id=str(alert.id),
                error=str(e),
            )
