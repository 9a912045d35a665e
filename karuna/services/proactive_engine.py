"""Per-user proactive engine and the monitor that drives it on a timer."""

import asyncio
from datetime import date, datetime, timezone
from typing import Iterable, Optional
from uuid import uuid4

import structlog

from karuna.config import Settings, get_settings
from karuna.models.checkin import CheckIn
from karuna.models.engine import EngineState, UserContext
from karuna.models.preferences import ProactivePreferences
from karuna.models.rule import ProactiveRule
from karuna.models.signal import Signal, SignalType
from karuna.services.caregiver_alerts import CaregiverAlertService
from karuna.services.checkin_queue import AlertSink, CheckInQueue
from karuna.services.logging_service import engine_log_context
from karuna.services.message_composer import (
    MessageComposer,
    MessageGenerator,
    OpenAIMessageGenerator,
)
from karuna.services.redis_service import ProactiveStateStore
from karuna.services.rule_evaluator import RuleEvaluator, TriggeredRule
from karuna.services.rules import get_rules
from karuna.services.signal_analysis import (
    derive_inactivity_signal,
    derive_wellbeing_signal,
    is_quiet_hours,
    local_now,
    time_of_day,
)
from karuna.services.signal_store import SignalStore

logger = structlog.get_logger(__name__)

RECENT_SIGNAL_LIMIT = 50


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProactiveEngine:
    """Signal store, rule evaluation, composition and queue for one user.

    A tick is one non-reentrant step: snapshot, evaluate, compose, enqueue.
    A tick that starts while another is in progress is skipped. Check-in
    operations take the same lock, so they never interleave with a tick.
    """

    def __init__(
        self,
        user_id: str,
        circle_id: Optional[str] = None,
        rules: Optional[Iterable[ProactiveRule]] = None,
        composer: Optional[MessageComposer] = None,
        alerts: Optional[AlertSink] = None,
        state_store: Optional[ProactiveStateStore] = None,
        preferences: Optional[ProactivePreferences] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.user_id = user_id
        self.rules = list(rules) if rules is not None else get_rules()
        self.signals = SignalStore()
        self.evaluator = RuleEvaluator()
        self.composer = composer or MessageComposer(settings=self.settings)
        self.store = state_store
        self.preferences = preferences or ProactivePreferences(
            timezone=self.settings.default_timezone
        )
        self._alerts = alerts
        self._lock = asyncio.Lock()
        self._set_state(EngineState(user_id=user_id, circle_id=circle_id))

    def _set_state(self, state: EngineState) -> None:
        self.state = state
        self.queue = CheckInQueue(state, self._alerts)

    async def load(self) -> None:
        """Restore persisted state and preferences, if any."""
        if self.store is None:
            return
        state = await self.store.load_state(self.user_id)
        if state is not None:
            self._set_state(state)
            logger.info(
                "engine_state_restored",
                user_id=self.user_id,
                pending=len(state.pending_check_ins),
            )
        await self.current_preferences()

    async def persist(self) -> None:
        if self.store is not None:
            await self.store.save_state(self.state)

    async def current_preferences(self) -> ProactivePreferences:
        """Preferences as of now, refreshed from the store when available."""
        if self.store is not None:
            loaded = await self.store.load_preferences(self.user_id)
            if loaded is not None:
                self.preferences = loaded
        return self.preferences

    async def update_preferences(self, preferences: ProactivePreferences) -> ProactivePreferences:
        self.preferences = preferences
        if self.store is not None:
            await self.store.save_preferences(self.user_id, preferences)
        logger.info("preferences_updated", user_id=self.user_id, enabled=preferences.enabled)
        return preferences

    def update_signal(self, signal: Signal) -> bool:
        """Buffer a signal for the next tick. Returns False if it was stale."""
        accepted = self.signals.update(signal)
        if accepted:
            self.state.recent_signals.append(signal)
            del self.state.recent_signals[:-RECENT_SIGNAL_LIMIT]
        return accepted

    def record_activity(self, now: Optional[datetime] = None) -> None:
        now = now or utcnow()
        last = self.state.last_activity_at
        if last is None or now > last:
            self.state.last_activity_at = now

    def reset(self) -> None:
        """Forget all state and buffered signals."""
        self.signals.clear()
        self._set_state(EngineState(user_id=self.user_id, circle_id=self.state.circle_id))
        logger.info("engine_reset", user_id=self.user_id)

    def active_check_ins(self, now: Optional[datetime] = None) -> list[CheckIn]:
        return self.queue.active(now or utcnow())

    async def tick(
        self,
        now: Optional[datetime] = None,
        preferences: Optional[ProactivePreferences] = None,
    ) -> list[CheckIn]:
        """Run one evaluation step. Returns the check-ins it created."""
        if self._lock.locked():
            logger.warning("tick_skipped_overlap", user_id=self.user_id)
            return []

        async with self._lock:
            now = now or utcnow()
            if preferences is None:
                preferences = await self.current_preferences()
            return await self._tick(now, preferences)

    async def _tick(self, now: datetime, preferences: ProactivePreferences) -> list[CheckIn]:
        local = local_now(now, preferences.timezone)
        self._reset_day(local.date())

        await self.queue.sweep_expired(now, preferences)

        signals = self._evaluation_signals(now, local, preferences)
        triggered = self.evaluator.evaluate(self.rules, signals, self.state, preferences, now)

        user_context = UserContext(name=preferences.user_name, time_of_day=time_of_day(local))
        created: list[CheckIn] = []
        for trigger in triggered:
            try:
                created.append(await self._create_check_in(trigger, signals, user_context, now))
            except Exception as e:
                logger.error(
                    "check_in_creation_failed",
                    user_id=self.user_id,
                    rule_id=trigger.rule.id,
                    error=str(e),
                    error_type=type(e).__name__,
                )

        self.state.last_check_time = now
        await self.persist()

        logger.info(
            "tick_completed",
            user_id=self.user_id,
            signals=len(signals),
            triggered=len(triggered),
            created=len(created),
            pending=len(self.state.pending_check_ins),
        )
        return created

    def _reset_day(self, today: date) -> None:
        if self.state.day == today:
            return
        if self.state.day is not None:
            logger.info(
                "daily_counters_reset",
                user_id=self.user_id,
                previous_day=self.state.day.isoformat(),
                check_ins=self.state.today_check_in_count,
            )
        self.state.day = today
        self.state.today_check_in_count = 0
        self.state.rule_counts_today = {}
        self.state.unanswered_today = 0
        self.state.missed_checkin_alert_sent = False

    def _evaluation_signals(
        self, now: datetime, local: datetime, preferences: ProactivePreferences
    ) -> dict[SignalType, Signal]:
        """Snapshot plus derived signals. Collected signals take precedence."""
        signals = self.signals.snapshot()
        if SignalType.INACTIVITY not in signals and self.state.last_activity_at is not None:
            signals[SignalType.INACTIVITY] = derive_inactivity_signal(
                self.state.last_activity_at, now, preferences
            )
        # No concern assessment while the user is expected to be asleep
        if (
            preferences.concerning_pattern_alert
            and SignalType.WELLBEING not in signals
            and not is_quiet_hours(preferences, local)
        ):
            signals[SignalType.WELLBEING] = derive_wellbeing_signal(signals, now, local)
        return signals

    async def _create_check_in(
        self,
        trigger: TriggeredRule,
        signals: dict[SignalType, Signal],
        user_context: UserContext,
        now: datetime,
    ) -> CheckIn:
        rule = trigger.rule
        composed = await self.composer.compose(
            rule, signals, user_context, matched_signals=trigger.matched_signals
        )
        check_in = CheckIn(
            id=str(uuid4()),
            rule_id=rule.id,
            type=rule.type,
            priority=rule.priority,
            title=composed.title,
            message=composed.message,
            suggestion=composed.suggestion,
            created_at=now,
            trigger_signals=[s.type for s in trigger.matched_signals],
            actions=list(rule.actions),
        )
        check_in = self.queue.enqueue(check_in, now, rule.expires_after_minutes)
        self.evaluator.record_trigger(rule, self.state, now)
        return check_in

    async def respond(
        self, check_in_id: str, action_id: str, now: Optional[datetime] = None
    ) -> CheckIn:
        """Answer a check-in; the follow-up text is attached to the response."""
        async with self._lock:
            now = now or utcnow()
            follow_up = None
            check_in = self.queue.get(check_in_id)
            action = check_in.find_action(action_id) if check_in else None
            if check_in is not None and action is not None:
                follow_up = self.composer.craft_follow_up(check_in.type, action.type)

            preferences = await self.current_preferences()
            check_in = await self.queue.respond(
                check_in_id, action_id, now, preferences, follow_up=follow_up
            )
            self.record_activity(now)
            await self.persist()
            return check_in

    async def dismiss(self, check_in_id: str, now: Optional[datetime] = None) -> CheckIn:
        async with self._lock:
            now = now or utcnow()
            check_in = self.queue.dismiss(check_in_id, now)
            self.record_activity(now)
            await self.persist()
            return check_in

    async def snooze(
        self, check_in_id: str, minutes: int = 30, now: Optional[datetime] = None
    ) -> CheckIn:
        async with self._lock:
            now = now or utcnow()
            check_in = self.queue.snooze(check_in_id, now, minutes)
            self.record_activity(now)
            await self.persist()
            return check_in


class ProactiveMonitor:
    """Owns one engine per monitored user and ticks them on a timer."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        state_store: Optional[ProactiveStateStore] = None,
        alerts: Optional[AlertSink] = None,
        generator: Optional[MessageGenerator] = None,
        rules: Optional[Iterable[ProactiveRule]] = None,
    ):
        self.settings = settings or get_settings()
        self.store = state_store
        self.alerts = alerts
        self.generator = generator
        self.rules = list(rules) if rules is not None else get_rules()
        self._engines: dict[str, ProactiveEngine] = {}
        self._task: Optional[asyncio.Task] = None
        self._running = False

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "ProactiveMonitor":
        """Monitor wired to Redis, the care-circle API and OpenAI (when configured)."""
        settings = settings or get_settings()
        generator = None
        if settings.openai_api_key and settings.ai_enhancement_enabled:
            generator = OpenAIMessageGenerator(settings)
        return cls(
            settings=settings,
            state_store=ProactiveStateStore(),
            alerts=CaregiverAlertService(settings),
            generator=generator,
        )

    def get_engine(self, user_id: str) -> Optional[ProactiveEngine]:
        return self._engines.get(user_id)

    async def find_engine(self, user_id: str) -> Optional[ProactiveEngine]:
        """Engine for a user already known here or in the store. Never creates one."""
        engine = self._engines.get(user_id)
        if engine is not None or self.store is None:
            return engine
        if await self.store.load_state(user_id) is None:
            return None
        return await self.engine_for(user_id)

    def monitored_count(self) -> int:
        return sum(1 for e in self._engines.values() if e.state.is_running)

    async def engine_for(self, user_id: str, circle_id: Optional[str] = None) -> ProactiveEngine:
        """Existing engine for a user, or a new one restored from the store."""
        engine = self._engines.get(user_id)
        if engine is None:
            engine = ProactiveEngine(
                user_id,
                circle_id=circle_id,
                rules=self.rules,
                composer=MessageComposer(generator=self.generator, settings=self.settings),
                alerts=self.alerts,
                state_store=self.store,
                settings=self.settings,
            )
            await engine.load()
            self._engines[user_id] = engine
        if circle_id is not None:
            engine.state.circle_id = circle_id
        return engine

    async def start_monitoring(self, user_id: str, circle_id: Optional[str] = None) -> EngineState:
        engine = await self.engine_for(user_id, circle_id)
        engine.state.is_running = True
        await engine.persist()
        logger.info("monitoring_started", user_id=user_id, circle_id=engine.state.circle_id)
        return engine.state

    async def stop_monitoring(self, user_id: str) -> bool:
        """Stop monitoring a user and discard their engine state."""
        engine = self._engines.pop(user_id, None)
        if engine is not None:
            engine.reset()
        if self.store is not None:
            await self.store.delete_state(user_id)
        logger.info("monitoring_stopped", user_id=user_id, had_engine=engine is not None)
        return engine is not None

    def start(self):
        """Start the polling loop as an asyncio background task."""
        self._running = True
        self._task = asyncio.create_task(self._poll_loop())
        logger.info(
            "proactive_monitor_started",
            interval_seconds=self.settings.proactive_poll_interval_seconds,
        )

    async def stop(self):
        """Stop the polling loop."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("proactive_monitor_stopped")

    async def _poll_loop(self):
        interval = self.settings.proactive_poll_interval_seconds

        while self._running:
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("proactive_poll_error", error=str(e))

            try:
                await asyncio.sleep(interval)
            except asyncio.CancelledError:
                break

    async def poll_once(self, now: Optional[datetime] = None) -> dict[str, list[CheckIn]]:
        """Tick every running engine concurrently. Returns created check-ins per user."""
        engines = [e for e in self._engines.values() if e.state.is_running]
        results = await asyncio.gather(*(self.run_tick(e, now) for e in engines))
        return {engine.user_id: created for engine, created in zip(engines, results)}

    async def run_tick(self, engine: ProactiveEngine, now: Optional[datetime] = None) -> list[CheckIn]:
        """Tick one engine within the tick timeout. Failures are logged, not raised."""
        timeout = self.settings.tick_timeout_seconds
        with engine_log_context(engine.user_id, circle_id=engine.state.circle_id):
            try:
                return await asyncio.wait_for(engine.tick(now), timeout=timeout)
            except asyncio.TimeoutError:
                logger.error("tick_timeout", timeout=timeout)
            except Exception as e:
                logger.error("tick_failed", error=str(e), error_type=type(e).__name__)
        return []
