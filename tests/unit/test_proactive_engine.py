"""Unit tests for the proactive engine and monitor."""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from karuna.models.checkin import AlertType, CheckInStatus
from karuna.models.engine import AIMessageResponse, EngineState
from karuna.models.preferences import ProactivePreferences
from karuna.models.rule import (
    ActionType,
    CheckInAction,
    CheckInPriority,
    CheckInType,
    ConditionOperator,
    ProactiveRule,
    RuleCondition,
)
from karuna.models.signal import Signal, SignalType
from karuna.services.message_composer import MessageComposer
from karuna.services.proactive_engine import ProactiveEngine, ProactiveMonitor
from karuna.services.rules import CONCERNING_PATTERN_RULE_ID, DEFAULT_RULES


def _at(hour: int, minute: int = 0, day: int = 15) -> datetime:
    return datetime(2024, 6, day, hour, minute, tzinfo=timezone.utc)


MEDICATION_RULE = ProactiveRule(
    id="meds",
    name="Pending medication",
    type=CheckInType.MEDICATION_REMINDER,
    priority=CheckInPriority.HIGH,
    conditions=(
        RuleCondition(signal_type=SignalType.MEDICATION, operator=ConditionOperator.GT, value=0),
    ),
    cooldown_minutes=60,
    max_per_day=5,
    message_template="You have {{pending_doses}} doses waiting.",
    actions=(
        CheckInAction(id="take", label="Take it now", type=ActionType.POSITIVE),
        CheckInAction(id="help", label="Call for help", type=ActionType.CALL_CAREGIVER),
    ),
)


def _medication(at: datetime, pending: int = 2) -> Signal:
    return Signal(type=SignalType.MEDICATION, timestamp=at, value={"pendingDoses": pending})


@pytest.fixture
def alerts():
    sink = MagicMock()
    sink.send_alert = AsyncMock(return_value=True)
    return sink


@pytest.fixture
def engine(settings, preferences, alerts):
    return ProactiveEngine(
        "user-1",
        circle_id="circle-9",
        rules=[MEDICATION_RULE],
        alerts=alerts,
        preferences=preferences,
        settings=settings,
    )


class TestMedicationExample:
    @pytest.mark.asyncio
    async def test_cooldown_then_second_check_in(self, engine):
        engine.update_signal(_medication(_at(7, 55)))

        first = await engine.tick(_at(8, 0))
        second = await engine.tick(_at(8, 30))
        third = await engine.tick(_at(9, 5))

        assert [len(first), len(second), len(third)] == [1, 0, 1]
        assert first[0].type == CheckInType.MEDICATION_REMINDER
        assert first[0].message == "You have 2 doses waiting."
        assert first[0].trigger_signals == [SignalType.MEDICATION]
        assert third[0].id != first[0].id
        assert engine.state.today_check_in_count == 2

    @pytest.mark.asyncio
    async def test_one_pending_check_in_per_rule(self, engine):
        engine.update_signal(_medication(_at(7, 55)))
        first = (await engine.tick(_at(8, 0)))[0]
        third = (await engine.tick(_at(9, 5)))[0]

        assert engine.state.pending_check_ins == [third]
        assert first.status == CheckInStatus.SUPERSEDED
        assert engine.state.unanswered_today == 0
        assert [c.id for c in engine.active_check_ins(_at(9, 6))] == [third.id]

    @pytest.mark.asyncio
    async def test_second_check_in_after_dismissal(self, engine):
        engine.update_signal(_medication(_at(7, 55)))
        first = (await engine.tick(_at(8, 0)))[0]

        await engine.dismiss(first.id, _at(8, 45))
        second = await engine.tick(_at(9, 5))

        assert len(second) == 1
        assert first.status == CheckInStatus.DISMISSED


class TestTick:
    @pytest.mark.asyncio
    async def test_no_signals_no_check_ins(self, engine):
        assert await engine.tick(_at(9)) == []
        assert engine.state.last_check_time == _at(9)

    @pytest.mark.asyncio
    async def test_signal_arriving_during_tick_waits_for_next_tick(self, settings, preferences):
        class SlowComposer(MessageComposer):
            async def compose(self, *args, **kwargs):
                await asyncio.sleep(0.05)
                return await super().compose(*args, **kwargs)

        engine = ProactiveEngine(
            "user-1",
            rules=[MEDICATION_RULE],
            composer=SlowComposer(settings=settings),
            preferences=preferences,
            settings=settings,
        )
        engine.update_signal(_medication(_at(7, 55), pending=2))

        tick = asyncio.create_task(engine.tick(_at(8, 0)))
        await asyncio.sleep(0.01)
        engine.update_signal(_medication(_at(7, 59), pending=7))
        created = await tick

        assert created[0].message == "You have 2 doses waiting."
        assert engine.signals.get(SignalType.MEDICATION).value["pendingDoses"] == 7

    @pytest.mark.asyncio
    async def test_overlapping_tick_is_skipped(self, settings, preferences):
        class SlowComposer(MessageComposer):
            async def compose(self, *args, **kwargs):
                await asyncio.sleep(0.05)
                return await super().compose(*args, **kwargs)

        engine = ProactiveEngine(
            "user-1",
            rules=[MEDICATION_RULE],
            composer=SlowComposer(settings=settings),
            preferences=preferences,
            settings=settings,
        )
        engine.update_signal(_medication(_at(7, 55)))

        results = await asyncio.gather(engine.tick(_at(8, 0)), engine.tick(_at(8, 0)))

        assert sorted(len(r) for r in results) == [0, 1]
        assert len(engine.state.pending_check_ins) == 1

    @pytest.mark.asyncio
    async def test_daily_counters_reset_at_local_midnight(self, engine):
        engine.update_signal(_medication(_at(7, 55)))
        await engine.tick(_at(8, 0))
        engine.state.rule_counts_today["meds"] = 5
        engine.state.today_check_in_count = 5
        engine.state.unanswered_today = 2

        await engine.tick(_at(8, 0, day=16))

        assert engine.state.day.isoformat() == "2024-06-16"
        assert engine.state.unanswered_today == 1  # yesterday's check-in expired after reset

    @pytest.mark.asyncio
    async def test_daily_cap_lifts_next_day(self, settings):
        prefs = ProactivePreferences(max_nudges_per_day=1)
        rule = MEDICATION_RULE.model_copy(update={"cooldown_minutes": 0})
        engine = ProactiveEngine("user-1", rules=[rule], preferences=prefs, settings=settings)
        engine.update_signal(_medication(_at(7, 55)))

        first = await engine.tick(_at(8, 0))
        await engine.dismiss(first[0].id, _at(8, 1))
        assert await engine.tick(_at(9, 0)) == []

        assert len(await engine.tick(_at(9, 0, day=16))) == 1

    @pytest.mark.asyncio
    async def test_composition_failure_is_isolated_per_rule(self, settings, preferences):
        other = MEDICATION_RULE.model_copy(update={"id": "meds_backup"})

        class PickyComposer(MessageComposer):
            async def compose(self, rule, *args, **kwargs):
                if rule.id == "meds":
                    raise RuntimeError("template engine exploded")
                return await super().compose(rule, *args, **kwargs)

        engine = ProactiveEngine(
            "user-1",
            rules=[MEDICATION_RULE, other],
            composer=PickyComposer(settings=settings),
            preferences=preferences,
            settings=settings,
        )
        engine.update_signal(_medication(_at(7, 55)))

        created = await engine.tick(_at(8, 0))

        assert [c.rule_id for c in created] == ["meds_backup"]
        assert "meds" not in engine.state.last_rule_triggers
        assert engine.state.today_check_in_count == 1

    @pytest.mark.asyncio
    async def test_cancelled_tick_keeps_cooldown_and_daily_slot(self, settings, preferences):
        class StuckComposer(MessageComposer):
            async def compose(self, *args, **kwargs):
                await asyncio.Event().wait()

        engine = ProactiveEngine(
            "user-1",
            rules=[MEDICATION_RULE],
            composer=StuckComposer(settings=settings),
            preferences=preferences,
            settings=settings,
        )
        engine.update_signal(_medication(_at(7, 55)))

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(engine.tick(_at(8, 0)), timeout=0.05)

        assert engine.state.last_rule_triggers == {}
        assert engine.state.today_check_in_count == 0

        engine.composer = MessageComposer(settings=settings)
        assert len(await engine.tick(_at(8, 1))) == 1

    @pytest.mark.asyncio
    async def test_hanging_generator_still_produces_check_in(self, settings, preferences):
        settings.ai_enhancement_enabled = True
        settings.composition_timeout_seconds = 0.1

        class HangingGenerator:
            async def generate(self, request):
                await asyncio.Event().wait()

        engine = ProactiveEngine(
            "user-1",
            rules=[MEDICATION_RULE],
            composer=MessageComposer(generator=HangingGenerator(), settings=settings),
            preferences=preferences,
            settings=settings,
        )
        engine.update_signal(_medication(_at(7, 55)))

        created = await asyncio.wait_for(engine.tick(_at(8, 0)), timeout=2.0)

        assert created[0].message == "You have 2 doses waiting."

    @pytest.mark.asyncio
    async def test_ai_message_used_when_generator_answers(self, settings, preferences):
        settings.ai_enhancement_enabled = True
        generator = MagicMock()
        generator.generate = AsyncMock(
            return_value=AIMessageResponse(
                message="Good morning! Your morning doses are ready whenever you are.",
                confidence=0.9,
            )
        )
        engine = ProactiveEngine(
            "user-1",
            rules=[MEDICATION_RULE],
            composer=MessageComposer(generator=generator, settings=settings),
            preferences=preferences,
            settings=settings,
        )
        engine.update_signal(_medication(_at(7, 55)))

        created = await engine.tick(_at(8, 0))

        assert created[0].message.startswith("Good morning!")


class TestDerivedSignals:
    @pytest.mark.asyncio
    async def test_inactivity_derived_from_last_activity(self, settings, preferences):
        rule = ProactiveRule(
            id="quiet_user",
            name="Inactivity",
            type=CheckInType.INACTIVITY_CHECK,
            priority=CheckInPriority.MEDIUM,
            conditions=(
                RuleCondition(signal_type=SignalType.INACTIVITY, operator=ConditionOperator.GTE, value=180),
            ),
            cooldown_minutes=180,
            max_per_day=2,
            message_template="It's been {{minutes_since_activity}} minutes. Everything okay?",
        )
        engine = ProactiveEngine("user-1", rules=[rule], preferences=preferences, settings=settings)
        engine.record_activity(_at(9, 0))

        assert await engine.tick(_at(11, 0)) == []
        created = await engine.tick(_at(12, 30))

        assert created[0].message == "It's been 210 minutes. Everything okay?"

    @pytest.mark.asyncio
    async def test_concerning_pattern_fires_urgent_check_in(self, settings, preferences):
        engine = ProactiveEngine("user-1", rules=list(DEFAULT_RULES), preferences=preferences, settings=settings)
        engine.record_activity(_at(16, 0, day=14))
        engine.update_signal(
            Signal(type=SignalType.MEDICATION, timestamp=_at(5), value={"missedDoses": 2, "pendingDoses": 0})
        )

        # 07:30 is after quiet hours and outside every other default time window;
        # the six waking hours of the previous evening count as inactivity
        created = await engine.tick(_at(7, 30))

        assert [c.rule_id for c in created] == [CONCERNING_PATTERN_RULE_ID]
        assert created[0].priority == CheckInPriority.URGENT
        assert created[0].suggestion == "Would you like me to let your caregiver know?"

    @pytest.mark.asyncio
    async def test_concerning_pattern_respects_preference(self, settings):
        prefs = ProactivePreferences(concerning_pattern_alert=False)
        engine = ProactiveEngine("user-1", rules=list(DEFAULT_RULES), preferences=prefs, settings=settings)
        engine.record_activity(_at(16, 0, day=14))
        engine.update_signal(
            Signal(type=SignalType.MEDICATION, timestamp=_at(5), value={"missedDoses": 2})
        )
        engine.update_signal(
            Signal(type=SignalType.WELLBEING, timestamp=_at(7), value={"concern_score": 5})
        )

        assert await engine.tick(_at(7, 30)) == []

    @pytest.mark.asyncio
    async def test_sleeping_user_is_not_flagged(self, settings, preferences, alerts):
        engine = ProactiveEngine(
            "user-1", rules=list(DEFAULT_RULES), alerts=alerts, preferences=preferences, settings=settings
        )
        engine.record_activity(_at(22, 30, day=14))

        assert await engine.tick(_at(2, 45)) == []
        assert await engine.tick(_at(3, 50)) == []
        assert await engine.tick(_at(7, 30)) == []

        alerts.send_alert.assert_not_called()
        assert engine.state.history == []

    @pytest.mark.asyncio
    async def test_quiet_hours_not_counted_as_inactivity(self, settings, preferences):
        engine = ProactiveEngine("user-1", rules=[], preferences=preferences, settings=settings)
        engine.record_activity(_at(21, 0, day=14))

        signals = engine._evaluation_signals(_at(8, 0), _at(8, 0), preferences)

        # 21:00-22:00 and 07:00-08:00
        assert signals[SignalType.INACTIVITY].value["minutes_since_activity"] == 120


class TestCheckInOperations:
    @pytest.mark.asyncio
    async def test_respond_attaches_follow_up(self, engine):
        engine.update_signal(_medication(_at(7, 55)))
        check_in = (await engine.tick(_at(8, 0)))[0]

        answered = await engine.respond(check_in.id, "take", _at(8, 5))

        assert answered.status == CheckInStatus.RESPONDED
        assert answered.response.follow_up
        assert engine.state.last_activity_at == _at(8, 5)
        assert engine.active_check_ins(_at(8, 6)) == []

    @pytest.mark.asyncio
    async def test_call_caregiver_response_alerts(self, engine, alerts):
        engine.update_signal(_medication(_at(7, 55)))
        check_in = (await engine.tick(_at(8, 0)))[0]

        await engine.respond(check_in.id, "help", _at(8, 5))

        alert = alerts.send_alert.call_args.args[0]
        assert alert.alert_type == AlertType.CAREGIVER_REQUESTED
        assert alert.circle_id == "circle-9"

    @pytest.mark.asyncio
    async def test_snooze_hides_check_in(self, engine):
        engine.update_signal(_medication(_at(7, 55)))
        check_in = (await engine.tick(_at(8, 0)))[0]

        await engine.snooze(check_in.id, 30, _at(8, 5))

        assert engine.active_check_ins(_at(8, 10)) == []
        assert len(engine.active_check_ins(_at(8, 40))) == 1

    @pytest.mark.asyncio
    async def test_persists_after_tick(self, settings, preferences):
        store = MagicMock()
        store.save_state = AsyncMock(return_value=True)
        store.load_preferences = AsyncMock(return_value=None)
        engine = ProactiveEngine(
            "user-1", rules=[MEDICATION_RULE], state_store=store, preferences=preferences, settings=settings
        )

        await engine.tick(_at(8, 0))

        store.save_state.assert_called_once_with(engine.state)

    def test_stale_signal_not_recorded(self, engine):
        assert engine.update_signal(_medication(_at(8, 0))) is True
        assert engine.update_signal(_medication(_at(7, 0))) is False
        assert len(engine.state.recent_signals) == 1

    def test_reset_clears_state(self, engine):
        engine.update_signal(_medication(_at(8, 0)))
        engine.state.today_check_in_count = 3

        engine.reset()

        assert engine.state.today_check_in_count == 0
        assert engine.state.circle_id == "circle-9"
        assert len(engine.signals) == 0


class TestMonitor:
    @pytest.fixture
    def monitor(self, settings):
        return ProactiveMonitor(settings=settings, rules=[MEDICATION_RULE])

    @pytest.mark.asyncio
    async def test_engines_are_independent(self, monitor):
        alice = await monitor.start_monitoring("alice")
        bob = await monitor.start_monitoring("bob")

        monitor.get_engine("alice").update_signal(_medication(_at(7, 55)))
        results = await monitor.poll_once(_at(9, 0))

        assert len(results["alice"]) == 1
        assert results["bob"] == []
        assert alice is not bob
        assert monitor.monitored_count() == 2

    @pytest.mark.asyncio
    async def test_only_running_engines_are_polled(self, monitor):
        engine = await monitor.engine_for("carol")
        engine.update_signal(_medication(_at(7, 55)))

        assert await monitor.poll_once(_at(9, 0)) == {}

    @pytest.mark.asyncio
    async def test_stop_monitoring_discards_engine(self, monitor):
        await monitor.start_monitoring("alice", circle_id="circle-1")

        assert await monitor.stop_monitoring("alice") is True
        assert monitor.get_engine("alice") is None
        assert await monitor.stop_monitoring("alice") is False

    @pytest.mark.asyncio
    async def test_find_engine_never_creates(self, monitor):
        assert await monitor.find_engine("nobody") is None
        assert monitor.get_engine("nobody") is None

    @pytest.mark.asyncio
    async def test_find_engine_restores_persisted_user(self, settings):
        store = MagicMock()
        store.load_state = AsyncMock(
            side_effect=lambda user_id: EngineState(user_id=user_id) if user_id == "alice" else None
        )
        store.load_preferences = AsyncMock(return_value=None)
        monitor = ProactiveMonitor(settings=settings, state_store=store, rules=[MEDICATION_RULE])

        assert (await monitor.find_engine("alice")).user_id == "alice"
        assert await monitor.find_engine("bob") is None
        assert monitor.get_engine("bob") is None

    @pytest.mark.asyncio
    async def test_tick_timeout_is_contained(self, monitor, settings):
        settings.tick_timeout_seconds = 0.05
        engine = await monitor.engine_for("alice")
        engine.tick = AsyncMock(side_effect=asyncio.TimeoutError())

        assert await monitor.run_tick(engine) == []

    @pytest.mark.asyncio
    async def test_tick_error_is_contained(self, monitor):
        engine = await monitor.engine_for("alice")
        engine.tick = AsyncMock(side_effect=RuntimeError("boom"))

        assert await monitor.run_tick(engine) == []

    @pytest.mark.asyncio
    async def test_start_and_stop_loop(self, monitor):
        monitor.poll_once = AsyncMock(return_value={})

        monitor.start()
        await asyncio.sleep(0.01)
        await monitor.stop()

        monitor.poll_once.assert_called()
        assert monitor._task.done()
