"""Tests for the proactive HTTP API."""

from unittest.mock import AsyncMock, patch

import pytest
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.testclient import TestClient

from karuna.api import CorrelationIdMiddleware, router
from karuna.config import Settings
from karuna.main import app as main_app
from karuna.main import validation_exception_handler
from karuna.models.rule import (
    ActionType,
    CheckInAction,
    CheckInPriority,
    CheckInType,
    ConditionOperator,
    ProactiveRule,
    RuleCondition,
)
from karuna.models.signal import SignalType
from karuna.services.proactive_engine import ProactiveMonitor

RULE = ProactiveRule(
    id="meds",
    name="Pending medication",
    type=CheckInType.MEDICATION_REMINDER,
    priority=CheckInPriority.HIGH,
    conditions=(
        RuleCondition(signal_type=SignalType.MEDICATION, operator=ConditionOperator.GT, value=0),
    ),
    cooldown_minutes=60,
    max_per_day=3,
    message_template="You have {{pending_doses}} doses waiting.",
    actions=(
        CheckInAction(id="take", label="Take it now", type=ActionType.POSITIVE),
        CheckInAction(id="help", label="Call for help", type=ActionType.CALL_CAREGIVER),
    ),
)

MEDICATION = {
    "type": "medication",
    "timestamp": "2024-06-15T07:55:00Z",
    "value": {"pendingDoses": 2},
}


@pytest.fixture
def monitor(settings):
    return ProactiveMonitor(settings=settings, rules=[RULE])


@pytest.fixture
def client(monitor):
    app = FastAPI()
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_middleware(CorrelationIdMiddleware)
    app.include_router(router)
    app.state.monitor = monitor
    return TestClient(app)


def _create_check_in(client) -> dict:
    client.post("/proactive/user-1/signals", json={"signals": [MEDICATION]})
    response = client.post("/proactive/user-1/tick", json={"now": "2024-06-15T08:00:00Z"})
    return response.json()["created"][0]


class TestSignals:
    def test_ingest_counts_stale(self, client):
        older = {**MEDICATION, "timestamp": "2024-06-15T07:00:00Z"}

        response = client.post("/proactive/user-1/signals", json={"signals": [MEDICATION, older]})

        assert response.status_code == 200
        assert response.json() == {"accepted": 1, "stale": 1}

    def test_empty_batch_rejected(self, client):
        response = client.post("/proactive/user-1/signals", json={"signals": []})

        assert response.status_code == 400
        assert "correlation_id" in response.json()

    def test_activity_defaults_to_now(self, client):
        response = client.post("/proactive/user-1/activity")

        assert response.status_code == 200
        assert response.json()["last_activity_at"] is not None


class TestCheckIns:
    def test_tick_creates_check_in(self, client):
        check_in = _create_check_in(client)

        assert check_in["message"] == "You have 2 doses waiting."
        assert check_in["rule_id"] == "meds"

    def test_respond(self, client, monitor):
        check_in = _create_check_in(client)
        engine = monitor.get_engine("user-1")
        engine.queue.get(check_in["id"]).expires_at = None  # keep it answerable at wall-clock time

        response = client.post(
            f"/proactive/user-1/check-ins/{check_in['id']}/respond", json={"action_id": "take"}
        )

        assert response.status_code == 200
        assert response.json()["status"] == "responded"
        assert response.json()["response"]["follow_up"]

    def test_respond_unknown_action_conflicts(self, client, monitor):
        check_in = _create_check_in(client)
        monitor.get_engine("user-1").queue.get(check_in["id"]).expires_at = None

        response = client.post(
            f"/proactive/user-1/check-ins/{check_in['id']}/respond", json={"action_id": "nope"}
        )

        assert response.status_code == 409

    def test_unknown_check_in_is_404(self, client):
        response = client.post("/proactive/user-1/check-ins/missing/dismiss")

        assert response.status_code == 404

    def test_dismiss_is_idempotent(self, client):
        check_in = _create_check_in(client)
        url = f"/proactive/user-1/check-ins/{check_in['id']}/dismiss"

        first = client.post(url)
        second = client.post(url)

        assert first.status_code == second.status_code == 200
        assert second.json()["status"] == "dismissed"


class TestUnknownUser:
    @pytest.mark.parametrize(
        "method,path",
        [
            ("get", "/proactive/ghost/check-ins"),
            ("get", "/proactive/ghost/preferences"),
            ("get", "/proactive/ghost/state"),
            ("post", "/proactive/ghost/check-ins/c1/dismiss"),
            ("post", "/proactive/ghost/check-ins/c1/snooze"),
        ],
    )
    def test_read_paths_do_not_create_engines(self, client, monitor, method, path):
        response = getattr(client, method)(path)

        assert response.status_code == 404
        assert monitor.get_engine("ghost") is None

    def test_write_paths_create_engine(self, client, monitor):
        client.post("/proactive/ghost/activity")

        assert client.get("/proactive/ghost/check-ins").json() == []
        assert monitor.get_engine("ghost") is not None


class TestPreferences:
    def test_partial_update_keeps_other_fields(self, client):
        client.put("/proactive/user-1/preferences", json={"user_name": "Maya"})
        response = client.put("/proactive/user-1/preferences", json={"max_nudges_per_day": 2})

        body = response.json()
        assert body["max_nudges_per_day"] == 2
        assert body["user_name"] == "Maya"

    def test_unknown_timezone_rejected(self, client):
        response = client.put("/proactive/user-1/preferences", json={"timezone": "Mars/Olympus"})

        assert response.status_code == 400

    def test_cap_out_of_range_rejected(self, client):
        response = client.put("/proactive/user-1/preferences", json={"max_nudges_per_day": 9})

        assert response.status_code == 400


class TestMonitoring:
    def test_start_then_state(self, client):
        started = client.post("/proactive/user-1/monitoring", json={"circle_id": "circle-3"})
        state = client.get("/proactive/user-1/state")

        assert started.status_code == 201
        assert state.json()["is_running"] is True
        assert state.json()["circle_id"] == "circle-3"

    def test_state_unknown_user_is_404(self, client):
        assert client.get("/proactive/nobody/state").status_code == 404

    def test_stop(self, client):
        client.post("/proactive/user-1/monitoring")

        assert client.delete("/proactive/user-1/monitoring").json() == {"stopped": True}
        assert client.delete("/proactive/user-1/monitoring").json() == {"stopped": False}

    def test_missing_monitor_is_503(self, client):
        client.app.state.monitor = None

        assert client.get("/proactive/user-1/check-ins").status_code == 503


class TestAuth:
    def test_token_required_when_configured(self, client):
        client.post("/proactive/user-1/activity")
        secured = Settings(_env_file=None, api_token="s3cret")
        with patch("karuna.api.dependencies.get_settings", return_value=secured):
            missing = client.get("/proactive/user-1/check-ins")
            wrong = client.get(
                "/proactive/user-1/check-ins", headers={"Authorization": "Bearer nope"}
            )
            right = client.get(
                "/proactive/user-1/check-ins", headers={"Authorization": "Bearer s3cret"}
            )

        assert missing.status_code == 401
        assert wrong.status_code == 401
        assert right.status_code == 200


class TestHealth:
    def test_health_before_startup(self):
        main_app.state.monitor = None
        with patch("karuna.main.get_redis", AsyncMock(return_value=None)):
            response = TestClient(main_app).get("/health")

        assert response.json() == {
            "status": "starting",
            "redis": "unavailable",
            "monitored_users": 0,
        }

    def test_correlation_id_echoed(self, client):
        response = client.get(
            "/proactive/user-1/check-ins", headers={"X-Correlation-Id": "abc-123"}
        )

        assert response.headers["X-Correlation-Id"] == "abc-123"
