"""Proactive check-in API endpoints."""

from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog
from fastapi import APIRouter, Depends, HTTPException, status

from karuna.api.dependencies import get_monitor, require_api_token
from karuna.models.checkin import CheckIn, RespondRequest, SnoozeRequest
from karuna.models.engine import EngineState
from karuna.models.preferences import ProactivePreferences, ProactivePreferencesUpdate
from karuna.models.request import MonitoringRequest, SignalBatch, TickRequest
from karuna.models.signal import ActivityRecord
from karuna.services.errors import CheckInNotFoundError, QueueStateError
from karuna.services.proactive_engine import ProactiveEngine, ProactiveMonitor

logger = structlog.get_logger(__name__)

router = APIRouter(
    prefix="/proactive/{user_id}",
    tags=["Proactive"],
    dependencies=[Depends(require_api_token)],
)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


async def _engine(user_id: str, monitor: ProactiveMonitor) -> ProactiveEngine:
    return await monitor.engine_for(user_id)


async def _existing_engine(user_id: str, monitor: ProactiveMonitor) -> ProactiveEngine:
    """Engine for a known user. Read paths must not create engines."""
    engine = await monitor.find_engine(user_id)
    if engine is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No engine for user {user_id}",
        )
    return engine


def _check_in_error(e: QueueStateError) -> HTTPException:
    if isinstance(e, CheckInNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


@router.post("/signals")
async def ingest_signals(
    user_id: str,
    batch: SignalBatch,
    monitor: ProactiveMonitor = Depends(get_monitor),
) -> dict:
    """Buffer collected signals; they are evaluated on the next tick."""
    engine = await _engine(user_id, monitor)
    accepted = sum(1 for signal in batch.signals if engine.update_signal(signal))
    logger.info(
        "signals_ingested",
        user_id=user_id,
        accepted=accepted,
        stale=len(batch.signals) - accepted,
    )
    return {"accepted": accepted, "stale": len(batch.signals) - accepted}


@router.post("/activity")
async def record_activity(
    user_id: str,
    activity: Optional[ActivityRecord] = None,
    monitor: ProactiveMonitor = Depends(get_monitor),
) -> dict:
    """Record a user interaction (resets the inactivity clock)."""
    engine = await _engine(user_id, monitor)
    activity = activity or ActivityRecord()
    engine.record_activity(_as_utc(activity.timestamp))
    return {"last_activity_at": engine.state.last_activity_at}


@router.post("/tick")
async def run_tick(
    user_id: str,
    request: Optional[TickRequest] = None,
    monitor: ProactiveMonitor = Depends(get_monitor),
) -> dict:
    """Evaluate rules for a user now, outside the polling schedule."""
    engine = await _engine(user_id, monitor)
    now = _as_utc(request.now) if request else None
    created = await monitor.run_tick(engine, now)
    return {"created": created}


@router.get("/check-ins")
async def list_check_ins(
    user_id: str,
    monitor: ProactiveMonitor = Depends(get_monitor),
) -> list[CheckIn]:
    """Active check-ins, most urgent first. Snoozed check-ins are hidden."""
    engine = await _existing_engine(user_id, monitor)
    return engine.active_check_ins()


@router.post("/check-ins/{check_in_id}/respond")
async def respond_to_check_in(
    user_id: str,
    check_in_id: str,
    request: RespondRequest,
    monitor: ProactiveMonitor = Depends(get_monitor),
) -> CheckIn:
    engine = await _existing_engine(user_id, monitor)
    try:
        return await engine.respond(check_in_id, request.action_id)
    except QueueStateError as e:
        raise _check_in_error(e)


@router.post("/check-ins/{check_in_id}/dismiss")
async def dismiss_check_in(
    user_id: str,
    check_in_id: str,
    monitor: ProactiveMonitor = Depends(get_monitor),
) -> CheckIn:
    engine = await _existing_engine(user_id, monitor)
    try:
        return await engine.dismiss(check_in_id)
    except QueueStateError as e:
        raise _check_in_error(e)


@router.post("/check-ins/{check_in_id}/snooze")
async def snooze_check_in(
    user_id: str,
    check_in_id: str,
    request: Optional[SnoozeRequest] = None,
    monitor: ProactiveMonitor = Depends(get_monitor),
) -> CheckIn:
    engine = await _existing_engine(user_id, monitor)
    try:
        return await engine.snooze(check_in_id, request.minutes if request else 30)
    except QueueStateError as e:
        raise _check_in_error(e)


@router.get("/preferences")
async def get_preferences(
    user_id: str,
    monitor: ProactiveMonitor = Depends(get_monitor),
) -> ProactivePreferences:
    engine = await _existing_engine(user_id, monitor)
    return await engine.current_preferences()


@router.put("/preferences")
async def update_preferences(
    user_id: str,
    update: ProactivePreferencesUpdate,
    monitor: ProactiveMonitor = Depends(get_monitor),
) -> ProactivePreferences:
    """Partially update preferences; omitted fields keep their values."""
    if update.timezone is not None:
        try:
            ZoneInfo(update.timezone)
        except (ZoneInfoNotFoundError, ValueError):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Unknown timezone: {update.timezone}",
            )

    engine = await _engine(user_id, monitor)
    current = await engine.current_preferences()
    merged = ProactivePreferences.model_validate(
        {**current.model_dump(), **update.model_dump(exclude_none=True)}
    )
    return await engine.update_preferences(merged)


@router.get("/state")
async def get_state(
    user_id: str,
    monitor: ProactiveMonitor = Depends(get_monitor),
) -> EngineState:
    engine = await _existing_engine(user_id, monitor)
    return engine.state


@router.post("/monitoring", status_code=status.HTTP_201_CREATED)
async def start_monitoring(
    user_id: str,
    request: Optional[MonitoringRequest] = None,
    monitor: ProactiveMonitor = Depends(get_monitor),
) -> EngineState:
    return await monitor.start_monitoring(user_id, request.circle_id if request else None)


@router.delete("/monitoring")
async def stop_monitoring(
    user_id: str,
    monitor: ProactiveMonitor = Depends(get_monitor),
) -> dict:
    """Stop monitoring and discard the user's engine state."""
    stopped = await monitor.stop_monitoring(user_id)
    return {"stopped": stopped}
