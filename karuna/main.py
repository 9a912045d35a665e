"""FastAPI application initialization."""

from contextlib import asynccontextmanager
from uuid import uuid4

from dotenv import load_dotenv

# Load environment variables before anything else
load_dotenv()

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from karuna.api.middleware import CorrelationIdMiddleware
from karuna.api.proactive import router as proactive_router
from karuna.config import get_settings
from karuna.services.logging_service import configure_logging, get_logger
from karuna.services.proactive_engine import ProactiveMonitor
from karuna.services.redis_service import close_redis, get_redis


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown events."""
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_format)
    logger = get_logger("main")

    # Redis is optional: without it engine state lives in memory only
    redis_client = await get_redis()
    if redis_client is None:
        logger.warning(
            "redis_unavailable",
            note="Continuing without Redis - engine state will not survive restarts",
        )

    monitor = ProactiveMonitor.from_settings(settings)
    monitor.start()
    app.state.monitor = monitor

    logger.info(
        "application_started",
        rules=len(monitor.rules),
        ai_enhancement=monitor.generator is not None,
        poll_interval_seconds=settings.proactive_poll_interval_seconds,
        log_level=settings.log_level,
    )

    yield

    await monitor.stop()
    await monitor.alerts.close()
    app.state.monitor = None

    await close_redis()
    logger.info("application_shutdown")


app = FastAPI(
    title="Karuna - Proactive Check-In API",
    description="Rules-over-signals engine producing proactive check-ins and caregiver alerts",
    version="0.1.0",
    lifespan=lifespan,
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Return 400 with the first validation problem and the correlation ID."""
    correlation_id = getattr(request.state, "correlation_id", None) or str(uuid4())
    logger = structlog.get_logger()

    errors = exc.errors()
    if errors:
        first_error = errors[0]
        field = ".".join(str(loc) for loc in first_error.get("loc", ["unknown"]))
        message = first_error.get("msg", "Validation failed")
        detail = f"Field '{field}': {message}"
    else:
        detail = "Request validation failed"

    logger.warning(
        "validation_error",
        correlation_id=correlation_id,
        detail=detail,
        error_count=len(errors),
    )

    return JSONResponse(
        status_code=400,
        content={
            "error": "Validation error",
            "detail": detail,
            "correlation_id": correlation_id,
        },
        headers={"X-Correlation-Id": correlation_id},
    )


@app.get("/health")
async def health(request: Request) -> dict:
    """Liveness plus a summary of monitored users."""
    monitor = getattr(request.app.state, "monitor", None)
    redis_client = await get_redis()
    return {
        "status": "healthy" if monitor is not None else "starting",
        "redis": "connected" if redis_client is not None else "unavailable",
        "monitored_users": monitor.monitored_count() if monitor is not None else 0,
    }


# CORS middleware for browser clients
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(CorrelationIdMiddleware)

app.include_router(proactive_router)
