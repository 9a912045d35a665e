"""Services package exports."""

from karuna.services.logging_service import configure_logging, get_logger
from karuna.services.proactive_engine import ProactiveEngine, ProactiveMonitor

__all__ = [
    "ProactiveEngine",
    "ProactiveMonitor",
    "configure_logging",
    "get_logger",
]
