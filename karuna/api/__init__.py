"""API package exports."""

from karuna.api.middleware import CorrelationIdMiddleware
from karuna.api.proactive import router

__all__ = ["router", "CorrelationIdMiddleware"]
