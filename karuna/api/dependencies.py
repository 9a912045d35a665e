"""FastAPI dependencies for API access and the proactive monitor."""

import hmac
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from karuna.config import get_settings
from karuna.services.proactive_engine import ProactiveMonitor

bearer_scheme = HTTPBearer(auto_error=False)


async def require_api_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> None:
    """Check the static bearer token. Open access when no token is configured.

    Raises:
        HTTPException 401: If a token is configured and the request lacks it
    """
    expected = get_settings().api_token
    if not expected:
        return

    if credentials is None or not hmac.compare_digest(
        credentials.credentials.encode(), expected.encode()
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API token",
            headers={"WWW-Authenticate": "Bearer"},
        )


def get_monitor(request: Request) -> ProactiveMonitor:
    """The application's proactive monitor.

    Raises:
        HTTPException 503: If the monitor has not been started
    """
    monitor = getattr(request.app.state, "monitor", None)
    if monitor is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Proactive monitor is not running",
        )
    return monitor
