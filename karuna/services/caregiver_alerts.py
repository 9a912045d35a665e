"""Caregiver alert delivery to the care-circle API."""

from typing import Optional

import httpx
import structlog

from karuna.config import Settings, get_settings
from karuna.models.checkin import CaregiverAlert

logger = structlog.get_logger(__name__)


class CaregiverAlertService:
    """Hands caregiver alerts to the care-circle notification endpoint.

    Delivery is best-effort: failures are logged and reported through the
    return value. Retrying is the care circle's responsibility.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.settings.caregiver_alert_timeout)
            )
        return self._client

    async def close(self):
        """Close HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def send_alert(self, alert: CaregiverAlert) -> bool:
        """POST an alert to ``{care_circle_api_url}/circles/{circle_id}/alerts``.

        Returns:
            True if the care circle accepted the alert
        """
        log = logger.bind(
            alert_id=str(alert.id),
            user_id=alert.user_id,
            alert_type=alert.alert_type.value,
            severity=alert.severity.value,
        )

        if not self.settings.care_circle_api_url or not alert.circle_id:
            log.warning(
                "caregiver_alert_not_delivered",
                reason="care circle not configured",
                title=alert.title,
            )
            return False

        url = f"{self.settings.care_circle_api_url.rstrip('/')}/circles/{alert.circle_id}/alerts"
        headers = {}
        if self.settings.care_circle_api_token:
            headers["Authorization"] = f"Bearer {self.settings.care_circle_api_token}"

        try:
            client = await self._get_client()
            response = await client.post(url, json=alert.model_dump(mode="json"), headers=headers)
            response.raise_for_status()
        except httpx.TimeoutException:
            log.error("caregiver_alert_timeout", timeout=self.settings.caregiver_alert_timeout)
            return False
        except httpx.HTTPStatusError as e:
            log.error("caregiver_alert_rejected", status_code=e.response.status_code)
            return False
        except httpx.HTTPError as e:
            log.error("caregiver_alert_failed", error=str(e), error_type=type(e).__name__)
            return False

        log.info("caregiver_alert_sent", circle_id=alert.circle_id)
        return True
