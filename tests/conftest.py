"""Pytest configuration and fixtures."""

import os
from typing import Generator
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

# Set test environment variables before importing the app
os.environ.setdefault("OPENAI_API_KEY", "")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/0")
os.environ.setdefault("API_TOKEN", "")

from karuna.config import Settings
from karuna.models.preferences import ProactivePreferences, QuietHours


@pytest.fixture
def settings() -> Settings:
    """Settings isolated from the environment and any .env file."""
    return Settings(
        _env_file=None,
        openai_api_key="",
        ai_enhancement_enabled=False,
        composition_timeout_seconds=0.2,
        tick_timeout_seconds=5.0,
        proactive_rules_path="",
        api_token="",
        care_circle_api_url="",
    )


@pytest.fixture
def preferences() -> ProactivePreferences:
    """Default preferences with a generous daily cap."""
    return ProactivePreferences(max_nudges_per_day=5, quiet_hours=QuietHours())


@pytest.fixture
def mock_redis() -> Generator[MagicMock, None, None]:
    """Mock Redis client for testing without real Redis."""
    with patch("karuna.services.redis_service.get_redis") as mock_get_redis:
        mock_client = AsyncMock()
        mock_get_redis.return_value = mock_client
        yield mock_client
