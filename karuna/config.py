"""Application configuration using Pydantic settings."""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # OpenAI Configuration (optional: check-ins fall back to templates without it)
    openai_api_key: str = ""
    openai_model: str = "gpt-4.1-mini"

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json | console

    # Redis (engine state + preferences persistence)
    redis_url: str = "redis://localhost:6379/0"
    state_ttl: int = 604800  # 7 days in seconds

    # API access
    api_token: str = ""  # Empty disables bearer auth

    # Proactive engine
    proactive_poll_interval_seconds: int = 900  # 15 minutes
    tick_timeout_seconds: float = 30.0
    proactive_rules_path: str = ""  # JSON rule file; defaults used when empty
    default_timezone: str = "UTC"

    # Message composition
    ai_enhancement_enabled: bool = True
    ai_min_confidence: float = 0.8
    composition_timeout_seconds: float = 4.0
    message_max_length: int = 150

    # Caregiver alerting (care circle API)
    care_circle_api_url: str = ""
    care_circle_api_token: str = ""
    caregiver_alert_timeout: int = 5  # seconds per request

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
