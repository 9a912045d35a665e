"""Redis persistence for engine state and proactive preferences."""

from typing import Optional

import redis.asyncio as redis
import structlog
from pydantic import ValidationError

from karuna.config import get_settings
from karuna.models.engine import EngineState
from karuna.models.preferences import ProactivePreferences

logger = structlog.get_logger(__name__)

# Global Redis client
_redis_client: Optional[redis.Redis] = None

# Engine history kept in persisted state
MAX_PERSISTED_HISTORY = 200


async def get_redis() -> Optional[redis.Redis]:
    """Get or create the Redis client.

    Returns:
        Redis client or None if connection fails (graceful degradation)
    """
    global _redis_client

    if _redis_client is not None:
        return _redis_client

    settings = get_settings()

    try:
        _redis_client = redis.from_url(
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
        )
        # Test connection
        await _redis_client.ping()
        logger.info("redis_connected", url=settings.redis_url.split("@")[-1])
        return _redis_client
    except Exception as e:
        logger.warning("redis_connection_failed", error=str(e))
        _redis_client = None
        return None


async def close_redis() -> None:
    """Close the Redis connection."""
    global _redis_client

    if _redis_client is not None:
        await _redis_client.close()
        _redis_client = None
        logger.info("redis_connection_closed")


class ProactiveStateStore:
    """Loads and saves per-user engine state and preferences as JSON.

    Every operation degrades to a no-op when Redis is unavailable, so the
    engine keeps working in memory.
    """

    def __init__(self):
        self.settings = get_settings()

    @staticmethod
    def state_key(user_id: str) -> str:
        return f"proactive:state:{user_id}"

    @staticmethod
    def preferences_key(user_id: str) -> str:
        return f"proactive:prefs:{user_id}"

    async def load_state(self, user_id: str) -> Optional[EngineState]:
        client = await get_redis()
        if client is None:
            return None

        try:
            data = await client.get(self.state_key(user_id))
            if data is None:
                return None
            return EngineState.model_validate_json(data)
        except ValidationError as e:
            logger.warning("engine_state_corrupt", user_id=user_id, error_count=e.error_count())
            return None
        except Exception as e:
            logger.warning("redis_load_state_failed", error=str(e), user_id=user_id)
            return None

    async def save_state(self, state: EngineState) -> bool:
        client = await get_redis()
        if client is None:
            return False

        try:
            snapshot = state.model_copy(
                update={"history": state.history[-MAX_PERSISTED_HISTORY:]}
            )
            await client.set(
                self.state_key(state.user_id),
                snapshot.model_dump_json(),
                ex=self.settings.state_ttl,
            )
            return True
        except Exception as e:
            logger.warning("redis_save_state_failed", error=str(e), user_id=state.user_id)
            return False

    async def delete_state(self, user_id: str) -> bool:
        client = await get_redis()
        if client is None:
            return False

        try:
            await client.delete(self.state_key(user_id))
            return True
        except Exception as e:
            logger.warning("redis_delete_state_failed", error=str(e), user_id=user_id)
            return False

    async def load_preferences(self, user_id: str) -> Optional[ProactivePreferences]:
        client = await get_redis()
        if client is None:
            return None

        try:
            data = await client.get(self.preferences_key(user_id))
            if data is None:
                return None
            return ProactivePreferences.model_validate_json(data)
        except ValidationError as e:
            logger.warning("preferences_corrupt", user_id=user_id, error_count=e.error_count())
            return None
        except Exception as e:
            logger.warning("redis_load_preferences_failed", error=str(e), user_id=user_id)
            return None

    async def save_preferences(self, user_id: str, preferences: ProactivePreferences) -> bool:
        client = await get_redis()
        if client is None:
            return False

        try:
            await client.set(self.preferences_key(user_id), preferences.model_dump_json())
            return True
        except Exception as e:
            logger.warning("redis_save_preferences_failed", error=str(e), user_id=user_id)
            return False
