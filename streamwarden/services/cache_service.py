"""
Redis cache of active sessions and server health
"""
import json
import logging
from typing import Any, Dict, List, Optional

import redis.asyncio as redis

from ..core.constants import CACHE_KEY_PREFIX
from ..core.database import utcnow

logger = logging.getLogger(__name__)


class CacheService:
    """Active sessions per server (hash of session key -> payload) and last known server health"""

    def __init__(self, redis_url: str, prefix: str = CACHE_KEY_PREFIX):
        self.redis_url = redis_url
        self.prefix = prefix
        self.redis_client: Optional[redis.Redis] = None
        self.health_ttl = 3600

    def _client(self) -> redis.Redis:
        if self.redis_client is None:
            self.redis_client = redis.from_url(self.redis_url, decode_responses=True)
        return self.redis_client

    def _sessions_key(self, server_id: int) -> str:
        return f"{self.prefix}:active_sessions:{server_id}"

    def _health_key(self, server_id: int) -> str:
        return f"{self.prefix}:server_health:{server_id}"

    async def set_session(self, server_id: int, session_key: str, payload: Dict[str, Any]) -> None:
        try:
            await self._client().hset(self._sessions_key(server_id), session_key, json.dumps(payload, default=str))
        except Exception as e:
            logger.error(f"Error caching session {session_key} for server {server_id}: {e}")

    async def remove_session(self, server_id: int, session_key: str) -> None:
        try:
            await self._client().hdel(self._sessions_key(server_id), session_key)
        except Exception as e:
            logger.error(f"Error removing cached session {session_key} for server {server_id}: {e}")

    async def replace_server_sessions(self, server_id: int, payloads: Dict[str, Dict[str, Any]]) -> None:
        """Replace the cached set for one server with exactly `payloads`"""
        key = self._sessions_key(server_id)
        try:
            async with self._client().pipeline(transaction=True) as pipe:
                pipe.delete(key)
                if payloads:
                    pipe.hset(key, mapping={k: json.dumps(v, default=str) for k, v in payloads.items()})
                await pipe.execute()
        except Exception as e:
            logger.error(f"Error replacing cached sessions for server {server_id}: {e}")

    async def get_active_sessions(self, server_id: int) -> List[Dict[str, Any]]:
        try:
            data = await self._client().hgetall(self._sessions_key(server_id))
            return [json.loads(value) for value in data.values()]
        except Exception as e:
            logger.error(f"Error reading cached sessions for server {server_id}: {e}")
            return []

    async def set_server_health(self, server_id: int, healthy: bool) -> Optional[bool]:
        """Record health and return the previous value (None if unknown)"""
        key = self._health_key(server_id)
        try:
            previous = await self._client().get(key)
            await self._client().set(
                key,
                json.dumps({"healthy": healthy, "checked_at": utcnow().isoformat()}),
                ex=self.health_ttl,
            )
            if previous is None:
                return None
            return bool(json.loads(previous).get("healthy"))
        except Exception as e:
            logger.error(f"Error recording health for server {server_id}: {e}")
            return None

    async def close(self):
        if self.redis_client:
            await self.redis_client.close()
            self.redis_client = None


# Global cache instance
cache_service = None


def get_cache_service() -> CacheService:
    global cache_service
    if cache_service is None:
        from ..core.config import settings
        cache_service = CacheService(settings.redis_url)
    return cache_service
