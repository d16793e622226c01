import json
import logging
from typing import Any, Dict, Optional

import redis.asyncio as redis

from .constants import EVENTS_CHANNEL

logger = logging.getLogger(__name__)


class PubSubService:
    """Publishes session and server events to Redis for real-time subscribers"""

    def __init__(self, redis_url: str, channel: str = EVENTS_CHANNEL):
        self.redis_url = redis_url
        self.channel = channel
        self.redis_client: Optional[redis.Redis] = None

    async def connect(self):
        if not self.redis_client:
            self.redis_client = redis.from_url(self.redis_url)
            logger.info(f"Pub/sub connected, publishing on {self.channel}")

    async def publish(self, event: str, data: Dict[str, Any]) -> None:
        """Publish one event; failures are logged and never raised"""
        if not self.redis_client:
            await self.connect()
        try:
            await self.redis_client.publish(
                self.channel,
                json.dumps({"event": event, "data": data}, default=str)
            )
        except Exception as e:
            logger.error(f"Error publishing {event}: {e}")

    async def close(self):
        if self.redis_client:
            await self.redis_client.close()
            self.redis_client = None


# Global pub/sub instance
pubsub_service = None


def get_pubsub_service() -> PubSubService:
    global pubsub_service
    if pubsub_service is None:
        from .config import settings
        pubsub_service = PubSubService(settings.redis_url)
    return pubsub_service
