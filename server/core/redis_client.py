"""Shared Redis connection with Streams helpers.

Used by the Redis-backed job queue and the Redis engagement event source.
"""

import json
from typing import Any, Dict, List, Optional

import redis.asyncio as redis

from core.config import Settings
from core.logging import get_logger

logger = get_logger(__name__)


def decode_fields(fields: Dict[str, str]) -> Dict[str, Any]:
    """Deserialize stream fields written by ``stream_add``."""
    data = {}
    for k, v in fields.items():
        try:
            data[k] = json.loads(v)
        except (json.JSONDecodeError, TypeError):
            data[k] = v
    return data


class RedisService:
    """Async Redis connection owner."""

    def __init__(self, settings: Settings, client: Optional[redis.Redis] = None):
        self.settings = settings
        self.redis: Optional[redis.Redis] = client

    async def startup(self):
        """Connect and verify the server responds."""
        if self.redis is None:
            if not self.settings.redis_url:
                raise RuntimeError("REDIS_URL is not configured")
            self.redis = redis.from_url(
                self.settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5,
                retry_on_timeout=True
            )
        await self.redis.ping()
        logger.info("Redis connected", url=self.settings.redis_url)

    async def shutdown(self):
        if self.redis is not None:
            await self.redis.aclose()
            logger.info("Redis connection closed")

    @property
    def client(self) -> redis.Redis:
        if self.redis is None:
            raise RuntimeError("Redis not initialized")
        return self.redis

    # ============================================================================
    # Redis Streams
    # ============================================================================

    async def stream_add(self, stream: str, data: Dict[str, Any], maxlen: int = 10000) -> str:
        """Add message to a Redis Stream.

        Args:
            stream: Stream name (e.g., 'workflow:events:engaged')
            data: Event data; dict and list values are JSON encoded
            maxlen: Maximum stream length (approximate)

        Returns:
            Message ID
        """
        serialized = {k: json.dumps(v) if isinstance(v, (dict, list)) else str(v)
                      for k, v in data.items() if v is not None}
        return await self.client.xadd(stream, serialized, maxlen=maxlen, approximate=True)

    async def stream_create_group(self, stream: str, group: str, start_id: str = '$') -> None:
        """Create consumer group for stream; an existing group is fine."""
        try:
            await self.client.xgroup_create(stream, group, start_id, mkstream=True)
            logger.info("Created consumer group", stream=stream, group=group)
        except redis.ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise

    async def stream_read_group(
        self,
        group: str,
        consumer: str,
        streams: Dict[str, str],
        count: int = 10,
        block: Optional[int] = None
    ) -> List[Any]:
        """Read from streams using a consumer group.

        Args:
            group: Consumer group name
            consumer: Consumer name (unique per worker)
            streams: Dict of stream_name -> last_id ('>' for new messages)
            count: Maximum messages to read
            block: Milliseconds to block

        Returns:
            List of [stream_name, [(msg_id, fields), ...]], empty on timeout
        """
        result = await self.client.xreadgroup(group, consumer, streams, count=count, block=block)
        return result or []

    async def stream_ack(self, stream: str, group: str, *msg_ids: str) -> int:
        return await self.client.xack(stream, group, *msg_ids)
