from typing import Optional

import redis.asyncio as redis_async

from relay.config import Settings
from relay.logging_config import get_logger

logger = get_logger("dedup_service")

DEDUP_KEY_PREFIX = "evt_"

_redis_client = None
_redis_url = None


def get_redis_client(redis_url: Optional[str], socket_timeout_seconds: float):
    global _redis_client, _redis_url

    if not redis_url:
        return None

    if _redis_client is None or _redis_url != redis_url:
        _redis_url = redis_url
        _redis_client = redis_async.from_url(
            redis_url,
            decode_responses=True,
            socket_connect_timeout=socket_timeout_seconds,
            socket_timeout=socket_timeout_seconds,
        )

    return _redis_client


class DedupGate:
    """Remembers event ids for a TTL window so redeliveries are answered once.

    Store failures are treated as "not seen": a missed duplicate costs a
    second reply, a false positive would drop a question silently.
    """

    def __init__(self, redis_client=None, ttl_seconds: int = 600):
        self.redis_client = redis_client
        self.ttl_seconds = ttl_seconds

    @classmethod
    def from_settings(cls, settings: Settings) -> "DedupGate":
        client = get_redis_client(settings.redis_url, settings.redis_socket_timeout_seconds)
        return cls(client, ttl_seconds=settings.dedup_ttl_seconds)

    async def is_duplicate(self, event_id: Optional[str]) -> bool:
        if not event_id:
            return False

        if self.redis_client is None:
            logger.warning("Dedup store not configured, processing event without dedup")
            return False

        key = f"{DEDUP_KEY_PREFIX}{event_id}"
        try:
            was_set = await self.redis_client.set(key, "1", ex=self.ttl_seconds, nx=True)
        except Exception as e:
            logger.warning(
                "Dedup store unavailable, processing event anyway",
                extra={"context": {"event_id": event_id, "error": str(e)}},
            )
            return False

        if not was_set:
            logger.info("Duplicate event", extra={"context": {"event_id": event_id}})
            return True
        return False
