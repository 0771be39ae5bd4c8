import logging

import redis.asyncio as redis
from redis.exceptions import RedisError

from .config import IDEMPOTENCY_TTL_SECONDS, REDIS_URL
from .errors import Conflict

logger = logging.getLogger(__name__)

_IN_FLIGHT = "pending"


def idempotency_key(actor_id: str, key: str) -> str:
    return f"idempotency:reservation:{actor_id}:{key}"


class IdempotencyStore:
    """
    Remembers which reservation an `Idempotency-Key` produced.

    `claim` reserves the key before the create runs; a retry with the same key
    gets the original reservation id back. Redis trouble degrades to "no
    idempotency" rather than failing the request.
    """

    def __init__(self, client=None, ttl: int = IDEMPOTENCY_TTL_SECONDS):
        self._client = client
        self._ttl = ttl

    @property
    def enabled(self) -> bool:
        return self._client is not None

    async def claim(self, actor_id: str, key: str) -> str | None:
        """Returns the reservation id of an earlier success, or None if the caller should create."""
        if not self.enabled or not key:
            return None
        name = idempotency_key(actor_id, key)
        try:
            claimed = await self._client.set(name, _IN_FLIGHT, nx=True, ex=self._ttl)
            if claimed:
                return None
            existing = await self._client.get(name)
        except RedisError as e:
            logger.warning("Idempotency claim skipped, redis unavailable: %s", e)
            return None

        if existing is None:
            # expired between SET and GET
            return None
        if existing == _IN_FLIGHT:
            raise Conflict("A request with this Idempotency-Key is still in progress")
        return existing

    async def remember(self, actor_id: str, key: str, reservation_id: str) -> None:
        if not self.enabled or not key:
            return
        try:
            await self._client.set(idempotency_key(actor_id, key), reservation_id, ex=self._ttl)
        except RedisError as e:
            logger.warning("Could not store idempotency key: %s", e)

    async def release(self, actor_id: str, key: str) -> None:
        if not self.enabled or not key:
            return
        try:
            await self._client.delete(idempotency_key(actor_id, key))
        except RedisError as e:
            logger.warning("Could not release idempotency key: %s", e)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()


def build_idempotency_store(url: str | None = REDIS_URL) -> IdempotencyStore:
    if not url:
        return IdempotencyStore()
    return IdempotencyStore(redis.from_url(url, decode_responses=True))
