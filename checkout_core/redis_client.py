"""
Async Redis access for checkout sessions and carts.

Every call goes through ``RedisClient._call`` so transient connection drops
are retried and all Redis failures surface as ``SessionStoreError``.
"""
import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Optional

import redis.asyncio as redis
from redis.exceptions import AuthenticationError, ConnectionError, RedisError, TimeoutError

from checkout_core.config import Config
from checkout_core.exceptions import SessionStoreError

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS = (ConnectionError, TimeoutError)


class RedisClient:
    """Pooled redis.asyncio connection used by the session store"""

    def __init__(
        self,
        url: Optional[str] = None,
        attempts: Optional[int] = None,
        base_delay: Optional[float] = None,
        max_delay: float = 2.0
    ):
        self.url = url or Config.redis_url()
        self.attempts = attempts or Config.REDIS_RETRY_ATTEMPTS
        self.base_delay = Config.REDIS_RETRY_BASE_DELAY if base_delay is None else base_delay
        self.max_delay = max_delay
        self.pool: Optional[redis.ConnectionPool] = None
        self._client: Optional[redis.Redis] = None

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            self._client = self._open()
        return self._client

    def _open(self) -> redis.Redis:
        pool_options = {
            "max_connections": Config.REDIS_MAX_CONNECTIONS,
            "socket_connect_timeout": Config.REDIS_SOCKET_CONNECT_TIMEOUT,
            "socket_timeout": Config.REDIS_SOCKET_TIMEOUT,
            "retry_on_timeout": True,
            "decode_responses": True,
        }
        if self.url.startswith("rediss://"):
            # ElastiCache in-transit encryption presents a self-signed cert
            pool_options["ssl_cert_reqs"] = None
        try:
            self.pool = redis.ConnectionPool.from_url(self.url, **pool_options)
        except (AuthenticationError, ValueError) as e:
            raise SessionStoreError(f"Invalid session store settings: {e}")
        return redis.Redis(connection_pool=self.pool)

    def _delay(self, attempt: int) -> float:
        delay = min(self.base_delay * (2 ** attempt), self.max_delay)
        return delay + random.uniform(0, delay * 0.1)

    async def _call(self, command: Callable[[redis.Redis], Awaitable[Any]], attempts: Optional[int] = None) -> Any:
        """Run ``command`` against the pooled client, retrying dropped connections."""
        attempts = attempts or self.attempts
        for attempt in range(attempts):
            try:
                return await command(self.client)
            except TRANSIENT_ERRORS as e:
                if attempt + 1 >= attempts:
                    raise SessionStoreError(f"Session store unreachable after {attempts} attempts: {e}")
                delay = self._delay(attempt)
                logger.warning(f"Session store call failed ({attempt + 1}/{attempts}), retrying in {delay:.2f}s: {e}")
                await asyncio.sleep(delay)
            except RedisError as e:
                raise SessionStoreError(f"Session store rejected command: {e}")

    async def hgetall(self, key: str) -> dict:
        return await self._call(lambda r: r.hgetall(key))

    async def hlen(self, key: str) -> int:
        return await self._call(lambda r: r.hlen(key))

    async def hdel(self, key: str, *fields: str) -> int:
        return await self._call(lambda r: r.hdel(key, *fields))

    async def delete(self, *keys: str) -> int:
        return await self._call(lambda r: r.delete(*keys))

    async def exists(self, *keys: str) -> int:
        return await self._call(lambda r: r.exists(*keys))

    async def expire(self, key: str, seconds: int) -> bool:
        return await self._call(lambda r: r.expire(key, seconds))

    async def eval(self, script: str, num_keys: int, *keys_and_args) -> Any:
        """Run a Lua script; cart and session mutations all go through here"""
        return await self._call(lambda r: r.eval(script, num_keys, *keys_and_args))

    async def ping(self) -> bool:
        """Single attempt, False instead of raising; used by /health"""
        try:
            return bool(await self._call(lambda r: r.ping(), attempts=1))
        except SessionStoreError:
            return False

    async def close(self) -> None:
        if self.pool is not None:
            await self.pool.disconnect()


_shared_client: Optional[RedisClient] = None


def get_redis_client() -> RedisClient:
    """Process-wide client, created on first use"""
    global _shared_client
    if _shared_client is None:
        _shared_client = RedisClient()
    return _shared_client
