"""
Redis access for the storefront repositories.

Commands go through one retry loop: connection errors and timeouts are
retried with exponential backoff, everything else is raised as
RedisConnectionError straight away.
"""
import redis
import time
import random
import logging
from typing import Optional, Any, Callable, Dict, List
from redis.exceptions import (
    ConnectionError,
    TimeoutError,
    RedisError,
    AuthenticationError
)

from storefront.config import Config
from storefront.exceptions import RedisConnectionError

logger = logging.getLogger(__name__)


def redis_url() -> str:
    scheme = "rediss" if Config.REDIS_SSL else "redis"
    auth = f":{Config.REDIS_AUTH_TOKEN}@" if Config.REDIS_AUTH_TOKEN else ""
    return f"{scheme}://{auth}{Config.REDIS_HOST}:{Config.REDIS_PORT}/{Config.REDIS_DB}"


class RedisClient:
    """
    Pooled Redis client. Pass ``client`` to wrap an existing connection
    (tests use fakeredis); otherwise a pool is opened from Config.
    """

    def __init__(self, client: Optional[redis.Redis] = None):
        self.pool: Optional[redis.ConnectionPool] = None
        self.client: Optional[redis.Redis] = client
        if self.client is None:
            self._open_pool()

    def _open_pool(self):
        try:
            self.pool = redis.ConnectionPool.from_url(
                redis_url(),
                max_connections=Config.REDIS_MAX_CONNECTIONS,
                socket_connect_timeout=Config.REDIS_SOCKET_CONNECT_TIMEOUT,
                socket_timeout=Config.REDIS_SOCKET_TIMEOUT,
                retry_on_timeout=Config.REDIS_RETRY_ON_TIMEOUT,
                decode_responses=True,
            )
            self.client = redis.Redis(connection_pool=self.pool)
            self.client.ping()
        except (ConnectionError, AuthenticationError) as e:
            raise RedisConnectionError(f"Cannot reach Redis at {Config.REDIS_HOST}:{Config.REDIS_PORT}: {e}")

    def _retry_with_backoff(self, func: Callable) -> Any:
        """Run one command, retrying transient failures up to REDIS_MAX_RETRIES times"""
        backoff = Config.REDIS_INITIAL_BACKOFF

        for attempt in range(1, Config.REDIS_MAX_RETRIES + 1):
            try:
                return func()
            except (ConnectionError, TimeoutError) as e:
                if attempt == Config.REDIS_MAX_RETRIES:
                    raise RedisConnectionError(f"Redis command failed after {attempt} attempts: {e}")

                logger.warning(
                    f"Redis command failed, retrying: {e}",
                    extra={"attempt": attempt, "backoff_seconds": round(backoff, 3)}
                )
                time.sleep(backoff + random.uniform(0, backoff * 0.1))
                backoff = min(backoff * 2, Config.REDIS_MAX_BACKOFF)

                # Only a pool we opened ourselves can be rebuilt
                if self.pool is not None:
                    try:
                        self._open_pool()
                    except RedisConnectionError as reconnect_error:
                        logger.warning(f"Redis reconnect failed: {reconnect_error}")

            except RedisError as e:
                raise RedisConnectionError(f"Redis error: {e}")

    def get(self, key: str) -> Optional[str]:
        """Get value from Redis"""
        return self._retry_with_backoff(lambda: self.client.get(key))

    def set(self, key: str, value: Any) -> bool:
        """Set a string value"""
        return self._retry_with_backoff(lambda: self.client.set(key, value))

    def delete(self, *keys: str) -> int:
        """Delete keys"""
        return self._retry_with_backoff(lambda: self.client.delete(*keys))

    def expire(self, key: str, seconds: int) -> bool:
        """Set TTL on a key"""
        return self._retry_with_backoff(lambda: self.client.expire(key, seconds))

    def hset(self, key: str, mapping: Dict[str, Any]) -> int:
        """Set several fields in a hash"""
        return self._retry_with_backoff(lambda: self.client.hset(key, mapping=mapping))

    def hget(self, key: str, field: str) -> Optional[str]:
        """Get one field from hash"""
        return self._retry_with_backoff(lambda: self.client.hget(key, field))

    def hdel(self, key: str, *fields: str) -> int:
        """Delete fields from hash"""
        return self._retry_with_backoff(lambda: self.client.hdel(key, *fields))

    def hgetall(self, key: str) -> dict:
        """Get all fields from hash"""
        return self._retry_with_backoff(lambda: self.client.hgetall(key))

    def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        """Increment field in hash"""
        return self._retry_with_backoff(lambda: self.client.hincrby(key, field, amount))

    def zadd(self, key: str, mapping: Dict[str, float]) -> int:
        """Add members to a sorted set"""
        return self._retry_with_backoff(lambda: self.client.zadd(key, mapping))

    def zrem(self, key: str, *members: str) -> int:
        """Remove members from a sorted set"""
        return self._retry_with_backoff(lambda: self.client.zrem(key, *members))

    def zrevrange(self, key: str, start: int, end: int) -> List[str]:
        """Members of a sorted set, highest score first"""
        return self._retry_with_backoff(lambda: self.client.zrevrange(key, start, end))

    def zcard(self, key: str) -> int:
        """Number of members in a sorted set"""
        return self._retry_with_backoff(lambda: self.client.zcard(key))

    def eval(self, script: str, num_keys: int, *keys_and_args) -> Any:
        """Execute Lua script"""
        return self._retry_with_backoff(lambda: self.client.eval(script, num_keys, *keys_and_args))

    def ping(self) -> bool:
        """Test Redis connection"""
        try:
            return self.client.ping()
        except RedisError:
            return False

    def close(self):
        """Close connection pool"""
        if self.pool:
            self.pool.disconnect()
