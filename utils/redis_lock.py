"""
Redis Lock for Scheduled Jobs
Mutual exclusion over a shared Redis key space with TTL-based auto-release
"""

import logging
from contextlib import contextmanager

import redis

logger = logging.getLogger(__name__)


def make_key(prefix, app_env, *parts):
    """Namespaced key, e.g. mg:prod:lock:giveaways_tick"""
    return ":".join([str(prefix), str(app_env), *[str(p) for p in parts]])


def connect_redis(redis_url):
    """Create a redis-py client; bare host:port URLs get a redis:// scheme"""
    if '://' not in redis_url:
        redis_url = f'redis://{redis_url}'
    return redis.from_url(redis_url, decode_responses=True)


class RedisLock:
    """
    Non-reentrant lock over SET NX EX / DEL.

    There is no ownership token: if the protected work outlives the TTL the
    key can expire, another caller can take it, and the first caller's
    release() will delete the newer holder's key. The TTL must stay above the
    worst-case duration of the protected work.
    """

    def __init__(self, client):
        self.client = client

    def acquire(self, key, ttl_seconds):
        """
        Try to take the lock.

        Returns:
            bool: True if this caller now holds the key
        """
        acquired = bool(self.client.set(key, '1', nx=True, ex=int(ttl_seconds)))
        if acquired:
            logger.debug(f"🔒 Acquired lock {key} (ttl={ttl_seconds}s)")
        else:
            logger.info(f"Lock {key} is held by another run")
        return acquired

    def release(self, key):
        """Delete the key; failures are logged only, the TTL cleans up eventually."""
        try:
            self.client.delete(key)
            logger.debug(f"🔓 Released lock {key}")
        except Exception as e:
            logger.warning(f"Failed to release lock {key} (expires by TTL): {e}")

    @contextmanager
    def held(self, key, ttl_seconds):
        """
        Hold the lock for the duration of a block.

        Usage:
            with lock.held(key, 55) as acquired:
                if not acquired:
                    return skipped

        Yields:
            bool: whether the lock was acquired; it is released on every exit path
        """
        acquired = self.acquire(key, ttl_seconds)
        try:
            yield acquired
        finally:
            if acquired:
                self.release(key)
