"""
Redis connection for notification fan-out.

Redis is optional: without REDIS_URL, notifications are persisted but not
published. Outside DEBUG the URL must use TLS (rediss://) and carry a password.
"""

import logging
from typing import Optional
from urllib.parse import urlparse

import redis.asyncio as redis

from arena.config import Config

logger = logging.getLogger(__name__)

LOCAL_HOSTS = ('localhost', '127.0.0.1')


def is_secure_redis_url(redis_url: str, debug: Optional[bool] = None) -> bool:
    """Check a Redis URL against the deployment's security requirements."""
    if not redis_url:
        return False
    debug = Config.DEBUG if debug is None else debug
    parsed = urlparse(redis_url)

    if parsed.scheme not in ('redis', 'rediss'):
        logger.error(f"Unsupported Redis URL scheme: {parsed.scheme or '(none)'}")
        return False

    if debug:
        if parsed.scheme == 'redis' and parsed.hostname not in LOCAL_HOSTS:
            logger.warning(f"Plaintext Redis connection to {parsed.hostname} in development")
        return True

    if parsed.scheme != 'rediss':
        logger.error("Production Redis must use rediss:// (TLS) protocol")
        return False
    if not parsed.password:
        logger.error("Production Redis must include authentication credentials")
        return False
    return True


def notification_redis_url() -> Optional[str]:
    redis_url = Config.REDIS_URL
    if not redis_url:
        logger.info("REDIS_URL not set; notification fan-out disabled")
        return None
    if not is_secure_redis_url(redis_url):
        logger.error("REDIS_URL rejected; notification fan-out disabled")
        return None
    return redis_url


async def connect_notification_redis(redis_url: Optional[str] = None) -> Optional[redis.Redis]:
    """Open and ping a Redis client; None when Redis is unconfigured or unreachable."""
    redis_url = redis_url or notification_redis_url()
    if not redis_url:
        return None

    client = redis.from_url(redis_url)
    try:
        await client.ping()
    except redis.RedisError as e:
        logger.error(f"Failed to connect to Redis, notifications will not be published: {e}")
        await client.aclose()
        return None

    logger.info("Connected to Redis for notification fan-out")
    return client
