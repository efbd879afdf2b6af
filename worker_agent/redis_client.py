from __future__ import annotations

import redis.asyncio as redis

from worker_agent.settings import Settings, get_settings

try:
    import fakeredis.aioredis as fakeredis
except ImportError:  # pragma: no cover - optional
    fakeredis = None


def create_redis(settings: Settings | None = None) -> redis.Redis:
    """Client for the live log store, bound to the caller's event loop."""
    settings = settings or get_settings()
    if settings.use_fake_redis:
        if fakeredis is None:
            raise RuntimeError("FAKE_REDIS is set but fakeredis is not installed")
        return fakeredis.FakeRedis(decode_responses=True)
    if not settings.redis_url:
        raise RuntimeError("REDIS_URL is not configured")
    return redis.from_url(settings.redis_url, decode_responses=True, socket_connect_timeout=5)
