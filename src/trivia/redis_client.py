"""Fast-store client shared by live sessions, leaderboards and the rate limiter.

The API opens it in its lifespan and the reward worker at startup, so
leaderboard helpers called from workflow steps find a client. Tests
install fakeredis with ``set_redis``.
"""

import redis.asyncio as redis

from trivia.config import Settings

_client: redis.Redis | None = None


async def init_redis(settings: Settings) -> redis.Redis:
    """Open the pooled client described by ``settings``."""
    global _client  # noqa: PLW0603
    _client = redis.from_url(  # type: ignore[no-untyped-call]
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=settings.redis_max_connections,
        health_check_interval=settings.redis_health_check_seconds,
    )
    return _client


def set_redis(client: redis.Redis | None) -> None:
    global _client  # noqa: PLW0603
    _client = client


async def close_redis() -> None:
    global _client  # noqa: PLW0603
    if _client is not None:
        await _client.aclose()
        _client = None


def get_redis() -> redis.Redis:
    """The installed client (FastAPI dependency)."""
    if _client is None:
        msg = "Redis not initialized. Call init_redis() first."
        raise RuntimeError(msg)
    return _client


async def redis_status() -> str:
    """``"ok"`` when the fast store answers a PING, otherwise the error text."""
    try:
        await get_redis().ping()
    except (RuntimeError, OSError, redis.RedisError) as exc:
        return f"error: {exc}"
    return "ok"
