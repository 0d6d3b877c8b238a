"""Shared FastAPI dependencies."""

from collections.abc import AsyncGenerator

from arq.connections import ArqRedis
from redis.asyncio import Redis

from trivia.database import get_session as _get_session
from trivia.redis_client import get_redis as _get_redis
from trivia.rewards.events import get_arq

get_db = _get_session


async def get_redis_dep() -> AsyncGenerator[Redis, None]:
    """Yield the Redis client as a FastAPI dependency."""
    yield _get_redis()


async def get_arq_dep() -> AsyncGenerator[ArqRedis, None]:
    """Yield the arq pool used to enqueue reward workflow events."""
    yield get_arq()
