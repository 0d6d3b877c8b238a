"""Leaderboard arq worker: ladder rebuilds and daily snapshots.

Schedule:
- Season ladder rebuild from season_points: every 15 minutes
- Snapshot of the season ladder: daily at 00:05 UTC
"""

from __future__ import annotations

import logging

import redis.asyncio as aioredis
from arq import cron
from arq.connections import RedisSettings
from sqlalchemy.ext.asyncio import AsyncSession

from trivia.config import get_settings
from trivia.database import close_db, get_session, init_db
from trivia.leaderboard.service import rebuild_season_ladder, save_snapshot
from trivia.middleware.logging import setup_logging
from trivia.seasons.service import get_current_season_id

logger = logging.getLogger(__name__)


async def _get_db_session() -> AsyncSession:
    """Get a database session for the worker."""
    async for session in get_session():
        return session
    msg = "Failed to get database session"
    raise RuntimeError(msg)


async def rebuild_ladder(ctx: dict, season_id: str | None = None) -> int:  # type: ignore[type-arg]
    """Rebuild a season ladder from the durable totals (current season by default)."""
    redis_client: aioredis.Redis = ctx["redis"]
    db = await _get_db_session()
    try:
        season_id = season_id or await get_current_season_id(db)
        return await rebuild_season_ladder(redis_client, db, season_id)
    finally:
        await db.close()


async def snapshot_season(ctx: dict, season_id: str | None = None) -> int:  # type: ignore[type-arg]
    """Persist today's copy of a season ladder (current season by default)."""
    redis_client: aioredis.Redis = ctx["redis"]
    db = await _get_db_session()
    try:
        season_id = season_id or await get_current_season_id(db)
        count = await save_snapshot(redis_client, db, season_id)
        logger.info("Leaderboard snapshot for %s: %d entries", season_id, count)
        return count
    finally:
        await db.close()


async def leaderboard_startup(ctx: dict) -> None:  # type: ignore[type-arg]
    """Initialize Redis + DB connections on worker startup."""
    settings = get_settings()
    setup_logging(settings)
    await init_db(settings.database_url)
    ctx["redis"] = aioredis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=20,
    )
    logger.info("Leaderboard worker started")


async def leaderboard_shutdown(ctx: dict) -> None:  # type: ignore[type-arg]
    """Clean up on worker shutdown."""
    redis_client = ctx.get("redis")
    if redis_client:
        await redis_client.aclose()
    await close_db()
    logger.info("Leaderboard worker shut down")


class LeaderboardWorkerSettings:
    """arq worker settings for leaderboard maintenance."""

    functions = [rebuild_ladder, snapshot_season]
    cron_jobs = [  # noqa: RUF012
        cron(rebuild_ladder, minute={0, 15, 30, 45}, run_at_startup=True),
        cron(snapshot_season, hour=0, minute=5),
    ]
    on_startup = leaderboard_startup
    on_shutdown = leaderboard_shutdown
    max_jobs = 2
    job_timeout = 300
    queue_name = "arq:leaderboard"
    redis_settings = RedisSettings.from_dsn(get_settings().arq_redis_url)
