"""Season lookup, transitions and the per-session points formula."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from trivia.config import get_settings
from trivia.db.models import Season
from trivia.errors import NotFoundError

logger = logging.getLogger(__name__)


def session_points(score: int, is_perfect: bool) -> int:
    """Season points earned by one completed session."""
    settings = get_settings()
    points = score * settings.points_per_correct
    if is_perfect:
        points += settings.perfect_bonus
    return points


async def get_current_season(db: AsyncSession, now: datetime | None = None) -> Season | None:
    """The active season, falling back to the one whose window contains ``now``."""
    now = now or datetime.now(timezone.utc)
    result = await db.execute(select(Season).where(Season.is_active.is_(True)).limit(1))
    season = result.scalar_one_or_none()
    if season is not None:
        return season
    result = await db.execute(
        select(Season).where(Season.starts_at <= now, Season.ends_at > now).order_by(Season.starts_at.desc()).limit(1)
    )
    return result.scalar_one_or_none()


async def get_current_season_id(db: AsyncSession) -> str:
    season = await get_current_season(db)
    return season.id if season else get_settings().default_season_id


async def get_season(db: AsyncSession, season_id: str) -> Season:
    season = await db.get(Season, season_id)
    if season is None:
        msg = f"Season {season_id} not found"
        raise NotFoundError(msg)
    return season


def season_code(season: Season | None, season_id: str) -> str:
    """Short code used in token names, e.g. WI1."""
    if season is not None and season.code:
        return season.code
    return "".join(ch for ch in season_id.upper() if ch.isalnum())[:6]


def within_grace(season: Season, now: datetime | None = None) -> bool:
    """Seasonal forging stays open for a grace period after the season ends."""
    now = now or datetime.now(timezone.utc)
    grace = timedelta(days=get_settings().season_grace_days)
    return season.starts_at <= now <= season.ends_at + grace
