"""Leaderboard API endpoints: global, per category, per season, own rank."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession

from trivia.auth.dependencies import get_connected_identity
from trivia.auth.schemas import Identity
from trivia.database import get_session
from trivia.dependencies import get_redis_dep
from trivia.leaderboard.schemas import (
    CategoryLeaderboardResponse,
    LeaderboardResponse,
    PlayerRankResponse,
    SeasonStandingsResponse,
)
from trivia.leaderboard.service import (
    get_category_leaderboard,
    get_global_leaderboard,
    get_player_rank,
    get_season_standings,
)
from trivia.seasons.service import get_current_season_id

router = APIRouter(prefix="/api/v1/leaderboard", tags=["Leaderboard"])


@router.get("/global", response_model=LeaderboardResponse)
async def global_leaderboard(
    season_id: str | None = Query(None, description="Defaults to the current season"),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_session),
    redis: Redis = Depends(get_redis_dep),
) -> LeaderboardResponse:
    """Season ladder ordered by composite score."""
    season_id = season_id or await get_current_season_id(db)
    data = await get_global_leaderboard(redis, db, season_id, limit, offset)
    return LeaderboardResponse(season_id=season_id, **data)


@router.get("/category/{category_id}", response_model=CategoryLeaderboardResponse)
async def category_leaderboard(
    category_id: str,
    season_id: str | None = Query(None),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_session),
    redis: Redis = Depends(get_redis_dep),
) -> CategoryLeaderboardResponse:
    season_id = season_id or await get_current_season_id(db)
    data = await get_category_leaderboard(redis, db, category_id, season_id, limit, offset)
    return CategoryLeaderboardResponse(season_id=season_id, **data)


@router.get("/season/{season_id}", response_model=SeasonStandingsResponse)
async def season_standings(
    season_id: str,
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_session),
    redis: Redis = Depends(get_redis_dep),
) -> SeasonStandingsResponse:
    """Live standings for the current season, latest daily snapshot for past seasons."""
    current = await get_current_season_id(db)
    data = await get_season_standings(redis, db, season_id, current, limit, offset)
    return SeasonStandingsResponse(season_id=season_id, **data)


@router.get("/me", response_model=PlayerRankResponse)
async def my_rank(
    season_id: str | None = Query(None),
    identity: Identity = Depends(get_connected_identity),
    db: AsyncSession = Depends(get_session),
    redis: Redis = Depends(get_redis_dep),
) -> PlayerRankResponse:
    season_id = season_id or await get_current_season_id(db)
    data = await get_player_rank(redis, season_id, identity.stake_key or "")
    return PlayerRankResponse(**data)
