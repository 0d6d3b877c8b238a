"""Leaderboard service: season totals in the database, ranking in Redis sorted sets.

The durable ``season_points`` table is the source of truth. Sorted sets are
derived: every update rebuilds the player's member from the committed row,
never patches a score incrementally.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any

from redis.asyncio import Redis
from redis.exceptions import WatchError
from sqlalchemy import and_, case, delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from trivia.db.models import GameSession, LeaderboardSnapshot, Player, PlayerToken, Season, SeasonPoints
from trivia.errors import TransientError
from trivia.keys import category_ladder_key, global_ladder_key, ladder_index_key
from trivia.leaderboard.scoring import composite_score, decode_composite_score, ladder_member, parse_ladder_member

logger = logging.getLogger(__name__)

_MEMBER_WRITE_RETRIES = 5


@dataclass
class PointsMetadata:
    """What a single update contributes besides points."""

    is_perfect: bool = False
    avg_answer_ms: float | None = None
    sessions_added: int = 1
    minted_delta: int = 0
    achieved_at: datetime | None = None


async def _season_start(db: AsyncSession, season_id: str) -> datetime | None:
    season = await db.get(Season, season_id)
    return season.starts_at if season else None


def _row_score(row: SeasonPoints, season_start: datetime | None) -> int:
    return composite_score(
        points=row.points,
        tokens_minted=row.minted_count,
        perfect_count=row.perfect_count,
        avg_answer_ms=row.avg_answer_ms,
        sessions_used=row.sessions_used,
        first_achieved_at=row.first_achieved_at,
        season_start=season_start,
    )


async def replace_member(redis: Redis, ladder_key: str, identity: str, score: int) -> str:
    """Swap a player's member in a ladder for one carrying the new score.

    The index hash is watched so concurrent writers for the same ladder
    cannot leave two members behind for one identity.
    """
    index_key = ladder_index_key(ladder_key)
    member = ladder_member(score, identity)
    async with redis.pipeline(transaction=True) as pipe:
        for _ in range(_MEMBER_WRITE_RETRIES):
            try:
                await pipe.watch(index_key)
                old = await pipe.hget(index_key, identity)
                pipe.multi()
                if old and old != member:
                    pipe.zrem(ladder_key, old)
                pipe.zadd(ladder_key, {member: 0})
                pipe.hset(index_key, identity, member)
                await pipe.execute()
                return member
            except WatchError:
                continue
    msg = f"Could not update ladder {ladder_key} for {identity}"
    raise TransientError(msg)


async def update_player_points(
    db: AsyncSession,
    redis: Redis,
    stake_key: str,
    season_id: str,
    points_delta: int,
    metadata: PointsMetadata | None = None,
) -> SeasonPoints:
    """Read-modify-write the season totals, commit, then rebuild the ladder member.

    The running average answer time is updated incrementally from the
    previous average and session count.
    """
    metadata = metadata or PointsMetadata()
    now = datetime.now(timezone.utc)

    result = await db.execute(
        select(SeasonPoints)
        .where(SeasonPoints.season_id == season_id, SeasonPoints.stake_key == stake_key)
        .with_for_update()
    )
    row = result.scalar_one_or_none()
    if row is None:
        row = SeasonPoints(
            season_id=season_id,
            stake_key=stake_key,
            points=0,
            perfect_count=0,
            minted_count=0,
            avg_answer_ms=0.0,
            sessions_used=0,
        )
        db.add(row)

    old_sessions = row.sessions_used
    new_sessions = old_sessions + max(0, metadata.sessions_added)
    if metadata.avg_answer_ms is not None and new_sessions > old_sessions:
        row.avg_answer_ms = (
            row.avg_answer_ms * old_sessions + metadata.avg_answer_ms * (new_sessions - old_sessions)
        ) / new_sessions
    row.sessions_used = new_sessions
    row.points += points_delta
    row.minted_count += metadata.minted_delta
    if metadata.is_perfect:
        row.perfect_count += 1
    if metadata.achieved_at is not None:
        if row.first_achieved_at is None or metadata.achieved_at < row.first_achieved_at:
            row.first_achieved_at = metadata.achieved_at
    row.updated_at = now

    await db.commit()

    score = _row_score(row, await _season_start(db, season_id))
    await replace_member(redis, global_ladder_key(season_id), stake_key, score)
    logger.info("Season points updated for %s in %s: %+d (total %d)", stake_key, season_id, points_delta, row.points)
    return row


async def record_token_minted(db: AsyncSession, redis: Redis, stake_key: str, season_id: str) -> SeasonPoints:
    """A confirmed mint counts towards the minted tie-breaker."""
    return await update_player_points(
        db, redis, stake_key, season_id, 0, PointsMetadata(sessions_added=0, minted_delta=1)
    )


async def update_category_leaderboard(
    db: AsyncSession,
    redis: Redis,
    stake_key: str,
    category_id: str,
    season_id: str,
) -> int:
    """Recompute a player's category ladder entry from their session history."""
    result = await db.execute(
        select(
            func.coalesce(func.sum(GameSession.score), 0).label("points"),
            func.coalesce(
                func.sum(case((GameSession.score == GameSession.questions_served, 1), else_=0)), 0
            ).label("perfects"),
            func.coalesce(func.avg(GameSession.avg_answer_ms), 0).label("avg_answer_ms"),
            func.count(GameSession.id).label("sessions"),
            func.min(GameSession.started_at).label("first_at"),
        ).where(
            GameSession.stake_key == stake_key,
            GameSession.category_id == category_id,
            GameSession.season_id == season_id,
            GameSession.status != "active",
        )
    )
    agg = result.one()

    minted_result = await db.execute(
        select(func.count(PlayerToken.id)).where(
            PlayerToken.stake_key == stake_key,
            PlayerToken.category_id == category_id,
            PlayerToken.season_id == season_id,
            PlayerToken.source == "mint",
        )
    )
    minted = int(minted_result.scalar() or 0)

    score = composite_score(
        points=int(agg.points),
        tokens_minted=minted,
        perfect_count=int(agg.perfects),
        avg_answer_ms=float(agg.avg_answer_ms),
        sessions_used=int(agg.sessions),
        first_achieved_at=agg.first_at,
        season_start=await _season_start(db, season_id),
    )
    await replace_member(redis, category_ladder_key(category_id, season_id), stake_key, score)
    return score


async def _usernames(db: AsyncSession, stake_keys: list[str]) -> dict[str, str | None]:
    if not stake_keys:
        return {}
    result = await db.execute(select(Player.stake_key, Player.username).where(Player.stake_key.in_(stake_keys)))
    return {row.stake_key: row.username for row in result}


async def _page(redis: Redis, ladder_key: str, limit: int, offset: int) -> tuple[list[tuple[int, str]], int]:
    members = await redis.zrevrange(ladder_key, offset, offset + limit - 1)
    total = await redis.zcard(ladder_key)
    return [parse_ladder_member(m) for m in members], total


def _page_response(entries: list[dict[str, Any]], total: int, limit: int, offset: int) -> dict[str, Any]:
    return {
        "entries": entries,
        "total": total,
        "limit": limit,
        "offset": offset,
        "has_more": offset + limit < total,
    }


async def get_global_leaderboard(
    redis: Redis,
    db: AsyncSession,
    season_id: str,
    limit: int = 50,
    offset: int = 0,
) -> dict[str, Any]:
    """Page of the season ladder, enriched from ``season_points`` and ``players``."""
    page, total = await _page(redis, global_ladder_key(season_id), limit, offset)
    stake_keys = [identity for _, identity in page]

    rows: dict[str, SeasonPoints] = {}
    if stake_keys:
        result = await db.execute(
            select(SeasonPoints).where(SeasonPoints.season_id == season_id, SeasonPoints.stake_key.in_(stake_keys))
        )
        rows = {r.stake_key: r for r in result.scalars()}
    names = await _usernames(db, stake_keys)

    entries = []
    for position, (score, stake_key) in enumerate(page):
        row = rows.get(stake_key)
        if row is None:
            # Member without a durable row: stale entry, skipped until the next rebuild
            logger.warning("Ladder %s has no season_points row for %s", season_id, stake_key)
            continue
        entries.append({
            "rank": offset + position + 1,
            "stake_key": stake_key,
            "username": names.get(stake_key),
            "points": row.points,
            "tokens_minted": row.minted_count,
            "perfect_count": row.perfect_count,
            "avg_answer_ms": round(row.avg_answer_ms, 2),
            "sessions_used": row.sessions_used,
            "first_achieved_at": row.first_achieved_at,
            "composite_score": score,
        })
    return _page_response(entries, total, limit, offset)


async def get_category_leaderboard(
    redis: Redis,
    db: AsyncSession,
    category_id: str,
    season_id: str,
    limit: int = 50,
    offset: int = 0,
) -> dict[str, Any]:
    """Page of a category ladder. Dimensions are read back from the composite."""
    page, total = await _page(redis, category_ladder_key(category_id, season_id), limit, offset)
    names = await _usernames(db, [identity for _, identity in page])

    entries = []
    for position, (score, stake_key) in enumerate(page):
        parts = decode_composite_score(score)
        entries.append({
            "rank": offset + position + 1,
            "stake_key": stake_key,
            "username": names.get(stake_key),
            "points": parts.points,
            "tokens_minted": parts.tokens_minted,
            "perfect_count": parts.perfect_count,
            "avg_answer_ms": float(parts.avg_answer_ms),
            "sessions_used": parts.sessions_used,
            "first_achieved_at": None,
            "composite_score": score,
        })
    response = _page_response(entries, total, limit, offset)
    response["category_id"] = category_id
    return response


async def get_season_standings(
    redis: Redis,
    db: AsyncSession,
    season_id: str,
    current_season_id: str,
    limit: int = 50,
    offset: int = 0,
) -> dict[str, Any]:
    """Live ladder for the current season, latest snapshot for past ones."""
    if season_id == current_season_id:
        response = await get_global_leaderboard(redis, db, season_id, limit, offset)
        response["snapshot_date"] = None
        return response

    latest = await db.execute(
        select(func.max(LeaderboardSnapshot.snapshot_date)).where(LeaderboardSnapshot.season_id == season_id)
    )
    snapshot_date = latest.scalar()
    if snapshot_date is None:
        response = _page_response([], 0, limit, offset)
        response["snapshot_date"] = None
        return response

    condition = and_(LeaderboardSnapshot.season_id == season_id, LeaderboardSnapshot.snapshot_date == snapshot_date)
    total = int((await db.execute(select(func.count(LeaderboardSnapshot.id)).where(condition))).scalar() or 0)
    result = await db.execute(
        select(LeaderboardSnapshot).where(condition).order_by(LeaderboardSnapshot.rank).offset(offset).limit(limit)
    )
    snapshots = list(result.scalars())
    names = await _usernames(db, [s.stake_key for s in snapshots])
    entries = [
        {
            "rank": s.rank,
            "stake_key": s.stake_key,
            "username": names.get(s.stake_key),
            "points": s.points,
            "tokens_minted": s.minted_count,
            "perfect_count": s.perfect_count,
            "avg_answer_ms": round(s.avg_answer_ms, 2),
            "sessions_used": s.sessions_used,
            "first_achieved_at": s.first_achieved_at,
            "composite_score": s.composite_score,
        }
        for s in snapshots
    ]
    response = _page_response(entries, total, limit, offset)
    response["snapshot_date"] = snapshot_date
    return response


async def get_player_rank(redis: Redis, season_id: str, stake_key: str) -> dict[str, Any]:
    """A player's position on the season ladder."""
    ladder_key = global_ladder_key(season_id)
    member = await redis.hget(ladder_index_key(ladder_key), stake_key)
    total = await redis.zcard(ladder_key)
    rank = await redis.zrevrank(ladder_key, member) if member else None

    if rank is None:
        return {"season_id": season_id, "rank": 0, "composite_score": 0, "total": total, "percentile": 0}

    score, _ = parse_ladder_member(member)
    return {
        "season_id": season_id,
        "rank": rank + 1,
        "composite_score": score,
        "total": total,
        "percentile": round(100 - ((rank + 1) / total * 100), 2) if total > 0 else 0,
    }


async def rebuild_season_ladder(redis: Redis, db: AsyncSession, season_id: str) -> int:
    """Rebuild the season ladder wholesale from ``season_points``."""
    ladder_key = global_ladder_key(season_id)
    index_key = ladder_index_key(ladder_key)
    season_start = await _season_start(db, season_id)

    result = await db.execute(select(SeasonPoints).where(SeasonPoints.season_id == season_id))
    rows = list(result.scalars())

    pipe = redis.pipeline(transaction=True)
    pipe.delete(ladder_key, index_key)
    for row in rows:
        member = ladder_member(_row_score(row, season_start), row.stake_key)
        pipe.zadd(ladder_key, {member: 0})
        pipe.hset(index_key, row.stake_key, member)
    await pipe.execute()

    logger.info("Season ladder %s rebuilt: %d entries", season_id, len(rows))
    return len(rows)


async def save_snapshot(
    redis: Redis,
    db: AsyncSession,
    season_id: str,
    snapshot_date: date | None = None,
) -> int:
    """Persist the current season ladder, replacing any snapshot for the same day."""
    snapshot_date = snapshot_date or datetime.now(timezone.utc).date()
    members = await redis.zrevrange(global_ladder_key(season_id), 0, -1)
    if not members:
        return 0

    result = await db.execute(select(SeasonPoints).where(SeasonPoints.season_id == season_id))
    rows = {r.stake_key: r for r in result.scalars()}

    await db.execute(
        delete(LeaderboardSnapshot).where(
            LeaderboardSnapshot.season_id == season_id,
            LeaderboardSnapshot.snapshot_date == snapshot_date,
        )
    )
    rank = 0
    for member in members:
        score, stake_key = parse_ladder_member(member)
        row = rows.get(stake_key)
        if row is None:
            continue
        rank += 1
        db.add(LeaderboardSnapshot(
            season_id=season_id,
            snapshot_date=snapshot_date,
            stake_key=stake_key,
            rank=rank,
            composite_score=score,
            points=row.points,
            minted_count=row.minted_count,
            perfect_count=row.perfect_count,
            avg_answer_ms=row.avg_answer_ms,
            sessions_used=row.sessions_used,
            first_achieved_at=row.first_achieved_at,
        ))
    await db.commit()
    logger.info("Leaderboard snapshot for %s on %s: %d entries", season_id, snapshot_date, rank)
    return rank
