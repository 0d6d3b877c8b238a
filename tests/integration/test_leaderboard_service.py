"""Season points, ladders, ranks, rebuilds and snapshots."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

from conftest import SEASON_ID
from fakeredis import FakeAsyncRedis
from sqlalchemy.ext.asyncio import AsyncSession

from trivia.auth.dependencies import ensure_player
from trivia.auth.schemas import Identity
from trivia.db.models import Season
from trivia.keys import global_ladder_key, ladder_index_key
from trivia.leaderboard.service import (
    PointsMetadata,
    get_global_leaderboard,
    get_player_rank,
    get_season_standings,
    rebuild_season_ladder,
    record_token_minted,
    replace_member,
    save_snapshot,
    update_player_points,
)

ALICE = "stake_test1ualice"
BOB = "stake_test1ubob"
CAROL = "stake_test1ucarol"


async def _session(db: AsyncSession, redis: FakeAsyncRedis, stake_key: str, points: int, avg_ms: float, **kw: object) -> None:
    await update_player_points(
        db,
        redis,
        stake_key,
        SEASON_ID,
        points,
        PointsMetadata(avg_answer_ms=avg_ms, achieved_at=datetime.now(timezone.utc), **kw),  # type: ignore[arg-type]
    )


class TestSeasonPoints:
    async def test_points_accumulate_with_running_average(self, db: AsyncSession, redis: FakeAsyncRedis) -> None:
        await _session(db, redis, ALICE, 6, 2000)
        await _session(db, redis, ALICE, 20, 1000, is_perfect=True)

        row = await update_player_points(db, redis, ALICE, SEASON_ID, 0, PointsMetadata(sessions_added=0))

        assert row.points == 26
        assert row.sessions_used == 2
        assert row.perfect_count == 1
        assert row.avg_answer_ms == 1500

    async def test_first_achievement_keeps_earliest(self, db: AsyncSession, redis: FakeAsyncRedis) -> None:
        early = datetime.now(timezone.utc) - timedelta(days=3)
        await update_player_points(db, redis, ALICE, SEASON_ID, 1, PointsMetadata(achieved_at=early))
        row = await update_player_points(
            db, redis, ALICE, SEASON_ID, 1, PointsMetadata(achieved_at=datetime.now(timezone.utc))
        )
        assert row.first_achieved_at == early

    async def test_minted_token_counts_without_a_session(self, db: AsyncSession, redis: FakeAsyncRedis) -> None:
        await _session(db, redis, ALICE, 5, 1000)
        row = await record_token_minted(db, redis, ALICE, SEASON_ID)

        assert row.minted_count == 1
        assert row.sessions_used == 1
        assert row.points == 5

    async def test_one_member_per_player(self, db: AsyncSession, redis: FakeAsyncRedis) -> None:
        for points in (1, 2, 3):
            await _session(db, redis, ALICE, points, 1000)

        ladder = global_ladder_key(SEASON_ID)
        assert await redis.zcard(ladder) == 1
        member = (await redis.zrange(ladder, 0, -1))[0]
        assert await redis.hget(ladder_index_key(ladder), ALICE) == member


class TestRanking:
    async def test_ordering_and_tie_breaks(self, db: AsyncSession, redis: FakeAsyncRedis) -> None:
        await ensure_player(db, Identity(player_id="p-alice", stake_key=ALICE, username="alice"))
        await _session(db, redis, ALICE, 10, 3000)
        await _session(db, redis, BOB, 10, 1000)
        await _session(db, redis, CAROL, 30, 9000)

        board = await get_global_leaderboard(redis, db, SEASON_ID)

        assert [e["stake_key"] for e in board["entries"]] == [CAROL, BOB, ALICE]
        assert [e["rank"] for e in board["entries"]] == [1, 2, 3]
        assert board["entries"][2]["username"] == "alice"
        assert board["total"] == 3
        assert board["has_more"] is False

    async def test_pagination(self, db: AsyncSession, redis: FakeAsyncRedis) -> None:
        for i in range(5):
            await _session(db, redis, f"stake_test1u{i}", i + 1, 1000)

        page = await get_global_leaderboard(redis, db, SEASON_ID, limit=2, offset=2)

        assert [e["rank"] for e in page["entries"]] == [3, 4]
        assert [e["points"] for e in page["entries"]] == [3, 2]
        assert page["has_more"] is True

    async def test_player_rank(self, db: AsyncSession, redis: FakeAsyncRedis) -> None:
        await _session(db, redis, ALICE, 10, 1000)
        await _session(db, redis, BOB, 20, 1000)

        rank = await get_player_rank(redis, SEASON_ID, ALICE)
        missing = await get_player_rank(redis, SEASON_ID, CAROL)

        assert (rank["rank"], rank["total"], rank["percentile"]) == (2, 2, 0)
        assert missing["rank"] == 0

    async def test_stale_member_skipped(self, db: AsyncSession, redis: FakeAsyncRedis) -> None:
        await _session(db, redis, ALICE, 10, 1000)
        await replace_member(redis, global_ladder_key(SEASON_ID), "stake_test1ughost", 1 << 60)

        board = await get_global_leaderboard(redis, db, SEASON_ID)
        assert [e["stake_key"] for e in board["entries"]] == [ALICE]


class TestRebuildAndSnapshots:
    async def test_rebuild_from_durable_rows(self, db: AsyncSession, redis: FakeAsyncRedis) -> None:
        await _session(db, redis, ALICE, 10, 1000)
        await _session(db, redis, BOB, 20, 1000)
        before = await redis.zrevrange(global_ladder_key(SEASON_ID), 0, -1)
        await redis.flushall()

        assert await rebuild_season_ladder(redis, db, SEASON_ID) == 2
        assert await redis.zrevrange(global_ladder_key(SEASON_ID), 0, -1) == before

    async def test_snapshot_replaces_same_day(self, db: AsyncSession, redis: FakeAsyncRedis) -> None:
        await _session(db, redis, ALICE, 10, 1000)
        day = date(2026, 3, 1)
        assert await save_snapshot(redis, db, SEASON_ID, day) == 1

        await _session(db, redis, BOB, 20, 1000)
        assert await save_snapshot(redis, db, SEASON_ID, day) == 2

    async def test_past_season_served_from_latest_snapshot(self, db: AsyncSession, redis: FakeAsyncRedis) -> None:
        db.add(Season(
            id="summer-s0",
            name="Summer Season 0",
            code="SU0",
            starts_at=datetime.now(timezone.utc) - timedelta(days=200),
            ends_at=datetime.now(timezone.utc) - timedelta(days=110),
            is_active=False,
        ))
        await db.commit()
        await update_player_points(db, redis, ALICE, "summer-s0", 40, PointsMetadata(avg_answer_ms=900))
        await update_player_points(db, redis, BOB, "summer-s0", 10, PointsMetadata(avg_answer_ms=900))
        await save_snapshot(redis, db, "summer-s0", date(2026, 1, 1))
        await update_player_points(db, redis, BOB, "summer-s0", 100, PointsMetadata(avg_answer_ms=900))
        await save_snapshot(redis, db, "summer-s0", date(2026, 1, 2))

        standings = await get_season_standings(redis, db, "summer-s0", SEASON_ID)

        assert standings["snapshot_date"] == date(2026, 1, 2)
        assert [e["stake_key"] for e in standings["entries"]] == [BOB, ALICE]
        assert standings["entries"][0]["points"] == 110

    async def test_current_season_is_live(self, db: AsyncSession, redis: FakeAsyncRedis) -> None:
        await _session(db, redis, ALICE, 10, 1000)

        standings = await get_season_standings(redis, db, SEASON_ID, SEASON_ID)

        assert standings["snapshot_date"] is None
        assert standings["entries"][0]["stake_key"] == ALICE

    async def test_season_without_snapshots_is_empty(self, db: AsyncSession, redis: FakeAsyncRedis) -> None:
        standings = await get_season_standings(redis, db, "autumn-s9", SEASON_ID)
        assert standings["entries"] == []
        assert standings["total"] == 0
