"""Leaderboard response schemas."""

from __future__ import annotations

from datetime import date, datetime

from pydantic import BaseModel


class LeaderboardEntryResponse(BaseModel):
    rank: int
    stake_key: str
    username: str | None = None
    points: int
    tokens_minted: int
    perfect_count: int
    avg_answer_ms: float
    sessions_used: int
    first_achieved_at: datetime | None = None
    composite_score: int


class LeaderboardResponse(BaseModel):
    season_id: str
    entries: list[LeaderboardEntryResponse]
    total: int
    limit: int
    offset: int
    has_more: bool


class CategoryLeaderboardResponse(LeaderboardResponse):
    category_id: str


class SeasonStandingsResponse(LeaderboardResponse):
    snapshot_date: date | None = None


class PlayerRankResponse(BaseModel):
    season_id: str
    rank: int
    composite_score: int
    total: int
    percentile: float
