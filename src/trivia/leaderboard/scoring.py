"""Composite leaderboard score.

Ranking dimensions are packed into one 63-bit integer, most significant
first. Each field is clamped to its width, so a lower field can never carry
into a higher one:

    points            18 bits   higher is better
    tokens_minted     10 bits   higher is better
    perfect_count     10 bits   higher is better
    avg_answer_ms     14 bits   stored as (16383 - ms), faster is better; the
                              mean of per-answer times, so at most the
                              question timer (10 s by default)
    sessions_used      8 bits   stored as (255 - n), fewer is better
    first_achieved     3 bits   stored as (7 - two-week bucket since season start)

Redis sorted-set scores are doubles and only exact up to 2**53, so ladders
store the composite as a fixed-width hex member prefix instead (see
``ladder_member``).
"""

from __future__ import annotations

import math
from datetime import datetime
from typing import NamedTuple

FIELDS: tuple[tuple[str, int], ...] = (
    ("points", 18),
    ("tokens_minted", 10),
    ("perfect_count", 10),
    ("latency", 14),
    ("sessions", 8),
    ("first_achieved", 3),
)
TOTAL_BITS = sum(bits for _, bits in FIELDS)
HEX_WIDTH = math.ceil(TOTAL_BITS / 4)

LATENCY_CEILING_MS = (1 << 14) - 1
SESSIONS_CEILING = (1 << 8) - 1
FIRST_ACHIEVED_BUCKETS = (1 << 3) - 1
FIRST_ACHIEVED_BUCKET_DAYS = 14


class CompositeParts(NamedTuple):
    points: int
    tokens_minted: int
    perfect_count: int
    avg_answer_ms: int
    sessions_used: int
    first_achieved_bucket: int | None


def _clamp(value: float, bits: int) -> int:
    return max(0, min(int(value), (1 << bits) - 1))


def first_achieved_bucket(first_achieved_at: datetime | None, season_start: datetime | None) -> int | None:
    """Two-week bucket index since the season started, None when unknown."""
    if first_achieved_at is None or season_start is None:
        return None
    days = (first_achieved_at - season_start).days
    return min(FIRST_ACHIEVED_BUCKETS, max(0, days // FIRST_ACHIEVED_BUCKET_DAYS))


def average_answer_ms(elapsed_ms: list[int], served: int, timer_seconds: int) -> float:
    """Mean answer time over every served question; unanswered ones count as the full timer."""
    timer_ms = timer_seconds * 1000
    times = [min(ms, timer_ms) for ms in elapsed_ms] + [timer_ms] * max(served - len(elapsed_ms), 0)
    if not times:
        return float(timer_ms)
    return sum(times) / len(times)


def composite_score(
    points: int,
    tokens_minted: int,
    perfect_count: int,
    avg_answer_ms: float,
    sessions_used: int,
    first_achieved_at: datetime | None = None,
    season_start: datetime | None = None,
) -> int:
    """Pack the ranking dimensions into one exact integer.

    Average answer time is compared at millisecond resolution (rounded up).
    """
    bucket = first_achieved_bucket(first_achieved_at, season_start)
    values = (
        _clamp(points, 18),
        _clamp(tokens_minted, 10),
        _clamp(perfect_count, 10),
        LATENCY_CEILING_MS - _clamp(math.ceil(avg_answer_ms), 14),
        SESSIONS_CEILING - _clamp(sessions_used, 8),
        0 if bucket is None else FIRST_ACHIEVED_BUCKETS - bucket,
    )
    score = 0
    for (_, bits), value in zip(FIELDS, values, strict=True):
        score = (score << bits) | value
    return score


def decode_composite_score(score: int) -> CompositeParts:
    """Inverse of ``composite_score`` (up to clamping)."""
    values: dict[str, int] = {}
    for name, bits in reversed(FIELDS):
        values[name] = score & ((1 << bits) - 1)
        score >>= bits
    first = values["first_achieved"]
    return CompositeParts(
        points=values["points"],
        tokens_minted=values["tokens_minted"],
        perfect_count=values["perfect_count"],
        avg_answer_ms=LATENCY_CEILING_MS - values["latency"],
        sessions_used=SESSIONS_CEILING - values["sessions"],
        first_achieved_bucket=None if first == 0 else FIRST_ACHIEVED_BUCKETS - first,
    )


def ladder_member(score: int, identity: str) -> str:
    """Sorted-set member whose lexicographic order equals composite order."""
    return f"{score:0{HEX_WIDTH}x}:{identity}"


def parse_ladder_member(member: str) -> tuple[int, str]:
    """Split a member back into (composite score, identity)."""
    score_hex, _, identity = member.partition(":")
    return int(score_hex, 16), identity
