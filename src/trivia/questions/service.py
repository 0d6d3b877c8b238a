"""Question selection and flagging."""

from __future__ import annotations

import logging
import math
import random

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from trivia.config import Settings, get_settings
from trivia.db.models import Question, QuestionFlag
from trivia.errors import NotFoundError, PreconditionError

logger = logging.getLogger(__name__)


async def get_pool_count(db: AsyncSession, category_id: str) -> int:
    """Number of active questions in a category."""
    result = await db.execute(
        select(func.count(Question.id)).where(
            Question.category_id == category_id,
            Question.is_active.is_(True),
        )
    )
    return int(result.scalar() or 0)


def split_reused_new(count: int, settings: Settings) -> tuple[int, int]:
    """How many older vs newer questions to serve once the pool is large.

    The newer share absorbs rounding so the two always add up to ``count``.
    """
    reused = min(count, math.floor(count * settings.question_reused_ratio))
    return reused, count - reused


async def _candidates(
    db: AsyncSession,
    category_id: str,
    exclude_ids: set[str],
    *,
    oldest_first: bool,
    limit: int,
) -> list[Question]:
    order = Question.created_at.asc() if oldest_first else Question.created_at.desc()
    query = (
        select(Question)
        .where(Question.category_id == category_id, Question.is_active.is_(True))
        .order_by(order)
        .limit(limit)
    )
    if exclude_ids:
        query = query.where(Question.id.not_in(exclude_ids))
    result = await db.execute(query)
    return list(result.scalars().all())


async def select_questions(
    db: AsyncSession,
    category_id: str,
    count: int,
    exclude_ids: set[str] | None = None,
) -> list[Question]:
    """Pick ``count`` questions not seen today.

    Small pools are sampled uniformly. Once the pool reaches the configured
    threshold, the session mixes the oldest questions (reused) with the newest
    ones in the configured ratio. The result is shuffled.

    Raises:
        PreconditionError: if fewer than ``count`` questions are available.
    """
    settings = get_settings()
    exclude = set(exclude_ids or ())
    pool_size = await get_pool_count(db, category_id)

    if pool_size >= settings.question_pool_threshold:
        reused_count, new_count = split_reused_new(count, settings)
        # Over-fetch each end so repeated sessions do not get identical sets
        reused_pool = await _candidates(db, category_id, exclude, oldest_first=True, limit=reused_count * 3)
        reused = random.sample(reused_pool, min(reused_count, len(reused_pool)))
        taken = exclude | {q.id for q in reused}
        new_pool = await _candidates(db, category_id, taken, oldest_first=False, limit=new_count * 3)
        fresh = random.sample(new_pool, min(count - len(reused), len(new_pool)))
        selected = reused + fresh
    else:
        pool = await _candidates(db, category_id, exclude, oldest_first=True, limit=pool_size or count)
        selected = random.sample(pool, min(count, len(pool)))

    if len(selected) < count:
        logger.warning(
            "Question pool exhausted for %s: %d of %d available", category_id, len(selected), count
        )
        msg = "Not enough questions available for this category"
        raise PreconditionError(msg)

    random.shuffle(selected)
    return selected


async def flag_question(
    db: AsyncSession,
    question_id: str,
    player_id: str,
    reason: str,
    comment: str | None = None,
    session_id: str | None = None,
) -> QuestionFlag:
    """Record a player's report against a question. One flag per player per question."""
    question = await db.get(Question, question_id)
    if question is None:
        msg = "Question not found"
        raise NotFoundError(msg)

    flag = QuestionFlag(
        question_id=question_id,
        player_id=player_id,
        session_id=session_id,
        reason=reason,
        comment=comment,
    )
    db.add(flag)
    try:
        await db.commit()
    except IntegrityError as e:
        await db.rollback()
        msg = "Question already flagged"
        raise PreconditionError(msg) from e
    logger.info("Question %s flagged by %s: %s", question_id, player_id, reason)
    return flag
