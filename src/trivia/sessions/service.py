"""Session state machine: none -> active -> completed (won | lost) or expired.

Active sessions live only in Redis (one JSON document per session, with a
TTL). The per-identity lock makes sure an identity never has two active
sessions; completion persists the session row and releases the lock.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone

from redis.asyncio import Redis
from redis.exceptions import WatchError
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from trivia.auth.schemas import Identity
from trivia.config import get_settings
from trivia.db.models import Category, Eligibility, GameSession
from trivia.errors import NotFoundError, PreconditionError, ValidationError
from trivia.keys import DAY_SECONDS, cooldown_key, daily_limit_key, lock_key, seen_key, session_key
from trivia.leaderboard.scoring import average_answer_ms
from trivia.leaderboard.service import PointsMetadata, update_category_leaderboard, update_player_points
from trivia.questions.service import select_questions
from trivia.seasons.service import get_current_season_id, session_points
from trivia.sessions.schemas import (
    ActiveSession,
    AnswerRecord,
    AnswerResult,
    CompleteResult,
    EligibilityView,
    QuestionView,
    ServedQuestion,
    SessionHistoryItem,
    SessionHistoryResponse,
    SessionView,
)

logger = logging.getLogger(__name__)


def _view(state: ActiveSession) -> SessionView:
    """Client view of a session. The answer key never leaves the server."""
    answered = {i: a for i, a in enumerate(state.answers)}
    return SessionView(
        id=state.id,
        category_id=state.category_id,
        season_id=state.season_id,
        current_index=state.current_index,
        total_questions=len(state.questions),
        score=state.score,
        timer_seconds=get_settings().timer_seconds,
        started_at=state.started_at,
        questions=[
            QuestionView(
                index=i,
                question_id=q.id,
                text=q.text,
                options=q.options,
                answered_index=answered[i].option_index if i in answered else None,
                elapsed_ms=answered[i].elapsed_ms if i in answered else None,
            )
            for i, q in enumerate(state.questions)
        ],
    )


async def _load(redis: Redis, session_id: str) -> ActiveSession:
    raw = await redis.get(session_key(session_id))
    if raw is None:
        msg = "Session not found"
        raise NotFoundError(msg)
    return ActiveSession.model_validate_json(raw)


async def start_session(redis: Redis, db: AsyncSession, identity: Identity, category_id: str) -> SessionView:
    """Start a session for ``identity`` in ``category_id``.

    Raises:
        PreconditionError: daily quota reached, cooldown active, an active
            session exists, or the category has too few unseen questions.
        NotFoundError: unknown or inactive category.
    """
    settings = get_settings()
    key = identity.key

    category = await db.get(Category, category_id)
    if category is None or not category.is_active:
        msg = "Category not found"
        raise NotFoundError(msg)

    daily_limit = settings.daily_limit_connected if identity.is_connected else settings.daily_limit_guest
    used_today = int(await redis.get(daily_limit_key(key)) or 0)
    if used_today >= daily_limit:
        msg = "Daily session limit reached"
        raise PreconditionError(msg)

    if await redis.exists(cooldown_key(key)):
        msg = "Session cooldown active"
        raise PreconditionError(msg)

    if await redis.exists(lock_key(key)):
        msg = "Active session already exists"
        raise PreconditionError(msg)

    seen = set(await redis.smembers(seen_key(key, category_id)))
    questions = await select_questions(db, category_id, settings.questions_per_session, seen)

    session_id = str(uuid.uuid4())
    # Atomic acquisition; a concurrent start for the same identity loses here
    acquired = await redis.set(lock_key(key), session_id, nx=True, ex=settings.session_ttl_seconds)
    if not acquired:
        msg = "Active session already exists"
        raise PreconditionError(msg)

    state = ActiveSession(
        id=session_id,
        player_id=identity.player_id,
        stake_key=identity.stake_key,
        anon_id=None if identity.is_connected else identity.anon_id,
        category_id=category_id,
        season_id=await get_current_season_id(db),
        questions=[
            ServedQuestion(
                id=q.id,
                text=q.text,
                options=list(q.options),
                correct_index=q.correct_index,
                explanation=q.explanation,
            )
            for q in questions
        ],
        started_at=datetime.now(timezone.utc),
    )
    await redis.set(session_key(session_id), state.model_dump_json(), ex=settings.session_ttl_seconds)
    logger.info("Session %s started for %s in %s", session_id, key, category_id)
    return _view(state)


async def get_session(redis: Redis, session_id: str) -> SessionView:
    return _view(await _load(redis, session_id))


async def get_active_session(redis: Redis, session_id: str) -> ActiveSession:
    """Full session state, including the answer key (server side only)."""
    return await _load(redis, session_id)


async def submit_answer(
    redis: Redis,
    session_id: str,
    question_index: int,
    option_index: int,
    elapsed_ms: int,
) -> AnswerResult:
    """Record one answer and advance the pointer by exactly one.

    Rejected submissions leave score and pointer untouched. The session
    document is watched, so two concurrent submissions for the same question
    cannot both be applied.
    """
    settings = get_settings()
    key = session_key(session_id)

    async with redis.pipeline(transaction=True) as pipe:
        try:
            await pipe.watch(key)
            raw = await pipe.get(key)
            if raw is None:
                msg = "Session not found"
                raise NotFoundError(msg)
            state = ActiveSession.model_validate_json(raw)

            if state.current_index >= len(state.questions):
                msg = "All questions already answered"
                raise ValidationError(msg)
            if question_index != state.current_index:
                msg = "Invalid question index"
                raise ValidationError(msg)
            question = state.questions[question_index]
            if not 0 <= option_index < len(question.options):
                msg = "Invalid option index"
                raise ValidationError(msg)
            if elapsed_ms < 0:
                msg = "Elapsed time cannot be negative"
                raise ValidationError(msg)
            if elapsed_ms > settings.timer_seconds * 1000:
                msg = "Answer submitted after timeout"
                raise PreconditionError(msg)

            correct = option_index == question.correct_index
            state.answers.append(
                AnswerRecord(
                    question_id=question.id,
                    option_index=option_index,
                    elapsed_ms=elapsed_ms,
                    correct=correct,
                )
            )
            if correct:
                state.score += 1
            state.current_index += 1

            remaining_ms = await pipe.pttl(key)
            if remaining_ms <= 0:
                remaining_ms = settings.session_ttl_seconds * 1000

            seen = seen_key(state.identity, state.category_id)
            pipe.multi()
            pipe.set(key, state.model_dump_json(), px=remaining_ms)
            pipe.sadd(seen, question.id)
            pipe.expire(seen, DAY_SECONDS)
            await pipe.execute()
        except WatchError as e:
            msg = "Concurrent answer submission"
            raise PreconditionError(msg) from e

    return AnswerResult(
        correct=correct,
        correct_index=question.correct_index,
        explanation=question.explanation,
        score=state.score,
        current_index=state.current_index,
        is_last=state.current_index >= len(state.questions),
    )


async def _release(redis: Redis, state: ActiveSession) -> None:
    """Lock release, daily counter, cooldown and session deletion. Runs for every outcome."""
    settings = get_settings()
    identity = state.identity
    counter = daily_limit_key(identity)

    holder = await redis.get(lock_key(identity))
    pipe = redis.pipeline(transaction=True)
    if holder is None or holder == state.id:
        pipe.delete(lock_key(identity))
    pipe.incr(counter)
    pipe.expire(counter, DAY_SECONDS)
    pipe.set(cooldown_key(identity), "1", ex=settings.cooldown_seconds)
    pipe.delete(session_key(state.id))
    await pipe.execute()


async def complete_session(redis: Redis, db: AsyncSession, session_id: str) -> CompleteResult:
    """Finish a session: persist it, grant an eligibility on a perfect score,
    update season points for connected players, and release the fast-store state.
    """
    settings = get_settings()
    state = await _load(redis, session_id)
    now = datetime.now(timezone.utc)

    served = len(state.questions)
    score = state.score
    total_ms = int((now - state.started_at).total_seconds() * 1000)
    avg_answer_ms = average_answer_ms([a.elapsed_ms for a in state.answers], served, settings.timer_seconds)
    status = "won" if score >= settings.win_threshold else "lost"
    is_perfect = served > 0 and score == served
    points = session_points(score, is_perfect)

    db.add(GameSession(
        id=state.id,
        player_id=state.player_id,
        stake_key=state.stake_key,
        anon_id=state.anon_id,
        category_id=state.category_id,
        season_id=state.season_id,
        status=status,
        score=score,
        questions_served=served,
        total_ms=total_ms,
        avg_answer_ms=avg_answer_ms,
        answers=[a.model_dump() for a in state.answers],
        started_at=state.started_at,
        completed_at=now,
    ))

    eligibility: Eligibility | None = None
    if is_perfect:
        window = settings.connected_window_minutes if state.is_connected else settings.guest_window_minutes
        eligibility = Eligibility(
            type="category",
            player_id=state.player_id,
            stake_key=state.stake_key,
            anon_id=state.anon_id,
            category_id=state.category_id,
            season_id=state.season_id,
            session_id=state.id,
            status="active",
            expires_at=now + timedelta(minutes=window),
            created_at=now,
        )
        db.add(eligibility)

    try:
        await db.commit()
    except IntegrityError as e:
        await db.rollback()
        msg = "Session already completed"
        raise PreconditionError(msg) from e

    try:
        if state.stake_key:
            await update_player_points(
                db,
                redis,
                state.stake_key,
                state.season_id,
                points,
                PointsMetadata(
                    is_perfect=is_perfect,
                    avg_answer_ms=avg_answer_ms,
                    sessions_added=1,
                    achieved_at=state.started_at,
                ),
            )
            await update_category_leaderboard(db, redis, state.stake_key, state.category_id, state.season_id)
    finally:
        await _release(redis, state)

    logger.info("Session %s completed: %s %d/%d", state.id, status, score, served)
    return CompleteResult(
        session_id=state.id,
        status=status,
        score=score,
        total_questions=served,
        total_ms=total_ms,
        is_perfect=is_perfect,
        points_earned=points if state.stake_key else 0,
        eligibility=(
            EligibilityView(
                id=eligibility.id,
                type=eligibility.type,
                category_id=eligibility.category_id,
                season_id=eligibility.season_id,
                status=eligibility.status,
                expires_at=eligibility.expires_at,
                created_at=eligibility.created_at,
            )
            if eligibility is not None
            else None
        ),
    )


async def get_session_history(
    db: AsyncSession,
    player_id: str,
    limit: int = 20,
    offset: int = 0,
) -> SessionHistoryResponse:
    """Completed sessions, newest first."""
    total_result = await db.execute(select(func.count(GameSession.id)).where(GameSession.player_id == player_id))
    total = int(total_result.scalar() or 0)

    result = await db.execute(
        select(GameSession)
        .where(GameSession.player_id == player_id)
        .order_by(GameSession.started_at.desc())
        .offset(offset)
        .limit(limit)
    )
    sessions = [
        SessionHistoryItem(
            id=s.id,
            category_id=s.category_id,
            season_id=s.season_id,
            status=s.status,
            score=s.score,
            questions_served=s.questions_served,
            total_ms=s.total_ms,
            started_at=s.started_at,
            completed_at=s.completed_at,
        )
        for s in result.scalars()
    ]
    return SessionHistoryResponse(
        sessions=sessions,
        total=total,
        limit=limit,
        offset=offset,
        has_more=offset + limit < total,
    )
