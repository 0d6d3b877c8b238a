"""Session API endpoints: start, answer, complete, inspect, history."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession

from trivia.auth.dependencies import get_current_identity
from trivia.auth.schemas import Identity
from trivia.database import get_session
from trivia.dependencies import get_redis_dep
from trivia.errors import ForbiddenError
from trivia.sessions import service
from trivia.sessions.schemas import (
    AnswerRequest,
    AnswerResult,
    CompleteResult,
    SessionHistoryResponse,
    SessionView,
    StartSessionRequest,
)

router = APIRouter(prefix="/api/v1/sessions", tags=["Sessions"])


async def _owned(redis: Redis, session_id: str, identity: Identity) -> None:
    state = await service.get_active_session(redis, session_id)
    if state.player_id != identity.player_id:
        msg = "Session belongs to another player"
        raise ForbiddenError(msg)


@router.post("/start", response_model=SessionView, status_code=201)
async def start_session(
    body: StartSessionRequest,
    identity: Identity = Depends(get_current_identity),
    db: AsyncSession = Depends(get_session),
    redis: Redis = Depends(get_redis_dep),
) -> SessionView:
    """Start a session in a category. Counts against the daily quota on completion."""
    return await service.start_session(redis, db, identity, body.category_id)


# Registered before /{session_id} so "history" is not taken for a session id
@router.get("/history", response_model=SessionHistoryResponse)
async def session_history(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    identity: Identity = Depends(get_current_identity),
    db: AsyncSession = Depends(get_session),
) -> SessionHistoryResponse:
    return await service.get_session_history(db, identity.player_id, limit, offset)


@router.get("/{session_id}", response_model=SessionView)
async def get_session_state(
    session_id: str,
    identity: Identity = Depends(get_current_identity),
    redis: Redis = Depends(get_redis_dep),
) -> SessionView:
    await _owned(redis, session_id, identity)
    return await service.get_session(redis, session_id)


@router.post("/{session_id}/answer", response_model=AnswerResult)
async def submit_answer(
    session_id: str,
    body: AnswerRequest,
    identity: Identity = Depends(get_current_identity),
    redis: Redis = Depends(get_redis_dep),
) -> AnswerResult:
    """Answer the current question. Only the question at the pointer is accepted."""
    await _owned(redis, session_id, identity)
    return await service.submit_answer(
        redis,
        session_id,
        body.question_index,
        body.option_index,
        body.elapsed_ms,
    )


@router.post("/{session_id}/complete", response_model=CompleteResult)
async def complete_session(
    session_id: str,
    identity: Identity = Depends(get_current_identity),
    db: AsyncSession = Depends(get_session),
    redis: Redis = Depends(get_redis_dep),
) -> CompleteResult:
    await _owned(redis, session_id, identity)
    return await service.complete_session(redis, db, session_id)
