"""Question flagging endpoint."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from trivia.auth.dependencies import get_current_identity
from trivia.auth.schemas import Identity
from trivia.database import get_session
from trivia.questions.schemas import FlagQuestionRequest, FlagQuestionResponse
from trivia.questions.service import flag_question

router = APIRouter(prefix="/api/v1/questions", tags=["Questions"])


@router.post("/flag", response_model=FlagQuestionResponse, status_code=201)
async def flag(
    body: FlagQuestionRequest,
    identity: Identity = Depends(get_current_identity),
    db: AsyncSession = Depends(get_session),
) -> FlagQuestionResponse:
    """Report a wrong, ambiguous or offensive question."""
    record = await flag_question(
        db,
        body.question_id,
        identity.player_id,
        body.reason,
        comment=body.comment,
        session_id=body.session_id,
    )
    return FlagQuestionResponse(
        id=record.id,
        question_id=record.question_id,
        reason=record.reason,
        created_at=record.created_at,
    )
