"""Session state stored in Redis, plus the API request/response schemas."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field


# --- Fast-store state (never sent to the client as is) ---


class ServedQuestion(BaseModel):
    id: str
    text: str
    options: list[str]
    correct_index: int
    explanation: str | None = None


class AnswerRecord(BaseModel):
    question_id: str
    option_index: int
    elapsed_ms: int
    correct: bool


class ActiveSession(BaseModel):
    """One live session, serialized once as JSON under ``session:{id}``."""

    id: str
    player_id: str
    stake_key: str | None = None
    anon_id: str | None = None
    category_id: str
    season_id: str
    questions: list[ServedQuestion]
    current_index: int = 0
    score: int = 0
    started_at: datetime
    answers: list[AnswerRecord] = Field(default_factory=list)

    @property
    def identity(self) -> str:
        return self.stake_key or self.anon_id or self.player_id

    @property
    def is_connected(self) -> bool:
        return bool(self.stake_key)


# --- Requests ---


class StartSessionRequest(BaseModel):
    category_id: str = Field(min_length=1, max_length=64)


class AnswerRequest(BaseModel):
    question_index: int
    option_index: int
    elapsed_ms: int


# --- Responses ---


class QuestionView(BaseModel):
    index: int
    question_id: str
    text: str
    options: list[str]
    answered_index: int | None = None
    elapsed_ms: int | None = None


class SessionView(BaseModel):
    id: str
    category_id: str
    season_id: str
    status: Literal["active"] = "active"
    current_index: int
    total_questions: int
    score: int
    timer_seconds: int
    started_at: datetime
    questions: list[QuestionView]


class AnswerResult(BaseModel):
    correct: bool
    correct_index: int
    explanation: str | None
    score: int
    current_index: int
    is_last: bool


class EligibilityView(BaseModel):
    id: str
    type: str
    category_id: str | None
    season_id: str | None
    status: str
    expires_at: datetime
    created_at: datetime | None = None


class CompleteResult(BaseModel):
    session_id: str
    status: Literal["won", "lost"]
    score: int
    total_questions: int
    total_ms: int
    is_perfect: bool
    points_earned: int
    eligibility: EligibilityView | None = None


class SessionHistoryItem(BaseModel):
    id: str
    category_id: str
    season_id: str | None
    status: str
    score: int
    questions_served: int
    total_ms: int
    started_at: datetime
    completed_at: datetime | None


class SessionHistoryResponse(BaseModel):
    sessions: list[SessionHistoryItem]
    total: int
    limit: int
    offset: int
    has_more: bool
