"""Question flagging request/response schemas."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field, field_validator


class FlagQuestionRequest(BaseModel):
    question_id: str = Field(min_length=1, max_length=36)
    reason: str = Field(max_length=1000)
    comment: str | None = Field(default=None, max_length=2000)
    session_id: str | None = None

    @field_validator("reason")
    @classmethod
    def reason_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            msg = "reason is required"
            raise ValueError(msg)
        return v


class FlagQuestionResponse(BaseModel):
    id: str
    question_id: str
    reason: str
    created_at: datetime | None = None
