from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, Field

from app.modules.quiz.models import LeaderboardEntry, SessionSnapshot


class CreateSessionResponse(BaseModel):
    session: SessionSnapshot
    created: bool
    ws_url: str


class LeaderboardResponse(BaseModel):
    session_id: int
    entries: list[LeaderboardEntry]


class ErrorResponse(BaseModel):
    detail: str
    kind: str


# WebSocket inbound payloads (the "data" member of an envelope)


class JoinMessage(BaseModel):
    code: str
    display_name: str = Field(..., alias="displayName")

    model_config = {"populate_by_name": True}


class TeacherJoinMessage(BaseModel):
    code: str


class StatusMessage(BaseModel):
    code: Optional[str] = None


class NextQuestionMessage(BaseModel):
    expected_index: Optional[int] = Field(default=None, alias="expectedIndex")

    model_config = {"populate_by_name": True}


class AnswerMessage(BaseModel):
    question_index: int = Field(..., alias="questionIndex")
    # Left loose so option bounds and types are checked against the question
    selected_options: list[Any] = Field(default_factory=list, alias="selections")
    elapsed_ms: int = Field(default=0, alias="elapsedMs")

    model_config = {"populate_by_name": True}
