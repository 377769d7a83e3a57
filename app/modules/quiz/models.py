"""Pydantic models for live quiz sessions.

Quiz definitions are consumed read-only from the definition store; everything
else here is a view or message produced by the session engine and sent over
REST or the websocket channel. Durable records live under
app.core.db.schemas.quiz.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class QuestionType(str, Enum):
    MULTIPLE_CHOICE = "multiple-choice"
    TRUE_FALSE = "true-false"


class QuizOption(BaseModel):
    text: str
    is_correct: bool = False


class QuizQuestion(BaseModel):
    """A single question as authored."""

    text: str
    type: QuestionType = QuestionType.MULTIPLE_CHOICE
    options: list[QuizOption] = Field(default_factory=list)
    time_limit_ms: int = 30_000
    point_value: int = 5

    def correct_indices(self) -> set[int]:
        return {i for i, opt in enumerate(self.options) if opt.is_correct}


class QuizSettings(BaseModel):
    shuffle_questions: bool = False
    shuffle_answers: bool = False
    show_correct_answer: bool = True


class QuizDefinition(BaseModel):
    """Immutable-per-session snapshot supplied by the definition store."""

    id: int
    title: str = ""
    created_by: str
    questions: list[QuizQuestion] = Field(default_factory=list)
    settings: QuizSettings = Field(default_factory=QuizSettings)


class SessionStatus(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    PAUSED = "paused"
    ENDED = "ended"


LIVE_STATUSES = (SessionStatus.WAITING, SessionStatus.ACTIVE, SessionStatus.PAUSED)


class OptionView(BaseModel):
    text: str


class ModeratorOptionView(OptionView):
    is_correct: bool


class ParticipantQuestionView(BaseModel):
    question_index: int
    question_count: int
    text: str
    type: QuestionType
    options: list[OptionView]
    time_limit_ms: int
    point_value: int


class ModeratorQuestionView(ParticipantQuestionView):
    options: list[ModeratorOptionView]  # type: ignore[assignment]


class ParticipantSummary(BaseModel):
    identity: str
    display_name: str
    total_score: int = 0
    answer_count: int = 0
    joined_at: Optional[datetime] = None


class SessionSnapshot(BaseModel):
    """Current state of a session, safe to send to any participant."""

    session_id: int
    quiz_id: int
    code: str
    status: SessionStatus
    current_question_index: int
    question_count: int
    participant_count: int
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None


class ModeratorSnapshot(SessionSnapshot):
    creator_id: str
    participants: list[ParticipantSummary] = Field(default_factory=list)
    current_question: Optional[ModeratorQuestionView] = None


class ParticipantStatus(BaseModel):
    """What a (re)connecting participant needs to resync."""

    session: SessionSnapshot
    current_question: Optional[ParticipantQuestionView] = None
    answered_current: bool = False
    total_score: int = 0


class AnswerAck(BaseModel):
    question_index: int
    is_correct: bool
    points: int
    total_score: int
    correct_options: Optional[list[int]] = None


class AnswerNotice(BaseModel):
    """Content-free notice for the moderator channel."""

    identity: str
    display_name: str
    question_index: int
    elapsed_ms: int
    answered_count: int


class LeaderboardEntry(BaseModel):
    rank: int
    identity: str
    display_name: str
    total_score: int
    answer_count: int


class TransitionResult(BaseModel):
    """Outcome of a privileged transition, returned to the caller."""

    session: SessionSnapshot
    changed: bool = True
    question: Optional[ModeratorQuestionView] = None
    leaderboard: Optional[list[LeaderboardEntry]] = None


class SweepResult(BaseModel):
    sessions: int = 0
    events: int = 0

