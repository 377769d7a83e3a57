from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    JSON,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.db.base import Base


def utcnow() -> datetime:
    """Naive UTC timestamp; every quiz table stores UTC without tzinfo."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class QuizDefinitionRecord(Base):
    """Read-only snapshot source for sessions; authored elsewhere."""

    __tablename__ = "quiz_definitions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    created_by: Mapped[str] = mapped_column(String, nullable=False, index=True)
    questions: Mapped[list[dict]] = mapped_column(JSON, nullable=False, default=list)
    settings: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, server_default=func.now(), index=True
    )


class QuizSessionRecord(Base):
    __tablename__ = "quiz_sessions"
    __table_args__ = (
        # At most one live session per (quiz, creator)
        Index(
            "uq_quiz_sessions_live_owner",
            "quiz_id",
            "creator_id",
            unique=True,
            postgresql_where=text("status <> 'ended'"),
            sqlite_where=text("status <> 'ended'"),
        ),
        Index("ix_quiz_sessions_status_ended_at", "status", "ended_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    quiz_id: Mapped[int] = mapped_column(
        ForeignKey("quiz_definitions.id"), nullable=False, index=True
    )
    creator_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    code: Mapped[str] = mapped_column(
        String(6), nullable=False, unique=True, index=True
    )
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default="waiting", index=True
    )
    current_question_index: Mapped[int] = mapped_column(
        Integer, nullable=False, default=-1
    )
    # Definition frozen at create time; later edits to the quiz do not leak in
    quiz_snapshot: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    question_order: Mapped[list[int]] = mapped_column(
        JSON, nullable=False, default=list
    )
    option_order: Mapped[list[int]] = mapped_column(JSON, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, server_default=func.now(), index=True
    )
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    ended_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    participants: Mapped[list["QuizParticipantRecord"]] = relationship(
        "QuizParticipantRecord",
        back_populates="session",
        cascade="all, delete-orphan",
        order_by="QuizParticipantRecord.id",
    )


class QuizParticipantRecord(Base):
    __tablename__ = "quiz_participants"
    __table_args__ = (
        UniqueConstraint("session_id", "identity", name="uq_quiz_participants_identity"),
    )

    # Autoincrement id doubles as join order for leaderboard tie-breaks
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    session_id: Mapped[int] = mapped_column(
        ForeignKey("quiz_sessions.id"), nullable=False, index=True
    )
    identity: Mapped[str] = mapped_column(String, nullable=False)
    display_name: Mapped[str] = mapped_column(String(50), nullable=False)
    total_score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    joined_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, server_default=func.now()
    )

    session: Mapped["QuizSessionRecord"] = relationship(
        "QuizSessionRecord", back_populates="participants"
    )
    answers: Mapped[list["QuizAnswerRecord"]] = relationship(
        "QuizAnswerRecord",
        back_populates="participant",
        cascade="all, delete-orphan",
        order_by="QuizAnswerRecord.question_index",
    )


class QuizAnswerRecord(Base):
    __tablename__ = "quiz_answers"
    __table_args__ = (
        UniqueConstraint(
            "participant_id", "question_index", name="uq_quiz_answers_once"
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    session_id: Mapped[int] = mapped_column(
        ForeignKey("quiz_sessions.id"), nullable=False, index=True
    )
    participant_id: Mapped[int] = mapped_column(
        ForeignKey("quiz_participants.id"), nullable=False, index=True
    )
    question_index: Mapped[int] = mapped_column(Integer, nullable=False)
    selected_options: Mapped[list[int]] = mapped_column(
        JSON, nullable=False, default=list
    )
    is_correct: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    points: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    elapsed_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    answered_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, server_default=func.now()
    )

    participant: Mapped["QuizParticipantRecord"] = relationship(
        "QuizParticipantRecord", back_populates="answers"
    )


class QuizAnswerEventRecord(Base):
    """Analytics log of answers, queryable without loading the session."""

    __tablename__ = "quiz_answer_events"
    __table_args__ = (
        Index("ix_quiz_answer_events_session_identity", "session_id", "identity"),
        Index("ix_quiz_answer_events_quiz_identity", "quiz_id", "identity"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    # No foreign keys: rows outlive the session document until cleanup
    session_id: Mapped[int] = mapped_column(Integer, nullable=False)
    quiz_id: Mapped[int] = mapped_column(Integer, nullable=False)
    identity: Mapped[str] = mapped_column(String, nullable=False)
    question_index: Mapped[int] = mapped_column(Integer, nullable=False)
    selected_options: Mapped[list[int]] = mapped_column(
        JSON, nullable=False, default=list
    )
    is_correct: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    points: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    elapsed_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    answered_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, server_default=func.now()
    )


__all__ = [
    "QuizDefinitionRecord",
    "QuizSessionRecord",
    "QuizParticipantRecord",
    "QuizAnswerRecord",
    "QuizAnswerEventRecord",
]
