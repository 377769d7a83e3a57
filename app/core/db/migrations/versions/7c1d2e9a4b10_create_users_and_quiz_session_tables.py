"""create users and live quiz session tables

Revision ID: 7c1d2e9a4b10
Revises:
Create Date: 2026-10-17 10:12:41.508113

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "7c1d2e9a4b10"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("hashed_password", sa.String(length=1024), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("is_superuser", sa.Boolean(), nullable=False),
        sa.Column("is_verified", sa.Boolean(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_users_email"), "users", ["email"], unique=True)
    op.create_index(op.f("ix_users_id"), "users", ["id"], unique=False)

    op.create_table(
        "quiz_definitions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("created_by", sa.String(), nullable=False),
        sa.Column("questions", sa.JSON(), nullable=False),
        sa.Column("settings", sa.JSON(), nullable=False),
        sa.Column(
            "created_at", sa.DateTime(), server_default=sa.text("now()"), nullable=True
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_quiz_definitions_id"), "quiz_definitions", ["id"], unique=False
    )
    op.create_index(
        op.f("ix_quiz_definitions_created_by"),
        "quiz_definitions",
        ["created_by"],
        unique=False,
    )
    op.create_index(
        op.f("ix_quiz_definitions_created_at"),
        "quiz_definitions",
        ["created_at"],
        unique=False,
    )

    op.create_table(
        "quiz_sessions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("quiz_id", sa.Integer(), nullable=False),
        sa.Column("creator_id", sa.String(), nullable=False),
        sa.Column("code", sa.String(length=6), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("current_question_index", sa.Integer(), nullable=False),
        sa.Column("quiz_snapshot", sa.JSON(), nullable=False),
        sa.Column("question_order", sa.JSON(), nullable=False),
        sa.Column("option_order", sa.JSON(), nullable=False),
        sa.Column(
            "created_at", sa.DateTime(), server_default=sa.text("now()"), nullable=True
        ),
        sa.Column("started_at", sa.DateTime(), nullable=True),
        sa.Column("ended_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(
            ["quiz_id"],
            ["quiz_definitions.id"],
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_quiz_sessions_id"), "quiz_sessions", ["id"], unique=False)
    op.create_index(
        op.f("ix_quiz_sessions_code"), "quiz_sessions", ["code"], unique=True
    )
    op.create_index(
        op.f("ix_quiz_sessions_quiz_id"), "quiz_sessions", ["quiz_id"], unique=False
    )
    op.create_index(
        op.f("ix_quiz_sessions_creator_id"),
        "quiz_sessions",
        ["creator_id"],
        unique=False,
    )
    op.create_index(
        op.f("ix_quiz_sessions_status"), "quiz_sessions", ["status"], unique=False
    )
    op.create_index(
        op.f("ix_quiz_sessions_created_at"),
        "quiz_sessions",
        ["created_at"],
        unique=False,
    )
    op.create_index(
        "ix_quiz_sessions_status_ended_at",
        "quiz_sessions",
        ["status", "ended_at"],
        unique=False,
    )
    # One live session per (quiz, creator)
    op.create_index(
        "uq_quiz_sessions_live_owner",
        "quiz_sessions",
        ["quiz_id", "creator_id"],
        unique=True,
        postgresql_where=sa.text("status <> 'ended'"),
    )

    op.create_table(
        "quiz_participants",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("session_id", sa.Integer(), nullable=False),
        sa.Column("identity", sa.String(), nullable=False),
        sa.Column("display_name", sa.String(length=50), nullable=False),
        sa.Column("total_score", sa.Integer(), nullable=False),
        sa.Column(
            "joined_at", sa.DateTime(), server_default=sa.text("now()"), nullable=True
        ),
        sa.ForeignKeyConstraint(
            ["session_id"],
            ["quiz_sessions.id"],
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "session_id", "identity", name="uq_quiz_participants_identity"
        ),
    )
    op.create_index(
        op.f("ix_quiz_participants_id"), "quiz_participants", ["id"], unique=False
    )
    op.create_index(
        op.f("ix_quiz_participants_session_id"),
        "quiz_participants",
        ["session_id"],
        unique=False,
    )

    op.create_table(
        "quiz_answers",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("session_id", sa.Integer(), nullable=False),
        sa.Column("participant_id", sa.Integer(), nullable=False),
        sa.Column("question_index", sa.Integer(), nullable=False),
        sa.Column("selected_options", sa.JSON(), nullable=False),
        sa.Column("is_correct", sa.Boolean(), nullable=False),
        sa.Column("points", sa.Integer(), nullable=False),
        sa.Column("elapsed_ms", sa.Integer(), nullable=False),
        sa.Column(
            "answered_at", sa.DateTime(), server_default=sa.text("now()"), nullable=True
        ),
        sa.ForeignKeyConstraint(
            ["participant_id"],
            ["quiz_participants.id"],
        ),
        sa.ForeignKeyConstraint(
            ["session_id"],
            ["quiz_sessions.id"],
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "participant_id", "question_index", name="uq_quiz_answers_once"
        ),
    )
    op.create_index(op.f("ix_quiz_answers_id"), "quiz_answers", ["id"], unique=False)
    op.create_index(
        op.f("ix_quiz_answers_session_id"), "quiz_answers", ["session_id"], unique=False
    )
    op.create_index(
        op.f("ix_quiz_answers_participant_id"),
        "quiz_answers",
        ["participant_id"],
        unique=False,
    )

    op.create_table(
        "quiz_answer_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("session_id", sa.Integer(), nullable=False),
        sa.Column("quiz_id", sa.Integer(), nullable=False),
        sa.Column("identity", sa.String(), nullable=False),
        sa.Column("question_index", sa.Integer(), nullable=False),
        sa.Column("selected_options", sa.JSON(), nullable=False),
        sa.Column("is_correct", sa.Boolean(), nullable=False),
        sa.Column("points", sa.Integer(), nullable=False),
        sa.Column("elapsed_ms", sa.Integer(), nullable=False),
        sa.Column(
            "answered_at", sa.DateTime(), server_default=sa.text("now()"), nullable=True
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_quiz_answer_events_id"), "quiz_answer_events", ["id"], unique=False
    )
    op.create_index(
        "ix_quiz_answer_events_session_identity",
        "quiz_answer_events",
        ["session_id", "identity"],
        unique=False,
    )
    op.create_index(
        "ix_quiz_answer_events_quiz_identity",
        "quiz_answer_events",
        ["quiz_id", "identity"],
        unique=False,
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table("quiz_answer_events")
    op.drop_table("quiz_answers")
    op.drop_table("quiz_participants")
    op.drop_index("uq_quiz_sessions_live_owner", table_name="quiz_sessions")
    op.drop_table("quiz_sessions")
    op.drop_table("quiz_definitions")
    op.drop_index(op.f("ix_users_email"), table_name="users")
    op.drop_table("users")
