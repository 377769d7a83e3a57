"""Session registry: creation with code allocation, and read access.

Creating a session is an optimistic insert: allocate a code that looked free,
insert, and if the unique index on ``code`` rejects it (another allocation
picked the same code concurrently) draw a fresh code and insert again, with a
small randomized backoff between attempts. A rejected insert is rolled back,
so a code is only ever consumed by a committed session row.
"""

from __future__ import annotations

import asyncio
import random
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from app.core.config import QuizSessionSettings, settings
from app.core.db.schemas.quiz import (
    QuizParticipantRecord,
    QuizSessionRecord,
)
from app.core.logging import get_logger, log_context
from app.modules.quiz.authz import AccessPolicy, Identity
from app.modules.quiz.errors import (
    ConflictError,
    NotFoundError,
    StateError,
    TransientInfraError,
    ValidationError,
)
from app.modules.quiz.models import (
    LIVE_STATUSES,
    ModeratorSnapshot,
    ParticipantSummary,
    QuizDefinition,
    SessionSnapshot,
    SessionStatus,
)
from app.modules.quiz.pin import CodeAllocator, call_with_retry, is_transient, is_valid_code
from app.modules.quiz.store import QuizDefinitionStore

logger = get_logger(__name__)

_LIVE = [s.value for s in LIVE_STATUSES]


def _with_roster():
    return selectinload(QuizSessionRecord.participants).selectinload(
        QuizParticipantRecord.answers
    )


def quiz_of(record: QuizSessionRecord) -> QuizDefinition:
    return QuizDefinition.model_validate(record.quiz_snapshot)


def participant_summaries(record: QuizSessionRecord) -> list[ParticipantSummary]:
    """Roster in join order (participants relationship is ordered by id)."""
    return [
        ParticipantSummary(
            identity=p.identity,
            display_name=p.display_name,
            total_score=p.total_score,
            answer_count=len(p.answers),
            joined_at=p.joined_at,
        )
        for p in record.participants
    ]


def snapshot_of(record: QuizSessionRecord) -> SessionSnapshot:
    return SessionSnapshot(
        session_id=record.id,
        quiz_id=record.quiz_id,
        code=record.code,
        status=SessionStatus(record.status),
        current_question_index=record.current_question_index,
        question_count=len((record.quiz_snapshot or {}).get("questions", [])),
        participant_count=len(record.participants),
        created_at=record.created_at,
        started_at=record.started_at,
        ended_at=record.ended_at,
    )


def moderator_snapshot_of(record: QuizSessionRecord, **extra) -> ModeratorSnapshot:
    return ModeratorSnapshot(
        **snapshot_of(record).model_dump(),
        creator_id=record.creator_id,
        participants=participant_summaries(record),
        **extra,
    )


class SessionRegistry:
    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        store: QuizDefinitionStore,
        *,
        policy: Optional[AccessPolicy] = None,
        config: Optional[QuizSessionSettings] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.session_maker = session_maker
        self.store = store
        self.policy = policy or AccessPolicy()
        self.config = config or settings.quiz
        self.rng = rng or random.SystemRandom()
        self.allocator = CodeAllocator(
            self.code_exists,
            random_attempts=self.config.pin_random_attempts,
            storage_timeout=self.config.storage_timeout_sec,
            storage_retries=self.config.storage_retries,
            backoff_ms=self.config.retry_backoff_ms,
            rng=self.rng,
        )

    # Storage checks -----------------------------------------------------
    async def code_exists(self, code: str) -> bool:
        async with self.session_maker() as db:
            result = await db.execute(
                select(QuizSessionRecord.id).where(QuizSessionRecord.code == code).limit(1)
            )
            return result.first() is not None

    async def _find_live(self, quiz_id: int, creator_id: str) -> Optional[QuizSessionRecord]:
        async with self.session_maker() as db:
            result = await db.execute(
                select(QuizSessionRecord)
                .options(_with_roster())
                .where(
                    QuizSessionRecord.quiz_id == quiz_id,
                    QuizSessionRecord.creator_id == creator_id,
                    QuizSessionRecord.status.in_(_LIVE),
                )
            )
            return result.scalars().first()

    async def _insert(
        self, quiz: QuizDefinition, creator_id: str, code: str
    ) -> QuizSessionRecord:
        async with self.session_maker() as db:
            record = QuizSessionRecord(
                quiz_id=quiz.id,
                creator_id=creator_id,
                code=code,
                status=SessionStatus.WAITING.value,
                current_question_index=-1,
                quiz_snapshot=quiz.model_dump(mode="json"),
                question_order=[],
                option_order=[],
            )
            db.add(record)
            try:
                await asyncio.wait_for(db.commit(), timeout=self.config.storage_timeout_sec)
            except BaseException:
                await db.rollback()
                raise
            result = await db.execute(
                select(QuizSessionRecord)
                .options(_with_roster())
                .where(QuizSessionRecord.id == record.id)
            )
            return result.scalar_one()

    # Public API ---------------------------------------------------------
    async def create_session(
        self, quiz_id: int, creator: Identity
    ) -> tuple[QuizSessionRecord, bool]:
        """Create (or return the existing live) session for ``(quiz, creator)``.

        Returns ``(record, created)``.
        """
        quiz = await self.store.get_quiz(quiz_id)
        self.policy.require(creator, quiz.created_by)
        if not quiz.questions:
            raise ValidationError("Quiz must have at least one question")

        existing, _ = await call_with_retry(
            lambda: self._find_live(quiz_id, creator.id),
            timeout=self.config.storage_timeout_sec,
            retries=self.config.storage_retries,
        )
        if existing is not None:
            return existing, False

        collisions = 0
        transient = 0
        while collisions < self.config.pin_insert_retries:
            allocation = await self.allocator.allocate()
            try:
                record = await self._insert(quiz, creator.id, allocation.code)
            except IntegrityError:
                # Either a concurrent create for the same owner won, or the code
                # was taken between the existence check and the insert.
                live = await self._find_live(quiz_id, creator.id)
                if live is not None:
                    return live, False
                collisions += 1
                logger.warning(
                    "Duplicate code on insert (attempt %d/%d)",
                    collisions,
                    self.config.pin_insert_retries,
                    extra=log_context(code=allocation.code),
                )
            except Exception as e:
                if not is_transient(e):
                    raise
                transient += 1
                # The commit may have landed before the timeout fired
                live = await self._find_live(quiz_id, creator.id)
                if live is not None:
                    return live, False
                if transient >= self.config.storage_retries:
                    raise TransientInfraError("Storage unavailable while creating session")
            else:
                logger.info(
                    "Session %d created for quiz %d",
                    record.id,
                    quiz_id,
                    extra=log_context(code=record.code, role="creator"),
                )
                return record, True
            await asyncio.sleep(self.rng.uniform(0, self.config.retry_backoff_ms) / 1000)

        raise ConflictError(
            "Unable to generate unique game PIN after multiple attempts. Please try again in a moment"
        )

    async def load(self, db: AsyncSession, session_id: int) -> QuizSessionRecord:
        result = await db.execute(
            select(QuizSessionRecord)
            .options(_with_roster())
            .where(QuizSessionRecord.id == session_id)
            .execution_options(populate_existing=True)
        )
        record = result.scalar_one_or_none()
        if record is None:
            raise NotFoundError("Session not found")
        return record

    async def load_by_code(self, db: AsyncSession, code: str) -> QuizSessionRecord:
        if not is_valid_code(code):
            raise ValidationError("Invalid PIN format. PIN must be 6 digits")
        result = await db.execute(
            select(QuizSessionRecord)
            .options(_with_roster())
            .where(QuizSessionRecord.code == code)
            .execution_options(populate_existing=True)
        )
        record = result.scalar_one_or_none()
        if record is None:
            raise NotFoundError("Session not found")
        return record

    async def get_session_by_code(self, code: str) -> SessionSnapshot:
        """Lookup used by joining participants; never exposes answers."""
        code = (code or "").strip()
        async with self.session_maker() as db:
            record = await self.load_by_code(db, code)
        if record.status == SessionStatus.ENDED.value:
            raise StateError("This session has ended")
        return snapshot_of(record)

    async def get_session_by_id(self, session_id: int, caller: Identity) -> ModeratorSnapshot:
        async with self.session_maker() as db:
            record = await self.load(db, session_id)
        self.policy.require(caller, record.creator_id)
        return moderator_snapshot_of(record)

    async def list_sessions_for_quiz(
        self, quiz_id: int, caller: Identity
    ) -> list[SessionSnapshot]:
        quiz = await self.store.get_quiz(quiz_id)
        self.policy.require(caller, quiz.created_by)
        async with self.session_maker() as db:
            result = await db.execute(
                select(QuizSessionRecord)
                .options(selectinload(QuizSessionRecord.participants))
                .where(QuizSessionRecord.quiz_id == quiz_id)
                .order_by(QuizSessionRecord.created_at.desc(), QuizSessionRecord.id.desc())
                .limit(self.config.session_list_limit)
            )
            records = result.scalars().all()
            return [snapshot_of(r) for r in records]
