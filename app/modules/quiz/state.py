"""Live quiz session engine: lifecycle transitions and answer ingestion.

The durable session row is the single source of truth. Within this process
every mutating call for a session runs under that session's lock (held in the
``SessionCache``); across processes each transition is a conditional UPDATE
on the expected ``(status, current_question_index)``, so an overlapping
advance becomes a no-op instead of skipping a question. Answers are protected
by a unique index on ``(participant, question_index)`` and scores are bumped
with an in-database increment.

Lifecycle::

    waiting --start--> active --pause--> paused --resume--> active
    waiting/active/paused --end / advance past last--> ended

Payloads are built under the lock and handed to the ``ChannelHub`` after it
is released. The hub delivers per code in request order with a bounded send
per subscriber, so a stalled socket never holds up the session.
"""

from __future__ import annotations

import random
from typing import Iterable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.db.base import async_session_maker
from app.core.db.schemas.quiz import (
    QuizAnswerEventRecord,
    QuizAnswerRecord,
    QuizParticipantRecord,
    QuizSessionRecord,
    utcnow,
)
from app.core.logging import get_logger, log_context
from app.modules.quiz.authz import AccessPolicy, Identity
from app.modules.quiz.cache import SessionCache, SessionSummary
from app.modules.quiz.cleanup import RetentionSweeper
from app.modules.quiz.channels import Channel, ChannelHub, Subscriber, envelope
from app.modules.quiz.errors import NotFoundError, StateError, ValidationError
from app.modules.quiz.leaderboard import build_leaderboard
from app.modules.quiz.models import (
    LIVE_STATUSES,
    AnswerAck,
    AnswerNotice,
    LeaderboardEntry,
    ModeratorQuestionView,
    ModeratorSnapshot,
    ParticipantQuestionView,
    ParticipantStatus,
    SessionStatus,
    TransitionResult,
)
from app.modules.quiz.pin import is_valid_code
from app.modules.quiz.registry import (
    SessionRegistry,
    moderator_snapshot_of,
    participant_summaries,
    quiz_of,
    snapshot_of,
)
from app.modules.quiz.scoring import clamp_elapsed, is_correct_selection, score_answer
from app.modules.quiz.store import SqlQuizDefinitionStore
from app.modules.quiz.views import (
    moderator_view,
    option_order,
    participant_view,
    question_at,
    question_order,
    to_canonical,
    to_display,
)

logger = get_logger(__name__)

MAX_DISPLAY_NAME = 50


def _participant(record: QuizSessionRecord, identity: str) -> Optional[QuizParticipantRecord]:
    return next((p for p in record.participants if p.identity == identity), None)


def _current_views(
    record: QuizSessionRecord,
) -> tuple[Optional[ParticipantQuestionView], Optional[ModeratorQuestionView]]:
    if record.status == SessionStatus.ENDED.value or record.current_question_index < 0:
        return None, None
    quiz = quiz_of(record)
    position = record.current_question_index
    question = question_at(quiz, record.question_order, position)
    kwargs = dict(
        position=position,
        question_count=len(quiz.questions),
        options=record.option_order or list(range(len(question.options))),
    )
    return participant_view(question, **kwargs), moderator_view(question, **kwargs)


class QuizSessionService:
    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        registry: SessionRegistry,
        *,
        hub: Optional[ChannelHub] = None,
        cache: Optional[SessionCache] = None,
        policy: Optional[AccessPolicy] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.session_maker = session_maker
        self.registry = registry
        self.hub = hub or ChannelHub()
        self.cache = cache or SessionCache()
        self.policy = policy or registry.policy
        self.rng = rng or random.SystemRandom()

    # Cache reconciliation -----------------------------------------------
    def _remember(self, record: QuizSessionRecord) -> None:
        if record.status == SessionStatus.ENDED.value:
            self.cache.release(record.id)
            return
        self.cache.put(
            SessionSummary(
                session_id=record.id,
                code=record.code,
                status=SessionStatus(record.status),
                current_question_index=record.current_question_index,
                participant_count=len(record.participants),
            )
        )

    async def _session_id_for(self, code: str) -> int:
        code = (code or "").strip()
        if not is_valid_code(code):
            raise ValidationError("Invalid PIN format. PIN must be 6 digits")
        cached = self.cache.get_by_code(code)
        if cached is not None:
            return cached.session_id
        async with self.session_maker() as db:
            record = await self.registry.load_by_code(db, code)
        self._remember(record)
        return record.id

    async def _load_for_code(self, db: AsyncSession, session_id: int, code: str) -> QuizSessionRecord:
        """Load by id and confirm the cached code still maps to it."""
        try:
            record = await self.registry.load(db, session_id)
        except NotFoundError:
            record = None
        if record is None or record.code != code:
            self.cache.release(session_id)
            record = await self.registry.load_by_code(db, code)
        return record

    async def _cas(
        self,
        db: AsyncSession,
        record: QuizSessionRecord,
        *,
        statuses: Iterable[SessionStatus],
        expected_index: Optional[int],
        **values,
    ) -> bool:
        stmt = update(QuizSessionRecord).where(
            QuizSessionRecord.id == record.id,
            QuizSessionRecord.status.in_([s.value for s in statuses]),
        )
        if expected_index is not None:
            stmt = stmt.where(QuizSessionRecord.current_question_index == expected_index)
        result = await db.execute(stmt.values(**values))
        if result.rowcount != 1:
            await db.rollback()
            return False
        await db.commit()
        return True

    # Participant operations ---------------------------------------------
    async def join(
        self,
        code: str,
        identity: Identity,
        display_name: str,
        subscriber: Optional[Subscriber] = None,
    ) -> tuple[ParticipantStatus, bool]:
        """Join (or rejoin) by code. Returns ``(status, rejoined)``."""
        display_name = (display_name or "").strip()
        if not display_name:
            raise ValidationError("Game PIN and nickname are required")
        if len(display_name) > MAX_DISPLAY_NAME:
            raise ValidationError(f"Nickname must be {MAX_DISPLAY_NAME} characters or less")

        code = (code or "").strip()
        try:
            session_id = await self._session_id_for(code)
        except NotFoundError:
            raise NotFoundError("Session not found or has ended")

        async with self.cache.hold(session_id):
            async with self.session_maker() as db:
                record = await self._load_for_code(db, session_id, code)
                if record.status == SessionStatus.ENDED.value:
                    self.cache.release(record.id)
                    raise NotFoundError("Session not found or has ended")

                rejoined = _participant(record, identity.id) is not None
                if not rejoined:
                    db.add(
                        QuizParticipantRecord(
                            session_id=record.id,
                            identity=identity.id,
                            display_name=display_name,
                            total_score=0,
                        )
                    )
                    try:
                        await db.commit()
                    except IntegrityError:
                        # Same identity joined through another process
                        await db.rollback()
                        rejoined = True
                    record = await self.registry.load(db, record.id)

            self._remember(record)
            if subscriber is not None:
                self.hub.subscribe(record.code, Channel.PARTICIPANTS, identity.id, subscriber)

        status = self._participant_status(record, identity.id)
        if not rejoined:
            logger.info(
                "Participant %s joined (%d total)",
                identity.id,
                len(record.participants),
                extra=log_context(code=record.code, role="participant"),
            )
            await self.hub.broadcast(
                record.code,
                envelope(
                    "participant-joined",
                    {
                        "participant_count": len(record.participants),
                        "display_name": display_name,
                        "participants": [
                            p.model_dump(mode="json", exclude={"answer_count", "joined_at"})
                            for p in participant_summaries(record)
                        ],
                    },
                ),
            )
        return status, rejoined

    def _participant_status(self, record: QuizSessionRecord, identity: str) -> ParticipantStatus:
        pview, _ = _current_views(record)
        me = _participant(record, identity)
        answered = bool(
            me
            and any(a.question_index == record.current_question_index for a in me.answers)
        )
        return ParticipantStatus(
            session=snapshot_of(record),
            current_question=pview,
            answered_current=answered,
            total_score=me.total_score if me else 0,
        )

    async def status(self, code: str, identity: Identity) -> ParticipantStatus:
        """Current state for a reconnecting client."""
        code = (code or "").strip()
        session_id = await self._session_id_for(code)
        async with self.session_maker() as db:
            record = await self._load_for_code(db, session_id, code)
        self._remember(record)
        return self._participant_status(record, identity.id)

    async def submit_answer(
        self,
        session_id: int,
        identity: Identity,
        question_index: int,
        selected_options: list[int],
        elapsed_ms: int,
    ) -> AnswerAck:
        if isinstance(question_index, bool) or not isinstance(question_index, int) or question_index < 0:
            raise ValidationError("Invalid question index")
        if not isinstance(selected_options, list) or not selected_options:
            raise ValidationError("Invalid answer selection")
        try:
            elapsed_ms = int(elapsed_ms)
        except (TypeError, ValueError):
            raise ValidationError("Invalid elapsed time")

        async with self.cache.hold(session_id):
            async with self.session_maker() as db:
                record = await self.registry.load(db, session_id)
                participant = _participant(record, identity.id)
                if participant is None:
                    raise StateError("You are not a participant")
                if (
                    record.status != SessionStatus.ACTIVE.value
                    or question_index != record.current_question_index
                ):
                    raise StateError("Not the current question")
                if any(a.question_index == question_index for a in participant.answers):
                    raise StateError("You have already answered this question")

                quiz = quiz_of(record)
                question = question_at(quiz, record.question_order, question_index)
                canonical = to_canonical(
                    selected_options, record.option_order, len(question.options)
                )
                correct = is_correct_selection(question, canonical)
                elapsed = clamp_elapsed(elapsed_ms, question.time_limit_ms)
                points = score_answer(
                    point_value=question.point_value,
                    time_limit_ms=question.time_limit_ms,
                    elapsed_ms=elapsed,
                    correct=correct,
                )
                answered_at = utcnow()
                db.add(
                    QuizAnswerRecord(
                        session_id=record.id,
                        participant_id=participant.id,
                        question_index=question_index,
                        selected_options=canonical,
                        is_correct=correct,
                        points=points,
                        elapsed_ms=elapsed,
                        answered_at=answered_at,
                    )
                )
                db.add(
                    QuizAnswerEventRecord(
                        session_id=record.id,
                        quiz_id=record.quiz_id,
                        identity=identity.id,
                        question_index=question_index,
                        selected_options=canonical,
                        is_correct=correct,
                        points=points,
                        elapsed_ms=elapsed,
                        answered_at=answered_at,
                    )
                )
                try:
                    # Autoflush inserts the answer here; the unique index may reject it
                    await db.execute(
                        update(QuizParticipantRecord)
                        .where(QuizParticipantRecord.id == participant.id)
                        .values(total_score=QuizParticipantRecord.total_score + points)
                    )
                    await db.commit()
                except IntegrityError:
                    await db.rollback()
                    raise StateError("You have already answered this question")

                total = (
                    await db.execute(
                        select(QuizParticipantRecord.total_score).where(
                            QuizParticipantRecord.id == participant.id
                        )
                    )
                ).scalar_one()
                answered_count = (
                    await db.execute(
                        select(func.count(QuizAnswerRecord.id)).where(
                            QuizAnswerRecord.session_id == record.id,
                            QuizAnswerRecord.question_index == question_index,
                        )
                    )
                ).scalar_one()

            ack = AnswerAck(
                question_index=question_index,
                is_correct=correct,
                points=points,
                total_score=total,
                correct_options=(
                    to_display(question.correct_indices(), record.option_order)
                    if quiz.settings.show_correct_answer
                    else None
                ),
            )
            notice = AnswerNotice(
                identity=identity.id,
                display_name=participant.display_name,
                question_index=question_index,
                elapsed_ms=elapsed,
                answered_count=answered_count,
            )

        logger.debug(
            "Answer from %s on Q%d: correct=%s points=%d",
            identity.id,
            question_index,
            correct,
            points,
            extra=log_context(code=record.code, role="participant"),
        )
        await self.hub.publish(
            record.code, Channel.MODERATORS, envelope("answer-submitted", notice)
        )
        return ack

    # Privileged operations ----------------------------------------------
    async def teacher_join(
        self, code: str, identity: Identity, subscriber: Optional[Subscriber] = None
    ) -> ModeratorSnapshot:
        code = (code or "").strip()
        session_id = await self._session_id_for(code)
        async with self.session_maker() as db:
            record = await self._load_for_code(db, session_id, code)
        self.policy.require(identity, record.creator_id)
        self._remember(record)
        if subscriber is not None:
            self.hub.subscribe(record.code, Channel.MODERATORS, identity.id, subscriber)
            self.hub.subscribe(record.code, Channel.PARTICIPANTS, identity.id, subscriber)
        _, mview = _current_views(record)
        return moderator_snapshot_of(record, current_question=mview)

    async def leaderboard(self, session_id: int, identity: Identity) -> list[LeaderboardEntry]:
        async with self.session_maker() as db:
            record = await self.registry.load(db, session_id)
        self.policy.require(identity, record.creator_id)
        return build_leaderboard(participant_summaries(record))

    async def start(self, session_id: int, identity: Identity) -> TransitionResult:
        async with self.cache.hold(session_id):
            async with self.session_maker() as db:
                record = await self.registry.load(db, session_id)
                self.policy.require(identity, record.creator_id)
                if record.status != SessionStatus.WAITING.value:
                    raise StateError("Session is not in waiting state")

                quiz = quiz_of(record)
                order = question_order(quiz, self.rng)
                first = question_at(quiz, order, 0)
                ok = await self._cas(
                    db,
                    record,
                    statuses=[SessionStatus.WAITING],
                    expected_index=-1,
                    status=SessionStatus.ACTIVE.value,
                    current_question_index=0,
                    started_at=utcnow(),
                    question_order=order,
                    option_order=option_order(quiz, first, self.rng),
                )
                if not ok:
                    raise StateError("Session is not in waiting state")
                record = await self.registry.load(db, session_id)

            self._remember(record)

        pview, mview = _current_views(record)
        logger.info(
            "Session started with %d participant(s)",
            len(record.participants),
            extra=log_context(code=record.code, role="moderator"),
        )
        await self.hub.broadcast(record.code, envelope("question-started", pview))
        return TransitionResult(session=snapshot_of(record), question=mview)

    async def _observed_index(self, session_id: int) -> int:
        """The question index this process last saw for the session."""
        cached = self.cache.get_by_id(session_id)
        if cached is not None:
            return cached.current_question_index
        async with self.session_maker() as db:
            index = (
                await db.execute(
                    select(QuizSessionRecord.current_question_index).where(
                        QuizSessionRecord.id == session_id
                    )
                )
            ).scalar_one_or_none()
        if index is None:
            raise NotFoundError("Session not found")
        return index

    async def advance(
        self,
        session_id: int,
        identity: Identity,
        expected_index: Optional[int] = None,
    ) -> TransitionResult:
        """Move to the next question, or end after the last one.

        ``expected_index`` is the question the caller is looking at. When it
        is omitted the index observed before queueing for the session lock is
        used, so of two overlapping calls only the first moves the session.
        If the session has already moved past it the call changes nothing.
        """
        if expected_index is None:
            expected_index = await self._observed_index(session_id)

        async with self.cache.hold(session_id):
            async with self.session_maker() as db:
                record = await self.registry.load(db, session_id)
                self.policy.require(identity, record.creator_id)
                if record.status == SessionStatus.ENDED.value:
                    raise StateError("Session has already ended")
                if record.status != SessionStatus.ACTIVE.value:
                    raise StateError("Session is not active")
                if expected_index != record.current_question_index:
                    self._remember(record)
                    return TransitionResult(session=snapshot_of(record), changed=False)

                quiz = quiz_of(record)
                last = expected_index + 1 >= len(quiz.questions)
                if last:
                    values = dict(status=SessionStatus.ENDED.value, ended_at=utcnow())
                else:
                    nxt = expected_index + 1
                    question = question_at(quiz, record.question_order, nxt)
                    values = dict(
                        current_question_index=nxt,
                        option_order=option_order(quiz, question, self.rng),
                    )
                ok = await self._cas(
                    db,
                    record,
                    statuses=[SessionStatus.ACTIVE],
                    expected_index=expected_index,
                    **values,
                )
                record = await self.registry.load(db, session_id)

            if not ok:
                self._remember(record)
                return TransitionResult(session=snapshot_of(record), changed=False)
            if last:
                result, payload = self._close(record)
            else:
                self._remember(record)
                pview, mview = _current_views(record)
                result = TransitionResult(session=snapshot_of(record), question=mview)
                payload = envelope("question-started", pview)

        await self.hub.broadcast(record.code, payload)
        return result

    async def pause(self, session_id: int, identity: Identity) -> TransitionResult:
        return await self._toggle(
            session_id, identity, SessionStatus.ACTIVE, SessionStatus.PAUSED, "paused"
        )

    async def resume(self, session_id: int, identity: Identity) -> TransitionResult:
        return await self._toggle(
            session_id, identity, SessionStatus.PAUSED, SessionStatus.ACTIVE, "resumed"
        )

    async def _toggle(
        self,
        session_id: int,
        identity: Identity,
        source: SessionStatus,
        target: SessionStatus,
        event: str,
    ) -> TransitionResult:
        async with self.cache.hold(session_id):
            async with self.session_maker() as db:
                record = await self.registry.load(db, session_id)
                self.policy.require(identity, record.creator_id)
                if record.status != source.value:
                    raise StateError(f"Session is not {source.value}")
                ok = await self._cas(
                    db,
                    record,
                    statuses=[source],
                    expected_index=record.current_question_index,
                    status=target.value,
                )
                if not ok:
                    raise StateError(f"Session is not {source.value}")
                record = await self.registry.load(db, session_id)

            self._remember(record)

        pview, mview = _current_views(record)
        await self.hub.broadcast(
            record.code,
            envelope(
                event,
                {
                    "session": snapshot_of(record).model_dump(mode="json"),
                    "question": pview.model_dump(mode="json") if pview else None,
                },
            ),
        )
        return TransitionResult(session=snapshot_of(record), question=mview)

    async def end(self, session_id: int, identity: Identity) -> TransitionResult:
        async with self.cache.hold(session_id):
            async with self.session_maker() as db:
                record = await self.registry.load(db, session_id)
                self.policy.require(identity, record.creator_id)
                if record.status == SessionStatus.ENDED.value:
                    raise StateError("Session has already ended")
                ok = await self._cas(
                    db,
                    record,
                    statuses=LIVE_STATUSES,
                    expected_index=None,
                    status=SessionStatus.ENDED.value,
                    ended_at=utcnow(),
                )
                record = await self.registry.load(db, session_id)
                if not ok:
                    raise StateError("Session has already ended")
            result, payload = self._close(record)

        await self.hub.broadcast(record.code, payload)
        return result

    def _close(self, record: QuizSessionRecord) -> tuple[TransitionResult, dict]:
        """Final leaderboard and the ``quiz-ended`` envelope for an ended session."""
        board = build_leaderboard(participant_summaries(record))
        self.cache.release(record.id)
        answers = sum(len(p.answers) for p in record.participants)
        logger.info(
            "Session ended with %d participant(s), %d answer(s)",
            len(record.participants),
            answers,
            extra=log_context(code=record.code, role="moderator"),
        )
        payload = envelope("quiz-ended", {"leaderboard": [e.model_dump() for e in board]})
        return TransitionResult(session=snapshot_of(record), leaderboard=board), payload


def build_service(
    session_maker: async_sessionmaker[AsyncSession] = async_session_maker,
) -> QuizSessionService:
    registry = SessionRegistry(session_maker, SqlQuizDefinitionStore(session_maker))
    return QuizSessionService(session_maker, registry)


# Singletons used by API/WS layer and the lifespan hook
quiz_service = build_service()
retention_sweeper = RetentionSweeper(
    async_session_maker, cache=quiz_service.cache, hub=quiz_service.hub
)
