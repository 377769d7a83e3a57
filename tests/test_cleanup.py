import asyncio
from datetime import timedelta

from sqlalchemy import func, select

from app.core.db.base import async_session_maker
from app.core.db.schemas.quiz import (
    QuizAnswerEventRecord,
    QuizAnswerRecord,
    QuizParticipantRecord,
    QuizSessionRecord,
    utcnow,
)
from app.modules.quiz.authz import Identity
from app.modules.quiz.cleanup import RetentionSweeper

from conftest import TEACHER, seed_quiz

ALICE = Identity(id="student-a")


async def _count(model) -> int:
    async with async_session_maker() as db:
        return (await db.execute(select(func.count(model.id)))).scalar()


async def _played_and_ended(service, created_by=TEACHER):
    quiz_id = await seed_quiz(created_by=created_by.id)
    record, _ = await service.registry.create_session(quiz_id, created_by)
    await service.join(record.code, ALICE, "Alice")
    await service.start(record.id, created_by)
    await service.submit_answer(record.id, ALICE, 0, [0], 1_000)
    await service.end(record.id, created_by)
    return record


async def test_sweep_removes_expired_ended_sessions(service):
    old = await _played_and_ended(service)
    sweeper = RetentionSweeper(async_session_maker, cache=service.cache, hub=service.hub)

    result = await sweeper.sweep(now=utcnow() + timedelta(days=3))
    assert result.sessions == 1
    assert result.events == 1
    for model in (QuizSessionRecord, QuizParticipantRecord, QuizAnswerRecord, QuizAnswerEventRecord):
        assert await _count(model) == 0

    again = await sweeper.sweep(now=utcnow() + timedelta(days=3))
    assert again.sessions == 0 and again.events == 0
    assert service.cache.get_by_id(old.id) is None


async def test_sweep_keeps_recent_and_live_sessions(service):
    await _played_and_ended(service)
    live_quiz = await seed_quiz(created_by="teacher-2")
    live, _ = await service.registry.create_session(live_quiz, Identity(id="teacher-2"))

    sweeper = RetentionSweeper(async_session_maker)
    # Ended moments ago: inside the retention window
    assert (await sweeper.sweep()).sessions == 0

    # Far in the future only the ended session qualifies
    result = await sweeper.sweep(now=utcnow() + timedelta(days=365))
    assert result.sessions == 1
    async with async_session_maker() as db:
        remaining = (await db.execute(select(QuizSessionRecord.id))).scalars().all()
    assert remaining == [live.id]


async def test_cutoff_uses_retention_window():
    sweeper = RetentionSweeper(async_session_maker)
    now = utcnow()
    assert now - sweeper.cutoff(now) == timedelta(days=sweeper.config.retention_days)


async def test_background_loop_runs_first_sweep_and_stops(service):
    await _played_and_ended(service)
    config = RetentionSweeper(async_session_maker).config.model_copy(
        update={"retention_days": 0}
    )
    sweeper = RetentionSweeper(async_session_maker, config=config)
    sweeper.start()
    # First sweep runs straight away; give it a moment
    for _ in range(50):
        if await _count(QuizSessionRecord) == 0:
            break
        await asyncio.sleep(0.05)
    await sweeper.stop()
    assert await _count(QuizSessionRecord) == 0


async def test_retention_boundary(service):
    quiz_id = await seed_quiz()
    record, _ = await service.registry.create_session(quiz_id, TEACHER)
    await service.start(record.id, TEACHER)
    before_end = utcnow()
    await service.end(record.id, TEACHER)
    after_end = utcnow()

    sweeper = RetentionSweeper(async_session_maker)
    window = timedelta(days=sweeper.config.retention_days)
    assert window == timedelta(days=2)

    # Ended one day ago: kept
    assert (await sweeper.sweep(now=after_end + timedelta(days=1))).sessions == 0
    # Just inside the window: kept
    assert (await sweeper.sweep(now=after_end + window - timedelta(seconds=1))).sessions == 0
    assert await _count(QuizSessionRecord) == 1

    # Two days and a second ago: removed
    result = await sweeper.sweep(now=before_end + window + timedelta(seconds=1))
    assert result.sessions == 1
    assert await _count(QuizSessionRecord) == 0
