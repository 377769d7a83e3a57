import asyncio
import random

import pytest
from sqlalchemy import func, select

from app.core.db.base import async_session_maker
from app.core.db.schemas.quiz import QuizAnswerEventRecord, QuizAnswerRecord
from app.modules.quiz.authz import Identity
from app.modules.quiz.channels import Channel
from app.modules.quiz.errors import (
    AuthorizationError,
    NotFoundError,
    StateError,
    ValidationError,
)
from app.modules.quiz.models import SessionStatus

from conftest import (
    ADMIN,
    TEACHER,
    DeadSubscriber,
    FakeSubscriber,
    StalledSubscriber,
    make_service,
    seed_quiz,
    two_question_quiz,
)

ALICE = Identity(id="student-a")
BOB = Identity(id="student-b")


async def _session(service, **quiz_kwargs):
    quiz_id = await seed_quiz(**quiz_kwargs)
    record, _ = await service.registry.create_session(quiz_id, TEACHER)
    return record


async def test_two_question_game_end_to_end(service):
    record = await _session(service)
    moderator, sub_a, sub_b = FakeSubscriber(), FakeSubscriber(), FakeSubscriber()
    await service.teacher_join(record.code, TEACHER, moderator)

    status_a, rejoined = await service.join(record.code, ALICE, "Alice", sub_a)
    assert not rejoined
    assert status_a.session.participant_count == 1
    await service.join(record.code, BOB, "Bob", sub_b)

    started = await service.start(record.id, TEACHER)
    assert started.session.status == SessionStatus.ACTIVE
    assert started.session.current_question_index == 0
    assert [o.is_correct for o in started.question.options] == [True, False, False]

    for sub in (sub_a, sub_b):
        (q1,) = sub.of("question-started")
        assert q1["question_index"] == 0
        assert all("is_correct" not in opt for opt in q1["options"])

    ack_a = await service.submit_answer(record.id, ALICE, 0, [0], 2_000)
    assert ack_a.is_correct and ack_a.points == 9 and ack_a.total_score == 9
    assert ack_a.correct_options == [0]
    ack_b = await service.submit_answer(record.id, BOB, 0, [1], 1_000)
    assert not ack_b.is_correct and ack_b.points == 0

    notices = moderator.of("answer-submitted")
    assert [n["identity"] for n in notices] == [ALICE.id, BOB.id]
    assert notices[-1]["answered_count"] == 2
    assert all("selected_options" not in n and "is_correct" not in n for n in notices)
    # Participants never see each other's submissions
    assert sub_a.of("answer-submitted") == []

    advanced = await service.advance(record.id, TEACHER)
    assert advanced.changed
    assert advanced.session.current_question_index == 1
    assert sub_b.of("question-started")[-1]["question_index"] == 1

    await service.submit_answer(record.id, ALICE, 1, [0], 5_000)
    await service.submit_answer(record.id, BOB, 1, [1], 5_000)

    ended = await service.advance(record.id, TEACHER)
    assert ended.session.status == SessionStatus.ENDED
    assert ended.session.ended_at is not None
    board = ended.leaderboard
    assert [e.identity for e in board] == [ALICE.id, BOB.id]
    assert board[0].total_score > board[1].total_score
    assert board[0].total_score == 16
    assert sub_a.of("quiz-ended")[0]["leaderboard"][0]["identity"] == ALICE.id
    assert service.cache.get_by_code(record.code) is None


async def test_privileged_transitions_require_creator(service):
    record = await _session(service)
    with pytest.raises(AuthorizationError):
        await service.start(record.id, ALICE)
    snap = await service.registry.get_session_by_id(record.id, TEACHER)
    assert snap.status == SessionStatus.WAITING

    result = await service.start(record.id, ADMIN)
    assert result.session.status == SessionStatus.ACTIVE
    for op in (service.advance, service.pause, service.end, service.leaderboard):
        with pytest.raises(AuthorizationError):
            await op(record.id, BOB)


async def test_start_only_from_waiting(service):
    record = await _session(service)
    await service.start(record.id, TEACHER)
    with pytest.raises(StateError):
        await service.start(record.id, TEACHER)


async def test_advance_requires_active(service):
    record = await _session(service)
    with pytest.raises(StateError):
        await service.advance(record.id, TEACHER)


async def test_stale_advance_is_a_no_op(service):
    record = await _session(service)
    await service.start(record.id, TEACHER)
    await service.advance(record.id, TEACHER, expected_index=0)

    stale = await service.advance(record.id, TEACHER, expected_index=0)
    assert not stale.changed
    assert stale.session.current_question_index == 1
    assert stale.session.status == SessionStatus.ACTIVE


async def test_overlapping_advances_move_one_question(service):
    questions = two_question_quiz() + two_question_quiz()
    record = await _session(service, questions=questions)
    await service.start(record.id, TEACHER)

    results = await asyncio.gather(
        service.advance(record.id, TEACHER, expected_index=0),
        service.advance(record.id, TEACHER, expected_index=0),
    )
    assert sorted(r.changed for r in results) == [False, True]
    snap = await service.registry.get_session_by_id(record.id, TEACHER)
    assert snap.current_question_index == 1


async def test_overlapping_advances_without_index_move_one_question(service):
    questions = two_question_quiz() + two_question_quiz()
    record = await _session(service, questions=questions)
    await service.start(record.id, TEACHER)

    results = await asyncio.gather(
        service.advance(record.id, TEACHER),
        service.advance(record.id, TEACHER),
    )
    assert sorted(r.changed for r in results) == [False, True]
    snap = await service.registry.get_session_by_id(record.id, TEACHER)
    assert snap.current_question_index == 1

    # Once the overlap is over the next call moves on as usual
    later = await service.advance(record.id, TEACHER)
    assert later.changed
    assert later.session.current_question_index == 2


async def test_advance_without_index_on_uncached_session(service):
    record = await _session(service)
    await service.start(record.id, TEACHER)
    service.cache.clear()

    result = await service.advance(record.id, TEACHER)
    assert result.changed
    assert result.session.current_question_index == 1


async def test_pause_and_resume(service):
    record = await _session(service)
    sub = FakeSubscriber()
    await service.join(record.code, ALICE, "Alice", sub)

    with pytest.raises(StateError):
        await service.pause(record.id, TEACHER)
    await service.start(record.id, TEACHER)

    paused = await service.pause(record.id, TEACHER)
    assert paused.session.status == SessionStatus.PAUSED
    assert sub.of("paused")[0]["session"]["status"] == "paused"

    with pytest.raises(StateError):
        await service.submit_answer(record.id, ALICE, 0, [0], 100)
    with pytest.raises(StateError):
        await service.advance(record.id, TEACHER)
    with pytest.raises(StateError):
        await service.pause(record.id, TEACHER)
    # Late joiners are still admitted while paused
    await service.join(record.code, BOB, "Bob")

    resumed = await service.resume(record.id, TEACHER)
    assert resumed.session.status == SessionStatus.ACTIVE
    assert resumed.session.current_question_index == 0
    assert sub.of("resumed")[0]["question"]["question_index"] == 0
    with pytest.raises(StateError):
        await service.resume(record.id, TEACHER)

    ack = await service.submit_answer(record.id, ALICE, 0, [0], 0)
    assert ack.points == 10


async def test_end_from_any_live_state_once(service):
    record = await _session(service)
    await service.start(record.id, TEACHER)
    await service.pause(record.id, TEACHER)
    ended = await service.end(record.id, TEACHER)
    assert ended.session.status == SessionStatus.ENDED
    assert ended.leaderboard == []
    with pytest.raises(StateError):
        await service.end(record.id, TEACHER)
    with pytest.raises(StateError):
        await service.advance(record.id, TEACHER)


async def test_join_validation(service):
    record = await _session(service)
    with pytest.raises(ValidationError):
        await service.join(record.code, ALICE, "   ")
    with pytest.raises(ValidationError):
        await service.join(record.code, ALICE, "x" * 51)
    with pytest.raises(ValidationError):
        await service.join("12345", ALICE, "Alice")
    with pytest.raises(NotFoundError):
        await service.join("000000", ALICE, "Alice")


async def test_rejoin_does_not_duplicate(service):
    record = await _session(service)
    sub = FakeSubscriber()
    await service.join(record.code, ALICE, "  Alice  ", sub)
    status, rejoined = await service.join(record.code, ALICE, "Alice again")
    assert rejoined
    assert status.session.participant_count == 1
    assert len(sub.of("participant-joined")) == 1
    snap = await service.registry.get_session_by_id(record.id, TEACHER)
    assert [p.display_name for p in snap.participants] == ["Alice"]


async def test_join_ended_session_rejected(service):
    record = await _session(service)
    await service.join(record.code, ALICE, "Alice")
    await service.end(record.id, TEACHER)
    with pytest.raises(NotFoundError):
        await service.join(record.code, BOB, "Bob")
    # Cached entries are gone, a fresh service sees the same
    with pytest.raises(NotFoundError):
        await make_service().join(record.code, BOB, "Bob")


async def test_answer_at_most_once(service):
    record = await _session(service)
    await service.join(record.code, ALICE, "Alice")
    await service.start(record.id, TEACHER)
    first = await service.submit_answer(record.id, ALICE, 0, [0], 0)
    with pytest.raises(StateError):
        await service.submit_answer(record.id, ALICE, 0, [1], 0)

    status = await service.status(record.code, ALICE)
    assert status.answered_current
    assert status.total_score == first.total_score == 10

    async with async_session_maker() as db:
        answers = (await db.execute(select(func.count(QuizAnswerRecord.id)))).scalar()
        events = (await db.execute(select(func.count(QuizAnswerEventRecord.id)))).scalar()
    assert answers == 1 and events == 1


async def test_concurrent_duplicate_answers(service):
    record = await _session(service)
    await service.join(record.code, ALICE, "Alice")
    await service.start(record.id, TEACHER)
    results = await asyncio.gather(
        service.submit_answer(record.id, ALICE, 0, [0], 0),
        service.submit_answer(record.id, ALICE, 0, [0], 0),
        return_exceptions=True,
    )
    assert sum(isinstance(r, StateError) for r in results) == 1
    status = await service.status(record.code, ALICE)
    assert status.total_score == 10


async def test_answer_rejections(service):
    record = await _session(service)
    await service.join(record.code, ALICE, "Alice")
    with pytest.raises(StateError):
        await service.submit_answer(record.id, ALICE, 0, [0], 0)  # still waiting
    await service.start(record.id, TEACHER)

    with pytest.raises(StateError):
        await service.submit_answer(record.id, ALICE, 1, [0], 0)
    with pytest.raises(StateError):
        await service.submit_answer(record.id, BOB, 0, [0], 0)
    with pytest.raises(ValidationError):
        await service.submit_answer(record.id, ALICE, 0, [7], 0)
    with pytest.raises(ValidationError):
        await service.submit_answer(record.id, ALICE, 0, [], 0)
    with pytest.raises(ValidationError):
        await service.submit_answer(record.id, ALICE, -1, [0], 0)
    with pytest.raises(ValidationError):
        await service.submit_answer(record.id, ALICE, 0, [0], "soon")

    # None of the rejected attempts consumed the answer slot
    late = await service.submit_answer(record.id, ALICE, 0, [0], 99_000)
    assert late.points == 5


async def test_shuffled_options_map_back_to_canonical():
    service = make_service(rng=random.Random(5))
    record = await _session(service, settings={"shuffle_answers": True})
    await service.join(record.code, ALICE, "Alice")
    started = await service.start(record.id, TEACHER)

    display = next(i for i, o in enumerate(started.question.options) if o.is_correct)
    ack = await service.submit_answer(record.id, ALICE, 0, [display], 0)
    assert ack.is_correct
    assert ack.correct_options == [display]


async def test_correct_options_hidden_when_disabled(service):
    record = await _session(service, settings={"show_correct_answer": False})
    await service.join(record.code, ALICE, "Alice")
    await service.start(record.id, TEACHER)
    ack = await service.submit_answer(record.id, ALICE, 0, [1], 0)
    assert ack.correct_options is None


async def test_leaderboard_ties_keep_join_order(service):
    record = await _session(service)
    await service.join(record.code, BOB, "Bob")
    await service.join(record.code, ALICE, "Alice")
    board = await service.leaderboard(record.id, TEACHER)
    assert [e.identity for e in board] == [BOB.id, ALICE.id]
    assert all(e.total_score == 0 for e in board)


async def test_status_for_reconnecting_participant(service):
    record = await _session(service)
    await service.join(record.code, ALICE, "Alice")
    waiting = await service.status(record.code, ALICE)
    assert waiting.current_question is None
    await service.start(record.id, TEACHER)
    active = await service.status(record.code, ALICE)
    assert active.current_question.question_index == 0
    assert not active.answered_current


async def test_teacher_join_returns_current_question(service):
    record = await _session(service)
    await service.start(record.id, TEACHER)
    mod = FakeSubscriber()
    snap = await service.teacher_join(record.code, TEACHER, mod)
    assert snap.current_question.options[0].is_correct
    assert service.hub.count(record.code, Channel.MODERATORS) == 1
    with pytest.raises(AuthorizationError):
        await service.teacher_join(record.code, ALICE)


async def test_dead_subscribers_are_dropped(service):
    record = await _session(service)
    await service.join(record.code, ALICE, "Alice", DeadSubscriber())
    await service.join(record.code, BOB, "Bob", FakeSubscriber())
    assert service.hub.count(record.code) == 1
    await service.start(record.id, TEACHER)
    assert service.hub.count(record.code) == 1


async def test_stalled_subscriber_does_not_block_the_session(service):
    record = await _session(service)
    moderator = FakeSubscriber()
    await service.teacher_join(record.code, TEACHER, moderator)

    await asyncio.wait_for(service.join(record.code, ALICE, "Alice", StalledSubscriber()), 2)
    # The stalled socket timed out on its own participant-joined broadcast
    assert service.hub.count(record.code) == 1

    bob = FakeSubscriber()
    await service.join(record.code, BOB, "Bob", bob)
    await asyncio.wait_for(service.start(record.id, TEACHER), 2)
    ended = await asyncio.wait_for(service.end(record.id, TEACHER), 2)
    assert ended.session.status == SessionStatus.ENDED
    assert [m["type"] for m in bob.messages] == [
        "participant-joined",
        "question-started",
        "quiz-ended",
    ]


async def test_stalled_join_does_not_hold_the_session_lock(service):
    record = await _session(service)
    join = asyncio.create_task(
        service.join(record.code, ALICE, "Alice", StalledSubscriber())
    )
    # Wait for the join to commit; its broadcast is then stuck on the socket
    for _ in range(200):
        snap = await service.registry.get_session_by_id(record.id, TEACHER)
        if snap.participant_count == 1:
            break
        await asyncio.sleep(0.005)

    started = await asyncio.wait_for(service.start(record.id, TEACHER), 2)
    assert started.session.status == SessionStatus.ACTIVE
    status, rejoined = await join
    assert not rejoined
    assert status.session.participant_count == 1


async def test_unknown_session_ids_leave_no_locks(service):
    for missing in range(1000, 1100):
        with pytest.raises(NotFoundError):
            await service.submit_answer(missing, ALICE, 0, [0], 0)
        with pytest.raises(NotFoundError):
            await service.start(missing, TEACHER)
    assert service.cache.locks_held() == 0


async def test_ended_session_releases_its_lock(service):
    record = await _session(service)
    await service.join(record.code, ALICE, "Alice")
    await service.start(record.id, TEACHER)
    assert service.cache.locks_held() == 1

    await service.end(record.id, TEACHER)
    assert service.cache.locks_held() == 0
    with pytest.raises(StateError):
        await service.submit_answer(record.id, ALICE, 0, [0], 0)
    assert service.cache.locks_held() == 0
