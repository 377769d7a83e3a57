import asyncio
import json
import os
import tempfile
from concurrent.futures import ThreadPoolExecutor

_DB_DIR = tempfile.mkdtemp(prefix="quizwave-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_DB_DIR}/quiz.db"
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ["MODE"] = "test"
os.environ["QUIZ_CLEANUP_ENABLED"] = "false"
os.environ["QUIZ_RETRY_BACKOFF_MS"] = "1"
os.environ["QUIZ_SEND_TIMEOUT_SEC"] = "0.2"

import pytest  # noqa: E402

from app.core.db.base import async_session_maker, create_all, drop_all  # noqa: E402
from app.core.db.schemas.quiz import QuizDefinitionRecord  # noqa: E402
from app.modules.quiz.authz import Identity  # noqa: E402
from app.modules.quiz.registry import SessionRegistry  # noqa: E402
from app.modules.quiz.state import QuizSessionService, quiz_service  # noqa: E402
from app.modules.quiz.store import SqlQuizDefinitionStore  # noqa: E402


TEACHER = Identity(id="teacher-1")
ADMIN = Identity(id="admin-1", is_admin=True)


def two_question_quiz(**settings) -> list[dict]:
    return [
        {
            "text": "Capital of France?",
            "type": "multiple-choice",
            "options": [
                {"text": "Paris", "is_correct": True},
                {"text": "Rome"},
                {"text": "Madrid"},
            ],
            "time_limit_ms": 10_000,
            "point_value": 10,
        },
        {
            "text": "The sun is a star.",
            "type": "true-false",
            "options": [{"text": "True", "is_correct": True}, {"text": "False"}],
            "time_limit_ms": 10_000,
            "point_value": 10,
        },
    ]


async def seed_quiz(created_by: str = TEACHER.id, questions=None, settings=None) -> int:
    async with async_session_maker() as session:
        record = QuizDefinitionRecord(
            title="Geography",
            created_by=created_by,
            questions=two_question_quiz() if questions is None else questions,
            settings=settings or {},
        )
        session.add(record)
        await session.commit()
        return record.id


class FakeSubscriber:
    """Collects broadcast envelopes."""

    def __init__(self) -> None:
        self.messages: list[dict] = []

    async def send_text(self, data: str) -> None:
        self.messages.append(json.loads(data))

    def of(self, kind: str) -> list[dict]:
        return [m["data"] for m in self.messages if m["type"] == kind]


class DeadSubscriber:
    async def send_text(self, data: str) -> None:
        raise ConnectionResetError("gone")


class StalledSubscriber:
    """A socket whose peer stopped reading."""

    async def send_text(self, data: str) -> None:
        await asyncio.sleep(3600)


async def _reset_db() -> None:
    await drop_all()
    await create_all()


def run_sync(coro):
    """Run a coroutine on a private loop in a worker thread.

    Keeps the main thread free of loop state owned by pytest-asyncio.
    """
    with ThreadPoolExecutor(max_workers=1) as pool:
        return pool.submit(asyncio.run, coro).result()


@pytest.fixture(autouse=True)
def fresh_db():
    run_sync(_reset_db())
    quiz_service.cache.clear()
    quiz_service.hub.clear()
    yield


def make_service(rng=None) -> QuizSessionService:
    registry = SessionRegistry(async_session_maker, SqlQuizDefinitionStore(async_session_maker))
    return QuizSessionService(async_session_maker, registry, rng=rng)


@pytest.fixture
def service() -> QuizSessionService:
    return make_service()
