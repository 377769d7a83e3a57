"""Read-only access to quiz definitions.

Authoring lives outside this service; sessions only need ``get_quiz``.
"""

from __future__ import annotations

from typing import Protocol

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.db.schemas.quiz import QuizDefinitionRecord
from app.core.logging import get_logger
from app.modules.quiz.errors import NotFoundError, ValidationError
from app.modules.quiz.models import QuizDefinition

logger = get_logger(__name__)


class QuizDefinitionStore(Protocol):
    async def get_quiz(self, quiz_id: int) -> QuizDefinition: ...


def definition_from_record(record: QuizDefinitionRecord) -> QuizDefinition:
    try:
        return QuizDefinition.model_validate(
            {
                "id": record.id,
                "title": record.title,
                "created_by": record.created_by,
                "questions": record.questions or [],
                "settings": record.settings or {},
            }
        )
    except PydanticValidationError as e:
        logger.error(f"Quiz {record.id} has a malformed definition: {e}")
        raise ValidationError(f"Quiz {record.id} definition is malformed")


class SqlQuizDefinitionStore:
    def __init__(self, session_maker: async_sessionmaker[AsyncSession]) -> None:
        self.session_maker = session_maker

    async def get_quiz(self, quiz_id: int) -> QuizDefinition:
        async with self.session_maker() as session:
            result = await session.execute(
                select(QuizDefinitionRecord).where(QuizDefinitionRecord.id == quiz_id)
            )
            record = result.scalar_one_or_none()
        if record is None:
            raise NotFoundError("Quiz not found")
        return definition_from_record(record)
