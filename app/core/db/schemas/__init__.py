# Import models so Alembic and Base metadata are aware of them
from .auth import User  # noqa: F401
from .quiz import (  # noqa: F401
    QuizDefinitionRecord,
    QuizSessionRecord,
    QuizParticipantRecord,
    QuizAnswerRecord,
    QuizAnswerEventRecord,
)
