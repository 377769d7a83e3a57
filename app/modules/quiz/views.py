"""Participant and moderator views of the current question.

Both views are derived from the same canonical question. When shuffling is
enabled the permutation is drawn once per broadcast and stored on the session,
so every participant of that broadcast sees the same ordering and submitted
indices can be mapped back to canonical option indices.
"""

from __future__ import annotations

import random
from typing import Optional, Sequence

from app.modules.quiz.errors import ValidationError
from app.modules.quiz.models import (
    ModeratorOptionView,
    ModeratorQuestionView,
    OptionView,
    ParticipantQuestionView,
    QuizDefinition,
    QuizQuestion,
)

_rng = random.SystemRandom()


def question_order(quiz: QuizDefinition, rng: Optional[random.Random] = None) -> list[int]:
    order = list(range(len(quiz.questions)))
    if quiz.settings.shuffle_questions:
        (rng or _rng).shuffle(order)
    return order


def option_order(
    quiz: QuizDefinition, question: QuizQuestion, rng: Optional[random.Random] = None
) -> list[int]:
    order = list(range(len(question.options)))
    if quiz.settings.shuffle_answers:
        (rng or _rng).shuffle(order)
    return order


def question_at(
    quiz: QuizDefinition, order: Sequence[int], position: int
) -> QuizQuestion:
    """Canonical question shown at play ``position``."""
    canonical = order[position] if order else position
    return quiz.questions[canonical]


def participant_view(
    question: QuizQuestion,
    *,
    position: int,
    question_count: int,
    options: Sequence[int],
) -> ParticipantQuestionView:
    return ParticipantQuestionView(
        question_index=position,
        question_count=question_count,
        text=question.text,
        type=question.type,
        options=[OptionView(text=question.options[i].text) for i in options],
        time_limit_ms=question.time_limit_ms,
        point_value=question.point_value,
    )


def moderator_view(
    question: QuizQuestion,
    *,
    position: int,
    question_count: int,
    options: Sequence[int],
) -> ModeratorQuestionView:
    return ModeratorQuestionView(
        question_index=position,
        question_count=question_count,
        text=question.text,
        type=question.type,
        options=[
            ModeratorOptionView(
                text=question.options[i].text,
                is_correct=question.options[i].is_correct,
            )
            for i in options
        ],
        time_limit_ms=question.time_limit_ms,
        point_value=question.point_value,
    )


def to_canonical(selected: Sequence[int], options: Sequence[int], option_count: int) -> list[int]:
    """Map displayed option indices back to canonical ones.

    Raises ValidationError for empty, duplicate-only or out-of-range input.
    """
    if not selected:
        raise ValidationError("Invalid answer selection")
    out: set[int] = set()
    for idx in selected:
        if isinstance(idx, bool) or not isinstance(idx, int):
            raise ValidationError("Option indices must be integers")
        if idx < 0 or idx >= option_count:
            raise ValidationError("Invalid answer selection - option index out of bounds")
        out.add(options[idx] if options else idx)
    return sorted(out)


def to_display(canonical: Sequence[int], options: Sequence[int]) -> list[int]:
    if not options:
        return sorted(canonical)
    position = {c: d for d, c in enumerate(options)}
    return sorted(position[c] for c in canonical)
