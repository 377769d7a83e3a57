"""Correctness and speed-weighted scoring."""

from __future__ import annotations

from typing import Iterable

from app.modules.quiz.models import QuizQuestion


def clamp_elapsed(elapsed_ms: int, time_limit_ms: int) -> int:
    return max(0, min(int(elapsed_ms), int(time_limit_ms)))


def is_correct_selection(question: QuizQuestion, selected: Iterable[int]) -> bool:
    # Set equality: picking the right option plus a wrong one is not correct
    return set(selected) == question.correct_indices()


def score_answer(
    *, point_value: int, time_limit_ms: int, elapsed_ms: int, correct: bool
) -> int:
    """Points for one answer.

    A correct answer earns at least half the question's points, scaling
    linearly to the full value for an instantaneous answer. ``elapsed_ms``
    is clamped to ``[0, time_limit_ms]`` first.
    """
    if not correct:
        return 0
    if time_limit_ms <= 0:
        return int(point_value)
    elapsed = clamp_elapsed(elapsed_ms, time_limit_ms)
    # floor(p * (0.5 + 0.5 * (T - e) / T)) == floor(p * (2T - e) / 2T), kept integral
    return (point_value * (2 * time_limit_ms - elapsed)) // (2 * time_limit_ms)
