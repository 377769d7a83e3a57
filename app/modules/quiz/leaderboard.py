from __future__ import annotations

from typing import Iterable

from app.modules.quiz.models import LeaderboardEntry, ParticipantSummary


def build_leaderboard(participants: Iterable[ParticipantSummary]) -> list[LeaderboardEntry]:
    """Rank participants by cumulative score, highest first.

    ``participants`` must arrive in join order. ``sorted`` is stable, so equal
    scores keep that order: whoever joined first ranks first on a tie.
    """
    ranked = sorted(participants, key=lambda p: p.total_score, reverse=True)
    return [
        LeaderboardEntry(
            rank=pos,
            identity=p.identity,
            display_name=p.display_name,
            total_score=p.total_score,
            answer_count=p.answer_count,
        )
        for pos, p in enumerate(ranked, start=1)
    ]
