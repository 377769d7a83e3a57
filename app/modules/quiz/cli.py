"""Operator CLI for live sessions.

Usage:
  python -m app.modules.quiz.cli status [--limit N]
  python -m app.modules.quiz.cli sweep [--retention-days D]
"""

from __future__ import annotations

import argparse
import asyncio
import json

from sqlalchemy import func, select

from app.core.config import settings
from app.core.db.base import async_session_maker, engine
from app.core.db.schemas.quiz import (
    QuizAnswerEventRecord,
    QuizParticipantRecord,
    QuizSessionRecord,
)
from app.modules.quiz.cleanup import RetentionSweeper


async def _status(limit: int) -> dict:
    async with async_session_maker() as session:
        by_status = dict(
            (
                await session.execute(
                    select(QuizSessionRecord.status, func.count(QuizSessionRecord.id)).group_by(
                        QuizSessionRecord.status
                    )
                )
            ).all()
        )
        participants = (
            await session.execute(select(func.count(QuizParticipantRecord.id)))
        ).scalar() or 0
        events = (
            await session.execute(select(func.count(QuizAnswerEventRecord.id)))
        ).scalar() or 0
        recent = (
            await session.execute(
                select(QuizSessionRecord)
                .order_by(QuizSessionRecord.created_at.desc(), QuizSessionRecord.id.desc())
                .limit(limit)
            )
        ).scalars().all()
    return {
        "sessions": by_status,
        "participants": participants,
        "answer_events": events,
        "recent": [
            {
                "id": s.id,
                "code": s.code,
                "quiz_id": s.quiz_id,
                "status": s.status,
                "current_question_index": s.current_question_index,
                "created_at": s.created_at.isoformat() if s.created_at else None,
                "ended_at": s.ended_at.isoformat() if s.ended_at else None,
            }
            for s in recent
        ],
    }


async def _sweep(retention_days: float | None) -> dict:
    config = settings.quiz
    if retention_days is not None:
        config = config.model_copy(update={"retention_days": retention_days})
    result = await RetentionSweeper(async_session_maker, config=config).sweep()
    return result.model_dump()


async def _run(coro):
    try:
        return await coro
    finally:
        await engine.dispose()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="quiz-sessions", description="Live quiz session operator CLI"
    )
    sub = parser.add_subparsers(dest="cmd", required=True)

    st = sub.add_parser("status", help="Summarize sessions by status")
    st.add_argument("--limit", type=int, default=10, help="Recent sessions to list")

    sw = sub.add_parser("sweep", help="Delete ended sessions past the retention window")
    sw.add_argument(
        "--retention-days",
        type=float,
        default=None,
        help=f"Override retention (default {settings.quiz.retention_days})",
    )

    args = parser.parse_args(argv)
    if args.cmd == "status":
        print(json.dumps(asyncio.run(_run(_status(args.limit))), indent=2))
        return 0
    if args.cmd == "sweep":
        print(json.dumps(asyncio.run(_run(_sweep(args.retention_days))), indent=2))
        return 0

    parser.print_help()
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
