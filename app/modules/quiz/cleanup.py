"""Retention sweep for ended sessions.

Ended sessions older than the retention window are removed together with
their answer events, answers and participants. Sessions that are still live,
or that ended recently, are never touched. The sweep runs once at startup and
then on a fixed interval.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import QuizSessionSettings, settings
from app.core.db.schemas.quiz import (
    QuizAnswerEventRecord,
    QuizAnswerRecord,
    QuizParticipantRecord,
    QuizSessionRecord,
    utcnow,
)
from app.core.logging import get_logger
from app.modules.quiz.cache import SessionCache
from app.modules.quiz.channels import ChannelHub
from app.modules.quiz.models import SessionStatus, SweepResult

logger = get_logger(__name__)


class RetentionSweeper:
    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        *,
        config: Optional[QuizSessionSettings] = None,
        cache: Optional[SessionCache] = None,
        hub: Optional[ChannelHub] = None,
    ) -> None:
        self.session_maker = session_maker
        self.config = config or settings.quiz
        self.cache = cache
        self.hub = hub
        self._task: Optional[asyncio.Task[None]] = None

    def cutoff(self, now: Optional[datetime] = None) -> datetime:
        return (now or utcnow()) - timedelta(days=self.config.retention_days)

    async def sweep(self, now: Optional[datetime] = None) -> SweepResult:
        """Delete expired ended sessions. Running it twice deletes nothing new."""
        cutoff = self.cutoff(now)
        async with self.session_maker() as db:
            rows = (
                await db.execute(
                    select(QuizSessionRecord.id, QuizSessionRecord.code).where(
                        QuizSessionRecord.status == SessionStatus.ENDED.value,
                        QuizSessionRecord.ended_at.is_not(None),
                        QuizSessionRecord.ended_at < cutoff,
                    )
                )
            ).all()
            if not rows:
                logger.debug("Retention sweep: nothing older than %s", cutoff.isoformat())
                return SweepResult()

            ids = [r.id for r in rows]
            # Children first; events carry no foreign key but go with the session
            events = await db.execute(
                delete(QuizAnswerEventRecord).where(QuizAnswerEventRecord.session_id.in_(ids))
            )
            await db.execute(delete(QuizAnswerRecord).where(QuizAnswerRecord.session_id.in_(ids)))
            await db.execute(
                delete(QuizParticipantRecord).where(QuizParticipantRecord.session_id.in_(ids))
            )
            sessions = await db.execute(
                delete(QuizSessionRecord).where(QuizSessionRecord.id.in_(ids))
            )
            await db.commit()

        for r in rows:
            if self.cache is not None:
                self.cache.release(r.id)
            if self.hub is not None:
                self.hub.close_room(r.code)

        result = SweepResult(sessions=sessions.rowcount, events=events.rowcount)
        logger.info(
            "Retention sweep removed %d session(s) and %d answer event(s)",
            result.sessions,
            result.events,
        )
        return result

    # Background loop ----------------------------------------------------
    async def _run(self) -> None:
        interval = self.config.cleanup_interval_hours * 3600
        while True:
            try:
                await self.sweep()
            except asyncio.CancelledError:
                raise
            except Exception:
                # A failed sweep is retried on the next tick
                logger.exception("Retention sweep failed")
            await asyncio.sleep(interval)

    def start(self) -> None:
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
