"""Process-local cache of live session summaries.

The database is authoritative. Entries here only speed up code -> session id
lookups and carry the per-session lock; every mutating path reloads the
durable record under that lock and writes the fresh summary back.

Summaries live in an arena (a list with a free-slot list) indexed by code and
by session id, so released slots are reused without rebuilding the indexes.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import AsyncIterator, Optional

from app.modules.quiz.models import SessionStatus


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SessionSummary:
    session_id: int
    code: str
    status: SessionStatus
    current_question_index: int
    participant_count: int = 0
    refreshed_at: datetime = field(default_factory=_now_utc)


class SessionCache:
    def __init__(self) -> None:
        self._arena: list[Optional[SessionSummary]] = []
        self._free: list[int] = []
        self._by_code: dict[str, int] = {}
        self._by_id: dict[int, int] = {}
        self._locks: dict[int, asyncio.Lock] = {}
        self._holders: dict[int, int] = {}

    def __len__(self) -> int:
        return len(self._by_code)

    @asynccontextmanager
    async def hold(self, session_id: int) -> AsyncIterator[None]:
        """Serialize work on one session.

        The lock outlives the call only while the session is cached, so ids
        that turn out to be unknown or ended leave nothing behind.
        """
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        self._holders[session_id] = self._holders.get(session_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._holders[session_id] - 1
            if remaining:
                self._holders[session_id] = remaining
            else:
                del self._holders[session_id]
                if session_id not in self._by_id:
                    self._locks.pop(session_id, None)

    def locks_held(self) -> int:
        return len(self._locks)

    def put(self, summary: SessionSummary) -> None:
        slot = self._by_id.get(summary.session_id)
        if slot is None:
            if self._free:
                slot = self._free.pop()
                self._arena[slot] = summary
            else:
                slot = len(self._arena)
                self._arena.append(summary)
        else:
            previous = self._arena[slot]
            if previous and previous.code != summary.code:
                self._by_code.pop(previous.code, None)
            self._arena[slot] = summary
        self._by_id[summary.session_id] = slot
        self._by_code[summary.code] = slot

    def get_by_code(self, code: str) -> Optional[SessionSummary]:
        slot = self._by_code.get(code)
        return self._arena[slot] if slot is not None else None

    def get_by_id(self, session_id: int) -> Optional[SessionSummary]:
        slot = self._by_id.get(session_id)
        return self._arena[slot] if slot is not None else None

    def release(self, session_id: int) -> None:
        # Only ended sessions are released; a lock still in use is dropped by
        # its last holder
        if session_id not in self._holders:
            self._locks.pop(session_id, None)
        slot = self._by_id.pop(session_id, None)
        if slot is None:
            return
        summary = self._arena[slot]
        if summary is not None:
            self._by_code.pop(summary.code, None)
        self._arena[slot] = None
        self._free.append(slot)

    def clear(self) -> None:
        self._arena.clear()
        self._free.clear()
        self._by_code.clear()
        self._by_id.clear()
        self._locks.clear()
        self._holders.clear()
