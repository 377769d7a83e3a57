"""Per-session fan-out channels.

Each session code has two logical channels: the participant channel (every
joined player plus moderators) and the moderator channel (creator/admin
only). Delivery is best-effort; every send is bounded by a timeout, and
sockets that fail or stall are dropped. The client is expected to resync via
``status`` after reconnecting.

Deliveries for one code go out one broadcast at a time in the order they were
requested, so question N reaches subscribers before question N+1 even though
callers publish after releasing the session lock.
"""

from __future__ import annotations

import asyncio
import json
from enum import Enum
from typing import Any, Iterable, Optional, Protocol

from app.core.config import settings
from app.core.logging import get_logger, log_context

logger = get_logger(__name__)


class Subscriber(Protocol):
    async def send_text(self, data: str) -> Any: ...


class Channel(str, Enum):
    PARTICIPANTS = "participants"
    MODERATORS = "moderators"


class ChannelHub:
    """Tracks subscribers per (code, channel)."""

    def __init__(self, send_timeout: Optional[float] = None) -> None:
        self.send_timeout = (
            settings.quiz.send_timeout_sec if send_timeout is None else send_timeout
        )
        self._by_room: dict[tuple[str, Channel], dict[Subscriber, str]] = {}
        self._delivery: dict[str, asyncio.Lock] = {}

    def subscribe(
        self, code: str, channel: Channel, identity: str, sub: Subscriber
    ) -> None:
        self._by_room.setdefault((code, channel), {})[sub] = identity

    def unsubscribe(self, code: str, channel: Channel, sub: Subscriber) -> None:
        room_map = self._by_room.get((code, channel))
        if not room_map:
            return
        room_map.pop(sub, None)
        if not room_map:
            self._by_room.pop((code, channel), None)

    def drop(self, sub: Subscriber) -> None:
        """Remove a subscriber from every channel (on disconnect)."""
        for key in list(self._by_room.keys()):
            self.unsubscribe(key[0], key[1], sub)

    def close_room(self, code: str) -> None:
        for channel in Channel:
            self._by_room.pop((code, channel), None)
        lock = self._delivery.get(code)
        if lock is not None and not lock.locked():
            self._delivery.pop(code, None)

    async def _send(self, sub: Subscriber, data: str) -> bool:
        try:
            await asyncio.wait_for(sub.send_text(data), self.send_timeout)
            return True
        except asyncio.CancelledError:
            raise
        except Exception:
            # Includes TimeoutError from a socket that stopped draining
            return False

    async def _deliver(
        self, code: str, targets: Iterable[tuple[Channel, Subscriber]], payload: dict
    ) -> int:
        data = json.dumps(payload, ensure_ascii=False, default=str)
        targets = list(targets)
        lock = self._delivery.get(code)
        if lock is None:
            lock = self._delivery[code] = asyncio.Lock()
        async with lock:
            results = await asyncio.gather(*(self._send(sub, data) for _, sub in targets))
        dead = [(channel, sub) for (channel, sub), ok in zip(targets, results) if not ok]
        for channel, sub in dead:
            self.unsubscribe(code, channel, sub)
        if dead:
            logger.info(
                "Dropped %d dead or stalled subscriber(s)",
                len(dead),
                extra=log_context(code=code, role=dead[0][0].value),
            )
        return len(results) - len(dead)

    async def publish(self, code: str, channel: Channel, payload: dict) -> int:
        room_map = self._by_room.get((code, channel), {})
        return await self._deliver(code, [(channel, sub) for sub in room_map], payload)

    async def broadcast(self, code: str, payload: dict) -> int:
        """Send to the participant channel and to moderators not already on it."""
        participant_subs = self._by_room.get((code, Channel.PARTICIPANTS), {})
        targets = [(Channel.PARTICIPANTS, sub) for sub in participant_subs]
        targets += [
            (Channel.MODERATORS, sub)
            for sub in self._by_room.get((code, Channel.MODERATORS), {})
            if sub not in participant_subs
        ]
        return await self._deliver(code, targets, payload)

    def count(self, code: str, channel: Channel = Channel.PARTICIPANTS) -> int:
        return len(self._by_room.get((code, channel), {}))

    def clear(self) -> None:
        self._by_room.clear()
        self._delivery.clear()


def envelope(kind: str, data: Any) -> dict:
    if hasattr(data, "model_dump"):
        data = data.model_dump(mode="json")
    return {"type": kind, "data": data}
