"""WebSocket surface for live sessions.

One socket per client. Inbound and outbound messages are JSON envelopes
``{"type": ..., "data": {...}}``. A socket binds to a session through ``join``
(participants) or ``teacher-join`` (creator/admin); later commands act on the
bound session. Errors are reported as ``error`` envelopes and never close the
connection.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from pydantic import ValidationError as PydanticValidationError

from app.core.config import settings
from app.core.logging import get_logger, log_context
from app.apis.deps import ws_identity
from app.apis.quiz.schemas import (
    AnswerMessage,
    JoinMessage,
    NextQuestionMessage,
    StatusMessage,
    TeacherJoinMessage,
)
from app.modules.quiz.authz import Identity
from app.modules.quiz.channels import Channel, envelope
from app.modules.quiz.errors import QuizSessionError, ValidationError
from app.modules.quiz.models import SessionStatus
from app.modules.quiz.state import quiz_service

logger = get_logger(__name__)
ws_router = APIRouter()


class SocketSubscriber:
    """Hashable adapter registered with the channel hub."""

    def __init__(self, websocket: WebSocket) -> None:
        self.websocket = websocket

    async def send_text(self, data: str) -> None:
        await self.websocket.send_text(data)


@dataclass
class Connection:
    identity: Identity
    subscriber: SocketSubscriber
    session_id: Optional[int] = None
    code: Optional[str] = None
    role: str = "-"

    def bind(self, session_id: int, code: str, role: str) -> None:
        if self.code and self.code != code:
            for channel in Channel:
                quiz_service.hub.unsubscribe(self.code, channel, self.subscriber)
        self.session_id, self.code, self.role = session_id, code, role

    def require_session(self) -> int:
        if self.session_id is None:
            raise ValidationError("Join a session first")
        return self.session_id

    async def send(self, kind: str, data) -> None:
        await self.subscriber.send_text(
            json.dumps(envelope(kind, data), ensure_ascii=False, default=str)
        )


Handler = Callable[[Connection, dict], Awaitable[None]]


async def on_join(conn: Connection, data: dict) -> None:
    msg = JoinMessage.model_validate(data)
    status, rejoined = await quiz_service.join(
        msg.code, conn.identity, msg.display_name, conn.subscriber
    )
    conn.bind(status.session.session_id, status.session.code, "participant")
    await conn.send("joined", {"rejoined": rejoined, **status.model_dump(mode="json")})


async def on_teacher_join(conn: Connection, data: dict) -> None:
    msg = TeacherJoinMessage.model_validate(data)
    snapshot = await quiz_service.teacher_join(msg.code, conn.identity, conn.subscriber)
    conn.bind(snapshot.session_id, snapshot.code, "moderator")
    await conn.send("teacher-joined", snapshot)


async def on_status(conn: Connection, data: dict) -> None:
    msg = StatusMessage.model_validate(data)
    code = msg.code or conn.code
    if not code:
        raise ValidationError("Game PIN is required")
    await conn.send("status", await quiz_service.status(code, conn.identity))


async def on_start(conn: Connection, data: dict) -> None:
    result = await quiz_service.start(conn.require_session(), conn.identity)
    await conn.send("started", result)


async def on_next_question(conn: Connection, data: dict) -> None:
    msg = NextQuestionMessage.model_validate(data)
    result = await quiz_service.advance(
        conn.require_session(), conn.identity, expected_index=msg.expected_index
    )
    if result.changed and result.session.status == SessionStatus.ENDED:
        await conn.send("ended", result)
    else:
        await conn.send("question-advanced", result)


async def on_pause(conn: Connection, data: dict) -> None:
    # Subscribers, including this socket, receive the "paused" broadcast
    await quiz_service.pause(conn.require_session(), conn.identity)


async def on_resume(conn: Connection, data: dict) -> None:
    await quiz_service.resume(conn.require_session(), conn.identity)


async def on_end(conn: Connection, data: dict) -> None:
    result = await quiz_service.end(conn.require_session(), conn.identity)
    await conn.send("ended", result)


async def on_answer(conn: Connection, data: dict) -> None:
    msg = AnswerMessage.model_validate(data)
    ack = await quiz_service.submit_answer(
        conn.require_session(),
        conn.identity,
        msg.question_index,
        msg.selected_options,
        msg.elapsed_ms,
    )
    await conn.send("answer-received", ack)


async def on_get_leaderboard(conn: Connection, data: dict) -> None:
    entries = await quiz_service.leaderboard(conn.require_session(), conn.identity)
    await conn.send("leaderboard", {"entries": [e.model_dump() for e in entries]})


HANDLERS: dict[str, Handler] = {
    "join": on_join,
    "teacher-join": on_teacher_join,
    "status": on_status,
    "start": on_start,
    "next-question": on_next_question,
    "pause": on_pause,
    "resume": on_resume,
    "end": on_end,
    "answer": on_answer,
    "get-leaderboard": on_get_leaderboard,
}


async def dispatch(conn: Connection, raw: str) -> None:
    try:
        msg = json.loads(raw)
        if not isinstance(msg, dict):
            raise ValidationError("Message must be a JSON object")
        mtype = msg.get("type")
        handler = HANDLERS.get(mtype)
        if handler is None:
            raise ValidationError(f"Unknown message type: {mtype}")
        data = msg.get("data") or {}
        if not isinstance(data, dict):
            raise ValidationError("Message data must be an object")
        await handler(conn, data)
    except QuizSessionError as e:
        await conn.send("error", e.to_payload())
    except (json.JSONDecodeError, PydanticValidationError) as e:
        await conn.send("error", {"kind": "validation", "message": str(e)})
    except WebSocketDisconnect:
        raise
    except Exception:
        logger.exception(
            "Unhandled error in websocket handler",
            extra=log_context(code=conn.code, role=conn.role),
        )
        await conn.send("error", {"kind": "internal", "message": "Internal error"})


@ws_router.websocket(f"/{settings.app.version}/quiz/ws")
async def ws_quiz(
    websocket: WebSocket,
    identity: Optional[Identity] = Depends(ws_identity),
) -> None:
    if identity is None:
        await websocket.close(code=4401)
        return
    await websocket.accept()
    conn = Connection(identity=identity, subscriber=SocketSubscriber(websocket))
    try:
        while True:
            raw = await websocket.receive_text()
            await dispatch(conn, raw)
    except WebSocketDisconnect:
        logger.debug(
            "WS disconnected", extra=log_context(code=conn.code, role=conn.role)
        )
    finally:
        quiz_service.hub.drop(conn.subscriber)
