from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse

from app.core.config import settings
from app.core.logging import get_logger, log_context
from app.apis.deps import get_identity
from app.apis.quiz.schemas import (
    CreateSessionResponse,
    ErrorResponse,
    LeaderboardResponse,
)
from app.modules.quiz.authz import Identity
from app.modules.quiz.errors import QuizSessionError
from app.modules.quiz.models import ModeratorSnapshot, SessionSnapshot, SweepResult
from app.modules.quiz.registry import snapshot_of
from app.modules.quiz.state import quiz_service, retention_sweeper


logger = get_logger(__name__)
router = APIRouter(
    responses={
        code: {"model": ErrorResponse} for code in (400, 403, 404, 409, 503)
    }
)

PREFIX = f"/{settings.app.version}/quiz"


async def quiz_error_handler(request: Request, exc: QuizSessionError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning("%s %s -> %s: %s", request.method, request.url.path, exc.kind, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "kind": exc.kind},
    )


@router.post(
    f"{PREFIX}/{{quiz_id}}/sessions",
    response_model=CreateSessionResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["quiz"],
)
async def create_session(
    quiz_id: int,
    response: Response,
    identity: Identity = Depends(get_identity),
) -> CreateSessionResponse:
    record, created = await quiz_service.registry.create_session(quiz_id, identity)
    if not created:
        response.status_code = status.HTTP_200_OK
    return CreateSessionResponse(
        session=snapshot_of(record),
        created=created,
        ws_url=f"{PREFIX}/ws",
    )


@router.get(
    f"{PREFIX}/{{quiz_id}}/sessions",
    response_model=list[SessionSnapshot],
    tags=["quiz"],
)
async def list_sessions(
    quiz_id: int, identity: Identity = Depends(get_identity)
) -> list[SessionSnapshot]:
    return await quiz_service.registry.list_sessions_for_quiz(quiz_id, identity)


@router.get(
    f"{PREFIX}/sessions/pin/{{code}}",
    response_model=SessionSnapshot,
    tags=["quiz"],
)
async def get_session_by_code(
    code: str, identity: Identity = Depends(get_identity)
) -> SessionSnapshot:
    return await quiz_service.registry.get_session_by_code(code)


@router.get(
    f"{PREFIX}/sessions/{{session_id}}",
    response_model=ModeratorSnapshot,
    tags=["quiz"],
)
async def get_session(
    session_id: int, identity: Identity = Depends(get_identity)
) -> ModeratorSnapshot:
    return await quiz_service.registry.get_session_by_id(session_id, identity)


@router.get(
    f"{PREFIX}/sessions/{{session_id}}/leaderboard",
    response_model=LeaderboardResponse,
    tags=["quiz"],
)
async def get_leaderboard(
    session_id: int, identity: Identity = Depends(get_identity)
) -> LeaderboardResponse:
    entries = await quiz_service.leaderboard(session_id, identity)
    return LeaderboardResponse(session_id=session_id, entries=entries)


@router.post(
    f"{PREFIX}/cleanup",
    response_model=SweepResult,
    tags=["quiz"],
)
async def run_cleanup(identity: Identity = Depends(get_identity)) -> SweepResult:
    if not identity.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Unauthorized")
    result = await retention_sweeper.sweep()
    logger.info(
        "Manual sweep by %s removed %d session(s)",
        identity.id,
        result.sessions,
        extra=log_context(role="admin"),
    )
    return result
