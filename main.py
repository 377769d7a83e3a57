from fastapi import FastAPI
from contextlib import asynccontextmanager
from app.core.config import settings
from app.core.logging import get_logger, setup_logging
from app.apis.auth.main import router as auth_router
from app.apis.quiz.main import quiz_error_handler, router as quiz_router
from app.apis.quiz.ws import ws_router as quiz_ws_router
from app.modules.quiz.errors import QuizSessionError
from app.modules.quiz.state import retention_sweeper

import uvicorn
from fastapi.middleware.cors import CORSMiddleware


logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.quiz.cleanup_enabled:
        retention_sweeper.start()
    try:
        yield
    finally:
        await retention_sweeper.stop()


def create_app() -> FastAPI:
    setup_logging()
    app = FastAPI(
        title=settings.app.name, version=settings.app.version, lifespan=lifespan
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.app.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(QuizSessionError, quiz_error_handler)

    app.include_router(auth_router)
    app.include_router(quiz_router)
    app.include_router(quiz_ws_router)

    @app.get("/")
    async def root():
        return {
            "status": "ok",
            "app": settings.app.name,
            "version": settings.app.version,
        }

    return app


app = create_app()


if __name__ == "__main__":
    try:
        uvicorn.run(
            "main:app",
            host="0.0.0.0",
            port=settings.app.port,
            reload=not settings.app.is_production,
        )
    except Exception as e:
        logger.error("An error occurred when starting the server: %s", e)
