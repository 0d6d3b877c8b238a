"""FastAPI application factory."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from trivia.config import get_settings
from trivia.database import close_db, init_db
from trivia.health.router import router as health_router
from trivia.leaderboard.router import router as leaderboard_router
from trivia.middleware import setup_middleware
from trivia.questions.router import router as questions_router
from trivia.redis_client import close_redis, init_redis
from trivia.rewards.events import close_arq, init_arq
from trivia.rewards.router import router as rewards_router
from trivia.sessions.router import router as sessions_router


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup and shutdown lifecycle."""
    settings = get_settings()
    await init_db(settings.database_url)
    await init_redis(settings)
    await init_arq(settings.arq_redis_url)

    yield

    await close_arq()
    await close_db()
    await close_redis()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Trivia Rewards API",
        description="Timed trivia sessions, season leaderboards and collectible token rewards",
        version=settings.app_version,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    setup_middleware(app, settings)
    app.include_router(health_router, tags=["Health"])
    app.include_router(sessions_router)
    app.include_router(questions_router)
    app.include_router(leaderboard_router)
    app.include_router(rewards_router)

    return app


app = create_app()
