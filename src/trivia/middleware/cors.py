"""CORS for the game client."""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from trivia.config import Settings

# Rate-limit headers and the request id are read by the client
_EXPOSED_HEADERS = ["X-Request-Id", "X-RateLimit-Remaining", "X-RateLimit-Limit", "Retry-After"]


def setup_cors(app: FastAPI, settings: Settings) -> None:
    """Bearer-token API: reads and posts only, no cookies."""
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=False,
        allow_methods=["GET", "POST"],
        allow_headers=["Authorization", "Content-Type", "X-Request-Id"],
        expose_headers=_EXPOSED_HEADERS,
        max_age=settings.cors_max_age_seconds,
    )
