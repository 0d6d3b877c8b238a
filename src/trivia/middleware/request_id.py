"""X-Request-Id propagation into the structlog context."""

import re
import uuid

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

# Client-supplied ids end up in every log line; anything else is replaced
_ACCEPTED_ID = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")


def request_id_from(request: Request) -> str:
    """The caller's X-Request-Id when it is safe to log, otherwise a fresh UUID."""
    supplied = request.headers.get("X-Request-Id", "")
    return supplied if _ACCEPTED_ID.match(supplied) else str(uuid.uuid4())


class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request_id_from(request)
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )
        response = await call_next(request)
        response.headers["X-Request-Id"] = request_id
        return response
