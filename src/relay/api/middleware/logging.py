"""structlog setup and per-request access logging.

``configure_structlog`` routes structlog through the stdlib root logger:
JSON lines in production, coloured console output elsewhere.

``LoggingMiddleware`` binds a request ID (the caller's ``X-Request-ID`` or a
fresh UUID) into structlog contextvars for the lifetime of the request, so
every pipeline event logged while handling a webhook carries it, and echoes
it on the response.
"""

from __future__ import annotations

import logging
import time
import uuid

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from src.relay.config import Environment, Settings, get_settings

logger = structlog.get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


def configure_structlog(settings: Settings | None = None) -> None:
    settings = settings or get_settings()
    logging.basicConfig(format="%(message)s", level=settings.LOG_LEVEL.upper())

    renderer = (
        structlog.processors.JSONRenderer()
        if settings.ENVIRONMENT == Environment.production
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


class LoggingMiddleware(BaseHTTPMiddleware):
    """Access log with request ID propagation."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        bound = structlog.contextvars.bind_contextvars(
            request_id=request_id, path=request.url.path
        )
        started = time.monotonic()

        try:
            response = await call_next(request)
        except Exception:
            logger.exception(
                "http.request_crashed",
                method=request.method,
                duration_ms=round((time.monotonic() - started) * 1000, 2),
            )
            raise
        finally:
            structlog.contextvars.reset_contextvars(**bound)

        response.headers[REQUEST_ID_HEADER] = request_id
        if response.status_code >= 500:
            emit = logger.error
        elif response.status_code >= 400:
            emit = logger.warning
        else:
            emit = logger.info
        emit(
            "http.request_completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=round((time.monotonic() - started) * 1000, 2),
            request_id=request_id,
        )
        return response
