"""
Structured logging for the chat service.

Log lines carry two kinds of context, both bound through structlog's
contextvars support:
- request_id, set per HTTP request by RequestContextMiddleware (and echoed
  back in the X-Request-ID response header)
- room, set with room_context() around real-time work for one session room
"""

import logging
import sys
import time
import uuid
from contextlib import contextmanager
from typing import Iterator, Optional

import structlog
from structlog.types import Processor

REQUEST_ID_HEADER = b"x-request-id"

# Loggers that are noisy at INFO
_QUIET_LOGGERS = ("httpx", "httpcore", "openai", "anthropic", "asyncio", "multipart", "uvicorn.access")


def configure_logging(json_format: bool = False, log_level: str = "INFO") -> None:
    """
    Configure structlog and the stdlib root logger.

    Args:
        json_format: Emit one JSON object per line instead of console output
        log_level: Minimum level name (DEBUG, INFO, WARNING, ERROR)
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if json_format:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors += [structlog.dev.set_exc_info, structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    logging.getLogger().setLevel(level)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


def get_logger(name: Optional[str] = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


@contextmanager
def room_context(room_key: str) -> Iterator[None]:
    """
    Tag every log line emitted inside the block with the room key.

    Usage:
        with room_context("session:12"):
            logger.info("Message accepted")
    """
    with structlog.contextvars.bound_contextvars(room=room_key):
        yield


def _incoming_request_id(scope) -> Optional[str]:
    for name, value in scope.get("headers") or []:
        if name == REQUEST_ID_HEADER:
            candidate = value.decode("latin-1").strip()
            # Only accept short opaque ids from upstream proxies
            if 0 < len(candidate) <= 64:
                return candidate
    return None


class RequestContextMiddleware:
    """
    Pure ASGI middleware binding a request id and logging request timing.

    WebSocket scopes pass straight through; the real-time handler binds its
    own room context per event.
    """

    def __init__(self, app):
        self.app = app
        self.logger = structlog.get_logger("request")

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request_id = _incoming_request_id(scope) or uuid.uuid4().hex[:8]
        method = scope.get("method", "UNKNOWN")
        path = scope.get("path", "/")
        status = None
        started = time.perf_counter()

        async def send_with_request_id(message):
            nonlocal status
            if message["type"] == "http.response.start":
                status = message.get("status")
                headers = list(message.get("headers") or [])
                headers.append((REQUEST_ID_HEADER, request_id.encode("latin-1")))
                message = {**message, "headers": headers}
            await send(message)

        with structlog.contextvars.bound_contextvars(request_id=request_id):
            try:
                await self.app(scope, receive, send_with_request_id)
            except Exception as e:
                self.logger.error("Request failed", method=method, path=path, error_type=type(e).__name__)
                raise
            finally:
                self.logger.info(
                    "Request completed",
                    method=method,
                    path=path,
                    status=status,
                    duration_ms=round((time.perf_counter() - started) * 1000, 2),
                )
