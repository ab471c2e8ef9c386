"""
Error taxonomy and the HTTP translation for it.

AuthError, ValidationError and NotFoundError are surfaced to HTTP clients as
{"error": "<reason>"} with the matching status code. ProviderError never
reaches a client: the bot orchestrator recovers it into a fallback reply.
"""

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = structlog.get_logger(__name__)


class ChatServiceError(Exception):
    """Base exception for chat service errors."""
    status_code = 500

    def __init__(self, message: str = "Internal server error"):
        super().__init__(message)
        self.message = message


class AuthError(ChatServiceError):
    """Missing or invalid credential."""
    status_code = 401

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message)


class ValidationError(ChatServiceError):
    """Malformed username, password, title or message."""
    status_code = 400


class NotFoundError(ChatServiceError):
    """Session absent or not owned by the caller."""
    status_code = 404

    def __init__(self, message: str = "Session not found"):
        super().__init__(message)


class ProviderError(ChatServiceError):
    """External completion call failed, timed out or returned nothing."""
    pass


async def chat_service_error_handler(request: Request, exc: ChatServiceError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("Service error", path=request.url.path, error=exc.message)
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    logger.info(
        "Request rejected",
        path=request.url.path,
        status=exc.status_code,
        error_type=type(exc).__name__,
    )
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed request bodies and query parameters are plain 400s."""
    errors = exc.errors()
    message = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
    return JSONResponse(status_code=400, content={"error": message})


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Hide internal error details from clients."""
    logger.exception("Unhandled exception", path=request.url.path, error=str(exc))
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ChatServiceError, chat_service_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
