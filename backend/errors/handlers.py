"""
Error handling decorators and utilities for Parley.

Provides decorators that turn tool exceptions into structured failure
results, and the FastAPI handlers that render ParleyError as HTTP errors.
"""

import logging
from functools import wraps
from typing import Any, Callable, Optional, TypeVar

from .codes import ErrorCode
from .exceptions import ParleyError
from .response import error_response

# Type variable for decorated functions
F = TypeVar("F", bound=Callable[..., Any])

GENERIC_SERVER_ERROR = "Something went wrong on our side. Please try again."


def handle_async_tool_errors(tool_name: str, logger: Optional[logging.Logger] = None):
    """Decorator that turns a tool coroutine's exceptions into error results.

    Exceptions are logged with stack traces and returned as a standard error
    response dictionary, so one failing tool never ends the turn. Task
    cancellation is not an error and is re-raised untouched.

    Example:
        >>> @handle_async_tool_errors("word_count")
        ... async def count_words(text):
        ...     if not text:
        ...         raise ValidationError("Nothing to count", parameter="text")
        ...     return {"success": True, "count": len(text.split())}
    """

    def decorator(func: F) -> F:
        log = logger or logging.getLogger(f"parley.tools.{tool_name}")

        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> dict:
            try:
                return await func(*args, **kwargs)
            except ParleyError as e:
                log.error(f"[{tool_name}] {e.code.value}: {e.message}", exc_info=True)
                return error_response(e, tool=tool_name)
            except Exception as e:
                log.error(f"[{tool_name}] Unexpected error: {e}", exc_info=True)
                return error_response(e, tool=tool_name)

        return wrapper  # type: ignore

    return decorator


def log_error(
    logger: logging.Logger, error: Exception, context: Optional[str] = None, include_traceback: bool = True
) -> None:
    """Log an error with consistent formatting.

    Example:
        >>> log_error(logger, err, context="Persist")
        # Logs: "[Persist] PERSISTENCE_WRITE_FAILED: Could not save message"
    """
    if isinstance(error, ParleyError):
        message = f"{error.code.value}: {error.message}"
        if error.context:
            message = f"{message} {error.context}"
    else:
        message = str(error)

    if context:
        message = f"[{context}] {message}"

    logger.error(message, exc_info=include_traceback)


def http_status_for(error: ParleyError) -> int:
    """Map an error code family to an HTTP status."""
    code = error.code.value
    if code == ErrorCode.CONVERSATION_BUSY.value:
        return 409
    if code.startswith(("VALIDATION_", "CONVERSATION_", "TOOL_")):
        return 400
    if code.startswith("NOT_FOUND_"):
        return 404
    if code.startswith(("PROVIDER_", "EXTERNAL_")):
        return 502
    return 500


def register_exception_handlers(app) -> None:
    """Install JSON handlers for ParleyError on a FastAPI app.

    4xx errors carry the structured envelope. 5xx errors are logged in full
    and answered with a generic message so internals never reach the client.
    """
    from fastapi import Request
    from fastapi.responses import JSONResponse

    log = logging.getLogger("parley.http")

    @app.exception_handler(ParleyError)
    async def _parley_error_handler(request: Request, exc: ParleyError):
        status = http_status_for(exc)
        if status >= 500:
            log_error(log, exc, context=f"{request.method} {request.url.path}")
            body = {
                "success": False,
                "error": {
                    "code": exc.code.value,
                    "message": GENERIC_SERVER_ERROR,
                    "details": None,
                    "tool": None,
                    "recoverable": exc.recoverable,
                    "context": None,
                },
            }
        else:
            body = error_response(exc)
        return JSONResponse(body, status_code=status)
