"""
Parley Error Handling Module

Provides standardized error codes, exceptions, and response builders
for consistent error handling across the application.

Usage:
    from errors import (
        # Error codes
        ErrorCode,

        # Exceptions
        ParleyError,
        ValidationError,
        NotFoundError,
        ToolExecutionError,
        ToolNotFoundError,
        ProviderError,
        PersistenceError,
        ConversationBusyError,

        # Response builders
        error_response,
        success_response,

        # Decorators
        handle_async_tool_errors,
        log_error,
    )

Example:
    from errors import handle_async_tool_errors, ValidationError

    @handle_async_tool_errors("web_scraper")
    async def scrape(url: str) -> dict:
        if not url.startswith(("http://", "https://")):
            raise ValidationError(
                "Invalid URL",
                details="Only http(s) URLs can be scraped",
                parameter="url",
                received=url,
            )

        # ... fetch and parse ...
        return {"success": True, "content": content}
"""

from .codes import ErrorCode
from .exceptions import (
    ParleyError,
    ValidationError,
    NotFoundError,
    ToolExecutionError,
    ToolNotFoundError,
    ToolTimeoutError,
    ProviderError,
    ExternalServiceError,
    PersistenceError,
    ConversationStateError,
    ConversationBusyError,
    InvalidEditTargetError,
)
from .response import (
    error_response,
    exception_to_response,
    success_response,
)
from .handlers import (
    GENERIC_SERVER_ERROR,
    handle_async_tool_errors,
    http_status_for,
    log_error,
    register_exception_handlers,
)

__all__ = [
    # Error codes
    "ErrorCode",
    # Exceptions
    "ParleyError",
    "ValidationError",
    "NotFoundError",
    "ToolExecutionError",
    "ToolNotFoundError",
    "ToolTimeoutError",
    "ProviderError",
    "ExternalServiceError",
    "PersistenceError",
    "ConversationStateError",
    "ConversationBusyError",
    "InvalidEditTargetError",
    # Response builders
    "error_response",
    "exception_to_response",
    "success_response",
    # Decorators / HTTP
    "GENERIC_SERVER_ERROR",
    "handle_async_tool_errors",
    "http_status_for",
    "log_error",
    "register_exception_handlers",
]
