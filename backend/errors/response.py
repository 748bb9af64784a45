"""
Standard error response builders for Parley.

Tool results, HTTP error bodies and streamed error frames all share the
same envelope so the model and the client see one shape.
"""

import asyncio
from typing import Any, Optional
from .codes import ErrorCode
from .exceptions import ParleyError

# Non-Parley exceptions that map to a more specific code than INTERNAL_UNEXPECTED.
# Order matters: subclasses before their bases.
_EXCEPTION_CODES = (
    (asyncio.TimeoutError, ErrorCode.TOOL_TIMEOUT, True),
    (TimeoutError, ErrorCode.TOOL_TIMEOUT, True),
    (ConnectionError, ErrorCode.EXTERNAL_NETWORK_ERROR, True),
    (KeyError, ErrorCode.VALIDATION_MISSING_PARAM, True),
    (TypeError, ErrorCode.TOOL_INVALID_ARGUMENTS, True),
    (ValueError, ErrorCode.VALIDATION_INVALID_FORMAT, True),
)


def exception_to_response(error: Exception, tool: Optional[str] = None) -> dict:
    """Build an error response for an exception that is not a ParleyError."""
    code, recoverable = ErrorCode.INTERNAL_UNEXPECTED, False
    for exc_type, mapped, mapped_recoverable in _EXCEPTION_CODES:
        if isinstance(error, exc_type):
            code, recoverable = mapped, mapped_recoverable
            break

    return {
        "success": False,
        "error": {
            "code": code.value,
            "message": str(error) or type(error).__name__,
            "details": None,
            "tool": tool,
            "recoverable": recoverable,
            "context": None,
        },
    }


def error_response(error: ParleyError | Exception, tool: Optional[str] = None, include_context: bool = True) -> dict:
    """Build a standard error response dictionary.

    Args:
        error: The exception to convert to a response
        tool: Optional tool name for context
        include_context: Whether to include the context dict (disable for privacy)

    Returns:
        Standard error response dict with success=False

    Example:
        >>> from errors import ToolNotFoundError, error_response
        >>> err = ToolNotFoundError("Tool not available", tool_name="web_search")
        >>> error_response(err, tool="web_search")
        {
            "success": False,
            "error": {
                "code": "TOOL_NOT_FOUND",
                "message": "Tool not available",
                "details": None,
                "tool": "web_search",
                "recoverable": True,
                "context": {"tool_name": "web_search"}
            }
        }
    """
    if isinstance(error, ParleyError):
        return {
            "success": False,
            "error": {
                "code": error.code.value,
                "message": error.message,
                "details": error.details,
                "tool": tool,
                "recoverable": error.recoverable,
                "context": error.context if include_context else None,
            },
        }

    return exception_to_response(error, tool=tool)


def success_response(data: Optional[dict] = None, **kwargs: Any) -> dict:
    """Build a standard success response dictionary.

    Example:
        >>> success_response(result=42)
        {"success": True, "result": 42}

        >>> success_response({"items": [1, 2, 3]})
        {"success": True, "items": [1, 2, 3]}
    """
    response = {"success": True}

    if data:
        response.update(data)
    if kwargs:
        response.update(kwargs)

    return response
