"""
Custom exception hierarchy for Parley.

All exceptions inherit from ParleyError and include:
- code: ErrorCode for categorization
- message: Human-readable error message
- details: Optional additional context
- recoverable: Whether the user can retry/fix the issue
- context: Additional key-value pairs for debugging
"""

from typing import Any, List, Optional
from .codes import ErrorCode


class ParleyError(Exception):
    """Base exception for all Parley errors.

    Attributes:
        code: The ErrorCode categorizing this error
        message: Human-readable error message
        details: Optional additional context for the user
        recoverable: Whether the error can be resolved by user action
        context: Additional debugging information
    """

    code: ErrorCode = ErrorCode.INTERNAL_UNEXPECTED
    recoverable: bool = False

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        code: Optional[ErrorCode] = None,
        recoverable: Optional[bool] = None,
        **context: Any,
    ):
        self.message = message
        self.details = details
        self.context = context if context else None

        # Allow overriding class defaults
        if code is not None:
            self.code = code
        if recoverable is not None:
            self.recoverable = recoverable

        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} - {self.details}"
        return self.message

    def to_dict(self) -> dict:
        """Convert exception to dictionary for JSON serialization."""
        return {
            "code": self.code.value,
            "message": self.message,
            "details": self.details,
            "recoverable": self.recoverable,
            "context": self.context,
        }


class ValidationError(ParleyError):
    """Error during input validation."""

    code = ErrorCode.VALIDATION_MISSING_PARAM
    recoverable = True

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        parameter: Optional[str] = None,
        expected: Optional[str] = None,
        received: Optional[str] = None,
        **context: Any,
    ):
        ctx = {**context}
        if parameter:
            ctx["parameter"] = parameter
        if expected:
            ctx["expected"] = expected
        if received:
            ctx["received"] = received
        super().__init__(message, details, **ctx)


class NotFoundError(ParleyError):
    """Error when a chat, message or model is not found."""

    code = ErrorCode.NOT_FOUND_MESSAGE
    recoverable = True

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
        **context: Any,
    ):
        if resource_type == "chat":
            code = ErrorCode.NOT_FOUND_CHAT
        elif resource_type == "model":
            code = ErrorCode.NOT_FOUND_MODEL
        else:
            code = ErrorCode.NOT_FOUND_MESSAGE

        ctx = {**context}
        if resource_type:
            ctx["resource_type"] = resource_type
        if resource_id:
            ctx["resource_id"] = resource_id
        super().__init__(message, details, code=code, **ctx)


class ToolExecutionError(ParleyError):
    """A single tool call failed. Reported to the model, never fatal for the turn."""

    code = ErrorCode.TOOL_EXECUTION_FAILED
    recoverable = True

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        tool_name: Optional[str] = None,
        **context: Any,
    ):
        ctx = {**context}
        if tool_name:
            ctx["tool_name"] = tool_name
        super().__init__(message, details, **ctx)


class ToolNotFoundError(ToolExecutionError):
    """The model asked for a tool that is not registered for this turn."""

    code = ErrorCode.TOOL_NOT_FOUND


class ToolTimeoutError(ToolExecutionError):
    """A tool call did not finish within the configured timeout."""

    code = ErrorCode.TOOL_TIMEOUT


class ProviderError(ParleyError):
    """The model backend failed (network, HTTP status, quota).

    Not retried inside the turn loop. Carries the turn context needed to
    reproduce the failure from logs.
    """

    code = ErrorCode.PROVIDER_UNAVAILABLE
    recoverable = False

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        model: Optional[str] = None,
        error_type: Optional[str] = None,
        chat_id: Optional[str] = None,
        step: Optional[int] = None,
        tools_attempted: Optional[List[str]] = None,
        **context: Any,
    ):
        if error_type == "timeout":
            code = ErrorCode.PROVIDER_TIMEOUT
        elif error_type == "rate_limit":
            code = ErrorCode.PROVIDER_RATE_LIMITED
        elif error_type == "invalid":
            code = ErrorCode.PROVIDER_RESPONSE_INVALID
        else:
            code = ErrorCode.PROVIDER_UNAVAILABLE

        ctx = {**context}
        if model:
            ctx["model"] = model
        super().__init__(message, details, code=code, **ctx)
        self.chat_id = chat_id
        self.step = step
        self.tools_attempted = list(tools_attempted or [])

    def with_turn_context(self, chat_id: Optional[str], step: int, tools_attempted: List[str]) -> "ProviderError":
        """Attach turn context after the fact (the client does not know it)."""
        self.chat_id = chat_id
        self.step = step
        self.tools_attempted = list(tools_attempted)
        return self


class ExternalServiceError(ParleyError):
    """Error with external services called by tools (SerpAPI, scraped sites, integrations)."""

    code = ErrorCode.EXTERNAL_NETWORK_ERROR
    recoverable = True

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        service: Optional[str] = None,
        status_code: Optional[int] = None,
        **context: Any,
    ):
        if service == "search":
            code = ErrorCode.EXTERNAL_SEARCH_FAILED
        elif service == "scrape":
            code = ErrorCode.EXTERNAL_SCRAPE_FAILED
        elif service == "integration":
            code = ErrorCode.EXTERNAL_INTEGRATION_FAILED
        else:
            code = ErrorCode.EXTERNAL_NETWORK_ERROR

        ctx = {**context}
        if service:
            ctx["service"] = service
        if status_code:
            ctx["status_code"] = status_code
        super().__init__(message, details, code=code, **ctx)


class PersistenceError(ParleyError):
    """A write or read against the chat store failed."""

    code = ErrorCode.PERSISTENCE_WRITE_FAILED
    recoverable = True

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        operation: Optional[str] = None,
        chat_id: Optional[str] = None,
        read: bool = False,
        **context: Any,
    ):
        code = ErrorCode.PERSISTENCE_READ_FAILED if read else ErrorCode.PERSISTENCE_WRITE_FAILED
        ctx = {**context}
        if operation:
            ctx["operation"] = operation
        if chat_id:
            ctx["chat_id"] = chat_id
        super().__init__(message, details, code=code, **ctx)


class ConversationStateError(ParleyError):
    """The requested edit/regenerate is not allowed in the chat's current state."""

    code = ErrorCode.CONVERSATION_INVALID_EDIT
    recoverable = True

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        chat_id: Optional[str] = None,
        message_id: Optional[str] = None,
        **context: Any,
    ):
        ctx = {**context}
        if chat_id:
            ctx["chat_id"] = chat_id
        if message_id:
            ctx["message_id"] = message_id
        super().__init__(message, details, **ctx)


class ConversationBusyError(ConversationStateError):
    """Another turn on the same chat is still in flight."""

    code = ErrorCode.CONVERSATION_BUSY


class InvalidEditTargetError(ConversationStateError):
    """The edit target is not an editable user message."""

    code = ErrorCode.CONVERSATION_INVALID_EDIT
