"""
Error codes for Parley.

Provides a standardized taxonomy of error codes organized by category.
Use these codes consistently across all error responses.
"""

from enum import Enum


class ErrorCode(str, Enum):
    """Standardized error codes for Parley.

    Categories:
    - VALIDATION_*: Input validation errors
    - NOT_FOUND_*: Resource not found errors
    - TOOL_*: Tool invocation errors (fed back to the model, never fatal)
    - PROVIDER_*: Model provider errors (fatal for the turn)
    - EXTERNAL_*: External service errors raised inside tools
    - PERSISTENCE_*: Chat/message storage errors
    - CONVERSATION_*: Edit/regenerate state errors
    - INTERNAL_*: Internal/unexpected errors
    """

    # Validation errors (input checking)
    VALIDATION_MISSING_PARAM = "VALIDATION_MISSING_PARAM"
    VALIDATION_INVALID_TYPE = "VALIDATION_INVALID_TYPE"
    VALIDATION_OUT_OF_RANGE = "VALIDATION_OUT_OF_RANGE"
    VALIDATION_INVALID_FORMAT = "VALIDATION_INVALID_FORMAT"

    # Not found errors (missing resources)
    NOT_FOUND_CHAT = "NOT_FOUND_CHAT"
    NOT_FOUND_MESSAGE = "NOT_FOUND_MESSAGE"
    NOT_FOUND_MODEL = "NOT_FOUND_MODEL"

    # Tool errors (recovered inside the turn)
    TOOL_NOT_FOUND = "TOOL_NOT_FOUND"
    TOOL_EXECUTION_FAILED = "TOOL_EXECUTION_FAILED"
    TOOL_TIMEOUT = "TOOL_TIMEOUT"
    TOOL_INVALID_ARGUMENTS = "TOOL_INVALID_ARGUMENTS"

    # Provider errors (model backend)
    PROVIDER_UNAVAILABLE = "PROVIDER_UNAVAILABLE"
    PROVIDER_TIMEOUT = "PROVIDER_TIMEOUT"
    PROVIDER_RATE_LIMITED = "PROVIDER_RATE_LIMITED"
    PROVIDER_RESPONSE_INVALID = "PROVIDER_RESPONSE_INVALID"

    # External service errors
    EXTERNAL_SEARCH_FAILED = "EXTERNAL_SEARCH_FAILED"
    EXTERNAL_SCRAPE_FAILED = "EXTERNAL_SCRAPE_FAILED"
    EXTERNAL_INTEGRATION_FAILED = "EXTERNAL_INTEGRATION_FAILED"
    EXTERNAL_NETWORK_ERROR = "EXTERNAL_NETWORK_ERROR"

    # Persistence errors
    PERSISTENCE_WRITE_FAILED = "PERSISTENCE_WRITE_FAILED"
    PERSISTENCE_READ_FAILED = "PERSISTENCE_READ_FAILED"

    # Conversation state errors
    CONVERSATION_BUSY = "CONVERSATION_BUSY"
    CONVERSATION_INVALID_EDIT = "CONVERSATION_INVALID_EDIT"

    # Internal errors (unexpected failures)
    INTERNAL_UNEXPECTED = "INTERNAL_UNEXPECTED"
    INTERNAL_CONFIG_ERROR = "INTERNAL_CONFIG_ERROR"
    INTERNAL_STATE_ERROR = "INTERNAL_STATE_ERROR"
