"""
Error types and user-facing failure messages.

Exceptions carry the technical detail for logs. Chat users only ever see
the fixed text from USER_MESSAGES, never raw engine or storage errors.
"""

from enum import StrEnum


class BridgeError(Exception):
    """Base class for all bridge errors."""


class ConfigError(BridgeError):
    """Configuration could not be loaded or validated. Fatal at startup."""


class DockerUnavailableError(BridgeError):
    """The container engine is not reachable. Fatal at startup."""


class ContainerError(BridgeError):
    """A container engine call failed."""


class StoreError(BridgeError):
    """A storage operation failed."""


class ErrorCode(StrEnum):
    """Categories of request failure surfaced to chat users."""

    CONTAINER_SETUP_FAILED = "container_setup_failed"
    SESSION_ERROR = "session_error"
    PROCESSING_ERROR = "processing_error"
    TIMEOUT = "timeout"
    BUSY = "busy"
    INSUFFICIENT_PERMISSION = "insufficient_permission"
    BLOCKED_CONTENT = "blocked_content"


USER_MESSAGES: dict[ErrorCode, str] = {
    ErrorCode.CONTAINER_SETUP_FAILED: "Container setup failed, please try again later",
    ErrorCode.SESSION_ERROR: "Session error, please try again",
    ErrorCode.PROCESSING_ERROR: "Processing error, please try again later",
    ErrorCode.TIMEOUT: "Request timed out",
    ErrorCode.BUSY: "Previous message is still being processed, please wait...",
    ErrorCode.INSUFFICIENT_PERMISSION: "Insufficient permission for this command",
    ErrorCode.BLOCKED_CONTENT: "Message contains a disallowed operation",
}


def user_message(code: ErrorCode) -> str:
    """Get the chat-safe message for an error code."""
    return USER_MESSAGES[code]
