"""
Converse Bridge - Custom exceptions for error handling.
"""

from typing import Any, Optional


class ConverseBridgeError(Exception):
    """Base exception for all Converse Bridge errors."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.response = response


class ValidationError(ConverseBridgeError):
    """Raised when a submission or request fails validation."""

    def __init__(self, message: str, errors: Optional[list[Any]] = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.errors = errors or []


class ConfigurationError(ConverseBridgeError):
    """Raised when required configuration (model, credentials) is missing."""

    pass


class RequestError(ConverseBridgeError):
    """Raised when a proxy request fails after retries or with a non-transient error."""

    pass


class MalformedStreamError(RequestError):
    """Raised when a response stream stays malformed after the silent retry."""

    pass


class OperationCancelledError(Exception):
    """Raised inside a turn when its cancellation token fires.

    Not a ConverseBridgeError: cancellation is never reported as a failure.
    """

    pass
