"""
Converse Bridge - Input validation helpers.

Provides validation functions for checking submissions and configuration
before any network or persistence effect takes place.
"""

import re
from typing import Any, Optional, Sequence

from .exceptions import ConfigurationError
from .exceptions import ValidationError as BridgeValidationError
from .models import ImageFormat


class InputValidationError(BridgeValidationError):
    """Raised when input validation fails before making a proxy request."""

    def __init__(self, message: str, field: Optional[str] = None, value: Any = None):
        super().__init__(message, status_code=None, response=None)
        self.field = field
        self.value = value


ValidationError = InputValidationError


def validate_required(value: Any, field_name: str) -> None:
    """Validate that a required field is not None or empty."""
    if value is None:
        raise ValidationError(f"{field_name} is required", field=field_name)
    if isinstance(value, str) and not value.strip():
        raise ValidationError(f"{field_name} cannot be empty", field=field_name, value=value)


def validate_positive_int(value: Optional[int], field_name: str) -> None:
    """Validate that a number is a positive integer."""
    if value is None:
        return

    if not isinstance(value, int) or isinstance(value, bool):
        raise ValidationError(
            f"{field_name} must be an integer",
            field=field_name,
            value=value
        )

    if value <= 0:
        raise ValidationError(
            f"{field_name} must be positive",
            field=field_name,
            value=value
        )


def validate_url(value: Optional[str], field_name: str) -> None:
    """Validate URL format."""
    if value is None:
        return

    url_pattern = re.compile(
        r'^https?://'
        r'(?:(?:[A-Z0-9](?:[A-Z0-9-]{0,61}[A-Z0-9])?\.)+[A-Z]{2,6}\.?|'
        r'localhost|'
        r'[A-Z0-9](?:[A-Z0-9-]{0,61}[A-Z0-9])?|'
        r'\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3})'
        r'(?::\d+)?'
        r'(?:/?|[/?]\S+)$',
        re.IGNORECASE
    )

    if not url_pattern.match(value):
        raise ValidationError(
            f"{field_name} must be a valid URL",
            field=field_name,
            value=value
        )


def validate_submission(
    user_text: Optional[str],
    attachments: Sequence[Any],
    model_id: Optional[str],
) -> None:
    """Validate a chat submission.

    An empty message or an unsupported image type is an input error; a
    missing model is a configuration error. All are raised before anything
    is sent or stored.
    """
    if not user_text and not attachments:
        raise ValidationError(
            "Please enter a message or attach images",
            field="user_text",
            value=user_text,
        )
    for attachment in attachments:
        mime_type = getattr(attachment, "mime_type", None) or ""
        try:
            ImageFormat.from_mime_type(mime_type)
        except ValueError:
            raise ValidationError(
                f"Unsupported image type: {mime_type or 'unknown'}",
                field="attachments",
                value=mime_type,
            ) from None
    if not model_id:
        raise ConfigurationError("Please select a model")
