"""
Custom Exceptions for Caption Crafter

Hierarchical exception classes for proper error handling across layers.
"""

from typing import Optional, Dict, Any


class CaptionCrafterError(Exception):
    """Base exception for all Caption Crafter errors."""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        original_error: Optional[Exception] = None
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.original_error = original_error

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "details": self.details
        }


class ValidationError(CaptionCrafterError):
    """Raised when input validation fails."""
    pass


class DatabaseError(CaptionCrafterError):
    """Raised when database operations fail."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        table: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if operation:
            details["operation"] = operation
        if table:
            details["table"] = table
        super().__init__(message, details, original_error)


class NotFoundError(DatabaseError):
    """Raised when a requested resource is not found."""
    pass


class StoreUnavailable(DatabaseError):
    """Raised when the persistent usage store cannot be reached."""
    pass


class WebhookError(CaptionCrafterError):
    """Base class for commerce webhook failures."""
    pass


class InvalidWebhookPayload(WebhookError):
    """Raised when a webhook payload lacks required fields or is malformed."""

    def __init__(
        self,
        message: str,
        event_type: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if event_type:
            details["event_type"] = event_type
        super().__init__(message, details, original_error)


class SignatureInvalid(WebhookError):
    """Raised when a webhook signature is missing or does not verify."""
    pass


class AIServiceError(CaptionCrafterError):
    """Raised when AI (Gemini) operations fail."""

    def __init__(
        self,
        message: str,
        model: Optional[str] = None,
        operation: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if model:
            details["model"] = model
        if operation:
            details["operation"] = operation
        super().__init__(message, details, original_error)


class CaptionGenerationError(AIServiceError):
    """Raised when no captions could be produced for a request."""
    pass


class CommerceServiceError(CaptionCrafterError):
    """Raised when calls to the Whop API fail."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if status_code:
            details["status_code"] = status_code
        super().__init__(message, details, original_error)


class ConfigurationError(CaptionCrafterError):
    """Raised when configuration is missing or invalid."""

    def __init__(
        self,
        message: str,
        missing_keys: Optional[list] = None,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if missing_keys:
            details["missing_keys"] = missing_keys
        super().__init__(message, details, original_error)
