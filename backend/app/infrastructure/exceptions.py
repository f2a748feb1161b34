"""
Custom Exceptions for Meal Saver

Hierarchical exception classes for proper error handling across layers.
"""

from typing import Optional, Dict, Any, List


class MealSaverError(Exception):
    """Base exception for all Meal Saver backend errors."""

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
            "error": self.message,
            "type": self.__class__.__name__,
            "details": self.details
        }


class ValidationError(MealSaverError):
    """Raised when input validation fails."""
    pass


class DatabaseError(MealSaverError):
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


class DuplicateError(DatabaseError):
    """Raised when attempting to create a duplicate resource."""
    pass


class BillingProviderError(MealSaverError):
    """Raised when a Stripe API call fails. The message is Stripe's own."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if operation:
            details["operation"] = operation
        super().__init__(message, details, original_error)


class WebhookVerificationError(MealSaverError):
    """Raised when a webhook signature cannot be verified."""

    def __init__(
        self,
        provider: str,
        original_error: Optional[Exception] = None
    ):
        super().__init__(
            f"{provider} webhook verification failed",
            {"provider": provider},
            original_error,
        )


class SubscriptionCancellationError(MealSaverError):
    """
    Raised when one or more Stripe subscriptions could not be cancelled
    during account deletion. The profile must stay intact in that case.
    """

    def __init__(
        self,
        failed_subscriptions: List[str],
        original_errors: Optional[Dict[str, str]] = None
    ):
        super().__init__(
            "Failed to cancel Stripe subscriptions",
            {"failed_subscriptions": failed_subscriptions},
        )
        self.failed_subscriptions = failed_subscriptions
        self.original_errors = original_errors or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.message,
            "failed_subscriptions": self.failed_subscriptions,
        }


class ConfigurationError(MealSaverError):
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
