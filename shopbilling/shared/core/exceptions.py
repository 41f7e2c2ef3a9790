from typing import Any, Dict, Optional


class ShopBillingException(Exception):
    """Base exception for all shop billing errors."""

    def __init__(
        self,
        message: str,
        code: str = "internal_error",
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}


class ConfigurationError(ShopBillingException):
    """Raised when application configuration is invalid or missing."""

    def __init__(
        self,
        message: str,
        code: str = "config_error",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, code=code, status_code=500, details=details)


class ResourceNotFoundError(ShopBillingException):
    """Raised when a requested invoice or subscription does not exist."""

    def __init__(
        self,
        message: str,
        code: str = "not_found",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, code=code, status_code=404, details=details)


# The admin API and the docs call this a NotFoundError.
NotFoundError = ResourceNotFoundError


class ValidationError(ShopBillingException):
    """Raised when required operator input is missing or too short."""

    def __init__(
        self,
        message: str,
        code: str = "validation_error",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, code=code, status_code=400, details=details)


class InvalidStateError(ShopBillingException):
    """Raised when the record's current status forbids the requested operation."""

    def __init__(
        self,
        message: str,
        current_status: str | None = None,
        code: str = "invalid_state",
        details: Optional[Dict[str, Any]] = None,
    ):
        merged = dict(details or {})
        if current_status is not None:
            merged.setdefault("current_status", current_status)
        super().__init__(message, code=code, status_code=409, details=merged)
        self.current_status = current_status


class ActivationError(ShopBillingException):
    """Raised when a paid invoice could not be applied to its subscription.

    Recoverable: the invoice stays paid and activation can be retried or
    force-activated later.
    """

    def __init__(
        self,
        message: str,
        code: str = "activation_failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, code=code, status_code=409, details=details)


class ExternalAPIError(ShopBillingException):
    """Raised when an external collaborator (SMTP, event sink) fails."""

    def __init__(
        self,
        message: str,
        code: str = "external_api_error",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, code=code, status_code=502, details=details)


class OperationTimeoutError(ShopBillingException):
    """Raised when a bounded payment operation exceeds its time budget."""

    def __init__(
        self,
        message: str,
        code: str = "timeout_error",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, code=code, status_code=504, details=details)
