"""
OEE Monitor - Custom Exception Classes

This module defines custom exception classes for the OEE Monitor core.
These exceptions provide structured error handling with proper HTTP status codes
and detailed error information for better API responses.
"""

from typing import Any, Dict, Optional
from fastapi import status
from pydantic import BaseModel as PydanticBaseModel
from pydantic import ValidationError as PydanticValidationError


class OEEMonitorException(Exception):
    """Base exception class for OEE Monitor."""

    def __init__(
        self,
        message: str,
        error_code: str = "OEE_MONITOR_ERROR",
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(OEEMonitorException):
    """Exception raised for validation failures. Never retried."""

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            error_code="VALIDATION_ERROR",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details=details
        )


class NotFoundError(OEEMonitorException):
    """Exception raised when a resource is not found. Never retried."""

    def __init__(self, resource: str = "Resource", resource_id: Optional[str] = None):
        message = f"{resource} not found"
        if resource_id:
            message += f" with ID: {resource_id}"

        super().__init__(
            message=message,
            error_code="NOT_FOUND",
            status_code=status.HTTP_404_NOT_FOUND,
            details={"resource": resource, "resource_id": resource_id}
        )


class ConflictError(OEEMonitorException):
    """Exception raised for resource conflicts."""

    def __init__(self, message: str = "Resource conflict", details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            error_code="CONFLICT",
            status_code=status.HTTP_409_CONFLICT,
            details=details
        )


class StoreUnavailableError(OEEMonitorException):
    """Exception raised when the primary store cannot serve a call.

    The gateway answers it with a single fallback attempt; callers only see it
    when they talk to a store directly.
    """

    def __init__(
        self,
        store: str,
        operation: str,
        message: str = "Store unavailable",
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message=f"{store}.{operation}: {message}",
            error_code="STORE_UNAVAILABLE",
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            details={"store": store, "operation": operation, **(details or {})}
        )


class TerminalStoreError(OEEMonitorException):
    """Exception raised when both the primary and the fallback store failed.

    ``fallback_error`` holds the fallback's exception, which is also chained as
    ``__cause__``.
    """

    def __init__(
        self,
        collection: str,
        operation: str,
        fallback_error: BaseException,
        details: Optional[Dict[str, Any]] = None
    ):
        self.fallback_error = fallback_error
        super().__init__(
            message=f"{collection}.{operation} failed on every store: {fallback_error}",
            error_code="TERMINAL_STORE_ERROR",
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            details={
                "collection": collection,
                "operation": operation,
                "fallback_error": str(fallback_error),
                **(details or {})
            }
        )


# Errors that are answers from a store rather than outages of it
DOMAIN_ERRORS = (ValidationError, NotFoundError)


def handle_validation_exception(e: Exception) -> ValidationError:
    """Convert pydantic validation exceptions to ValidationError."""
    errors = e.errors(include_url=False) if hasattr(e, "errors") else None
    details: Dict[str, Any] = {"original_error": str(e)}
    if errors is not None:
        details["errors"] = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
            for err in errors
        ]
    return ValidationError("Input validation failed", details)


def parse_input(model, data):
    """Validate caller input into a model, raising ValidationError on failure."""
    if isinstance(data, model):
        return data
    if isinstance(data, PydanticBaseModel):
        data = data.model_dump(exclude_unset=True)
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        raise handle_validation_exception(e) from e
