"""
Floor Analytics - Custom Exception Classes

This module defines custom exception classes for the floor analytics engine.
These exceptions provide structured error handling with proper HTTP status codes
and detailed error information for the API failure envelope.
"""

from typing import Any, Dict, Optional
from fastapi import status


class FloorAnalyticsException(Exception):
    """Base exception class for the floor analytics engine."""

    def __init__(
        self,
        message: str,
        error_code: str = "FLOOR_ANALYTICS_ERROR",
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(FloorAnalyticsException):
    """Exception raised for validation failures."""

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            error_code="VALIDATION_ERROR",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details=details
        )


class NotFoundError(FloorAnalyticsException):
    """Exception raised when a resource is not found."""

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


class ConflictError(FloorAnalyticsException):
    """Exception raised for resource conflicts."""

    def __init__(self, message: str = "Resource conflict", details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            error_code="CONFLICT",
            status_code=status.HTTP_409_CONFLICT,
            details=details
        )


class DatabaseError(FloorAnalyticsException):
    """Exception raised for database operation failures."""

    def __init__(self, message: str = "Database operation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            error_code="DATABASE_ERROR",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            details=details
        )


class AggregationError(FloorAnalyticsException):
    """Exception raised when an availability aggregation could not be recomputed."""

    def __init__(self, machine_id: str, message: str = "Availability aggregation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=f"Machine {machine_id}: {message}",
            error_code="AGGREGATION_ERROR",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            details={"machine_id": machine_id, **(details or {})}
        )


class AnalyticsError(FloorAnalyticsException):
    """Exception raised for analytics computation errors."""

    def __init__(self, message: str = "Analytics computation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            error_code="ANALYTICS_ERROR",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            details=details
        )


# Utility functions for exception handling
def handle_database_exception(e: Exception) -> FloorAnalyticsException:
    """Convert database exceptions to FloorAnalyticsException."""
    if "duplicate key" in str(e).lower():
        return ConflictError("Resource already exists", {"original_error": str(e)})
    elif "foreign key" in str(e).lower():
        return ValidationError("Invalid reference to related resource", {"original_error": str(e)})
    elif "not null" in str(e).lower():
        return ValidationError("Required field is missing", {"original_error": str(e)})
    else:
        return DatabaseError("Database operation failed", {"original_error": str(e)})


def handle_validation_exception(e: Exception) -> ValidationError:
    """Convert validation exceptions to ValidationError."""
    return ValidationError("Input validation failed", {"original_error": str(e)})
