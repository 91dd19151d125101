"""
Custom Exceptions for the settlement service

This module defines the exception taxonomy used throughout the application.
Every exception carries enough detail for a caller to tell "nothing happened,
safe to retry" apart from "escrow call outcome unknown, verify first".
"""

from typing import Any, Dict, List, Optional
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for the application"""
    # General errors
    INTERNAL_ERROR = "INTERNAL_ERROR"
    RESOURCE_NOT_FOUND = "RESOURCE_NOT_FOUND"

    # Authentication & Authorization
    AUTHENTICATION_FAILED = "AUTHENTICATION_FAILED"
    AUTHORIZATION_FAILED = "AUTHORIZATION_FAILED"
    TOKEN_INVALID = "TOKEN_INVALID"
    SIGNATURE_INVALID = "SIGNATURE_INVALID"

    # Validation errors
    VALIDATION_ERROR = "VALIDATION_ERROR"

    # Database errors
    DATABASE_ERROR = "DATABASE_ERROR"
    DUPLICATE_ENTRY = "DUPLICATE_ENTRY"

    # Business logic errors
    CONFLICT = "CONFLICT"
    ALREADY_CONFIRMED = "ALREADY_CONFIRMED"
    ILLEGAL_TRANSITION = "ILLEGAL_TRANSITION"

    # External service errors
    ESCROW_CALL_FAILED = "ESCROW_CALL_FAILED"
    ESCROW_OUTCOME_UNKNOWN = "ESCROW_OUTCOME_UNKNOWN"
    RECONCILIATION_MISMATCH = "RECONCILIATION_MISMATCH"


class BaseAppException(Exception):
    """
    Base exception class for all application exceptions.

    Provides consistent error handling across the application with
    structured error information.
    """

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        details: Optional[Dict[str, Any]] = None,
        status_code: int = 500
    ):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        self.status_code = status_code
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary format"""
        return {
            "error": {
                "message": self.message,
                "code": self.error_code.value,
                "details": self.details,
                "type": self.__class__.__name__
            }
        }

    def __str__(self) -> str:
        return f"{self.error_code.value}: {self.message}"

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(message='{self.message}', error_code='{self.error_code.value}')"


# ========================================
# Request Exceptions
# ========================================

class ValidationError(BaseAppException):
    """Exception raised when input validation fails. No side effects were applied."""

    def __init__(
        self,
        message: str = "Validation failed",
        field_errors: Optional[Dict[str, List[str]]] = None,
        error_code: ErrorCode = ErrorCode.VALIDATION_ERROR,
        status_code: int = 422
    ):
        details = {"field_errors": field_errors} if field_errors else {}
        super().__init__(message, error_code, details, status_code)


class ResourceNotFoundError(BaseAppException):
    """Exception raised when a requested resource is not found"""

    def __init__(
        self,
        resource_type: str = "Resource",
        resource_id: Optional[Any] = None,
        message: Optional[str] = None
    ):
        if not message:
            message = f"{resource_type} not found"
            if resource_id is not None:
                message += f" (ID: {resource_id})"

        details = {
            "resource_type": resource_type,
            "resource_id": str(resource_id) if resource_id is not None else None
        }
        super().__init__(message, ErrorCode.RESOURCE_NOT_FOUND, details, 404)


class AuthenticationError(BaseAppException):
    """Exception raised when the caller cannot be identified"""

    def __init__(
        self,
        message: str = "Authentication required",
        error_code: ErrorCode = ErrorCode.AUTHENTICATION_FAILED,
    ):
        super().__init__(message, error_code, {}, 401)


class AuthorizationError(BaseAppException):
    """Exception raised when the caller may not act on the resource"""

    def __init__(
        self,
        message: str = "Not allowed to perform this action",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, ErrorCode.AUTHORIZATION_FAILED, details, 403)


# ========================================
# Settlement Exceptions
# ========================================

class ConflictError(BaseAppException):
    """Duplicate confirmation or a state change that the current state forbids"""

    def __init__(
        self,
        message: str = "Conflict with current state",
        error_code: ErrorCode = ErrorCode.CONFLICT,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, error_code, details, 409)


class IllegalTransition(ConflictError):
    """Guarded allocation transition rejected by the conditional write"""

    def __init__(
        self,
        allocation_id: str,
        current_status: Optional[str],
        target_status: str,
    ):
        self.allocation_id = allocation_id
        self.current_status = current_status
        self.target_status = target_status
        super().__init__(
            f"Allocation {allocation_id} cannot move from {current_status} to {target_status}",
            ErrorCode.ILLEGAL_TRANSITION,
            {
                "allocation_id": allocation_id,
                "current_status": current_status,
                "target_status": target_status,
            },
        )


class ExternalCallFailure(BaseAppException):
    """
    Escrow call failed or timed out.

    ``retry_safe`` is True when the ledger definitely did not apply the call.
    ``outcome_unknown`` is True on timeouts: the caller must check the
    allocation status before retrying.
    """

    def __init__(
        self,
        message: str = "Escrow call failed",
        outcome_unknown: bool = False,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.outcome_unknown = outcome_unknown
        self.retry_safe = not outcome_unknown
        merged = {
            "retry_safe": self.retry_safe,
            "outcome_unknown": outcome_unknown,
        }
        merged.update(details or {})
        super().__init__(
            message,
            ErrorCode.ESCROW_OUTCOME_UNKNOWN if outcome_unknown else ErrorCode.ESCROW_CALL_FAILED,
            merged,
            504 if outcome_unknown else 502,
        )


class ReconciliationMismatch(BaseAppException):
    """Ledger event references an allocation the application does not know"""

    def __init__(self, allocation_id: str, event_kind: Optional[str] = None):
        self.allocation_id = allocation_id
        super().__init__(
            f"No allocation matches on-chain reference {allocation_id}",
            ErrorCode.RECONCILIATION_MISMATCH,
            {"allocation_id": allocation_id, "event_kind": event_kind},
            422,
        )


class AuthenticityFailure(BaseAppException):
    """Inbound callback signature did not verify"""

    def __init__(self, message: str = "Invalid signature"):
        super().__init__(message, ErrorCode.SIGNATURE_INVALID, {}, 401)


# ========================================
# Data Access Exceptions
# ========================================

class RepositoryError(BaseAppException):
    """Exception raised when a data access operation fails"""

    def __init__(self, message: str = "Database operation failed"):
        super().__init__(message, ErrorCode.DATABASE_ERROR, {}, 500)


class EntityAlreadyExistsError(RepositoryError):
    """Unique constraint violated on insert"""

    def __init__(self, message: str = "Entity already exists"):
        super().__init__(message)
        self.error_code = ErrorCode.DUPLICATE_ENTRY
        self.status_code = 409


__all__ = [
    "ErrorCode",
    "BaseAppException",
    "ValidationError",
    "ResourceNotFoundError",
    "AuthenticationError",
    "AuthorizationError",
    "ConflictError",
    "IllegalTransition",
    "ExternalCallFailure",
    "ReconciliationMismatch",
    "AuthenticityFailure",
    "RepositoryError",
    "EntityAlreadyExistsError",
]
