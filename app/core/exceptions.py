"""
Custom Exception Hierarchy

Structured exceptions for the conversation engine. Lower layers (state machine,
cart, session store) return result objects for expected failures; these
exceptions cover configuration faults, missing resources and API-facing errors.
"""
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for API responses"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    NOT_FOUND = "ERR_1002"

    # Order errors (2xxx)
    ORDER_NOT_FOUND = "ERR_2003"

    # Storage errors (5xxx)
    STORAGE_UNAVAILABLE = "ERR_5001"

    # State machine errors (6xxx)
    SESSION_NOT_FOUND = "ERR_6002"
    STATE_MACHINE_MISCONFIGURED = "ERR_6004"


class AppException(Exception):
    """Base exception for all application errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        details: dict[str, Any] | None = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API response"""
        return {
            "error": {
                "code": self.error_code.value,
                "message": self.message,
                "details": self.details
            }
        }


class NotFoundException(AppException):
    """Raised when a requested resource is not found"""

    def __init__(
        self,
        resource: str,
        identifier: Any,
        error_code: ErrorCode = ErrorCode.NOT_FOUND
    ):
        super().__init__(
            message=f"{resource} not found: {identifier}",
            error_code=error_code,
            status_code=404,
            details={"resource": resource, "identifier": str(identifier)}
        )


class SessionNotFoundError(NotFoundException):
    """Raised when no live conversation session exists for a phone number"""

    def __init__(self, masked_phone: str):
        super().__init__(
            resource="Conversation session",
            identifier=masked_phone,
            error_code=ErrorCode.SESSION_NOT_FOUND,
        )


class OrderNotFoundError(NotFoundException):
    """Raised when an order id does not resolve"""

    def __init__(self, order_id: int):
        super().__init__(
            resource="Order",
            identifier=order_id,
            error_code=ErrorCode.ORDER_NOT_FOUND,
        )


class StorageError(AppException):
    """Raised by storage tiers when an operation fails; retried by the caller"""

    def __init__(self, operation: str, tier: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=f"Storage operation '{operation}' failed on {tier}",
            error_code=ErrorCode.STORAGE_UNAVAILABLE,
            status_code=503,
            details={"operation": operation, "tier": tier, **(details or {})}
        )


class StateMachineException(AppException):
    """Base exception for state machine errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=400,
            details=details
        )


class StateMachineConfigurationError(StateMachineException):
    """Raised at startup when the state/transition tables are inconsistent"""

    def __init__(self, errors: list[str]):
        super().__init__(
            message="State machine configuration is invalid: " + "; ".join(errors),
            error_code=ErrorCode.STATE_MACHINE_MISCONFIGURED,
            details={"errors": errors}
        )
        self.status_code = 500
        self.errors = errors
