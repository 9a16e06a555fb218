"""
Custom Exception Hierarchy

Handlers and services raise these; the webhook never lets one reach Meta,
and the API exception handlers turn them into `{"error": {...}}` bodies.
"""
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for API responses"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    NOT_FOUND = "ERR_1002"
    BUSINESS_RULE_VIOLATION = "ERR_1010"

    # Fish marketplace errors (4xxx)
    CATCH_NOT_FOUND = "ERR_4001"
    CATCH_NOT_AVAILABLE = "ERR_4002"
    CATCH_DAILY_LIMIT = "ERR_4003"
    SUBSCRIPTION_LIMIT = "ERR_4004"
    INVALID_RADIUS = "ERR_4005"

    # External service errors (5xxx)
    WHATSAPP_ERROR = "ERR_5002"
    EXTERNAL_SERVICE_UNAVAILABLE = "ERR_5003"

    # State machine errors (6xxx)
    INVALID_STATE_TRANSITION = "ERR_6001"
    STALE_SESSION = "ERR_6004"


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


class ValidationException(AppException):
    """Raised when input validation fails"""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        details: dict[str, Any] | None = None,
        error_code: ErrorCode = ErrorCode.VALIDATION_ERROR,
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=400,
            details=details
        )
        if field:
            self.details["field"] = field


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


class BusinessRuleException(AppException):
    """Raised when a request is well-formed but breaks a business rule (limits, ownership)"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.BUSINESS_RULE_VIOLATION,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=409,
            details=details
        )


class InvalidRadiusError(ValidationException):
    """Raised when a subscription radius is outside the allowed bounds"""

    def __init__(self, radius_km: Any, min_km: int, max_km: int):
        super().__init__(
            message=f"Radius must be a whole number between {min_km} and {max_km} km, got {radius_km}",
            field="radius_km",
            details={"radius_km": radius_km, "min_km": min_km, "max_km": max_km},
            error_code=ErrorCode.INVALID_RADIUS,
        )


class CatchNotAvailableError(BusinessRuleException):
    """Raised when acting on a catch that is sold out or expired"""

    def __init__(self, catch_id: int, status: str):
        super().__init__(
            message=f"Catch {catch_id} is not available (status '{status}')",
            error_code=ErrorCode.CATCH_NOT_AVAILABLE,
            details={"catch_id": catch_id, "status": status}
        )


class ExternalServiceException(AppException):
    """Base exception for external service errors"""

    def __init__(
        self,
        service_name: str,
        message: str,
        error_code: ErrorCode = ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=503,
            details=details
        )
        self.details["service"] = service_name


class WhatsAppError(ExternalServiceException):
    """Raised when WhatsApp API fails"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            service_name="whatsapp",
            message=f"WhatsApp API error: {message}",
            error_code=ErrorCode.WHATSAPP_ERROR,
            details=details
        )


class CircuitBreakerOpenError(ExternalServiceException):
    """Raised when circuit breaker is open"""

    def __init__(self, service_name: str, retry_after_seconds: float):
        super().__init__(
            service_name=service_name,
            message=f"{service_name} is temporarily unavailable (circuit breaker open)",
            error_code=ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
            details={"retry_after_seconds": retry_after_seconds}
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


class StaleSessionError(StateMachineException):
    """Raised when a session row changed between read and compare-and-swap write"""

    def __init__(self, session_id: int, expected_version: int):
        super().__init__(
            message=f"Session {session_id} was modified concurrently (expected version {expected_version})",
            error_code=ErrorCode.STALE_SESSION,
            details={"session_id": session_id, "expected_version": expected_version}
        )


class InvalidStateTransitionError(StateMachineException):
    """Raised when a transition targets a step the flow does not declare"""

    def __init__(self, flow: str, target_step: str):
        super().__init__(
            message=f"Flow '{flow}' has no step '{target_step}'",
            error_code=ErrorCode.INVALID_STATE_TRANSITION,
            details={"flow": flow, "target_step": target_step}
        )
