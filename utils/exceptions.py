"""
Settlement Exceptions
Typed errors raised by the settlement services and mapped to HTTP responses by the routes
"""

from typing import Any, Dict, Optional


class SettlementError(Exception):
    """Base exception for settlement operations"""

    http_status = 500
    default_code = "SETTLEMENT_ERROR"

    def __init__(self, message: str, error_code: str = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.default_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        payload = {"error": self.message, "code": self.error_code}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(SettlementError):
    """Malformed or missing fields and business rule violations"""
    http_status = 400
    default_code = "VALIDATION_ERROR"


class AuthorizationError(SettlementError):
    """Caller does not own the resource or lacks the role"""
    http_status = 403
    default_code = "FORBIDDEN"


class NotFoundError(SettlementError):
    http_status = 404
    default_code = "NOT_FOUND"


class ConflictError(SettlementError):
    """Duplicate transaction or already-accepted quotation"""
    http_status = 409
    default_code = "CONFLICT"


class StateError(SettlementError):
    """Operation is illegal for the current status"""
    http_status = 400
    default_code = "INVALID_STATE"

    def __init__(self, message: str, current_status: str = None, error_code: str = None,
                 details: Optional[Dict[str, Any]] = None):
        details = dict(details or {})
        if current_status is not None:
            details.setdefault("current_status", current_status)
        super().__init__(message, error_code, details)
        self.current_status = current_status


class AlreadyReleasedError(StateError):
    """Funds for the transaction were released by an earlier call"""
    default_code = "FUNDS_ALREADY_RELEASED"


class InternalError(SettlementError):
    """Persistence or external-service failure"""
    http_status = 500
    default_code = "INTERNAL_ERROR"
