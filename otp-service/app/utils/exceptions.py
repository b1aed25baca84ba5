from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NO_DELIVERY_METHOD = "NO_DELIVERY_METHOD"
    DELIVERY_FAILED = "DELIVERY_FAILED"
    NOT_FOUND = "NOT_FOUND"
    EXPIRED_OR_NOT_FOUND = "EXPIRED_OR_NOT_FOUND"
    ALREADY_USED = "ALREADY_USED"
    MAX_ATTEMPTS_EXCEEDED = "MAX_ATTEMPTS_EXCEEDED"
    RATE_LIMITED = "RATE_LIMITED"


class OtpError(Exception):
    """Caller-facing failure of an OTP operation"""

    def __init__(self, code: ErrorCode, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": False,
            "code": self.code.value,
            "message": self.message,
            "details": self.details,
        }


class StoreUnavailableError(Exception):
    """Raised by a record store when its backing storage cannot be reached"""
