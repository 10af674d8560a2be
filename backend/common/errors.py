"""
Error taxonomy for the prioritization and billing services.

Services raise subclasses of ``OpsError``; API views translate them into the
``{"success": false, "error_code": ..., "message": ...}`` envelope with the
matching HTTP status.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Error codes for API responses."""
    SUCCESS = "SUCCESS"
    ERR_NOT_FOUND = "ERR_NOT_FOUND"
    ERR_VALIDATION = "ERR_VALIDATION"
    ERR_INVALID_LIMIT = "ERR_INVALID_LIMIT"
    ERR_UNSUPPORTED_FREQUENCY = "ERR_UNSUPPORTED_FREQUENCY"
    ERR_INVALID_STATE = "ERR_INVALID_STATE"
    ERR_OBLIGATION_NOT_ACTIVE = "ERR_OBLIGATION_NOT_ACTIVE"
    ERR_EXTERNAL_SYNC = "ERR_EXTERNAL_SYNC"


class OpsError(Exception):
    """Base class for errors surfaced to API callers."""

    code = ErrorCode.ERR_VALIDATION
    http_status = 400

    def __init__(
        self,
        message: str,
        code: Optional[ErrorCode] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details = details or {}

    def to_dict(self) -> Dict:
        result = {
            'success': False,
            'error_code': self.code.value,
            'message': self.message
        }
        if self.details:
            result['details'] = self.details
        return result


class NotFoundError(OpsError):
    """Record does not exist or belongs to another owner."""
    code = ErrorCode.ERR_NOT_FOUND
    http_status = 404


class ValidationFailed(OpsError):
    """Input rejected before any write."""
    code = ErrorCode.ERR_VALIDATION
    http_status = 400


class InvalidStateTransition(OpsError):
    """Requested lifecycle change is not allowed from the current state."""
    code = ErrorCode.ERR_INVALID_STATE
    http_status = 409


class ExternalSyncError(OpsError):
    """
    The invoicing provider call failed or timed out.

    ``message`` holds the provider's own error text so it can be shown to the
    user as-is; ``status_code`` is the provider's HTTP status when a response
    was received at all.
    """
    code = ErrorCode.ERR_EXTERNAL_SYNC
    http_status = 502

    def __init__(self, message: str, status_code: Optional[int] = None):
        details = {'provider_status': status_code} if status_code is not None else None
        super().__init__(message, details=details)
        self.status_code = status_code
