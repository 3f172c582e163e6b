"""
Error taxonomy for the escrow coordinator.

Every error carries the HTTP status the API layer returns for it and whether
the caller may simply retry.
"""

from typing import Optional


class EscrowError(Exception):
    """Base class for all coordinator errors."""
    status_code = 400
    code = "escrow_error"
    retryable = False

    def __init__(self, message: str, current_status: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.current_status = current_status

    def to_dict(self) -> dict:
        data = {
            "success": False,
            "error": self.message,
            "code": self.code,
            "retryable": self.retryable,
        }
        if self.current_status is not None:
            data["status"] = self.current_status
        return data


class PhaseMismatch(EscrowError):
    """Operation not valid in the current phase. Poll and retry."""
    status_code = 400
    code = "phase_mismatch"
    retryable = True


class RoleViolation(EscrowError):
    """Caller does not hold the role the operation requires."""
    status_code = 403
    code = "role_violation"


class CapabilityFailure(EscrowError):
    """Wallet capability failed or timed out."""
    status_code = 503
    code = "capability_failure"
    retryable = True


class NotFound(EscrowError):
    status_code = 404
    code = "not_found"


class InsufficientFunds(EscrowError):
    """Confirmed balance below the escrowed amount."""
    status_code = 400
    code = "insufficient_funds"


class InvalidRequest(EscrowError):
    status_code = 400
    code = "invalid_request"
