"""
Exceptions - 异常定义
Error taxonomy for the payroll ledger.

Every service in this package raises one of these instead of returning
status tuples. Callers can catch ``LedgerError`` to handle any of them.
"""

from datetime import datetime
from typing import Optional


class LedgerError(Exception):
    """Base class for all payroll ledger errors."""


class ValidationError(LedgerError):
    """Raised for bad input shape (negative amounts, inverted window, duplicates)."""

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        self.message = message
        super().__init__(f"{field}: {message}" if field else message)


class NotFoundError(LedgerError):
    """Raised when a referenced entity does not exist."""


class EmployeeNotFound(NotFoundError):
    def __init__(self, employee_no: str):
        self.employee_no = employee_no
        super().__init__(f"Employee {employee_no} not found")


class RecordNotFound(NotFoundError):
    def __init__(self, employee_no: str, record_id: int):
        self.employee_no = employee_no
        self.record_id = record_id
        super().__init__(f"Salary record {record_id} not found for employee {employee_no}")


class InvalidStateTransition(LedgerError):
    """Raised when an invalid state transition is attempted."""

    def __init__(self, from_state: str, to_state: str, reason: Optional[str] = None):
        self.from_state = from_state
        self.to_state = to_state
        self.reason = reason
        msg = f"Invalid transition from '{from_state}' to '{to_state}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


# =============================================================================
# Update authorization (OTP) errors
# =============================================================================

class WorkflowError(LedgerError):
    """Base class for salary update authorization errors."""


class NoPendingUpdate(WorkflowError):
    def __init__(self, employee_no: str):
        self.employee_no = employee_no
        super().__init__(f"No pending salary update for employee {employee_no}")


class ExpiredChallenge(WorkflowError):
    """The challenge window has closed; a new code must be requested."""

    def __init__(self, employee_no: str, expired_at: datetime):
        self.employee_no = employee_no
        self.expired_at = expired_at
        super().__init__(
            f"Challenge for employee {employee_no} expired at {expired_at.isoformat()}"
        )


class InvalidCode(WorkflowError):
    """The supplied code does not match; the caller may re-enter it."""

    def __init__(self, employee_no: str, attempts: int, remaining: int):
        self.employee_no = employee_no
        self.attempts = attempts
        self.remaining = remaining
        super().__init__(
            f"Invalid code for employee {employee_no} "
            f"({attempts} failed, {remaining} remaining)"
        )


class EmailNotVerified(WorkflowError):
    """Challenge codes are only issued to a verified address."""

    def __init__(self, employee_no: str):
        self.employee_no = employee_no
        super().__init__(f"Email for employee {employee_no} is not verified")


class InvalidVerificationToken(LedgerError):
    """Unknown, used or expired email verification token."""


class TooManyAttempts(WorkflowError):
    def __init__(self, employee_no: str, retry_after: int):
        self.employee_no = employee_no
        self.retry_after = retry_after
        super().__init__(
            f"Too many invalid codes for employee {employee_no}, retry in {retry_after}s"
        )


# =============================================================================
# Identity allocation errors
# =============================================================================

class AllocationConflict(LedgerError):
    """An allocated identity collided with an existing one at commit time."""

    def __init__(self, employee_no: str):
        self.employee_no = employee_no
        super().__init__(f"Identity {employee_no} is already assigned")


class IdentityAllocationError(LedgerError):
    """Atomic allocation is unavailable; employee creation is rejected."""
