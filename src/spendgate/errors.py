"""
spendgate error types.

Specific exceptions for different failure modes, enabling callers
to handle each case appropriately (retry, abort, surface, etc.).
Every error carries a stable ``code`` used on the wire.
"""

from __future__ import annotations

from typing import Any, Optional


class SpendGateError(Exception):
    """Base error for all spendgate operations."""

    code = "spendgate_error"


# Validation errors: rejected synchronously, never retried
class ValidationError(SpendGateError):
    """Input failed validation at the boundary."""

    code = "validation_error"


class InvalidBoundsError(ValidationError):
    """Spending bounds are missing, non-integer, or inconsistent."""

    code = "invalid_bounds"


class InvalidAmountError(ValidationError):
    """Amount is not a positive integer of microcredits."""

    code = "invalid_amount"


class InvalidAddressError(ValidationError):
    """Address does not match a supported format."""

    code = "invalid_address"


class InvalidSignersError(ValidationError):
    """Signer slots are malformed, duplicated, or too few."""

    code = "invalid_signers"


class InvalidThresholdError(ValidationError):
    """required_sigs is outside 1..3."""

    code = "invalid_threshold"


# Policy errors
class PolicyViolationError(SpendGateError):
    """Proposed session does not fit the referenced policy."""

    code = "policy_violation"


class ExceedsPolicyBoundError(PolicyViolationError):
    """A session bound exceeds the matching policy bound."""

    code = "exceeds_policy_bound"

    def __init__(self, field: str, value: int, limit: int):
        self.field = field
        self.value = value
        self.limit = limit
        super().__init__(f"{field} {value} exceeds policy limit {limit}")


# Lookup errors
class NotFoundError(SpendGateError):
    """Referenced entity does not exist."""

    code = "not_found"


class UnknownSessionError(NotFoundError):
    code = "unknown_session"


class UnknownPolicyError(NotFoundError):
    code = "unknown_policy"


class UnknownEscrowError(NotFoundError):
    code = "unknown_escrow"


# State conflicts: domain decisions, never retried
class StateConflictError(SpendGateError):
    """Operation is not legal in the entity's current state."""

    code = "state_conflict"


class SessionNotActiveError(StateConflictError):
    code = "session_not_active"


NotActiveError = SessionNotActiveError


class SessionExpiredError(SessionNotActiveError):
    code = "session_expired"


class NotPausedError(StateConflictError):
    code = "not_paused"


class AlreadyClosedError(StateConflictError):
    code = "already_closed"


class NotLockedError(StateConflictError):
    code = "not_locked"


class AlreadyApprovedError(StateConflictError):
    code = "already_approved"


class NotASignerError(StateConflictError):
    code = "not_a_signer"


class DuplicateSessionError(StateConflictError):
    code = "duplicate_session"


class DuplicateEscrowError(StateConflictError):
    code = "duplicate_escrow"


class DuplicatePolicyError(StateConflictError):
    code = "duplicate_policy"


# Spend limit errors
class LimitError(SpendGateError):
    """Base error for spend limit violations."""

    code = "limit_exceeded"


class PerRequestCapExceededError(LimitError):
    """Amount exceeds the session's per-request cap."""

    code = "per_request_cap_exceeded"

    def __init__(self, amount: int, limit: int):
        self.amount = amount
        self.limit = limit
        super().__init__(f"Amount {amount} exceeds per-request limit {limit}")


class BudgetExceededError(LimitError):
    """Amount would push spent above max_total."""

    code = "budget_exceeded"

    def __init__(self, amount: int, remaining: int):
        self.amount = amount
        self.remaining = remaining
        super().__init__(f"Amount {amount} exceeds remaining session budget {remaining}")


class RateLimitExceededError(LimitError):
    """Session's current rate window is full."""

    code = "rate_limit_exceeded"

    def __init__(self, message: str, retry_after: float = 1.0, reset_at: Optional[float] = None):
        self.retry_after = retry_after
        self.reset_at = reset_at
        super().__init__(message)


class ExceedsSpentError(LimitError):
    """Settlement would exceed what the session has spent."""

    code = "exceeds_spent"

    def __init__(self, amount: int, unsettled: int):
        self.amount = amount
        self.unsettled = unsettled
        super().__init__(f"Settlement {amount} exceeds unsettled spend {unsettled}")


# Network errors
class NetworkError(SpendGateError):
    """Network-level failures (DNS, protocol errors, etc.)."""

    code = "network_error"


class MaxRetriesExceededError(NetworkError):
    """Transient failures persisted through the whole retry budget."""

    code = "max_retries_exceeded"

    def __init__(self, message: str, attempts: int, last_response: Any = None):
        self.attempts = attempts
        self.last_response = last_response
        super().__init__(message)


class RequestCancelledError(NetworkError):
    """Caller cancelled the request; no further attempts were made."""

    code = "request_cancelled"


class FacilitatorError(SpendGateError):
    """Facilitator returned an error outside the domain taxonomy."""

    code = "facilitator_error"

    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        super().__init__(f"Facilitator error ({status_code}): {message}")


# Compound operations
class PartialFailureError(SpendGateError):
    """First phase of a compound operation succeeded, a later phase failed."""

    code = "partial_failure"

    def __init__(self, phase: str, completed: dict, cause: Exception):
        self.phase = phase
        self.completed = completed
        self.cause = cause
        super().__init__(f"Phase '{phase}' failed after earlier phases succeeded: {cause}")


ERRORS_BY_CODE: dict[str, type[SpendGateError]] = {
    cls.code: cls
    for cls in (
        ValidationError,
        InvalidBoundsError,
        InvalidAmountError,
        InvalidAddressError,
        InvalidSignersError,
        InvalidThresholdError,
        PolicyViolationError,
        NotFoundError,
        UnknownSessionError,
        UnknownPolicyError,
        UnknownEscrowError,
        StateConflictError,
        SessionNotActiveError,
        SessionExpiredError,
        NotPausedError,
        AlreadyClosedError,
        NotLockedError,
        AlreadyApprovedError,
        NotASignerError,
        DuplicateSessionError,
        DuplicateEscrowError,
        DuplicatePolicyError,
    )
}
