"""
Warden error types.

Specific exceptions for different failure modes, enabling callers
to handle each case appropriately (report, abort, alert, etc.).
"""

from __future__ import annotations

from typing import Any, Optional


class WardenError(Exception):
    """Base error for all Warden operations."""
    pass


# Request errors
class ValidationError(WardenError):
    """Malformed request; rejected before any state is created."""
    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message)


class DuplicateTransactionError(ValidationError):
    """A transaction with this idempotency key already exists."""
    def __init__(self, idempotency_key: str, tx_id: Optional[str] = None):
        self.idempotency_key = idempotency_key
        self.tx_id = tx_id
        super().__init__(
            f"Idempotency key already used: {idempotency_key}",
            field="idempotency_key",
        )


class ConfigurationError(WardenError):
    """Agent configuration is missing or malformed. Never retried."""
    pass


# Pipeline outcomes
class PolicyDenied(WardenError):
    """Policy refused the transaction. Not a system fault."""
    def __init__(self, reason: str, message: str, breakdown: Optional[dict[str, Any]] = None):
        self.reason = reason
        self.breakdown = breakdown or {}
        super().__init__(f"Transaction blocked ({reason}): {message}")


class ConfirmationError(WardenError):
    """Base error for voice confirmation that did not end in approval."""
    reason = "confirmation-failed"


class ConfirmationRejected(ConfirmationError):
    """The human declined the transaction on the call."""
    reason = "confirmation-rejected"


class ConfirmationTimeout(ConfirmationError):
    """No terminal call state within the wait window."""
    reason = "timeout"


class ConfirmationCancelled(ConfirmationError):
    """The caller cancelled while confirmation was pending."""
    reason = "cancelled"


class ConfirmationFailed(ConfirmationError):
    """The call failed (provider refused, dropped, unreachable)."""
    reason = "confirmation-failed"


class SettlementError(WardenError):
    """Settlement provider failed to execute the payment."""
    def __init__(self, message: str, detail: Optional[dict[str, Any]] = None):
        self.detail = detail or {}
        super().__init__(message)


# Provider errors
class VoiceProviderError(WardenError):
    """Voice provider could not place or report on a call."""
    pass


# State errors
class InvalidTransitionError(WardenError):
    """A state machine was asked to make an illegal move."""
    def __init__(self, kind: str, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Illegal {kind} transition: {current} -> {target}")


class CancellationError(WardenError):
    """Cancellation is not permitted in the transaction's current stage."""
    pass


class NotFoundError(WardenError):
    """Base error for unknown identifiers."""
    pass


class TransactionNotFoundError(NotFoundError):
    """Transaction ID not found."""
    pass


class VoiceApprovalNotFoundError(NotFoundError):
    """Voice approval ID or call handle not found."""
    pass
