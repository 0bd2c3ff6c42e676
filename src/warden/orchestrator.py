"""
Transaction lifecycle orchestrator.

Drives one transaction through:
1. Policy evaluation with atomic spend reservation
2. Decision (does a human need to confirm?)
3. Voice confirmation, when required
4. Settlement
and publishes a lifecycle event after every state change.

``submit`` runs the whole pipeline in the calling thread. Concurrent
submissions are independent calls from separate threads; the ledger
serializes the evaluate-and-reserve step across threads and processes.

Voice confirmation ends through a resolution mailbox on the voice approval
row: the provider poll, ``complete_voice_call``, ``cancel`` and the timeout
all compete to write it and the first writer wins. Only the waiting
pipeline applies the winning resolution, so the approval and its
transaction are always written by one owner.
"""

from __future__ import annotations

import copy
import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional, Union

from .agent_config import AgentConfig, ConfigStore
from .decision import Decision, DecisionProvider, approval_script
from .errors import (
    CancellationError,
    ConfirmationCancelled,
    ConfirmationError,
    ConfirmationFailed,
    ConfirmationRejected,
    ConfirmationTimeout,
    DuplicateTransactionError,
    PolicyDenied,
    SettlementError,
)
from .events import EventPublisher, LifecycleEvent, LifecycleEventType
from .ledger import (
    RESOLUTION_APPROVED,
    RESOLUTION_CANCELLED,
    RESOLUTION_PROVIDER,
    RESOLUTION_REJECTED,
    RESOLUTION_TIMEOUT,
    Ledger,
    Resolution,
)
from .models import Transaction, TransactionRequest, TransactionStatus
from .policy import PolicyProvider, Verdict
from .settlement import SettlementProvider, SettlementReceipt
from .voice import CallState, CallStatus, VoiceApproval, VoiceProvider, VoicePurpose, VoiceStatus

logger = logging.getLogger(__name__)

Precheck = Callable[[TransactionRequest, Optional[str]], None]

_CONFIRMATION_ERRORS: dict[str, type[ConfirmationError]] = {
    RESOLUTION_REJECTED: ConfirmationRejected,
    RESOLUTION_TIMEOUT: ConfirmationTimeout,
    RESOLUTION_CANCELLED: ConfirmationCancelled,
    RESOLUTION_PROVIDER: ConfirmationFailed,
}

MAX_STATUS_ERRORS = 3


@dataclass
class SubmissionResult:
    """Final state of one submission and the error that stopped it, if any."""

    transaction: Transaction
    voice_approval: Optional[VoiceApproval] = None
    verdict: Optional[Verdict] = None
    decision: Optional[Decision] = None
    receipt: Optional[SettlementReceipt] = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.transaction.status == TransactionStatus.COMPLETED

    @property
    def status(self) -> TransactionStatus:
        return self.transaction.status

    def raise_for_error(self) -> "SubmissionResult":
        if self.error is not None:
            raise self.error
        return self

    def to_dict(self) -> dict:
        return {
            "transaction": self.transaction.to_dict(),
            "call": self.voice_approval.to_dict() if self.voice_approval else None,
            "verdict": self.verdict.to_dict() if self.verdict else None,
            "decision": self.decision.to_dict() if self.decision else None,
            "receipt": self.receipt.to_dict() if self.receipt else None,
            "error": str(self.error) if self.error else None,
            "error_type": type(self.error).__name__ if self.error else None,
        }


class _Waiter:
    def __init__(self):
        self.wake = threading.Event()
        self.applied = threading.Event()


def reject_known_idempotency_keys(ledger: Ledger) -> Precheck:
    """Precheck hook that refuses an idempotency key the ledger already holds."""

    def precheck(request: TransactionRequest, idempotency_key: Optional[str]) -> None:
        if idempotency_key is None:
            return
        existing = ledger.find_by_idempotency_key(idempotency_key)
        if existing is not None:
            raise DuplicateTransactionError(idempotency_key, existing.tx_id)

    return precheck


class TransactionOrchestrator:
    """Owns every transaction status write."""

    def __init__(
        self,
        ledger: Ledger,
        config_store: ConfigStore,
        policy: PolicyProvider,
        decision: DecisionProvider,
        voice: VoiceProvider,
        settlement: SettlementProvider,
        publisher: EventPublisher,
        voice_timeout_seconds: float = 120.0,
        poll_interval_seconds: float = 1.0,
        precheck: Optional[Precheck] = None,
        clock: Callable[[], float] = time.time,
    ):
        if not math.isfinite(voice_timeout_seconds) or voice_timeout_seconds <= 0:
            raise ValueError("voice_timeout_seconds must be a finite positive number")
        if not math.isfinite(poll_interval_seconds) or poll_interval_seconds <= 0:
            raise ValueError("poll_interval_seconds must be a finite positive number")
        self.ledger = ledger
        self.config_store = config_store
        self.policy = policy
        self.decision = decision
        self.voice = voice
        self.settlement = settlement
        self.publisher = publisher
        self.voice_timeout_seconds = voice_timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.precheck = precheck
        self._clock = clock
        self._waiters: dict[str, _Waiter] = {}
        self._waiters_lock = threading.Lock()

    # ── Submission ───────────────────────────────────────────────

    def submit(
        self,
        request: Union[TransactionRequest, Mapping[str, Any]],
        idempotency_key: Optional[str] = None,
    ) -> SubmissionResult:
        """
        Run one transaction through the full pipeline.

        Raises ValidationError (including DuplicateTransactionError) before
        any state is created. Every other failure is applied as a status
        transition and returned in ``SubmissionResult.error``.
        """
        if not isinstance(request, TransactionRequest):
            request = TransactionRequest.from_dict(request)
        if self.precheck is not None:
            self.precheck(request, idempotency_key)

        tx = request.to_transaction(created_at=self._clock(), idempotency_key=idempotency_key)
        self.ledger.create_transaction(tx)
        logger.info(
            "Transaction %s created: %s %s to %s",
            tx.tx_id,
            tx.amount,
            tx.currency,
            tx.merchant,
        )
        self._publish(LifecycleEventType.TRANSACTION_CREATED, tx)
        result = SubmissionResult(transaction=tx)

        # 1. Policy
        config = self.config_store.get()
        tx.record("config_version", config.version)
        try:
            verdict = self.ledger.evaluate_and_reserve(
                tx.tx_id,
                lambda current, spend: self.policy.evaluate(current, config, spend),
                now=tx.created_at,
            )
        except Exception as e:
            return self._fail_before_settlement(result, "policy", e)
        result.verdict = verdict
        if not verdict.approved:
            return self._deny(result, verdict)
        tx.reserved = True

        # 2. Decision
        try:
            decision = self.decision.decide(tx, config)
        except Exception as e:
            return self._fail_before_settlement(result, "decision", e)
        result.decision = decision
        tx.requires_approval = decision.requires_approval
        tx.record("decision", decision.reasoning)
        self.ledger.save_transaction(tx)

        # 3. Voice confirmation
        if decision.requires_approval:
            error = self._confirm(result, config)
            if error is not None:
                return result

        # 4. Settlement
        return self._settle(result)

    def _deny(self, result: SubmissionResult, verdict: Verdict) -> SubmissionResult:
        tx = result.transaction
        tx.record(
            "rejection",
            {
                "stage": "policy",
                "reason": verdict.reason,
                "message": verdict.message,
                "breakdown": verdict.breakdown,
            },
        )
        tx.transition(TransactionStatus.REJECTED, self._clock())
        self.ledger.save_transaction(tx)
        logger.info("Transaction %s denied by policy: %s", tx.tx_id, verdict.reason)
        self._publish(LifecycleEventType.TRANSACTION_REJECTED, tx, reason=verdict.reason)
        result.error = PolicyDenied(verdict.reason, verdict.message, verdict.breakdown)
        return result

    def _fail_before_settlement(self, result: SubmissionResult, stage: str, error: Exception) -> SubmissionResult:
        tx = result.transaction
        logger.error("Transaction %s failed during %s: %s", tx.tx_id, stage, error)
        tx.record(
            "failure",
            {
                "stage": stage,
                "error": type(error).__name__,
                "message": str(error),
            },
        )
        tx.transition(TransactionStatus.FAILED, self._clock())
        self.ledger.save_transaction(tx)
        self._publish(LifecycleEventType.TRANSACTION_FAILED, tx, reason=f"{stage}-error")
        result.error = error
        return result

    # ── Voice confirmation ───────────────────────────────────────

    def _confirm(self, result: SubmissionResult, config: AgentConfig) -> Optional[ConfirmationError]:
        tx = result.transaction
        approval = VoiceApproval.for_transaction(tx.tx_id, started_at=self._clock())
        self.ledger.create_voice_approval(approval)
        tx.link_voice_call(approval.approval_id)
        self.ledger.save_transaction(tx)
        result.voice_approval = approval

        waiter = _Waiter()
        with self._waiters_lock:
            self._waiters[approval.approval_id] = waiter
        try:
            context = {
                "transaction_id": tx.tx_id,
                "approval_id": approval.approval_id,
                "amount": f"{tx.amount}",
                "currency": tx.currency,
                "merchant": tx.merchant,
                "type": tx.tx_type.value,
                "agent_name": config.name,
                "script": approval_script(tx),
            }
            try:
                handle = self.voice.request_call(VoicePurpose.TRANSACTION_APPROVAL, context)
            except Exception as e:
                logger.warning("Voice call request for %s failed: %s", tx.tx_id, e)
                self.ledger.request_resolution(
                    approval.approval_id,
                    RESOLUTION_PROVIDER,
                    reason=f"call-request-failed: {e}",
                    now=self._clock(),
                )
            else:
                approval.ring(handle)
                self.ledger.save_voice_approval(approval)
                logger.info("Voice approval %s ringing (call %s) for %s", approval.approval_id, handle, tx.tx_id)
                self._publish(LifecycleEventType.VOICE_CALL_REQUESTED, tx, approval)

            resolution = self._await_resolution(approval, waiter)
            error = self._apply_resolution(result, approval, resolution)
        finally:
            waiter.applied.set()
            with self._waiters_lock:
                self._waiters.pop(approval.approval_id, None)
        return error

    def _await_resolution(self, approval: VoiceApproval, waiter: _Waiter) -> Resolution:
        deadline = time.monotonic() + self.voice_timeout_seconds
        status_errors = 0
        while True:
            resolution = self.ledger.get_resolution(approval.approval_id)
            if resolution is not None:
                return resolution

            if approval.call_handle is not None:
                try:
                    status = self.voice.get_status(approval.call_handle)
                except Exception as e:
                    status_errors += 1
                    logger.warning("Voice status poll for %s failed: %s", approval.call_handle, e)
                    if status_errors >= MAX_STATUS_ERRORS:
                        self.ledger.request_resolution(
                            approval.approval_id,
                            RESOLUTION_PROVIDER,
                            reason=f"status-unavailable: {e}",
                            now=self._clock(),
                        )
                        continue
                else:
                    status_errors = 0
                    if self._handle_status(approval, status):
                        continue

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                self.ledger.request_resolution(
                    approval.approval_id, RESOLUTION_TIMEOUT, reason="timeout", now=self._clock()
                )
                continue
            waiter.wake.wait(min(self.poll_interval_seconds, remaining))
            waiter.wake.clear()

    def _handle_status(self, approval: VoiceApproval, status: CallStatus) -> bool:
        """Record what the provider reported; True if a resolution request was written."""
        if status.state == CallState.ACTIVE and approval.status == VoiceStatus.RINGING:
            approval.connect()
            self.ledger.save_voice_approval(approval)
            return False
        if status.state == CallState.COMPLETED:
            if status.approved is None:
                # A finished call without a clear yes is a decline.
                kind, reason = RESOLUTION_REJECTED, "no-verdict"
            else:
                kind, reason = (RESOLUTION_APPROVED if status.approved else RESOLUTION_REJECTED), None
            self.ledger.request_resolution(
                approval.approval_id,
                kind,
                transcript=status.transcript,
                duration_seconds=status.duration_seconds,
                reason=reason,
                now=self._clock(),
            )
            return True
        if status.state == CallState.FAILED:
            self.ledger.request_resolution(
                approval.approval_id,
                RESOLUTION_PROVIDER,
                reason=status.reason or "call-failed",
                now=self._clock(),
            )
            return True
        return False

    def _apply_resolution(
        self,
        result: SubmissionResult,
        approval: VoiceApproval,
        resolution: Resolution,
    ) -> Optional[ConfirmationError]:
        tx = result.transaction
        now = self._clock()
        if resolution.kind in (RESOLUTION_APPROVED, RESOLUTION_REJECTED):
            if approval.status == VoiceStatus.RINGING:
                approval.connect()
            approval.complete(
                resolution.kind == RESOLUTION_APPROVED,
                resolution.transcript,
                resolution.duration_seconds,
                at=now,
            )
        else:
            approval.fail(resolution.reason or resolution.kind, at=now)
        self.ledger.save_voice_approval(approval)
        logger.info(
            "Voice approval %s ended %s (%s)",
            approval.approval_id,
            approval.status.value,
            approval.outcome.value if approval.outcome else "-",
        )
        self._publish(LifecycleEventType.VOICE_CALL_COMPLETED, tx, approval, reason=resolution.kind)

        if resolution.kind == RESOLUTION_APPROVED:
            tx.approved_via_voice = True
            tx.transition(TransactionStatus.APPROVED, now)
            self.ledger.save_transaction(tx)
            self._publish(LifecycleEventType.TRANSACTION_APPROVED, tx, approval)
            return None

        error_cls = _CONFIRMATION_ERRORS[resolution.kind]
        detail = resolution.reason or approval.failure_reason
        message = f"Voice confirmation for {tx.tx_id} ended: {error_cls.reason}"
        if detail and detail != error_cls.reason:
            message += f" ({detail})"
        error = error_cls(message)
        tx.record(
            "rejection",
            {
                "stage": "voice-confirmation",
                "reason": error_cls.reason,
                "detail": detail,
                "voice_approval_id": approval.approval_id,
            },
        )
        tx.transition(TransactionStatus.REJECTED, now)
        self.ledger.save_transaction(tx)
        self._publish(LifecycleEventType.TRANSACTION_REJECTED, tx, approval, reason=error_cls.reason)
        result.error = error
        return error

    # ── Settlement ───────────────────────────────────────────────

    def _settle(self, result: SubmissionResult) -> SubmissionResult:
        tx = result.transaction
        try:
            receipt = self.settlement.settle(tx.amount, tx.currency, tx.merchant, tx.tx_id)
        except Exception as e:
            error = e if isinstance(e, SettlementError) else SettlementError(f"{type(e).__name__}: {e}")
            logger.error("Settlement for %s failed: %s", tx.tx_id, error)
            tx.record("settlement_error", {"message": str(error), "detail": error.detail})
            tx.transition(TransactionStatus.FAILED, self._clock())
            self.ledger.save_transaction(tx)
            self._publish(LifecycleEventType.TRANSACTION_FAILED, tx, result.voice_approval, reason="settlement-error")
            result.error = error
            return result

        tx.record("settlement", receipt.to_dict())
        tx.transition(TransactionStatus.COMPLETED, self._clock())
        self.ledger.save_transaction(tx)
        logger.info("Transaction %s completed (%s)", tx.tx_id, receipt.transaction_hash)
        self._publish(LifecycleEventType.TRANSACTION_COMPLETED, tx, result.voice_approval)
        result.receipt = receipt
        return result

    # ── Administrative inputs ────────────────────────────────────

    def complete_voice_call(
        self,
        identifier: str,
        approved: bool,
        transcript: Optional[str] = None,
        duration_seconds: Optional[float] = None,
    ) -> VoiceApproval:
        """
        Report the human's verdict for a call, by approval ID or call handle.

        On an approval that already ended, returns it unchanged.
        """
        approval = self.ledger.get_voice_approval(identifier)
        if approval.is_terminal:
            return approval
        kind = RESOLUTION_APPROVED if approved else RESOLUTION_REJECTED
        if self.ledger.request_resolution(
            approval.approval_id,
            kind,
            transcript=transcript,
            duration_seconds=duration_seconds,
            now=self._clock(),
        ):
            logger.info("Voice approval %s completion requested: %s", approval.approval_id, kind)
            self._wait_until_applied(approval.approval_id)
        return self.ledger.get_voice_approval(approval.approval_id)

    def cancel(self, tx_id: str) -> Transaction:
        """Cancel a transaction that is waiting on voice confirmation."""
        tx = self.ledger.get_transaction(tx_id)
        approval = self.ledger.voice_approval_for_transaction(tx_id)
        if tx.status != TransactionStatus.PENDING or approval is None or approval.is_terminal:
            raise CancellationError(
                f"Transaction {tx_id} is not awaiting voice confirmation (status: {tx.status.value})"
            )
        if not self.ledger.request_resolution(
            approval.approval_id, RESOLUTION_CANCELLED, reason="cancelled", now=self._clock()
        ):
            raise CancellationError(f"Voice confirmation for {tx_id} has already been resolved")
        logger.info("Cancellation requested for %s", tx_id)
        self._wait_until_applied(approval.approval_id)
        return self.ledger.get_transaction(tx_id)

    def update_config(self, changes: Mapping[str, Any]) -> AgentConfig:
        """Apply a partial configuration update and publish it."""
        updated = self.config_store.update(changes)
        event = LifecycleEvent(
            LifecycleEventType.CONFIG_UPDATED,
            config=updated.to_dict(),
            timestamp=self._clock(),
        )
        self._emit(event)
        return updated

    def _wait_until_applied(self, approval_id: str) -> None:
        with self._waiters_lock:
            waiter = self._waiters.get(approval_id)
        if waiter is None:
            # The waiting pipeline lives in another process; it picks the
            # resolution up on its next poll.
            return
        waiter.wake.set()
        waiter.applied.wait(self.voice_timeout_seconds)

    # ── Events ───────────────────────────────────────────────────

    def _publish(
        self,
        event_type: LifecycleEventType,
        tx: Transaction,
        approval: Optional[VoiceApproval] = None,
        reason: Optional[str] = None,
    ) -> None:
        event = LifecycleEvent(
            event_type,
            transaction=copy.deepcopy(tx.to_dict()),
            voice_approval=approval.to_dict() if approval is not None else None,
            reason=reason,
            timestamp=self._clock(),
        )
        self._emit(event)

    def _emit(self, event: LifecycleEvent) -> None:
        try:
            self.publisher.publish(event)
        except Exception:
            logger.exception("Publishing %s event failed", event.event_type.value)
