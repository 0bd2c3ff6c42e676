"""
Voice approval — one confirmation call from request to outcome.

States:
    requested → ringing → active → completed     (human answered and decided)
    requested → ringing → failed                 (provider failure, timeout)
    requested → ringing → active → failed        (dropped mid-call)
    requested → failed                           (provider refused the request)

The outcome (approved / rejected / failed) exists only once a terminal state
is reached. Completing or failing a terminal approval is a no-op that returns
the outcome already recorded.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Optional, Protocol

from .errors import InvalidTransitionError, VoiceProviderError

logger = logging.getLogger(__name__)


class VoiceStatus(str, Enum):
    REQUESTED = "requested"
    RINGING = "ringing"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class VoiceOutcome(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"
    FAILED = "failed"


class VoiceDirection(str, Enum):
    INCOMING = "incoming"
    OUTGOING = "outgoing"


class VoicePurpose(str, Enum):
    TRANSACTION_APPROVAL = "transaction_approval"
    NOTIFICATION = "notification"
    EMERGENCY = "emergency"


TERMINAL_VOICE_STATUSES = frozenset({VoiceStatus.COMPLETED, VoiceStatus.FAILED})

_TRANSITIONS: dict[VoiceStatus, frozenset[VoiceStatus]] = {
    VoiceStatus.REQUESTED: frozenset({VoiceStatus.RINGING, VoiceStatus.FAILED}),
    VoiceStatus.RINGING: frozenset({VoiceStatus.ACTIVE, VoiceStatus.FAILED}),
    VoiceStatus.ACTIVE: frozenset({VoiceStatus.COMPLETED, VoiceStatus.FAILED}),
}


def new_approval_id() -> str:
    return f"va-{uuid.uuid4().hex[:16]}"


@dataclass
class VoiceApproval:
    """A single confirmation call record."""

    approval_id: str
    direction: VoiceDirection
    purpose: VoicePurpose
    started_at: float
    status: VoiceStatus = VoiceStatus.REQUESTED
    transaction_id: Optional[str] = None
    call_handle: Optional[str] = None
    duration_seconds: Optional[float] = None
    transcript: Optional[str] = None
    ended_at: Optional[float] = None
    outcome: Optional[VoiceOutcome] = None
    failure_reason: Optional[str] = None

    @classmethod
    def for_transaction(cls, transaction_id: str, started_at: float) -> "VoiceApproval":
        return cls(
            approval_id=new_approval_id(),
            direction=VoiceDirection.OUTGOING,
            purpose=VoicePurpose.TRANSACTION_APPROVAL,
            started_at=started_at,
            transaction_id=transaction_id,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_VOICE_STATUSES

    def _move(self, target: VoiceStatus) -> None:
        if target not in _TRANSITIONS.get(self.status, frozenset()):
            raise InvalidTransitionError("voice approval", self.status.value, target.value)
        self.status = target

    def ring(self, call_handle: str) -> None:
        """The provider acknowledged the call request."""
        self._move(VoiceStatus.RINGING)
        self.call_handle = call_handle

    def connect(self) -> None:
        """The remote party picked up."""
        self._move(VoiceStatus.ACTIVE)

    def complete(
        self,
        approved: bool,
        transcript: Optional[str],
        duration_seconds: Optional[float],
        at: float,
    ) -> VoiceOutcome:
        if self.is_terminal:
            assert self.outcome is not None
            return self.outcome
        self._move(VoiceStatus.COMPLETED)
        self.outcome = VoiceOutcome.APPROVED if approved else VoiceOutcome.REJECTED
        self.transcript = transcript
        self.duration_seconds = (
            duration_seconds if duration_seconds is not None else round(max(0.0, at - self.started_at), 2)
        )
        self.ended_at = at
        return self.outcome

    def fail(self, reason: str, at: float) -> VoiceOutcome:
        if self.is_terminal:
            assert self.outcome is not None
            return self.outcome
        self._move(VoiceStatus.FAILED)
        self.outcome = VoiceOutcome.FAILED
        self.failure_reason = reason
        self.ended_at = at
        return self.outcome

    def snapshot(self) -> "VoiceApproval":
        return replace(self)

    def to_dict(self) -> dict:
        return {
            "id": self.approval_id,
            "call_handle": self.call_handle,
            "type": self.direction.value,
            "purpose": self.purpose.value,
            "status": self.status.value,
            "outcome": self.outcome.value if self.outcome else None,
            "failure_reason": self.failure_reason,
            "duration": self.duration_seconds,
            "transcript": self.transcript,
            "transaction_id": self.transaction_id,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
        }


# ── Provider capability ────────────────────────────────────────────


class CallState(str, Enum):
    RINGING = "ringing"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class CallStatus:
    """What the voice provider reports about a call."""

    state: CallState
    transcript: Optional[str] = None
    duration_seconds: Optional[float] = None
    approved: Optional[bool] = None
    reason: Optional[str] = None


class VoiceProvider(Protocol):
    def request_call(self, purpose: VoicePurpose, context: dict[str, Any]) -> str: ...

    def get_status(self, call_handle: str) -> CallStatus: ...


_MOCK_TRANSCRIPTS = {
    VoicePurpose.TRANSACTION_APPROVAL: (
        "Agent: Hello, I need your approval for a transaction. "
        "User: Yes, approved. Agent: Thank you, transaction approved."
    ),
    VoicePurpose.NOTIFICATION: (
        "Agent: This is a notification about your recent transaction. "
        "It has been completed successfully."
    ),
    VoicePurpose.EMERGENCY: (
        "Agent: Emergency stop has been activated. All transactions have been halted."
    ),
}

_MOCK_DECLINE_TRANSCRIPT = (
    "Agent: Hello, I need your approval for a transaction. "
    "User: No, do not proceed. Agent: Understood, the transaction is declined."
)


class LocalVoiceProvider:
    """
    In-process voice provider for development and tests.

    Calls start ringing when requested. With ``auto_outcome`` set, each status
    poll advances the call one step: ringing → active → completed with that
    verdict. Otherwise the call only moves through ``answer``, ``hang_up``
    and ``drop``.
    """

    def __init__(self, auto_outcome: Optional[bool] = None, refuse_calls: bool = False):
        self.auto_outcome = auto_outcome
        self.refuse_calls = refuse_calls
        self._calls: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()

    def request_call(self, purpose: VoicePurpose, context: dict[str, Any]) -> str:
        if self.refuse_calls:
            raise VoiceProviderError("Voice provider refused the call request")
        handle = f"call_{uuid.uuid4().hex}"
        with self._lock:
            self._calls[handle] = {
                "purpose": VoicePurpose(purpose),
                "context": dict(context),
                "status": CallStatus(state=CallState.RINGING),
                "started_at": time.time(),
            }
        logger.info("[local voice] Call %s ringing for %s", handle, VoicePurpose(purpose).value)
        return handle

    def get_status(self, call_handle: str) -> CallStatus:
        with self._lock:
            call = self._get(call_handle)
            if self.auto_outcome is not None:
                self._advance(call)
            return replace(call["status"])

    def answer(self, call_handle: str) -> None:
        with self._lock:
            call = self._get(call_handle)
            if call["status"].state == CallState.RINGING:
                call["status"] = CallStatus(state=CallState.ACTIVE)

    def hang_up(self, call_handle: str, approved: bool, transcript: Optional[str] = None) -> None:
        with self._lock:
            call = self._get(call_handle)
            self._finish(call, approved, transcript)

    def drop(self, call_handle: str, reason: str = "dropped") -> None:
        with self._lock:
            call = self._get(call_handle)
            if call["status"].state not in (CallState.COMPLETED, CallState.FAILED):
                call["status"] = CallStatus(state=CallState.FAILED, reason=reason)

    def calls(self) -> list[str]:
        with self._lock:
            return list(self._calls)

    def context(self, call_handle: str) -> dict[str, Any]:
        with self._lock:
            return dict(self._get(call_handle)["context"])

    def _get(self, call_handle: str) -> dict[str, Any]:
        call = self._calls.get(call_handle)
        if call is None:
            raise VoiceProviderError(f"Call not found: {call_handle}")
        return call

    def _advance(self, call: dict[str, Any]) -> None:
        state = call["status"].state
        if state == CallState.RINGING:
            call["status"] = CallStatus(state=CallState.ACTIVE)
        elif state == CallState.ACTIVE:
            self._finish(call, bool(self.auto_outcome), None)

    def _finish(self, call: dict[str, Any], approved: bool, transcript: Optional[str]) -> None:
        if call["status"].state in (CallState.COMPLETED, CallState.FAILED):
            return
        if transcript is None:
            transcript = _MOCK_TRANSCRIPTS[call["purpose"]] if approved else _MOCK_DECLINE_TRANSCRIPT
        call["status"] = CallStatus(
            state=CallState.COMPLETED,
            transcript=transcript,
            duration_seconds=round(time.time() - call["started_at"], 2),
            approved=approved,
        )
