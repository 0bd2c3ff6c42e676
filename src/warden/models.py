"""Transaction record, its status machine and the create request."""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Mapping, Optional

from .errors import InvalidTransitionError, ValidationError
from .money import amount_to_micros, micros_to_decimal, parse_amount


class TransactionType(str, Enum):
    PURCHASE = "purchase"
    SUBSCRIPTION = "subscription"
    PAYMENT = "payment"
    TRANSFER = "transfer"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset(
    {TransactionStatus.REJECTED, TransactionStatus.COMPLETED, TransactionStatus.FAILED}
)

# pending -> completed is the auto-approved path; pending -> failed covers a
# settlement failure on that path and fatal collaborator errors.
_TRANSITIONS: dict[TransactionStatus, frozenset[TransactionStatus]] = {
    TransactionStatus.PENDING: frozenset(
        {
            TransactionStatus.APPROVED,
            TransactionStatus.REJECTED,
            TransactionStatus.COMPLETED,
            TransactionStatus.FAILED,
        }
    ),
    TransactionStatus.APPROVED: frozenset({TransactionStatus.COMPLETED, TransactionStatus.FAILED}),
}

DEFAULT_CURRENCY = "USDC"
# Metadata key holding what the pipeline records; the rest belongs to the caller.
RECORD_KEY = "warden"


def can_transition(current: TransactionStatus, target: TransactionStatus) -> bool:
    return target in _TRANSITIONS.get(current, frozenset())


def new_transaction_id() -> str:
    return f"tx-{uuid.uuid4().hex[:16]}"


@dataclass
class Transaction:
    """A proposed spend and where it is in its lifecycle."""

    tx_id: str
    amount_micros: int
    currency: str
    tx_type: TransactionType
    merchant: Optional[str]
    description: Optional[str]
    created_at: float
    status: TransactionStatus = TransactionStatus.PENDING
    requires_approval: bool = False
    approved_via_voice: bool = False
    voice_call_id: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    completed_at: Optional[float] = None
    idempotency_key: Optional[str] = None
    reserved: bool = False

    @property
    def amount(self) -> Decimal:
        return micros_to_decimal(self.amount_micros)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def transition(self, target: TransactionStatus, at: float) -> None:
        """Move to ``target``; stamps ``completed_at`` on completed/failed."""
        if not can_transition(self.status, target):
            raise InvalidTransitionError("transaction", self.status.value, target.value)
        self.status = target
        if target in (TransactionStatus.COMPLETED, TransactionStatus.FAILED):
            self.completed_at = at

    def link_voice_call(self, approval_id: str) -> None:
        if self.voice_call_id is not None and self.voice_call_id != approval_id:
            raise ValueError(f"Transaction {self.tx_id} already linked to {self.voice_call_id}")
        self.voice_call_id = approval_id

    def record(self, key: str, value: Any) -> None:
        """Store a pipeline record under the reserved metadata key."""
        self.metadata.setdefault(RECORD_KEY, {})[key] = value

    @property
    def records(self) -> dict[str, Any]:
        return self.metadata.get(RECORD_KEY, {})

    def to_dict(self) -> dict:
        return {
            "id": self.tx_id,
            "amount": f"{self.amount}",
            "currency": self.currency,
            "type": self.tx_type.value,
            "merchant": self.merchant,
            "description": self.description,
            "status": self.status.value,
            "requires_approval": self.requires_approval,
            "approved_via_voice": self.approved_via_voice,
            "voice_call_id": self.voice_call_id,
            "metadata": self.metadata,
            "created_at": self.created_at,
            "completed_at": self.completed_at,
            "idempotency_key": self.idempotency_key,
        }


@dataclass
class TransactionRequest:
    """A validated create-transaction request."""

    amount: Decimal
    tx_type: TransactionType
    merchant: str
    currency: str = DEFAULT_CURRENCY
    description: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "TransactionRequest":
        if not isinstance(payload, Mapping):
            raise ValidationError("Request body must be an object")

        if "amount" not in payload or payload["amount"] is None:
            raise ValidationError("amount is required", field="amount")
        amount = parse_amount(payload["amount"])

        raw_type = payload.get("type")
        try:
            tx_type = TransactionType(raw_type)
        except ValueError:
            allowed = ", ".join(t.value for t in TransactionType)
            raise ValidationError(f"type must be one of: {allowed}", field="type") from None

        merchant = payload.get("merchant")
        if not isinstance(merchant, str) or not merchant.strip():
            raise ValidationError("Merchant is required", field="merchant")

        currency = payload.get("currency") or DEFAULT_CURRENCY
        if not isinstance(currency, str) or not currency.strip() or len(currency) > 10:
            raise ValidationError("currency must be a code of at most 10 characters", field="currency")

        description = payload.get("description")
        if description is not None and not isinstance(description, str):
            raise ValidationError("description must be a string", field="description")

        metadata = payload.get("metadata") or {}
        if not isinstance(metadata, Mapping) or not all(isinstance(k, str) for k in metadata):
            raise ValidationError("metadata must be a mapping of string keys", field="metadata")
        if RECORD_KEY in metadata:
            raise ValidationError(f"metadata key {RECORD_KEY!r} is reserved", field="metadata")
        try:
            json.dumps(dict(metadata))
        except (TypeError, ValueError):
            raise ValidationError("metadata must be JSON-serializable", field="metadata") from None

        return cls(
            amount=amount,
            tx_type=tx_type,
            merchant=merchant.strip(),
            currency=currency.strip().upper(),
            description=description,
            metadata=dict(metadata),
        )

    def to_transaction(
        self,
        created_at: float,
        idempotency_key: Optional[str] = None,
    ) -> Transaction:
        return Transaction(
            tx_id=new_transaction_id(),
            amount_micros=amount_to_micros(self.amount),
            currency=self.currency,
            tx_type=self.tx_type,
            merchant=self.merchant,
            description=self.description,
            created_at=created_at,
            metadata=dict(self.metadata),
            idempotency_key=idempotency_key,
        )
