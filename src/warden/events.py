"""
Lifecycle events and in-process fan-out.

Each event carries full snapshots of the transaction (and voice approval,
where relevant). Consumers treat events as state replacements, not deltas.
"""

from __future__ import annotations

import json
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional, Protocol

logger = logging.getLogger(__name__)


class LifecycleEventType(str, Enum):
    TRANSACTION_CREATED = "transaction_created"
    TRANSACTION_REJECTED = "transaction_rejected"
    TRANSACTION_APPROVED = "transaction_approved"
    TRANSACTION_COMPLETED = "transaction_completed"
    TRANSACTION_FAILED = "transaction_failed"
    VOICE_CALL_REQUESTED = "voice_call_requested"
    VOICE_CALL_COMPLETED = "voice_call_completed"
    CONFIG_UPDATED = "config_updated"


@dataclass(frozen=True)
class LifecycleEvent:
    """An immutable notification describing one state transition."""

    event_type: LifecycleEventType
    transaction: Optional[dict[str, Any]] = None
    voice_approval: Optional[dict[str, Any]] = None
    config: Optional[dict[str, Any]] = None
    reason: Optional[str] = None
    event_id: str = field(default_factory=lambda: f"ev-{uuid.uuid4().hex[:16]}")
    timestamp: float = field(default_factory=time.time)

    @property
    def transaction_id(self) -> Optional[str]:
        return self.transaction["id"] if self.transaction else None

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            "id": self.event_id,
            "type": self.event_type.value,
            "timestamp": self.timestamp,
        }
        if self.transaction is not None:
            d["transaction"] = self.transaction
        if self.voice_approval is not None:
            d["call"] = self.voice_approval
        if self.config is not None:
            d["config"] = self.config
        if self.reason is not None:
            d["reason"] = self.reason
        return d

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"), default=str)


Subscriber = Callable[[LifecycleEvent], None]


class EventPublisher(Protocol):
    def publish(self, event: LifecycleEvent) -> None: ...


class EventBus:
    """
    Fan-out of lifecycle events to subscribers.

    Delivery is at most once per subscriber per publish. A subscriber that
    raises is logged and skipped; the remaining subscribers still receive
    the event and the publisher never sees the error.
    """

    def __init__(self):
        self._subscribers: list[Subscriber] = []
        self._lock = threading.Lock()

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        """Register a subscriber; returns a callable that unsubscribes it."""
        with self._lock:
            self._subscribers.append(subscriber)
        return lambda: self.unsubscribe(subscriber)

    def unsubscribe(self, subscriber: Subscriber) -> None:
        with self._lock:
            try:
                self._subscribers.remove(subscriber)
            except ValueError:
                pass

    def publish(self, event: LifecycleEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for subscriber in subscribers:
            try:
                subscriber(event)
            except Exception:
                logger.exception(
                    "Subscriber %r failed on %s event %s",
                    subscriber,
                    event.event_type.value,
                    event.event_id,
                )


class EventRecorder:
    """Subscriber that keeps every event it sees, in order."""

    def __init__(self):
        self.events: list[LifecycleEvent] = []
        self._lock = threading.Lock()

    def __call__(self, event: LifecycleEvent) -> None:
        with self._lock:
            self.events.append(event)

    def of_type(self, event_type: LifecycleEventType) -> list[LifecycleEvent]:
        with self._lock:
            return [e for e in self.events if e.event_type == event_type]

    def for_transaction(self, tx_id: str) -> list[LifecycleEvent]:
        with self._lock:
            return [e for e in self.events if e.transaction_id == tx_id]
