"""
Audit trail for the transaction lifecycle.

Append-only JSONL. Each entry carries an HMAC over its content and the
previous entry's hash, so an edited, reordered or deleted line breaks the
chain on the next read. Subscribe ``AuditTrail.record`` to an ``EventBus``.

Several CLI processes may append to the same file; appends take an
exclusive lock and re-read the chain tail under it.
"""

from __future__ import annotations

import fcntl
import hashlib
import hmac
import json
import os
import threading
import time
from collections import Counter
from contextlib import contextmanager
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Iterator, Optional

from .events import LifecycleEvent, LifecycleEventType
from .storage import ensure_private_dir, ensure_private_file, load_or_create_secret


AUDIT_KEY_ENV = "WARDEN_AUDIT_HMAC_KEY"

_FAILURE_EVENTS = frozenset(
    {LifecycleEventType.TRANSACTION_REJECTED.value, LifecycleEventType.TRANSACTION_FAILED.value}
)
_CHAIN_FIELDS = ("prev_hash", "event_hash")


@dataclass
class AuditEvent:
    """One line of the audit trail."""

    event_type: str
    timestamp: float
    event_id: Optional[str] = None
    transaction_id: Optional[str] = None
    voice_approval_id: Optional[str] = None
    amount: Optional[str] = None
    currency: Optional[str] = None
    merchant: Optional[str] = None
    status: Optional[str] = None
    success: bool = True
    reason: Optional[str] = None
    details: Optional[dict[str, Any]] = None
    prev_hash: Optional[str] = None
    event_hash: Optional[str] = None

    @classmethod
    def from_event(cls, event: LifecycleEvent) -> "AuditEvent":
        tx = event.transaction or {}
        call = event.voice_approval or {}
        details: dict[str, Any] = {}
        if call:
            details["call_status"] = call.get("status")
            if call.get("outcome"):
                details["call_outcome"] = call["outcome"]
        if event.config is not None:
            details["config_version"] = event.config.get("version")
        return cls(
            event_type=event.event_type.value,
            timestamp=event.timestamp,
            event_id=event.event_id,
            transaction_id=tx.get("id"),
            voice_approval_id=call.get("id"),
            amount=tx.get("amount"),
            currency=tx.get("currency"),
            merchant=tx.get("merchant"),
            status=tx.get("status"),
            success=event.event_type.value not in _FAILURE_EVENTS,
            reason=event.reason,
            details=details or None,
        )

    @classmethod
    def from_line(cls, raw: dict[str, Any]) -> "AuditEvent":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in raw.items() if k in known})

    def content(self) -> dict[str, Any]:
        """The hashed part of the entry."""
        return {k: v for k, v in asdict(self).items() if v is not None and k not in _CHAIN_FIELDS}

    def to_json(self) -> str:
        return json.dumps({k: v for k, v in asdict(self).items() if v is not None}, separators=(",", ":"))


class AuditTrail:
    """Tamper-evident append-only audit log."""

    def __init__(self, path: Path, key_path: Path):
        self.path = Path(path)
        self.key_path = Path(key_path)
        self._lock_path = self.path.with_name(self.path.name + ".lock")
        ensure_private_dir(self.path.parent)
        ensure_private_file(self.path)
        self._key = load_or_create_secret(self.key_path, env_var=AUDIT_KEY_ENV)
        self._thread_lock = threading.Lock()

    # ── Writing ──────────────────────────────────────────────────

    def record(self, event: LifecycleEvent) -> AuditEvent:
        """EventBus subscriber: append one lifecycle event."""
        return self.append(AuditEvent.from_event(event))

    def log(self, event_type: str, **entry: Any) -> AuditEvent:
        """Append an entry that did not come from the event bus."""
        return self.append(AuditEvent(event_type=event_type, timestamp=time.time(), **entry))

    def append(self, entry: AuditEvent) -> AuditEvent:
        with self._exclusive():
            prev = self._tail_hash()
            entry.prev_hash = prev or None
            entry.event_hash = self._sign(entry.content(), prev)
            with open(self.path, "a") as f:
                f.write(entry.to_json() + "\n")
                f.flush()
                os.fsync(f.fileno())
        return entry

    @contextmanager
    def _exclusive(self) -> Iterator[None]:
        with self._thread_lock, open(self._lock_path, "a+") as lockf:
            fcntl.flock(lockf.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lockf.fileno(), fcntl.LOCK_UN)

    def _tail_hash(self) -> str:
        last = ""
        with open(self.path, "r") as f:
            for line in f:
                if line.strip():
                    last = line
        return json.loads(last).get("event_hash", "") if last else ""

    def _sign(self, content: dict[str, Any], prev_hash: str) -> str:
        canonical = json.dumps(content, sort_keys=True, separators=(",", ":"))
        return hmac.new(self._key, f"{prev_hash}|{canonical}".encode(), hashlib.sha256).hexdigest()

    # ── Reading ──────────────────────────────────────────────────

    def _verified(self) -> Iterator[AuditEvent]:
        """Every entry in order; raises RuntimeError at the first break in the chain."""
        expected_prev = ""
        with open(self.path, "r") as f:
            for number, line in enumerate(f, start=1):
                if not line.strip():
                    continue
                entry = AuditEvent.from_line(json.loads(line))
                if (entry.prev_hash or "") != expected_prev:
                    raise RuntimeError(f"Audit chain broken: previous hash mismatch at line {number}")
                if not hmac.compare_digest(self._sign(entry.content(), expected_prev), entry.event_hash or ""):
                    raise RuntimeError(f"Audit chain broken: event hash mismatch at line {number}")
                expected_prev = entry.event_hash or ""
                yield entry

    def verify(self) -> int:
        """Check the whole chain; returns the number of entries."""
        return sum(1 for _ in self._verified())

    def read_events(
        self,
        transaction_id: Optional[str] = None,
        event_type: Optional[LifecycleEventType] = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """The last ``limit`` matching entries, oldest first, after verifying the chain."""
        matches = [
            e
            for e in self._verified()
            if (transaction_id is None or e.transaction_id == transaction_id)
            and (event_type is None or e.event_type == event_type.value)
        ]
        return matches[-limit:] if limit else matches

    def summary(self, transaction_id: Optional[str] = None) -> dict:
        events = self.read_events(transaction_id=transaction_id, limit=0)
        return {
            "total_events": len(events),
            "by_type": dict(Counter(e.event_type for e in events)),
            "failures": sum(1 for e in events if not e.success),
            "last_event": events[-1].to_json() if events else None,
        }
