"""
Ledger of transactions and voice approvals.

Uses SQLite with BEGIN IMMEDIATE write transactions so that evaluate-and-
reserve, resolution requests and status writes are atomic across threads
and processes.

Spend aggregates are never stored. They are summed on demand from the
transaction rows: completed transactions count as spent, and admitted
transactions that have not yet reached a terminal status count as reserved.
A reservation therefore lapses by itself when its transaction is rejected
or fails.
"""

from __future__ import annotations

import json
import sqlite3
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator, Optional, Protocol, TypeVar

from .errors import DuplicateTransactionError, TransactionNotFoundError, VoiceApprovalNotFoundError
from .models import Transaction, TransactionStatus, TransactionType, new_transaction_id
from .money import amount_to_micros, micros_to_decimal
from .storage import ensure_private_dir, ensure_private_file
from .voice import (
    VoiceApproval,
    VoiceDirection,
    VoiceOutcome,
    VoicePurpose,
    VoiceStatus,
)


class _Admission(Protocol):
    approved: bool


V = TypeVar("V", bound=_Admission)


@dataclass(frozen=True)
class SpendSnapshot:
    """Spend for one currency in the current UTC day and calendar month."""

    currency: str
    spent_today_micros: int = 0
    spent_month_micros: int = 0
    reserved_today_micros: int = 0
    reserved_month_micros: int = 0

    @property
    def spent_today(self) -> Decimal:
        return micros_to_decimal(self.spent_today_micros)

    @property
    def spent_month(self) -> Decimal:
        return micros_to_decimal(self.spent_month_micros)

    @property
    def reserved_today(self) -> Decimal:
        return micros_to_decimal(self.reserved_today_micros)

    @property
    def reserved_month(self) -> Decimal:
        return micros_to_decimal(self.reserved_month_micros)

    @property
    def committed_today_micros(self) -> int:
        return self.spent_today_micros + self.reserved_today_micros

    @property
    def committed_month_micros(self) -> int:
        return self.spent_month_micros + self.reserved_month_micros


@dataclass(frozen=True)
class Resolution:
    """A request to end a pending voice approval, first writer wins."""

    kind: str
    transcript: Optional[str] = None
    duration_seconds: Optional[float] = None
    reason: Optional[str] = None
    requested_at: float = 0.0


RESOLUTION_APPROVED = "approved"
RESOLUTION_REJECTED = "rejected"
RESOLUTION_CANCELLED = "cancelled"
RESOLUTION_TIMEOUT = "timeout"
RESOLUTION_PROVIDER = "provider"


def window_starts(now: float) -> tuple[float, float]:
    """Epoch seconds at the start of the UTC day and UTC month containing ``now``."""
    dt = datetime.fromtimestamp(now, tz=timezone.utc)
    day = dt.replace(hour=0, minute=0, second=0, microsecond=0)
    month = day.replace(day=1)
    return day.timestamp(), month.timestamp()


class Ledger:
    """
    Arena of transaction and voice approval records indexed by identifier.

    Only the orchestrator writes transaction status; everything else reads.
    """

    def __init__(self, db_path: Path):
        self.db_path = db_path
        ensure_private_dir(self.db_path.parent)
        self._init_db()
        ensure_private_file(self.db_path)

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path, timeout=30.0, isolation_level=None)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    def _init_db(self) -> None:
        with self.connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=FULL")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS transactions (
                    tx_id TEXT PRIMARY KEY,
                    amount_micros INTEGER NOT NULL,
                    currency TEXT NOT NULL,
                    tx_type TEXT NOT NULL,
                    merchant TEXT,
                    description TEXT,
                    status TEXT NOT NULL,
                    requires_approval INTEGER NOT NULL DEFAULT 0,
                    approved_via_voice INTEGER NOT NULL DEFAULT 0,
                    voice_call_id TEXT,
                    metadata TEXT NOT NULL DEFAULT '{}',
                    created_at REAL NOT NULL,
                    completed_at REAL,
                    idempotency_key TEXT,
                    reserved INTEGER NOT NULL DEFAULT 0
                )
                """
            )
            conn.execute(
                """
                CREATE UNIQUE INDEX IF NOT EXISTS idx_transactions_idempotency
                ON transactions (idempotency_key)
                WHERE idempotency_key IS NOT NULL
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_transactions_spend
                ON transactions (currency, created_at)
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS voice_approvals (
                    approval_id TEXT PRIMARY KEY,
                    call_handle TEXT,
                    direction TEXT NOT NULL,
                    purpose TEXT NOT NULL,
                    status TEXT NOT NULL,
                    outcome TEXT,
                    failure_reason TEXT,
                    duration_seconds REAL,
                    transcript TEXT,
                    transaction_id TEXT,
                    started_at REAL NOT NULL,
                    ended_at REAL,
                    resolution_kind TEXT,
                    resolution_transcript TEXT,
                    resolution_duration REAL,
                    resolution_reason TEXT,
                    resolution_requested_at REAL
                )
                """
            )
            conn.execute(
                """
                CREATE UNIQUE INDEX IF NOT EXISTS idx_voice_approvals_transaction
                ON voice_approvals (transaction_id)
                WHERE transaction_id IS NOT NULL
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS agent_config (
                    id INTEGER PRIMARY KEY CHECK (id = 1),
                    version INTEGER NOT NULL,
                    payload TEXT NOT NULL
                )
                """
            )

    # ── Transactions ─────────────────────────────────────────────

    def _row_to_tx(self, row: sqlite3.Row) -> Transaction:
        return Transaction(
            tx_id=row["tx_id"],
            amount_micros=row["amount_micros"],
            currency=row["currency"],
            tx_type=TransactionType(row["tx_type"]),
            merchant=row["merchant"],
            description=row["description"],
            status=TransactionStatus(row["status"]),
            requires_approval=bool(row["requires_approval"]),
            approved_via_voice=bool(row["approved_via_voice"]),
            voice_call_id=row["voice_call_id"],
            metadata=json.loads(row["metadata"]),
            created_at=row["created_at"],
            completed_at=row["completed_at"],
            idempotency_key=row["idempotency_key"],
            reserved=bool(row["reserved"]),
        )

    def create_transaction(self, tx: Transaction) -> Transaction:
        """Insert a new transaction; a reused idempotency key inserts nothing."""
        try:
            with self.connect() as conn:
                conn.execute(
                    """
                    INSERT INTO transactions (
                        tx_id, amount_micros, currency, tx_type, merchant, description,
                        status, requires_approval, approved_via_voice, voice_call_id,
                        metadata, created_at, completed_at, idempotency_key, reserved
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        tx.tx_id,
                        tx.amount_micros,
                        tx.currency,
                        tx.tx_type.value,
                        tx.merchant,
                        tx.description,
                        tx.status.value,
                        int(tx.requires_approval),
                        int(tx.approved_via_voice),
                        tx.voice_call_id,
                        json.dumps(tx.metadata),
                        tx.created_at,
                        tx.completed_at,
                        tx.idempotency_key,
                        int(tx.reserved),
                    ),
                )
        except sqlite3.IntegrityError:
            if tx.idempotency_key is not None:
                existing = self.find_by_idempotency_key(tx.idempotency_key)
                if existing is not None:
                    raise DuplicateTransactionError(tx.idempotency_key, existing.tx_id) from None
            raise
        return tx

    def save_transaction(self, tx: Transaction) -> None:
        with self.connect() as conn:
            cursor = conn.execute(
                """
                UPDATE transactions
                SET status = ?, requires_approval = ?, approved_via_voice = ?,
                    voice_call_id = ?, metadata = ?, completed_at = ?, reserved = ?
                WHERE tx_id = ?
                """,
                (
                    tx.status.value,
                    int(tx.requires_approval),
                    int(tx.approved_via_voice),
                    tx.voice_call_id,
                    json.dumps(tx.metadata),
                    tx.completed_at,
                    int(tx.reserved),
                    tx.tx_id,
                ),
            )
            if cursor.rowcount != 1:
                raise TransactionNotFoundError(f"Transaction not found: {tx.tx_id}")

    def get_transaction(self, tx_id: str) -> Transaction:
        with self.connect() as conn:
            row = conn.execute("SELECT * FROM transactions WHERE tx_id = ?", (tx_id,)).fetchone()
        if row is None:
            raise TransactionNotFoundError(f"Transaction not found: {tx_id}")
        return self._row_to_tx(row)

    def find_by_idempotency_key(self, idempotency_key: str) -> Optional[Transaction]:
        with self.connect() as conn:
            row = conn.execute(
                "SELECT * FROM transactions WHERE idempotency_key = ?",
                (idempotency_key,),
            ).fetchone()
        return self._row_to_tx(row) if row is not None else None

    def list_transactions(
        self,
        status: Optional[TransactionStatus] = None,
        limit: int = 100,
    ) -> list[Transaction]:
        query = "SELECT * FROM transactions"
        params: list = []
        if status is not None:
            query += " WHERE status = ?"
            params.append(status.value)
        query += " ORDER BY created_at DESC, rowid DESC LIMIT ?"
        params.append(limit)
        with self.connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_tx(r) for r in rows]

    def record_completed(
        self,
        amount: Decimal | str,
        merchant: str,
        currency: str = "USDC",
        created_at: Optional[float] = None,
        description: str = "",
        tx_type: TransactionType = TransactionType.PURCHASE,
    ) -> Transaction:
        """
        Record an already-settled transaction.

        For importing history and for tests; bypasses the orchestrator.
        """
        now = time.time() if created_at is None else created_at
        tx = Transaction(
            tx_id=new_transaction_id(),
            amount_micros=amount_to_micros(amount),
            currency=currency,
            tx_type=tx_type,
            merchant=merchant,
            description=description,
            created_at=now,
            status=TransactionStatus.COMPLETED,
            completed_at=now,
        )
        return self.create_transaction(tx)

    # ── Spend ────────────────────────────────────────────────────

    def _snapshot(self, conn: sqlite3.Connection, currency: str, now: float) -> SpendSnapshot:
        day_start, month_start = window_starts(now)
        row = conn.execute(
            """
            SELECT
                COALESCE(SUM(CASE WHEN status = 'completed' AND created_at >= :day
                                  THEN amount_micros END), 0) AS spent_today,
                COALESCE(SUM(CASE WHEN status = 'completed'
                                  THEN amount_micros END), 0) AS spent_month,
                COALESCE(SUM(CASE WHEN status IN ('pending', 'approved') AND reserved = 1
                                       AND created_at >= :day
                                  THEN amount_micros END), 0) AS reserved_today,
                COALESCE(SUM(CASE WHEN status IN ('pending', 'approved') AND reserved = 1
                                  THEN amount_micros END), 0) AS reserved_month
            FROM transactions
            WHERE currency = :currency AND created_at >= :month
            """,
            {"day": day_start, "month": month_start, "currency": currency},
        ).fetchone()
        return SpendSnapshot(
            currency=currency,
            spent_today_micros=row["spent_today"],
            spent_month_micros=row["spent_month"],
            reserved_today_micros=row["reserved_today"],
            reserved_month_micros=row["reserved_month"],
        )

    def spend_snapshot(self, currency: str, now: Optional[float] = None) -> SpendSnapshot:
        """Read spend from one consistent view of the transaction set."""
        with self.connect() as conn:
            conn.execute("BEGIN")
            snapshot = self._snapshot(conn, currency, time.time() if now is None else now)
            conn.execute("COMMIT")
        return snapshot

    def evaluate_and_reserve(
        self,
        tx_id: str,
        evaluate: Callable[[Transaction, SpendSnapshot], V],
        now: Optional[float] = None,
    ) -> V:
        """
        Atomically evaluate policy against current spend and reserve the amount.

        The snapshot and the reservation happen inside one BEGIN IMMEDIATE
        transaction, so no other admission can read spend in between.
        """
        now = time.time() if now is None else now
        with self.connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                row = conn.execute("SELECT * FROM transactions WHERE tx_id = ?", (tx_id,)).fetchone()
                if row is None:
                    raise TransactionNotFoundError(f"Transaction not found: {tx_id}")
                tx = self._row_to_tx(row)
                snapshot = self._snapshot(conn, tx.currency, now)
                verdict = evaluate(tx, snapshot)
                if verdict.approved:
                    conn.execute("UPDATE transactions SET reserved = 1 WHERE tx_id = ?", (tx_id,))
            except Exception:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        return verdict

    # ── Voice approvals ──────────────────────────────────────────

    def _row_to_approval(self, row: sqlite3.Row) -> VoiceApproval:
        return VoiceApproval(
            approval_id=row["approval_id"],
            direction=VoiceDirection(row["direction"]),
            purpose=VoicePurpose(row["purpose"]),
            started_at=row["started_at"],
            status=VoiceStatus(row["status"]),
            transaction_id=row["transaction_id"],
            call_handle=row["call_handle"],
            duration_seconds=row["duration_seconds"],
            transcript=row["transcript"],
            ended_at=row["ended_at"],
            outcome=VoiceOutcome(row["outcome"]) if row["outcome"] else None,
            failure_reason=row["failure_reason"],
        )

    def create_voice_approval(self, approval: VoiceApproval) -> VoiceApproval:
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO voice_approvals (
                    approval_id, call_handle, direction, purpose, status, outcome,
                    failure_reason, duration_seconds, transcript, transaction_id,
                    started_at, ended_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    approval.approval_id,
                    approval.call_handle,
                    approval.direction.value,
                    approval.purpose.value,
                    approval.status.value,
                    approval.outcome.value if approval.outcome else None,
                    approval.failure_reason,
                    approval.duration_seconds,
                    approval.transcript,
                    approval.transaction_id,
                    approval.started_at,
                    approval.ended_at,
                ),
            )
        return approval

    def save_voice_approval(self, approval: VoiceApproval) -> None:
        with self.connect() as conn:
            cursor = conn.execute(
                """
                UPDATE voice_approvals
                SET call_handle = ?, status = ?, outcome = ?, failure_reason = ?,
                    duration_seconds = ?, transcript = ?, ended_at = ?
                WHERE approval_id = ?
                """,
                (
                    approval.call_handle,
                    approval.status.value,
                    approval.outcome.value if approval.outcome else None,
                    approval.failure_reason,
                    approval.duration_seconds,
                    approval.transcript,
                    approval.ended_at,
                    approval.approval_id,
                ),
            )
            if cursor.rowcount != 1:
                raise VoiceApprovalNotFoundError(f"Voice approval not found: {approval.approval_id}")

    def get_voice_approval(self, identifier: str) -> VoiceApproval:
        """Look up by approval ID or provider call handle."""
        with self.connect() as conn:
            row = conn.execute(
                "SELECT * FROM voice_approvals WHERE approval_id = ? OR call_handle = ?",
                (identifier, identifier),
            ).fetchone()
        if row is None:
            raise VoiceApprovalNotFoundError(f"Voice approval not found: {identifier}")
        return self._row_to_approval(row)

    def voice_approval_for_transaction(self, tx_id: str) -> Optional[VoiceApproval]:
        with self.connect() as conn:
            row = conn.execute(
                "SELECT * FROM voice_approvals WHERE transaction_id = ?",
                (tx_id,),
            ).fetchone()
        return self._row_to_approval(row) if row is not None else None

    def list_voice_approvals(self, limit: int = 100) -> list[VoiceApproval]:
        with self.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM voice_approvals ORDER BY started_at DESC, rowid DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [self._row_to_approval(r) for r in rows]

    def request_resolution(
        self,
        approval_id: str,
        kind: str,
        transcript: Optional[str] = None,
        duration_seconds: Optional[float] = None,
        reason: Optional[str] = None,
        now: Optional[float] = None,
    ) -> bool:
        """
        Ask the waiting pipeline to end a voice approval.

        Returns False if another resolution was already recorded or the
        approval is terminal; exactly one request ever wins.
        """
        with self.connect() as conn:
            cursor = conn.execute(
                """
                UPDATE voice_approvals
                SET resolution_kind = ?, resolution_transcript = ?,
                    resolution_duration = ?, resolution_reason = ?,
                    resolution_requested_at = ?
                WHERE approval_id = ?
                  AND resolution_kind IS NULL
                  AND status NOT IN ('completed', 'failed')
                """,
                (
                    kind,
                    transcript,
                    duration_seconds,
                    reason,
                    time.time() if now is None else now,
                    approval_id,
                ),
            )
            return cursor.rowcount == 1

    def get_resolution(self, approval_id: str) -> Optional[Resolution]:
        with self.connect() as conn:
            row = conn.execute(
                """
                SELECT resolution_kind, resolution_transcript, resolution_duration,
                       resolution_reason, resolution_requested_at
                FROM voice_approvals WHERE approval_id = ?
                """,
                (approval_id,),
            ).fetchone()
        if row is None:
            raise VoiceApprovalNotFoundError(f"Voice approval not found: {approval_id}")
        if row["resolution_kind"] is None:
            return None
        return Resolution(
            kind=row["resolution_kind"],
            transcript=row["resolution_transcript"],
            duration_seconds=row["resolution_duration"],
            reason=row["resolution_reason"],
            requested_at=row["resolution_requested_at"] or 0.0,
        )

    # ── Reporting ────────────────────────────────────────────────

    def stats(self, currency: str = "USDC", now: Optional[float] = None) -> dict:
        """Dashboard counters and spend for one currency."""
        now = time.time() if now is None else now
        with self.connect() as conn:
            conn.execute("BEGIN")
            counts = conn.execute(
                """
                SELECT
                    COUNT(*) AS total,
                    COALESCE(SUM(CASE WHEN status = 'pending' AND requires_approval = 1
                                      THEN 1 ELSE 0 END), 0) AS pending_approvals
                FROM transactions
                """
            ).fetchone()
            active_calls = conn.execute(
                """
                SELECT COUNT(*) AS n FROM voice_approvals
                WHERE status IN ('requested', 'ringing', 'active')
                """
            ).fetchone()["n"]
            snapshot = self._snapshot(conn, currency, now)
            conn.execute("COMMIT")
        return {
            "total_transactions": counts["total"],
            "pending_approvals": counts["pending_approvals"],
            "active_calls": active_calls,
            "currency": currency,
            "total_spent_today": f"{snapshot.spent_today:.2f}",
            "total_spent_month": f"{snapshot.spent_month:.2f}",
            "reserved_today": f"{snapshot.reserved_today:.2f}",
        }
