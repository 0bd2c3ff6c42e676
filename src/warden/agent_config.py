"""
Agent configuration.

One process-wide record, read on every transaction and replaced whole on
every update. Readers get a frozen snapshot; writers swap the entire row
inside a single SQLite write transaction, so nobody sees a new threshold
paired with an old spend limit.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import asdict, dataclass, field, fields, replace
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any, Mapping, Optional

from .errors import ValidationError

if TYPE_CHECKING:
    from .ledger import Ledger

logger = logging.getLogger(__name__)


_DECIMAL_FIELDS = ("approval_threshold", "daily_spend_limit", "monthly_spend_limit")
_LIST_FIELDS = ("authorized_merchants", "blocked_merchants")
_BOOL_FIELDS = ("auto_approval_enabled", "voice_notifications_enabled", "emergency_stop_active")
_READ_ONLY_FIELDS = ("version", "updated_at")


@dataclass(frozen=True)
class AgentConfig:
    """Spending policy for the agent."""

    name: str = "Transaction Agent"
    approval_threshold: Optional[Decimal] = Decimal("100.00")
    daily_spend_limit: Optional[Decimal] = Decimal("1000.00")
    monthly_spend_limit: Optional[Decimal] = Decimal("5000.00")
    authorized_merchants: tuple[str, ...] = field(default_factory=tuple)
    blocked_merchants: tuple[str, ...] = field(default_factory=tuple)
    auto_approval_enabled: bool = True
    voice_notifications_enabled: bool = True
    emergency_stop_active: bool = False
    version: int = 0
    updated_at: float = 0.0

    def is_blocked(self, merchant: Optional[str]) -> bool:
        if not merchant:
            return False
        return merchant.lower() in {m.lower() for m in self.blocked_merchants}

    def to_dict(self) -> dict:
        data = asdict(self)
        for name in _DECIMAL_FIELDS:
            value = data[name]
            data[name] = None if value is None else f"{value}"
        for name in _LIST_FIELDS:
            data[name] = list(data[name])
        return data

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "AgentConfig":
        """Rebuild a stored record. Missing numeric fields stay ``None``."""
        known = {f.name for f in fields(cls)}
        values: dict[str, Any] = {}
        for key, value in raw.items():
            if key not in known:
                continue
            if key in _DECIMAL_FIELDS:
                values[key] = None if value is None else Decimal(str(value))
            elif key in _LIST_FIELDS:
                values[key] = tuple(value or ())
            else:
                values[key] = value
        for name in _DECIMAL_FIELDS:
            values.setdefault(name, None)
        return cls(**values)


def _coerce_decimal(name: str, value: Any) -> Decimal:
    try:
        dec = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{name} must be a number", field=name) from None
    if not dec.is_finite() or dec < 0:
        raise ValidationError(f"{name} must be a non-negative number", field=name)
    return dec


def _coerce_merchants(name: str, value: Any) -> tuple[str, ...]:
    if isinstance(value, str) or not isinstance(value, (list, tuple, set, frozenset)):
        raise ValidationError(f"{name} must be a list of merchant names", field=name)
    merchants = []
    for item in value:
        if not isinstance(item, str) or not item.strip():
            raise ValidationError(f"{name} entries must be non-empty strings", field=name)
        merchants.append(item.strip())
    return tuple(dict.fromkeys(merchants))


def apply_update(current: AgentConfig, changes: Mapping[str, Any], now: float) -> AgentConfig:
    """Validate a partial update and return the complete replacement record."""
    known = {f.name for f in fields(AgentConfig)}
    updates: dict[str, Any] = {}
    for key, value in changes.items():
        if key not in known or key in _READ_ONLY_FIELDS:
            raise ValidationError(f"Unknown configuration field: {key}", field=key)
        if key in _DECIMAL_FIELDS:
            updates[key] = _coerce_decimal(key, value)
        elif key in _LIST_FIELDS:
            updates[key] = _coerce_merchants(key, value)
        elif key in _BOOL_FIELDS:
            if not isinstance(value, bool):
                raise ValidationError(f"{key} must be true or false", field=key)
            updates[key] = value
        elif key == "name":
            if not isinstance(value, str) or not value.strip():
                raise ValidationError("name must be a non-empty string", field=key)
            updates[key] = value.strip()
    return replace(current, **updates, version=current.version + 1, updated_at=now)


class ConfigStore:
    """SQLite-backed holder of the single agent configuration row."""

    def __init__(self, ledger: "Ledger", clock=time.time):
        self.ledger = ledger
        self._clock = clock
        self._ensure_row()

    def _ensure_row(self) -> None:
        default = replace(AgentConfig(), updated_at=self._clock())
        with self.ledger.connect() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO agent_config (id, version, payload) VALUES (1, ?, ?)",
                (default.version, json.dumps(default.to_dict())),
            )

    def get(self) -> AgentConfig:
        """Current configuration snapshot."""
        with self.ledger.connect() as conn:
            row = conn.execute("SELECT payload FROM agent_config WHERE id = 1").fetchone()
        assert row is not None
        return AgentConfig.from_dict(json.loads(row["payload"]))

    def update(self, changes: Mapping[str, Any]) -> AgentConfig:
        """Apply a partial update as one whole-record replace."""
        with self.ledger.connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                row = conn.execute("SELECT payload FROM agent_config WHERE id = 1").fetchone()
                current = AgentConfig.from_dict(json.loads(row["payload"]))
                updated = apply_update(current, changes, now=self._clock())
                conn.execute(
                    "UPDATE agent_config SET version = ?, payload = ? WHERE id = 1",
                    (updated.version, json.dumps(updated.to_dict())),
                )
            except Exception:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        logger.info("Agent configuration updated to version %d (%s)", updated.version, ", ".join(sorted(changes)))
        return updated

    def seed(self, config: AgentConfig) -> AgentConfig:
        """Overwrite the stored record (used to seed a known configuration)."""
        with self.ledger.connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute("SELECT version FROM agent_config WHERE id = 1").fetchone()
            stored = replace(config, version=int(row["version"]) + 1, updated_at=self._clock())
            conn.execute(
                "UPDATE agent_config SET version = ?, payload = ? WHERE id = 1",
                (stored.version, json.dumps(stored.to_dict())),
            )
            conn.execute("COMMIT")
        return stored
