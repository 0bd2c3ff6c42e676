"""
Spending policy evaluation.

Checks, in priority order (first failing check is reported):
1. Emergency stop
2. Daily limit
3. Monthly limit
4. Blocked merchant
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Protocol

from .agent_config import AgentConfig
from .errors import ConfigurationError
from .ledger import SpendSnapshot
from .models import Transaction
from .money import limit_to_micros, micros_to_decimal


REASON_OK = "within-limits"
REASON_EMERGENCY_STOP = "emergency-stop"
REASON_DAILY_LIMIT = "daily-limit"
REASON_MONTHLY_LIMIT = "monthly-limit"
REASON_BLOCKED_MERCHANT = "blocked-merchant"

_MESSAGES = {
    REASON_OK: "Transaction within all spending limits",
    REASON_EMERGENCY_STOP: "Emergency stop is active",
    REASON_DAILY_LIMIT: "Daily spending limit exceeded",
    REASON_MONTHLY_LIMIT: "Monthly spending limit exceeded",
    REASON_BLOCKED_MERCHANT: "Merchant is blocked",
}


@dataclass(frozen=True)
class Verdict:
    """Admit/deny outcome of a policy check."""

    approved: bool
    reason: str
    breakdown: dict[str, Any] = field(default_factory=dict)

    @property
    def message(self) -> str:
        return _MESSAGES.get(self.reason, self.reason)

    def to_dict(self) -> dict:
        return {
            "approved": self.approved,
            "reason": self.reason,
            "message": self.message,
            "breakdown": self.breakdown,
        }


class PolicyProvider(Protocol):
    def evaluate(self, transaction: Transaction, config: AgentConfig, spend: SpendSnapshot) -> Verdict: ...


def _window(spent_micros: int, reserved_micros: int, amount_micros: int, limit_micros: int) -> dict[str, str]:
    committed = spent_micros + reserved_micros
    return {
        "spent": f"{micros_to_decimal(spent_micros)}",
        "reserved": f"{micros_to_decimal(reserved_micros)}",
        "limit": f"{micros_to_decimal(limit_micros)}",
        "remaining": f"{micros_to_decimal(limit_micros - committed)}",
        "would_be": f"{micros_to_decimal(committed + amount_micros)}",
    }


def _require_limit(config: AgentConfig, name: str) -> Decimal:
    value = getattr(config, name)
    if value is None:
        raise ConfigurationError(f"Agent configuration is missing {name}")
    return value


class SpendPolicy:
    """Default policy: spend limits, merchant block list and emergency stop."""

    def evaluate(self, transaction: Transaction, config: AgentConfig, spend: SpendSnapshot) -> Verdict:
        daily_limit = limit_to_micros(_require_limit(config, "daily_spend_limit"))
        monthly_limit = limit_to_micros(_require_limit(config, "monthly_spend_limit"))
        amount = transaction.amount_micros

        within_daily = spend.committed_today_micros + amount <= daily_limit
        within_monthly = spend.committed_month_micros + amount <= monthly_limit
        merchant_authorized = not config.is_blocked(transaction.merchant)

        breakdown = {
            "currency": spend.currency,
            "amount": f"{transaction.amount}",
            "within_daily_limit": within_daily,
            "within_monthly_limit": within_monthly,
            "merchant_authorized": merchant_authorized,
            "emergency_stop_active": config.emergency_stop_active,
            "limits": {
                "daily": _window(spend.spent_today_micros, spend.reserved_today_micros, amount, daily_limit),
                "monthly": _window(spend.spent_month_micros, spend.reserved_month_micros, amount, monthly_limit),
            },
        }

        if config.emergency_stop_active:
            reason = REASON_EMERGENCY_STOP
        elif not within_daily:
            reason = REASON_DAILY_LIMIT
        elif not within_monthly:
            reason = REASON_MONTHLY_LIMIT
        elif not merchant_authorized:
            reason = REASON_BLOCKED_MERCHANT
        else:
            return Verdict(approved=True, reason=REASON_OK, breakdown=breakdown)
        return Verdict(approved=False, reason=reason, breakdown=breakdown)
