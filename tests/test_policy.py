"""Tests for spend policy evaluation."""

import time

import pytest

from warden.agent_config import AgentConfig
from warden.errors import ConfigurationError
from warden.ledger import SpendSnapshot
from warden.models import TransactionRequest
from warden.policy import (
    REASON_BLOCKED_MERCHANT,
    REASON_DAILY_LIMIT,
    REASON_EMERGENCY_STOP,
    REASON_MONTHLY_LIMIT,
    REASON_OK,
    SpendPolicy,
)


def make_tx(amount="45.99", merchant="Staples"):
    req = TransactionRequest.from_dict({"amount": amount, "type": "purchase", "merchant": merchant})
    return req.to_transaction(created_at=time.time())


def spend(today="0", month=None, reserved_today="0", reserved_month=None):
    def micros(v):
        return int(float(v) * 1_000_000)

    return SpendSnapshot(
        currency="USDC",
        spent_today_micros=micros(today),
        spent_month_micros=micros(month if month is not None else today),
        reserved_today_micros=micros(reserved_today),
        reserved_month_micros=micros(reserved_month if reserved_month is not None else reserved_today),
    )


@pytest.fixture
def policy():
    return SpendPolicy()


class TestSpendPolicy:
    def test_within_limits(self, policy):
        verdict = policy.evaluate(make_tx(), AgentConfig(), spend())
        assert verdict.approved
        assert verdict.reason == REASON_OK
        assert verdict.breakdown["within_daily_limit"]
        assert verdict.breakdown["limits"]["daily"]["would_be"] == "45.990000"

    def test_daily_limit_exceeded(self, policy):
        verdict = policy.evaluate(make_tx("45.99"), AgentConfig(), spend(today="980.00"))
        assert not verdict.approved
        assert verdict.reason == REASON_DAILY_LIMIT
        assert verdict.message == "Daily spending limit exceeded"
        assert verdict.breakdown["limits"]["daily"]["remaining"] == "20.000000"

    def test_exactly_at_limit_is_allowed(self, policy):
        verdict = policy.evaluate(make_tx("20.00"), AgentConfig(), spend(today="980.00"))
        assert verdict.approved

    def test_reservations_count_against_limit(self, policy):
        verdict = policy.evaluate(make_tx("45.99"), AgentConfig(), spend(today="900", reserved_today="80"))
        assert verdict.reason == REASON_DAILY_LIMIT

    def test_monthly_limit_exceeded(self, policy):
        verdict = policy.evaluate(make_tx("45.99"), AgentConfig(), spend(today="0", month="4990.00"))
        assert verdict.reason == REASON_MONTHLY_LIMIT

    def test_blocked_merchant(self, policy):
        config = AgentConfig(blocked_merchants=("Casino",))
        verdict = policy.evaluate(make_tx(merchant="casino"), config, spend())
        assert verdict.reason == REASON_BLOCKED_MERCHANT
        assert not verdict.breakdown["merchant_authorized"]

    def test_emergency_stop_wins_over_everything(self, policy):
        config = AgentConfig(emergency_stop_active=True, blocked_merchants=("Casino",))
        verdict = policy.evaluate(make_tx("5000", merchant="Casino"), config, spend(today="999", month="4999"))
        assert verdict.reason == REASON_EMERGENCY_STOP

    def test_daily_reported_before_monthly(self, policy):
        verdict = policy.evaluate(make_tx("45.99"), AgentConfig(), spend(today="990", month="4990"))
        assert verdict.reason == REASON_DAILY_LIMIT

    def test_missing_limit_is_configuration_error(self, policy):
        config = AgentConfig(daily_spend_limit=None)
        with pytest.raises(ConfigurationError, match="daily_spend_limit"):
            policy.evaluate(make_tx(), config, spend())

    def test_verdict_to_dict(self, policy):
        d = policy.evaluate(make_tx(), AgentConfig(), spend()).to_dict()
        assert d["approved"] is True
        assert d["message"] == "Transaction within all spending limits"
