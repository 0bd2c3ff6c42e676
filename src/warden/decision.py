"""Decide whether a human must confirm a transaction, and what to say on the call."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol

from .agent_config import AgentConfig
from .errors import ConfigurationError
from .models import Transaction
from .money import limit_to_micros


ACTION_AUTO_APPROVE = "auto_approve"
ACTION_VOICE_APPROVAL = "request_voice_approval"


@dataclass(frozen=True)
class Decision:
    requires_approval: bool
    reasoning: str
    recommended_action: str = ACTION_AUTO_APPROVE
    notes: tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict:
        return {
            "requires_approval": self.requires_approval,
            "reasoning": self.reasoning,
            "recommended_action": self.recommended_action,
            "notes": list(self.notes),
        }


class DecisionProvider(Protocol):
    def decide(self, transaction: Transaction, config: AgentConfig) -> Decision: ...


class ThresholdDecisionEngine:
    """Human confirmation is required when the amount reaches the approval threshold."""

    def decide(self, transaction: Transaction, config: AgentConfig) -> Decision:
        if config.approval_threshold is None:
            raise ConfigurationError("Agent configuration is missing approval_threshold")

        amount = transaction.amount
        threshold = config.approval_threshold
        requires_approval = transaction.amount_micros >= limit_to_micros(threshold)

        if requires_approval:
            reasoning = (
                f"Transaction amount ({amount} {transaction.currency}) meets the approval "
                f"threshold ({threshold}). Voice confirmation required."
            )
        else:
            reasoning = (
                f"Transaction amount ({amount} {transaction.currency}) is within the "
                f"auto-approval limit ({threshold}). Processing automatically."
            )

        notes = (
            f"Analyzing transaction for {transaction.merchant or transaction.tx_type.value}",
            f"Checked against daily limit: {config.daily_spend_limit}",
            f"Decision: {'REQUIRES_APPROVAL' if requires_approval else 'AUTO_APPROVED'}",
        )
        return Decision(
            requires_approval=requires_approval,
            reasoning=reasoning,
            recommended_action=ACTION_VOICE_APPROVAL if requires_approval else ACTION_AUTO_APPROVE,
            notes=notes,
        )


def approval_script(transaction: Transaction) -> dict:
    """Call script the voice agent reads when asking for confirmation."""
    merchant = transaction.merchant or "merchant"
    return {
        "greeting": "Hello, this is your AI transaction agent.",
        "message": (
            f"I need your approval for a {transaction.tx_type.value} transaction of "
            f"{transaction.amount} {transaction.currency} to {merchant}."
        ),
        "questions": [
            "Do you approve this transaction?",
            "Would you like me to proceed with the payment?",
        ],
        "closing": "Thank you for your confirmation.",
    }
