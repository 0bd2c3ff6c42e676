"""
Warden — spend controls and voice confirmation for AI agent transactions.

Agent proposes a spend → policy admits it → a human confirms large ones
by phone → settlement executes → every step is published and audited.
"""

__version__ = "0.1.0"

from .agent_config import AgentConfig, ConfigStore
from .audit import AuditTrail
from .decision import Decision, ThresholdDecisionEngine
from .events import EventBus, LifecycleEvent, LifecycleEventType
from .ledger import Ledger, SpendSnapshot
from .models import Transaction, TransactionRequest, TransactionStatus, TransactionType
from .orchestrator import SubmissionResult, TransactionOrchestrator, reject_known_idempotency_keys
from .policy import SpendPolicy, Verdict
from .settings import WardenSettings
from .settlement import DryRunSettlement, SettlementReceipt, X402Settlement
from .voice import LocalVoiceProvider, VoiceApproval, VoiceOutcome, VoiceStatus

__all__ = [
    "AgentConfig", "ConfigStore", "AuditTrail", "Decision", "ThresholdDecisionEngine",
    "EventBus", "LifecycleEvent", "LifecycleEventType", "Ledger", "SpendSnapshot",
    "Transaction", "TransactionRequest", "TransactionStatus", "TransactionType",
    "SubmissionResult", "TransactionOrchestrator", "reject_known_idempotency_keys",
    "SpendPolicy", "Verdict", "WardenSettings",
    "DryRunSettlement", "SettlementReceipt", "X402Settlement",
    "LocalVoiceProvider", "VoiceApproval", "VoiceOutcome", "VoiceStatus",
]
