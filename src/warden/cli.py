"""
Warden CLI — spend controls and voice confirmation for AI agent transactions.

Commands:
    warden submit         Submit a transaction through the full pipeline
    warden transactions   List transactions
    warden show           Show one transaction and its voice approval
    warden calls          List voice approvals
    warden complete-call  Report the human's verdict for a pending call
    warden cancel         Cancel a transaction awaiting voice confirmation
    warden config         Show or update the agent configuration
    warden stop / resume  Toggle the emergency stop
    warden stats          Dashboard counters and spend
    warden audit          View the audit trail
    warden demo           Run a full demo flow
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import sys
import tempfile
import time
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Optional

import click

from . import __version__
from .agent_config import ConfigStore
from .audit import AuditTrail
from .decision import ThresholdDecisionEngine
from .errors import ConfigurationError, WardenError
from .events import EventBus
from .ledger import Ledger
from .models import TransactionStatus, TransactionType
from .orchestrator import SubmissionResult, TransactionOrchestrator, reject_known_idempotency_keys
from .policy import SpendPolicy
from .settings import WardenSettings
from .settlement import DryRunSettlement, SettlementProvider, X402Settlement
from .vapi_client import VAPI_API_KEY_ENV, VapiVoiceProvider
from .voice import LocalVoiceProvider, VoiceProvider
from .x402_client import Network, X402Config, X402PaymentClient

X402_PRIVATE_KEY_ENV = "WARDEN_X402_PRIVATE_KEY"

_STATUS_ICONS = {
    TransactionStatus.PENDING: "⏳",
    TransactionStatus.APPROVED: "👍",
    TransactionStatus.REJECTED: "🚫",
    TransactionStatus.COMPLETED: "✅",
    TransactionStatus.FAILED: "❌",
}


# ── Runtime wiring ────────────────────────────────────────────────

@dataclass
class Runtime:
    settings: WardenSettings
    ledger: Ledger
    config_store: ConfigStore
    bus: EventBus
    audit: AuditTrail
    orchestrator: TransactionOrchestrator


def _build_runtime(
    settings: Optional[WardenSettings] = None,
    voice: Optional[VoiceProvider] = None,
    settlement: Optional[SettlementProvider] = None,
) -> Runtime:
    settings = settings or WardenSettings.from_env()
    settings.ensure_dirs()
    ledger = Ledger(settings.ledger_path)
    config_store = ConfigStore(ledger)
    bus = EventBus()
    audit = AuditTrail(settings.audit_path, settings.audit_key_path)
    bus.subscribe(audit.record)
    orchestrator = TransactionOrchestrator(
        ledger=ledger,
        config_store=config_store,
        policy=SpendPolicy(),
        decision=ThresholdDecisionEngine(),
        voice=voice or LocalVoiceProvider(),
        settlement=settlement or DryRunSettlement(network=settings.settlement_network),
        publisher=bus,
        voice_timeout_seconds=settings.voice_timeout_seconds,
        poll_interval_seconds=settings.voice_poll_interval_seconds,
        precheck=reject_known_idempotency_keys(ledger),
    )
    return Runtime(settings, ledger, config_store, bus, audit, orchestrator)


def _runtime() -> Runtime:
    try:
        return _build_runtime()
    except ConfigurationError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)


def _select_voice(provider: str, local_answer: Optional[str]) -> VoiceProvider:
    if provider == "auto":
        provider = "vapi" if os.getenv(VAPI_API_KEY_ENV) else "local"
    if provider == "vapi":
        return VapiVoiceProvider.from_env()
    if local_answer is None:
        return LocalVoiceProvider()
    return LocalVoiceProvider(auto_outcome=local_answer == "approve")


def _select_settlement(settings: WardenSettings, merchant: str, endpoint: Optional[str]) -> SettlementProvider:
    if endpoint is None:
        return DryRunSettlement(network=settings.settlement_network)
    private_key = os.getenv(X402_PRIVATE_KEY_ENV)
    if not private_key:
        raise ConfigurationError(f"{X402_PRIVATE_KEY_ENV} must be set to settle over x402")
    client = X402PaymentClient.from_private_key(
        private_key,
        config=X402Config(network=Network.from_name(settings.settlement_network)),
    )
    return X402Settlement(client, {merchant: endpoint})


def _print_transaction(tx_dict: dict, indent: str = "   ") -> None:
    click.echo(f"{indent}ID:       {tx_dict['id']}")
    click.echo(f"{indent}Amount:   {Decimal(tx_dict['amount']):.2f} {tx_dict['currency']}")
    click.echo(f"{indent}Merchant: {tx_dict['merchant']}")
    click.echo(f"{indent}Type:     {tx_dict['type']}")
    click.echo(f"{indent}Status:   {tx_dict['status']}")


def _echo_result(result: SubmissionResult) -> None:
    tx = result.transaction
    icon = _STATUS_ICONS[tx.status]
    if result.ok:
        click.echo(f"{icon} Transaction completed")
    else:
        click.echo(f"{icon} Transaction {tx.status.value}: {result.error}", err=True)
    _print_transaction(tx.to_dict())
    if result.decision is not None:
        click.echo(f"   Decision: {result.decision.reasoning}")
    if result.voice_approval is not None:
        call = result.voice_approval
        outcome = call.outcome.value if call.outcome else "-"
        click.echo(f"   Call:     {call.approval_id} ({call.status.value}, {outcome})")
    if result.receipt is not None:
        click.echo(f"   Tx hash:  {result.receipt.transaction_hash}")
        if result.receipt.explorer_url:
            click.echo(f"   Explorer: {result.receipt.explorer_url}")


# ── CLI ───────────────────────────────────────────────────────────

@click.group()
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, default=False, help="Log pipeline activity to stderr")
def main(verbose: bool):
    """Warden — spend controls and voice confirmation for AI agent transactions."""
    if verbose:
        logging.basicConfig(
            level=logging.INFO,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )


@main.command()
@click.option("--amount", required=True, help="Positive decimal amount, e.g. 45.99")
@click.option(
    "--type",
    "tx_type",
    type=click.Choice([t.value for t in TransactionType]),
    default=TransactionType.PURCHASE.value,
    show_default=True,
    help="Transaction type",
)
@click.option("--merchant", required=True, help="Merchant name")
@click.option("--currency", default="USDC", show_default=True, help="Currency code")
@click.option("--description", default=None, help="Human-readable description")
@click.option("--metadata", "metadata_json", default=None, help="Extra metadata as a JSON object")
@click.option("--idempotency-key", default=None, help="Refuse the submission if this key was used before")
@click.option(
    "--voice",
    type=click.Choice(["auto", "local", "vapi"]),
    default="auto",
    show_default=True,
    help="Voice provider (auto uses Vapi when VAPI_API_KEY is set)",
)
@click.option(
    "--local-answer",
    type=click.Choice(["approve", "decline"]),
    default=None,
    help="Have the local voice provider answer by itself",
)
@click.option("--merchant-endpoint", default=None, help="x402 endpoint to pay (default: dry-run settlement)")
def submit(
    amount: str,
    tx_type: str,
    merchant: str,
    currency: str,
    description: Optional[str],
    metadata_json: Optional[str],
    idempotency_key: Optional[str],
    voice: str,
    local_answer: Optional[str],
    merchant_endpoint: Optional[str],
):
    """Submit a transaction: policy, decision, voice confirmation, settlement."""
    try:
        metadata = json.loads(metadata_json) if metadata_json else {}
    except json.JSONDecodeError as e:
        click.echo(f"❌ --metadata is not valid JSON: {e}", err=True)
        sys.exit(1)

    settings = WardenSettings.from_env()
    try:
        runtime = _build_runtime(
            settings=settings,
            voice=_select_voice(voice, local_answer),
            settlement=_select_settlement(settings, merchant, merchant_endpoint),
        )
    except ConfigurationError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)

    if merchant_endpoint is None:
        click.echo("🔍 DRY RUN — settlement is simulated")

    payload = {
        "amount": amount,
        "type": tx_type,
        "merchant": merchant,
        "currency": currency,
        "description": description,
        "metadata": metadata,
    }
    try:
        result = runtime.orchestrator.submit(payload, idempotency_key=idempotency_key)
    except WardenError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)

    _echo_result(result)
    if not result.ok:
        sys.exit(1)


@main.command()
@click.option(
    "--status",
    type=click.Choice([s.value for s in TransactionStatus]),
    default=None,
    help="Filter by status",
)
@click.option("--limit", type=int, default=20, help="Number of transactions")
def transactions(status: Optional[str], limit: int):
    """List recent transactions."""
    runtime = _runtime()
    txs = runtime.ledger.list_transactions(
        status=TransactionStatus(status) if status else None,
        limit=limit,
    )
    if not txs:
        click.echo("No transactions found.")
        return
    for tx in txs:
        ts = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(tx.created_at))
        voice = " 📞" if tx.voice_call_id else ""
        click.echo(
            f"  {ts} {_STATUS_ICONS[tx.status]} {tx.tx_id} "
            f"{tx.amount:.2f} {tx.currency} → {tx.merchant} [{tx.status.value}]{voice}"
        )


@main.command()
@click.argument("tx_id")
def show(tx_id: str):
    """Show a transaction and its voice approval as JSON."""
    runtime = _runtime()
    try:
        tx = runtime.ledger.get_transaction(tx_id)
    except WardenError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)
    call = runtime.ledger.voice_approval_for_transaction(tx_id)
    click.echo(
        json.dumps(
            {"transaction": tx.to_dict(), "call": call.to_dict() if call else None},
            indent=2,
        )
    )


@main.command()
@click.option("--limit", type=int, default=20, help="Number of calls")
def calls(limit: int):
    """List voice approvals."""
    runtime = _runtime()
    approvals = runtime.ledger.list_voice_approvals(limit=limit)
    if not approvals:
        click.echo("No voice calls found.")
        return
    for call in approvals:
        ts = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(call.started_at))
        outcome = f" → {call.outcome.value}" if call.outcome else ""
        reason = f" ({call.failure_reason})" if call.failure_reason else ""
        click.echo(f"  {ts} 📞 {call.approval_id} tx={call.transaction_id} [{call.status.value}]{outcome}{reason}")


@main.command("complete-call")
@click.argument("call_id")
@click.option("--approve/--decline", "approved", required=True, help="The human's verdict")
@click.option("--transcript", default=None, help="Call transcript")
@click.option("--duration", type=float, default=None, help="Call duration in seconds")
def complete_call(call_id: str, approved: bool, transcript: Optional[str], duration: Optional[float]):
    """Report the verdict for a pending call (approval ID or call handle)."""
    runtime = _runtime()
    try:
        call = runtime.orchestrator.complete_voice_call(
            call_id,
            approved=approved,
            transcript=transcript,
            duration_seconds=duration,
        )
    except WardenError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)

    if call.is_terminal:
        outcome = call.outcome.value if call.outcome else "-"
        click.echo(f"📞 Call {call.approval_id} has ended: {call.status.value} ({outcome})")
    else:
        click.echo(f"📨 Verdict recorded for {call.approval_id}: {'approve' if approved else 'decline'}")
        click.echo("   The waiting submission applies it on its next poll.")


@main.command()
@click.argument("tx_id")
def cancel(tx_id: str):
    """Cancel a transaction that is awaiting voice confirmation."""
    runtime = _runtime()
    try:
        tx = runtime.orchestrator.cancel(tx_id)
    except WardenError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)
    if tx.status == TransactionStatus.REJECTED:
        click.echo(f"🛑 Transaction {tx_id} cancelled")
    else:
        click.echo(f"🛑 Cancellation requested for {tx_id}")


@main.group("config")
def config_group():
    """Show or update the agent configuration."""
    pass


@config_group.command("show")
def config_show():
    """Print the current agent configuration."""
    runtime = _runtime()
    click.echo(json.dumps(runtime.config_store.get().to_dict(), indent=2))


@config_group.command("set")
@click.option("--name", default=None, help="Agent name")
@click.option("--approval-threshold", default=None, help="Amount at or above which voice confirmation is required")
@click.option("--daily-limit", default=None, help="Daily spending limit")
@click.option("--monthly-limit", default=None, help="Monthly spending limit")
@click.option("--block", "block", multiple=True, help="Add a merchant to the block list")
@click.option("--unblock", "unblock", multiple=True, help="Remove a merchant from the block list")
@click.option("--auto-approval/--no-auto-approval", default=None, help="Auto-approval flag")
@click.option("--voice-notifications/--no-voice-notifications", default=None, help="Voice notifications flag")
def config_set(
    name: Optional[str],
    approval_threshold: Optional[str],
    daily_limit: Optional[str],
    monthly_limit: Optional[str],
    block: tuple[str, ...],
    unblock: tuple[str, ...],
    auto_approval: Optional[bool],
    voice_notifications: Optional[bool],
):
    """Update agent configuration fields in one atomic replace."""
    runtime = _runtime()
    current = runtime.config_store.get()
    changes: dict = {}
    if name is not None:
        changes["name"] = name
    if approval_threshold is not None:
        changes["approval_threshold"] = approval_threshold
    if daily_limit is not None:
        changes["daily_spend_limit"] = daily_limit
    if monthly_limit is not None:
        changes["monthly_spend_limit"] = monthly_limit
    if block or unblock:
        removed = {m.lower() for m in unblock}
        merchants = [m for m in current.blocked_merchants if m.lower() not in removed]
        changes["blocked_merchants"] = merchants + [m for m in block if m.lower() not in removed]
    if auto_approval is not None:
        changes["auto_approval_enabled"] = auto_approval
    if voice_notifications is not None:
        changes["voice_notifications_enabled"] = voice_notifications

    if not changes:
        click.echo("Nothing to update.")
        return
    try:
        updated = runtime.orchestrator.update_config(changes)
    except WardenError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)
    click.echo(f"✅ Configuration updated (version {updated.version})")
    for key in sorted(changes):
        click.echo(f"   {key}: {updated.to_dict()[key]}")


@main.command()
def stop():
    """Activate the emergency stop: every new transaction is denied."""
    runtime = _runtime()
    updated = runtime.orchestrator.update_config({"emergency_stop_active": True})
    click.echo(f"🛑 Emergency stop active (config version {updated.version})")


@main.command()
def resume():
    """Clear the emergency stop."""
    runtime = _runtime()
    updated = runtime.orchestrator.update_config({"emergency_stop_active": False})
    click.echo(f"▶️  Emergency stop cleared (config version {updated.version})")


@main.command()
@click.option("--currency", default="USDC", show_default=True, help="Currency for spend totals")
def stats(currency: str):
    """Show dashboard counters and spend."""
    runtime = _runtime()
    data = runtime.ledger.stats(currency=currency.upper())
    config = runtime.config_store.get()
    click.echo(f"📊 {config.name}")
    click.echo(f"   Transactions:      {data['total_transactions']}")
    click.echo(f"   Pending approvals: {data['pending_approvals']}")
    click.echo(f"   Active calls:      {data['active_calls']}")
    click.echo(f"   Spent today:       {data['total_spent_today']} of {config.daily_spend_limit} {currency.upper()}")
    click.echo(f"   Spent this month:  {data['total_spent_month']} of {config.monthly_spend_limit} {currency.upper()}")
    click.echo(f"   Reserved today:    {data['reserved_today']}")
    if config.emergency_stop_active:
        click.echo("   🛑 Emergency stop is active")


@main.command()
@click.option("--tx-id", default=None, help="Filter by transaction ID")
@click.option("--limit", type=int, default=20, help="Number of events")
def audit(tx_id: Optional[str], limit: int):
    """View the audit trail."""
    runtime = _runtime()
    try:
        events = runtime.audit.read_events(transaction_id=tx_id, limit=limit)
    except RuntimeError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)

    if not events:
        click.echo("No audit events found.")
        return
    _echo_events(events, indent="  ")


def _echo_events(events, indent: str) -> None:
    for event in events:
        ts = time.strftime("%H:%M:%S", time.localtime(event.timestamp))
        status = "✅" if event.success else "❌"
        amount = f" {Decimal(event.amount):.2f} {event.currency}" if event.amount else ""
        merchant = f" → {event.merchant}" if event.merchant else ""
        reason = f" ({event.reason})" if event.reason and not event.success else ""
        click.echo(f"{indent}{ts} {status} {event.event_type}{amount}{merchant}{reason}")


@main.command()
@click.option("--keep", is_flag=True, default=False, help="Keep the demo state directory")
def demo(keep: bool):
    """Run a full demo of the transaction pipeline against throwaway state."""
    click.echo("🎬 Warden Demo — Transaction Pipeline")
    click.echo("=" * 50)

    home = Path(tempfile.mkdtemp(prefix="warden-demo-"))
    settings = WardenSettings(home=home, voice_timeout_seconds=5.0, voice_poll_interval_seconds=0.05)
    voice = LocalVoiceProvider(auto_outcome=True)
    runtime = _build_runtime(settings=settings, voice=voice)
    orch = runtime.orchestrator

    click.echo("\n1️⃣  Agent configuration...")
    config = runtime.config_store.get()
    click.echo(f"   Threshold: {config.approval_threshold} | Daily: {config.daily_spend_limit} | Monthly: {config.monthly_spend_limit}")

    def run(label: str, amount: str, merchant: str):
        result = orch.submit({"amount": amount, "type": "purchase", "merchant": merchant, "description": label})
        tx = result.transaction
        via = " via 📞" if tx.approved_via_voice else ""
        outcome = "" if result.ok else f": {result.error}"
        click.echo(f"   {_STATUS_ICONS[tx.status]} {amount} USDC → {merchant} [{tx.status.value}]{via}{outcome}")

    click.echo("\n2️⃣  Small purchase (auto-approved)...")
    run("Office supplies", "45.99", "Staples")

    click.echo("\n3️⃣  Large purchase (voice confirmation, human approves)...")
    run("Conference ticket", "150.00", "EventBrite")

    click.echo("\n4️⃣  Large purchase (voice confirmation, human declines)...")
    voice.auto_outcome = False
    run("Standing desk", "420.00", "Fully")
    voice.auto_outcome = True

    click.echo("\n5️⃣  Emergency stop...")
    orch.update_config({"emergency_stop_active": True})
    run("Coffee", "4.50", "Blue Bottle")
    orch.update_config({"emergency_stop_active": False})

    click.echo("\n6️⃣  Daily limit lowered to 200.00...")
    orch.update_config({"daily_spend_limit": "200.00"})
    run("Cloud credits", "45.99", "AWS")

    click.echo("\n7️⃣  Stats...")
    data = runtime.ledger.stats()
    click.echo(f"   Transactions: {data['total_transactions']} | Spent today: {data['total_spent_today']} USDC")

    click.echo("\n8️⃣  Audit trail (last 12 events)...")
    _echo_events(runtime.audit.read_events(limit=12), indent="   ")

    click.echo("\n" + "=" * 50)
    click.echo("🎉 Demo complete! Policy → Decision → Voice → Settlement → Audit")
    if keep:
        click.echo(f"   State kept in {home}")
    else:
        shutil.rmtree(home)


if __name__ == "__main__":
    main()
