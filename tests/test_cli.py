"""CLI tests against a throwaway WARDEN_HOME."""

import json

import pytest
from click.testing import CliRunner

from warden.cli import main
from warden.ledger import Ledger
from warden.models import TransactionStatus


@pytest.fixture
def home(tmp_path, monkeypatch):
    monkeypatch.setenv("WARDEN_HOME", str(tmp_path))
    monkeypatch.setenv("WARDEN_VOICE_TIMEOUT_SECONDS", "0.5")
    monkeypatch.setenv("WARDEN_VOICE_POLL_INTERVAL", "0.01")
    for name in ("VAPI_API_KEY", "VAPI_ASSISTANT_ID", "VAPI_PHONE_NUMBER_ID", "WARDEN_APPROVER_PHONE",
                 "WARDEN_X402_PRIVATE_KEY", "WARDEN_AUDIT_HMAC_KEY"):
        monkeypatch.delenv(name, raising=False)
    return tmp_path


@pytest.fixture
def runner():
    return CliRunner()


def ledger(home):
    return Ledger(home / "ledger.sqlite3")


def submit(runner, *args):
    return runner.invoke(main, ["submit", *args])


class TestSubmit:
    def test_small_purchase_completes(self, home, runner):
        result = submit(runner, "--amount", "45.99", "--merchant", "Staples")

        assert result.exit_code == 0, result.output
        assert "DRY RUN" in result.output
        assert "✅ Transaction completed" in result.output
        assert "Tx hash:  0x" in result.output
        (tx,) = ledger(home).list_transactions()
        assert tx.status == TransactionStatus.COMPLETED

    def test_voice_approval_by_local_answer(self, home, runner):
        result = submit(runner, "--amount", "150", "--merchant", "EventBrite", "--local-answer", "approve")

        assert result.exit_code == 0, result.output
        assert "completed, approved" in result.output
        (tx,) = ledger(home).list_transactions()
        assert tx.approved_via_voice

    def test_voice_decline_exits_nonzero(self, home, runner):
        result = submit(runner, "--amount", "150", "--merchant", "EventBrite", "--local-answer", "decline")

        assert result.exit_code == 1
        assert "🚫 Transaction rejected" in result.output
        assert "confirmation-rejected" in result.output

    def test_unanswered_call_times_out(self, home, runner):
        result = submit(runner, "--amount", "150", "--merchant", "EventBrite", "--voice", "local")

        assert result.exit_code == 1
        assert "timeout" in result.output
        (call,) = ledger(home).list_voice_approvals()
        assert call.failure_reason == "timeout"

    def test_validation_error(self, home, runner):
        result = submit(runner, "--amount", "-5", "--merchant", "Staples")
        assert result.exit_code == 1
        assert "❌" in result.output
        assert ledger(home).list_transactions() == []

    def test_bad_metadata_json(self, home, runner):
        result = submit(runner, "--amount", "5", "--merchant", "Staples", "--metadata", "{oops")
        assert result.exit_code == 1
        assert "--metadata is not valid JSON" in result.output

    def test_metadata_is_stored(self, home, runner):
        result = submit(runner, "--amount", "5", "--merchant", "Staples", "--metadata", '{"order": "A-1"}')
        assert result.exit_code == 0, result.output
        (tx,) = ledger(home).list_transactions()
        assert tx.metadata["order"] == "A-1"

    def test_duplicate_idempotency_key(self, home, runner):
        args = ("--amount", "5", "--merchant", "Staples", "--idempotency-key", "order-1")
        assert submit(runner, *args).exit_code == 0
        again = submit(runner, *args)
        assert again.exit_code == 1
        assert "Idempotency key already used" in again.output
        assert len(ledger(home).list_transactions()) == 1

    def test_vapi_without_credentials(self, home, runner):
        result = submit(runner, "--amount", "5", "--merchant", "Staples", "--voice", "vapi")
        assert result.exit_code == 1
        assert "Vapi voice provider needs" in result.output

    def test_x402_without_key(self, home, runner):
        result = submit(
            runner, "--amount", "5", "--merchant", "Staples", "--merchant-endpoint", "https://staples.example/pay"
        )
        assert result.exit_code == 1
        assert "WARDEN_X402_PRIVATE_KEY must be set" in result.output


class TestEmergencyStop:
    def test_stop_denies_and_resume_restores(self, home, runner):
        stopped = runner.invoke(main, ["stop"])
        assert stopped.exit_code == 0
        assert "Emergency stop active" in stopped.output

        denied = submit(runner, "--amount", "1", "--merchant", "Staples")
        assert denied.exit_code == 1
        assert "emergency-stop" in denied.output

        assert runner.invoke(main, ["resume"]).exit_code == 0
        assert submit(runner, "--amount", "1", "--merchant", "Staples").exit_code == 0


class TestConfig:
    def test_set_and_show(self, home, runner):
        result = runner.invoke(
            main,
            ["config", "set", "--approval-threshold", "250", "--daily-limit", "500", "--block", "Casino"],
        )
        assert result.exit_code == 0, result.output
        assert "✅ Configuration updated (version 1)" in result.output

        shown = json.loads(runner.invoke(main, ["config", "show"]).output)
        assert shown["approval_threshold"] == "250"
        assert shown["daily_spend_limit"] == "500"
        assert shown["blocked_merchants"] == ["Casino"]

    def test_unblock(self, home, runner):
        runner.invoke(main, ["config", "set", "--block", "Casino", "--block", "Arcade"])
        runner.invoke(main, ["config", "set", "--unblock", "casino"])
        shown = json.loads(runner.invoke(main, ["config", "show"]).output)
        assert shown["blocked_merchants"] == ["Arcade"]

    def test_nothing_to_update(self, home, runner):
        result = runner.invoke(main, ["config", "set"])
        assert result.exit_code == 0
        assert "Nothing to update." in result.output

    def test_invalid_value(self, home, runner):
        result = runner.invoke(main, ["config", "set", "--daily-limit", "lots"])
        assert result.exit_code == 1
        assert "daily_spend_limit must be a number" in result.output

    def test_blocked_merchant_denied(self, home, runner):
        runner.invoke(main, ["config", "set", "--block", "Casino"])
        result = submit(runner, "--amount", "5", "--merchant", "casino")
        assert result.exit_code == 1
        assert "blocked-merchant" in result.output


class TestInspection:
    def test_transactions_and_show(self, home, runner):
        assert runner.invoke(main, ["transactions"]).output.strip() == "No transactions found."
        submit(runner, "--amount", "45.99", "--merchant", "Staples")

        listed = runner.invoke(main, ["transactions"])
        assert "45.99 USDC → Staples [completed]" in listed.output

        (tx,) = ledger(home).list_transactions()
        shown = json.loads(runner.invoke(main, ["show", tx.tx_id]).output)
        assert shown["transaction"]["id"] == tx.tx_id
        assert shown["call"] is None

    def test_show_unknown(self, home, runner):
        result = runner.invoke(main, ["show", "tx-missing"])
        assert result.exit_code == 1
        assert "Transaction not found" in result.output

    def test_calls(self, home, runner):
        submit(runner, "--amount", "150", "--merchant", "EventBrite", "--local-answer", "approve")
        result = runner.invoke(main, ["calls"])
        assert "[completed] → approved" in result.output

    def test_stats(self, home, runner):
        submit(runner, "--amount", "45.99", "--merchant", "Staples")
        result = runner.invoke(main, ["stats"])
        assert result.exit_code == 0
        assert "Transactions:      1" in result.output
        assert "Spent today:       45.99 of 1000.00 USDC" in result.output

    def test_audit(self, home, runner):
        submit(runner, "--amount", "45.99", "--merchant", "Staples")
        result = runner.invoke(main, ["audit"])
        assert result.exit_code == 0
        assert "transaction_created 45.99 USDC → Staples" in result.output
        assert "transaction_completed" in result.output

    def test_audit_tampering_reported(self, home, runner):
        submit(runner, "--amount", "45.99", "--merchant", "Staples")
        path = home / "audit.jsonl"
        path.write_text(path.read_text().replace("45.99", "4599.00", 1))
        result = runner.invoke(main, ["audit"])
        assert result.exit_code == 1
        assert "Audit chain broken" in result.output


class TestAdministrativeCommands:
    def test_complete_unknown_call(self, home, runner):
        result = runner.invoke(main, ["complete-call", "va-missing", "--approve"])
        assert result.exit_code == 1
        assert "Voice approval not found" in result.output

    def test_complete_ended_call(self, home, runner):
        submit(runner, "--amount", "150", "--merchant", "EventBrite", "--local-answer", "approve")
        (call,) = ledger(home).list_voice_approvals()
        result = runner.invoke(main, ["complete-call", call.approval_id, "--decline"])
        assert result.exit_code == 0
        assert "has ended: completed (approved)" in result.output

    def test_cancel_finished_transaction(self, home, runner):
        submit(runner, "--amount", "5", "--merchant", "Staples")
        (tx,) = ledger(home).list_transactions()
        result = runner.invoke(main, ["cancel", tx.tx_id])
        assert result.exit_code == 1
        assert "not awaiting voice confirmation" in result.output


def test_demo(runner, monkeypatch):
    monkeypatch.delenv("VAPI_API_KEY", raising=False)
    result = runner.invoke(main, ["demo"])

    assert result.exit_code == 0, result.output
    assert "45.99 USDC → Staples [completed]" in result.output
    assert "150.00 USDC → EventBrite [completed] via 📞" in result.output
    assert "420.00 USDC → Fully [rejected]" in result.output
    assert "emergency-stop" in result.output
    assert "45.99 USDC → AWS [rejected]" in result.output
    assert "🎉 Demo complete!" in result.output
