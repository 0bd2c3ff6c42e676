"""Tests for tamper-evident audit trail behavior."""

import json
from concurrent.futures import ThreadPoolExecutor

import pytest

from warden.audit import AuditTrail
from warden.events import LifecycleEvent, LifecycleEventType


@pytest.fixture
def trail(tmp_path):
    return AuditTrail(
        path=tmp_path / "audit.jsonl",
        key_path=tmp_path / "secret" / "audit_hmac.key",
    )


def tx_snapshot(tx_id="tx-1", status="pending", amount="150.000000"):
    return {"id": tx_id, "status": status, "amount": amount, "currency": "USDC", "merchant": "EventBrite"}


def test_audit_hash_chain_detects_tampering(trail, tmp_path):
    trail.log("transaction_created", transaction_id="tx-1", amount="150.00")
    trail.log("transaction_completed", transaction_id="tx-1", amount="150.00")

    lines = (tmp_path / "audit.jsonl").read_text().splitlines()
    first = json.loads(lines[0])
    first["amount"] = "9999.00"
    lines[0] = json.dumps(first, separators=(",", ":"))
    (tmp_path / "audit.jsonl").write_text("\n".join(lines) + "\n")

    with pytest.raises(RuntimeError, match="Audit chain broken"):
        trail.read_events()


def test_deleted_entry_breaks_chain(trail, tmp_path):
    for event_type in ("transaction_created", "transaction_approved", "transaction_completed"):
        trail.log(event_type, transaction_id="tx-1")
    lines = (tmp_path / "audit.jsonl").read_text().splitlines()
    (tmp_path / "audit.jsonl").write_text("\n".join([lines[0], lines[2]]) + "\n")

    with pytest.raises(RuntimeError, match="previous hash mismatch"):
        trail.read_events()


def test_chain_survives_reopen(trail, tmp_path):
    trail.log("transaction_created", transaction_id="tx-1")
    reopened = AuditTrail(path=tmp_path / "audit.jsonl", key_path=tmp_path / "secret" / "audit_hmac.key")
    reopened.log("transaction_completed", transaction_id="tx-1")
    assert [e.event_type for e in reopened.read_events()] == ["transaction_created", "transaction_completed"]


def test_record_lifecycle_events(trail):
    trail.record(LifecycleEvent(LifecycleEventType.TRANSACTION_CREATED, transaction=tx_snapshot()))
    trail.record(
        LifecycleEvent(
            LifecycleEventType.VOICE_CALL_COMPLETED,
            transaction=tx_snapshot(),
            voice_approval={"id": "va-1", "status": "failed", "outcome": "failed"},
            reason="timeout",
        )
    )
    trail.record(
        LifecycleEvent(
            LifecycleEventType.TRANSACTION_REJECTED,
            transaction=tx_snapshot(status="rejected"),
            reason="timeout",
        )
    )
    trail.record(LifecycleEvent(LifecycleEventType.CONFIG_UPDATED, config={"version": 4}))

    events = trail.read_events(transaction_id="tx-1")
    assert [e.event_type for e in events] == [
        "transaction_created",
        "voice_call_completed",
        "transaction_rejected",
    ]
    assert events[1].voice_approval_id == "va-1"
    assert events[1].details == {"call_status": "failed", "call_outcome": "failed"}
    assert events[2].success is False
    assert events[2].reason == "timeout"

    rejected = trail.read_events(event_type=LifecycleEventType.TRANSACTION_REJECTED)
    assert len(rejected) == 1

    summary = trail.summary()
    assert summary["total_events"] == 4
    assert summary["failures"] == 1
    assert summary["by_type"]["config_updated"] == 1


def test_env_key_overrides_key_file(tmp_path, monkeypatch):
    monkeypatch.setenv("WARDEN_AUDIT_HMAC_KEY", "shared-secret")
    trail = AuditTrail(path=tmp_path / "audit.jsonl", key_path=tmp_path / "secret" / "audit_hmac.key")
    trail.log("transaction_created", transaction_id="tx-1")
    assert not (tmp_path / "secret" / "audit_hmac.key").exists()
    assert len(trail.read_events()) == 1


def test_two_writers_share_one_chain(tmp_path):
    paths = dict(path=tmp_path / "audit.jsonl", key_path=tmp_path / "secret" / "audit_hmac.key")
    first, second = AuditTrail(**paths), AuditTrail(**paths)

    def write(i):
        (first if i % 2 else second).log("transaction_created", transaction_id=f"tx-{i}")

    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(write, range(40)))

    assert first.verify() == 40
    assert len(second.read_events(limit=0)) == 40


def test_read_limit_keeps_latest(trail):
    for i in range(5):
        trail.log("transaction_created", transaction_id=f"tx-{i}")
    assert [e.transaction_id for e in trail.read_events(limit=2)] == ["tx-3", "tx-4"]
