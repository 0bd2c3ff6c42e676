"""Tests for the transaction record and create-request validation."""

from decimal import Decimal

import pytest

from warden.errors import InvalidTransitionError, ValidationError
from warden.models import (
    Transaction,
    TransactionRequest,
    TransactionStatus,
    TransactionType,
    can_transition,
)


def make_request(**overrides):
    payload = {"amount": "45.99", "type": "purchase", "merchant": "Staples"}
    payload.update(overrides)
    return payload


class TestTransactionRequest:
    def test_from_dict_defaults(self):
        req = TransactionRequest.from_dict(make_request())
        assert req.amount == Decimal("45.99")
        assert req.tx_type == TransactionType.PURCHASE
        assert req.currency == "USDC"
        assert req.description is None
        assert req.metadata == {}

    def test_currency_is_normalized(self):
        req = TransactionRequest.from_dict(make_request(currency=" eur "))
        assert req.currency == "EUR"

    def test_missing_amount(self):
        payload = make_request()
        del payload["amount"]
        with pytest.raises(ValidationError, match="amount is required"):
            TransactionRequest.from_dict(payload)

    @pytest.mark.parametrize("merchant", [None, "", "   ", 42])
    def test_merchant_required(self, merchant):
        with pytest.raises(ValidationError, match="Merchant is required") as exc:
            TransactionRequest.from_dict(make_request(merchant=merchant))
        assert exc.value.field == "merchant"

    def test_unknown_type(self):
        with pytest.raises(ValidationError, match="type must be one of") as exc:
            TransactionRequest.from_dict(make_request(type="refund"))
        assert exc.value.field == "type"

    def test_currency_too_long(self):
        with pytest.raises(ValidationError, match="currency"):
            TransactionRequest.from_dict(make_request(currency="ABCDEFGHIJK"))

    def test_metadata_must_be_mapping(self):
        with pytest.raises(ValidationError, match="metadata"):
            TransactionRequest.from_dict(make_request(metadata=["a", "b"]))

    @pytest.mark.parametrize("amount", ["99999999999999999999999", "10000000000000", "9223372036854.775808"])
    def test_amount_too_large(self, amount):
        with pytest.raises(ValidationError, match="too large") as exc:
            TransactionRequest.from_dict(make_request(amount=amount))
        assert exc.value.field == "amount"

    def test_largest_storable_amount(self):
        req = TransactionRequest.from_dict(make_request(amount="9223372036854.775807"))
        assert req.to_transaction(created_at=1000.0).amount_micros == 2**63 - 1

    @pytest.mark.parametrize("metadata", [{"k": Decimal("1")}, {"k": {1, 2}}, {"k": object()}])
    def test_metadata_must_serialize_to_json(self, metadata):
        with pytest.raises(ValidationError, match="JSON-serializable") as exc:
            TransactionRequest.from_dict(make_request(metadata=metadata))
        assert exc.value.field == "metadata"

    def test_record_key_is_reserved(self):
        with pytest.raises(ValidationError, match="reserved") as exc:
            TransactionRequest.from_dict(make_request(metadata={"warden": {"settlement": "forged"}}))
        assert exc.value.field == "metadata"

    def test_body_must_be_object(self):
        with pytest.raises(ValidationError, match="must be an object"):
            TransactionRequest.from_dict("45.99")

    def test_to_transaction(self):
        req = TransactionRequest.from_dict(make_request(metadata={"order": "A-1"}))
        tx = req.to_transaction(created_at=1000.0, idempotency_key="key-1")
        assert tx.tx_id.startswith("tx-")
        assert tx.amount_micros == 45_990_000
        assert tx.status == TransactionStatus.PENDING
        assert tx.metadata == {"order": "A-1"}
        assert tx.idempotency_key == "key-1"
        assert tx.completed_at is None

    def test_records_do_not_touch_caller_keys(self):
        req = TransactionRequest.from_dict(make_request(metadata={"settlement": "client-ref-1"}))
        tx = req.to_transaction(created_at=1000.0)
        tx.record("settlement", {"receipt_id": "rcpt-1"})
        assert tx.metadata["settlement"] == "client-ref-1"
        assert tx.records == {"settlement": {"receipt_id": "rcpt-1"}}
        assert req.metadata == {"settlement": "client-ref-1"}


class TestTransactionStatusMachine:
    def _tx(self):
        return TransactionRequest.from_dict(make_request()).to_transaction(created_at=1000.0)

    def test_auto_path_stamps_completed_at(self):
        tx = self._tx()
        tx.transition(TransactionStatus.COMPLETED, at=1001.0)
        assert tx.completed_at == 1001.0
        assert tx.is_terminal

    def test_voice_path(self):
        tx = self._tx()
        tx.transition(TransactionStatus.APPROVED, at=1001.0)
        assert tx.completed_at is None
        tx.transition(TransactionStatus.FAILED, at=1002.0)
        assert tx.completed_at == 1002.0

    def test_rejected_has_no_completed_at(self):
        tx = self._tx()
        tx.transition(TransactionStatus.REJECTED, at=1001.0)
        assert tx.completed_at is None

    @pytest.mark.parametrize(
        "current,target",
        [
            (TransactionStatus.REJECTED, TransactionStatus.APPROVED),
            (TransactionStatus.COMPLETED, TransactionStatus.FAILED),
            (TransactionStatus.APPROVED, TransactionStatus.REJECTED),
            (TransactionStatus.APPROVED, TransactionStatus.PENDING),
        ],
    )
    def test_illegal_transitions(self, current, target):
        assert not can_transition(current, target)
        tx = self._tx()
        tx.status = current
        with pytest.raises(InvalidTransitionError):
            tx.transition(target, at=1001.0)

    def test_link_voice_call_once(self):
        tx = self._tx()
        tx.link_voice_call("va-1")
        tx.link_voice_call("va-1")
        with pytest.raises(ValueError, match="already linked"):
            tx.link_voice_call("va-2")

    def test_to_dict(self):
        tx = self._tx()
        d = tx.to_dict()
        assert d["id"] == tx.tx_id
        assert Decimal(d["amount"]) == Decimal("45.99")
        assert d["type"] == "purchase"
        assert d["status"] == "pending"
