"""Tests for settlement providers."""

from decimal import Decimal
from types import SimpleNamespace

import pytest

from warden.errors import SettlementError
from warden.settlement import DryRunSettlement, X402Settlement
from warden.x402_client import Network, X402PaymentResult


class TestDryRunSettlement:
    def test_receipt(self):
        settlement = DryRunSettlement()
        receipt = settlement.settle(Decimal("45.99"), "USDC", "Staples", "tx-1")
        assert receipt.network == "base-sepolia"
        assert receipt.status == "confirmed"
        assert receipt.transaction_hash.startswith("0x")
        assert len(receipt.transaction_hash) == 66
        assert receipt.explorer_url == f"https://sepolia.basescan.org/tx/{receipt.transaction_hash}"
        assert settlement.receipts == [receipt]

        d = receipt.to_dict()
        assert d["amount"] == "45.99"
        assert d["recipient"] == "Staples"

    def test_mainnet_explorer(self):
        receipt = DryRunSettlement(network="base").settle(Decimal("1"), "USDC", "A", "tx-1")
        assert receipt.explorer_url.startswith("https://basescan.org/tx/")

    def test_fail_with(self):
        with pytest.raises(SettlementError, match="insufficient funds") as exc:
            DryRunSettlement(fail_with="insufficient funds").settle(Decimal("1"), "USDC", "A", "tx-9")
        assert exc.value.detail["reference"] == "tx-9"


class FakeClient:
    def __init__(self, result):
        self.result = result
        self.calls = []
        self.config = SimpleNamespace(network=Network.BASE_SEPOLIA)

    def pay(self, url, **kwargs):
        self.calls.append((url, kwargs))
        return self.result


class TestX402Settlement:
    def test_pays_merchant_endpoint(self):
        client = FakeClient(
            X402PaymentResult(
                success=True,
                payment_id="pay-1",
                tx_hash="0xfeed",
                network=Network.BASE_SEPOLIA.value,
                amount=Decimal("45.99"),
                pay_to="0x1111111111111111111111111111111111111111",
            )
        )
        settlement = X402Settlement(client, {"Staples": "https://staples.example/x402/order"})
        receipt = settlement.settle(Decimal("45.99"), "usdc", "staples", "tx-1")

        url, kwargs = client.calls[0]
        assert url == "https://staples.example/x402/order"
        assert kwargs["approved_amount"] == Decimal("45.99")
        assert kwargs["reference"] == "tx-1"
        assert receipt.receipt_id == "pay-1"
        assert receipt.network == "base-sepolia"
        assert receipt.currency == "USDC"
        assert receipt.explorer_url == "https://sepolia.basescan.org/tx/0xfeed"

    def test_only_usdc(self):
        settlement = X402Settlement(FakeClient(None), {"A": "https://a.example"})
        with pytest.raises(SettlementError, match="USDC only"):
            settlement.settle(Decimal("1"), "EUR", "A", "tx-1")

    def test_unknown_merchant(self):
        settlement = X402Settlement(FakeClient(None), {})
        with pytest.raises(SettlementError, match="No x402 endpoint"):
            settlement.settle(Decimal("1"), "USDC", "Nowhere", "tx-1")

    def test_payment_failure_keeps_detail(self):
        client = FakeClient(X402PaymentResult(success=False, error="402 amount 5 exceeds approved max 1"))
        settlement = X402Settlement(client, {"A": "https://a.example/pay"})
        with pytest.raises(SettlementError, match="exceeds approved max") as exc:
            settlement.settle(Decimal("1"), "USDC", "A", "tx-1")
        assert exc.value.detail["endpoint"] == "https://a.example/pay"
        assert exc.value.detail["success"] is False
