"""
Settlement providers.

A settlement provider executes an approved transaction and returns a
receipt. ``DryRunSettlement`` simulates on-chain confirmation on Base
Sepolia; ``X402Settlement`` pays the merchant's x402-protected endpoint.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Mapping, Optional, Protocol

from .errors import SettlementError
from .x402_client import Network, X402PaymentClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SettlementReceipt:
    receipt_id: str
    transaction_hash: Optional[str]
    network: str
    amount: Decimal
    currency: str
    recipient: Optional[str]
    status: str = "confirmed"
    settled_at: float = 0.0
    block_number: Optional[int] = None
    explorer_url: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "receipt_id": self.receipt_id,
            "transaction_hash": self.transaction_hash,
            "network": self.network,
            "amount": f"{self.amount}",
            "currency": self.currency,
            "recipient": self.recipient,
            "status": self.status,
            "settled_at": self.settled_at,
            "block_number": self.block_number,
            "explorer_url": self.explorer_url,
        }


class SettlementProvider(Protocol):
    def settle(
        self,
        amount: Decimal,
        currency: str,
        recipient: Optional[str],
        reference: str,
    ) -> SettlementReceipt: ...


class DryRunSettlement:
    """Simulated settlement; nothing leaves the process."""

    def __init__(self, network: str = "base-sepolia", fail_with: Optional[str] = None):
        self.network = Network.from_name(network)
        self.fail_with = fail_with
        self.receipts: list[SettlementReceipt] = []

    def settle(
        self,
        amount: Decimal,
        currency: str,
        recipient: Optional[str],
        reference: str,
    ) -> SettlementReceipt:
        if self.fail_with:
            raise SettlementError(self.fail_with, detail={"reference": reference, "dry_run": True})

        tx_hash = f"0x{uuid.uuid4().hex}{uuid.uuid4().hex}"
        receipt = SettlementReceipt(
            receipt_id=f"rcpt-{uuid.uuid4().hex[:16]}",
            transaction_hash=tx_hash,
            network=self.network.short_name,
            amount=Decimal(amount),
            currency=currency,
            recipient=recipient,
            settled_at=time.time(),
            block_number=int(time.time()),
            explorer_url=f"{self.network.explorer_url}/tx/{tx_hash}",
        )
        self.receipts.append(receipt)
        logger.info("[dry run] Settled %s %s to %s (%s)", amount, currency, recipient, reference)
        return receipt


class X402Settlement:
    """
    Pays merchants through their x402-protected endpoints.

    ``merchant_endpoints`` maps a merchant name (case-insensitive) to the
    URL that answers with a 402 payment challenge for the purchase.
    """

    SUPPORTED_CURRENCIES = ("USDC",)

    def __init__(
        self,
        client: X402PaymentClient,
        merchant_endpoints: Mapping[str, str],
        allowed_payees: Optional[Mapping[str, list[str]]] = None,
    ):
        self.client = client
        self._endpoints = {k.lower(): v for k, v in merchant_endpoints.items()}
        self._payees = {k.lower(): list(v) for k, v in (allowed_payees or {}).items()}

    def settle(
        self,
        amount: Decimal,
        currency: str,
        recipient: Optional[str],
        reference: str,
    ) -> SettlementReceipt:
        if currency.upper() not in self.SUPPORTED_CURRENCIES:
            raise SettlementError(
                f"x402 settlement supports {', '.join(self.SUPPORTED_CURRENCIES)} only, got {currency}",
                detail={"currency": currency},
            )
        key = (recipient or "").lower()
        url = self._endpoints.get(key)
        if url is None:
            raise SettlementError(
                f"No x402 endpoint configured for merchant {recipient!r}",
                detail={"merchant": recipient},
            )

        result = self.client.pay(
            url,
            reference=reference,
            approved_amount=Decimal(amount),
            allowed_payees=self._payees.get(key),
        )
        if not result.success:
            raise SettlementError(
                result.error or "x402 payment failed",
                detail=_result_detail(result.to_dict(), url),
            )

        network = Network(result.network) if result.network else self.client.config.network
        explorer = f"{network.explorer_url}/tx/{result.tx_hash}" if result.tx_hash else None
        return SettlementReceipt(
            receipt_id=result.payment_id or f"rcpt-{uuid.uuid4().hex[:16]}",
            transaction_hash=result.tx_hash,
            network=network.short_name,
            amount=result.amount if result.amount is not None else Decimal(amount),
            currency=currency.upper(),
            recipient=result.pay_to or recipient,
            settled_at=time.time(),
            explorer_url=explorer,
        )


def _result_detail(result: dict[str, Any], url: str) -> dict[str, Any]:
    detail = {k: v for k, v in result.items() if v is not None}
    detail["endpoint"] = url
    return detail
