"""
x402 settlement transport.

Pays a merchant's x402-protected endpoint in USDC on Base using the
official x402 SDK. One payment is two requests:

1. An unpaid request that must come back 402 with payment requirements.
   Transport failures here are retried; no money has moved yet.
2. The same request carrying a signed payment header. Sent exactly once,
   whatever happens.

The transaction ID travels as the ``Idempotency-Key`` header on both so a
merchant can recognise a replayed challenge.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Optional, Union

import httpx
from eth_account import Account
from eth_account.signers.local import LocalAccount
from x402 import x402ClientSync
from x402.http.x402_http_client import x402HTTPClientSync
from x402.mechanisms.evm.exact import ExactEvmScheme
from x402.mechanisms.evm.utils import get_asset_info

logger = logging.getLogger(__name__)

USDC_DECIMALS = 6

_EIP712_DOMAIN_FIELDS = (
    ("name", "name", "string"),
    ("version", "version", "string"),
    ("chain_id", "chainId", "uint256"),
    ("verifying_contract", "verifyingContract", "address"),
    ("salt", "salt", "bytes32"),
)


class Network(str, Enum):
    BASE_MAINNET = "eip155:8453"
    BASE_SEPOLIA = "eip155:84532"

    @classmethod
    def from_name(cls, name: str) -> "Network":
        """Accept a CAIP-2 id or a short name such as ``base-sepolia``."""
        aliases = {"base": cls.BASE_MAINNET, "base-mainnet": cls.BASE_MAINNET, "base-sepolia": cls.BASE_SEPOLIA}
        return aliases[name] if name in aliases else cls(name)

    @property
    def short_name(self) -> str:
        return "base" if self is Network.BASE_MAINNET else "base-sepolia"

    @property
    def explorer_url(self) -> str:
        return "https://basescan.org" if self is Network.BASE_MAINNET else "https://sepolia.basescan.org"


class EthAccountSigner:
    """Presents an eth-account key as the signer ``ExactEvmScheme`` expects."""

    def __init__(self, account: LocalAccount):
        self._account = account

    @property
    def address(self) -> str:
        return self._account.address

    def sign_typed_data(self, domain: Any, types: dict[str, list], primary_type: str, message: dict[str, Any]) -> bytes:
        domain_dict = _eip712_domain(domain)
        typed = {name: [_field_spec(f) for f in spec] for name, spec in types.items()}
        typed["EIP712Domain"] = [
            {"name": key, "type": kind} for _, key, kind in _EIP712_DOMAIN_FIELDS if key in domain_dict
        ]
        body = dict(message)
        if isinstance(body.get("nonce"), bytes):
            body["nonce"] = "0x" + body["nonce"].hex()
        signed = self._account.sign_typed_data(
            full_message={"types": typed, "primaryType": primary_type, "domain": domain_dict, "message": body}
        )
        return bytes(signed.signature)


def _field_spec(f: Any) -> dict[str, str]:
    if isinstance(f, dict):
        return {"name": f["name"], "type": f["type"]}
    return {"name": f.name, "type": f.type}


def _eip712_domain(domain: Any) -> dict[str, Any]:
    if isinstance(domain, dict):
        return dict(domain)
    out: dict[str, Any] = {}
    for attr, key, _ in _EIP712_DOMAIN_FIELDS:
        value = getattr(domain, attr, None)
        if value is None:
            value = getattr(domain, key, None)
        if value is not None:
            out[key] = value
    return out


@dataclass
class X402Config:
    network: Network = Network.BASE_SEPOLIA
    timeout_seconds: float = 30.0
    challenge_retries: int = 2
    retry_delay_seconds: float = 1.0


@dataclass
class X402PaymentResult:
    """What happened when paying one merchant endpoint."""

    success: bool
    payment_id: Optional[str] = None
    tx_hash: Optional[str] = None
    network: Optional[str] = None
    amount: Optional[Decimal] = None
    pay_to: Optional[str] = None
    error: Optional[str] = None
    payment_sent: bool = False
    raw_response: Optional[dict] = field(default=None, repr=False)

    @classmethod
    def failed(cls, error: str, payment_sent: bool = False) -> "X402PaymentResult":
        return cls(success=False, error=error, payment_sent=payment_sent)

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "payment_id": self.payment_id,
            "tx_hash": self.tx_hash,
            "network": self.network,
            "amount": f"{self.amount}" if self.amount is not None else None,
            "pay_to": self.pay_to,
            "error": self.error,
            "payment_sent": self.payment_sent,
        }


@dataclass
class PaymentTerms:
    """The one 402 requirement we agreed to pay."""

    network: str
    pay_to: str
    amount: Decimal
    requirement: Any


class X402PaymentClient:
    """Settles approved transactions against x402 merchant endpoints."""

    def __init__(
        self,
        account: LocalAccount,
        config: Optional[X402Config] = None,
        http: Optional[httpx.Client] = None,
    ):
        self.config = config or X402Config()
        self._signer = EthAccountSigner(account)
        sdk = x402ClientSync()
        sdk.register(self.config.network.value, ExactEvmScheme(signer=self._signer))
        self._handler = x402HTTPClientSync(client=sdk)
        self._http = http or httpx.Client(timeout=self.config.timeout_seconds)
        self._sleep: Callable[[float], None] = time.sleep

    @classmethod
    def from_private_key(cls, private_key: str, config: Optional[X402Config] = None) -> "X402PaymentClient":
        return cls(Account.from_key(private_key), config=config)

    @property
    def address(self) -> str:
        return self._signer.address

    def pay(
        self,
        url: str,
        reference: str,
        approved_amount: Decimal,
        allowed_payees: Optional[list[str]] = None,
        method: str = "POST",
    ) -> X402PaymentResult:
        """
        Pay ``url`` at most ``approved_amount`` USDC for transaction ``reference``.

        Never raises for merchant or network trouble; the result says whether
        a signed payment left this process.
        """
        headers = {"Idempotency-Key": reference}

        challenge = self._request_challenge(method, url, headers)
        if isinstance(challenge, X402PaymentResult):
            return challenge

        try:
            payment_required = self._handler.get_payment_required_response(
                lambda name: challenge.headers.get(name),
                challenge.content,
            )
        except Exception as e:
            return X402PaymentResult.failed(f"Unreadable 402 requirements: {type(e).__name__}: {e}")

        terms = self.select_terms(payment_required, approved_amount, allowed_payees)
        if isinstance(terms, str):
            return X402PaymentResult.failed(terms)

        try:
            only_ours = payment_required.model_copy(update={"accepts": [terms.requirement]})
            payload = self._handler.create_payment_payload(only_ours)
            payment_headers = self._handler.encode_payment_signature_header(payload)
        except Exception as e:
            return X402PaymentResult.failed(f"Could not sign payment: {type(e).__name__}: {e}")

        logger.info("Sending x402 payment of %s to %s for %s", terms.amount, terms.pay_to, reference)
        try:
            paid = self._http.request(method, url, headers={**headers, **payment_headers})
        except httpx.HTTPError as e:
            # The merchant may or may not have received it; do not resend.
            return X402PaymentResult.failed(f"Payment delivery unknown: {type(e).__name__}: {e}", payment_sent=True)

        if paid.status_code != 200:
            return X402PaymentResult.failed(
                f"Merchant refused payment ({paid.status_code}): {paid.text[:200]}",
                payment_sent=True,
            )
        return self._settled(paid, payment_headers, terms)

    def _request_challenge(
        self, method: str, url: str, headers: dict[str, str]
    ) -> Union[httpx.Response, X402PaymentResult]:
        attempts = self.config.challenge_retries + 1
        last_error = ""
        for attempt in range(1, attempts + 1):
            try:
                response = self._http.request(method, url, headers=headers)
            except (httpx.TimeoutException, httpx.TransportError) as e:
                last_error = f"{type(e).__name__}: {e}"
            else:
                if response.status_code == 402:
                    return response
                if response.status_code not in (429, 502, 503):
                    return X402PaymentResult.failed(
                        f"Expected 402 payment challenge, got {response.status_code}: {response.text[:200]}"
                    )
                last_error = f"merchant unavailable ({response.status_code})"
            if attempt < attempts:
                logger.info("x402 challenge attempt %d/%d failed: %s", attempt, attempts, last_error)
                self._sleep(self.config.retry_delay_seconds * attempt)
        return X402PaymentResult.failed(f"No payment challenge after {attempts} attempts: {last_error}")

    def select_terms(
        self,
        payment_required: Any,
        approved_amount: Decimal,
        allowed_payees: Optional[list[str]] = None,
    ) -> Union[PaymentTerms, str]:
        """First requirement on our network, to an allowed payee, within the approved amount."""
        accepts = getattr(payment_required, "accepts", None)
        if not accepts:
            return "402 response lists no payment requirements"

        payees = {p.lower() for p in allowed_payees or ()}
        problems = []
        for req in accepts:
            network = str(getattr(req, "network", ""))
            pay_to = str(getattr(req, "pay_to", ""))
            if network != self.config.network.value:
                problems.append(f"network {network} not allowed")
                continue
            if payees and pay_to.lower() not in payees:
                problems.append(f"payee {pay_to} not allowed")
                continue
            amount = to_token_amount(int(getattr(req, "amount", 0)), network, str(getattr(req, "asset", "")))
            if amount > approved_amount:
                problems.append(f"amount {amount} exceeds approved {approved_amount}")
                continue
            return PaymentTerms(network=network, pay_to=pay_to, amount=amount, requirement=req)
        return "No acceptable 402 requirement: " + "; ".join(problems)

    def _settled(self, paid: httpx.Response, payment_headers: dict[str, str], terms: PaymentTerms) -> X402PaymentResult:
        tx_hash = payment_id = None
        try:
            settle = self._handler.get_payment_settle_response(lambda name: paid.headers.get(name))
            tx_hash = getattr(settle, "transaction", None) or getattr(settle, "tx_hash", None)
            payment_id = getattr(settle, "payment_id", None)
        except Exception:
            logger.warning("Merchant accepted payment without a readable settlement header")
        try:
            body = paid.json()
        except ValueError:
            body = None
        return X402PaymentResult(
            success=True,
            payment_id=payment_id or payment_headers.get("PAYMENT-SIGNATURE", "")[:16] or None,
            tx_hash=tx_hash,
            network=terms.network,
            amount=terms.amount,
            pay_to=terms.pay_to,
            payment_sent=True,
            raw_response=body if isinstance(body, dict) else None,
        )

    def close(self):
        self._http.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()


def to_token_amount(base_units: int, network: str, asset: str) -> Decimal:
    decimals = USDC_DECIMALS
    try:
        decimals = int(get_asset_info(network, asset).get("decimals", USDC_DECIMALS))
    except Exception:
        logger.debug("No asset info for %s on %s; assuming %d decimals", asset, network, decimals)
    return Decimal(base_units) / (Decimal(10) ** decimals)
