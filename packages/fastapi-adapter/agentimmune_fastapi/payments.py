"""x402 pay-per-call metering.

The first :data:`FREE_TIER_DAILY_LIMIT` calls per agent per day are free.
Beyond that each call must carry an ``X-Payment`` header referencing a USDC
transfer on Solana::

    X-Payment: x402 usdc/solana amount=0.001 tx=<signature> recipient=<wallet>

Transfers are confirmed by an external facilitator.  What happens when the
facilitator cannot be reached is decided by :class:`FallbackPolicy`.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import httpx

from .logging import get_logger

logger = get_logger("agentimmune.payments")

FREE_TIER_DAILY_LIMIT = 1000
SCHEME = "x402"
NETWORK = "solana"
CURRENCY = "USDC"
DEFAULT_FACILITATOR_URL = "https://x402.solpay.cash"
DEFAULT_WALLET = "2BcjnU1sSv2f4Uk793ZY59U41LapKMggYmwhiPDrhHfs"
DOCS_URL = "https://solpay.cash/x402"

LAUNCH_PRICE = 0.001
STANDARD_PRICE = 0.002
LAUNCH_PRICING_ENDS = datetime(2026, 3, 1, tzinfo=timezone.utc)


class FallbackPolicy(str, Enum):
    """Trust decision when the facilitator is unreachable.

    ``CLOSED`` rejects the payment.  ``OPEN`` accepts the claimed payment
    at the expected amount so facilitator outages do not lock out paying
    callers.
    """

    CLOSED = "closed"
    OPEN = "open"


@dataclass(frozen=True)
class PaymentRequirement:
    required: bool
    amount_usdc: float
    recipient: str
    facilitator: str
    scheme: str = SCHEME
    network: str = NETWORK


@dataclass(frozen=True)
class PaymentEnvelope:
    """A parsed ``X-Payment`` header."""

    valid: bool
    amount: float | None = None
    signature: str | None = None
    recipient: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class PaymentVerification:
    valid: bool
    amount_paid: float | None = None
    transaction_id: str | None = None
    error: str | None = None
    fallback: bool = False


def price_for_registration(registered_at: datetime | None = None) -> float:
    """Return the per-request price locked in for an agent registering now."""
    registered_at = registered_at or datetime.now(timezone.utc)
    if registered_at < LAUNCH_PRICING_ENDS:
        return LAUNCH_PRICE
    return STANDARD_PRICE


def check_payment_required(
    requests_today: int,
    price_per_request: float,
    recipient: str = DEFAULT_WALLET,
    facilitator: str = DEFAULT_FACILITATOR_URL,
    free_limit: int = FREE_TIER_DAILY_LIMIT,
) -> PaymentRequirement:
    """Decide whether the current call is beyond the free daily allotment."""
    if requests_today < free_limit:
        return PaymentRequirement(
            required=False,
            amount_usdc=0,
            recipient=recipient,
            facilitator=facilitator,
        )
    return PaymentRequirement(
        required=True,
        amount_usdc=price_per_request,
        recipient=recipient,
        facilitator=facilitator,
    )


def _parse_amount(raw: str) -> float | None:
    try:
        amount = float(raw)
    except ValueError:
        return None
    # Rejects nan and inf along with non-positive values.
    if not 0 < amount < float("inf"):
        return None
    return amount


def parse_payment_header(header: str | None) -> PaymentEnvelope:
    """Parse an ``X-Payment`` header value.

    The value must start with the ``x402`` scheme tag (any case), followed
    by whitespace-delimited ``key=value`` tokens.  ``amount`` and one of
    ``tx``/``signature`` are required; ``recipient`` is optional.  Unknown
    tokens (such as ``usdc/solana``) are ignored.
    """
    if not header or not header.strip():
        return PaymentEnvelope(valid=False, error="No payment header provided")

    header = header.strip()
    if not header.lower().startswith(SCHEME):
        return PaymentEnvelope(
            valid=False,
            error=f"Invalid payment header format (must start with {SCHEME})",
        )

    amount: float | None = None
    signature: str | None = None
    recipient: str | None = None

    for token in re.split(r"\s+", header)[1:]:
        key, sep, value = token.partition("=")
        if not sep:
            continue
        key = key.lower()
        if key == "amount":
            amount = _parse_amount(value)
        elif key in ("tx", "signature"):
            signature = value or None
        elif key == "recipient":
            recipient = value or None

    if amount is None or signature is None:
        return PaymentEnvelope(
            valid=False,
            error="Missing required payment fields (amount, tx/signature)",
        )

    return PaymentEnvelope(
        valid=True, amount=amount, signature=signature, recipient=recipient
    )


def build_payment_header(
    amount: float, signature: str, recipient: str | None = None
) -> str:
    """Build an ``X-Payment`` header value in the documented format."""
    header = f"{SCHEME} usdc/{NETWORK} amount={amount} tx={signature}"
    if recipient:
        header += f" recipient={recipient}"
    return header


def generate_402_response(requirement: PaymentRequirement) -> dict[str, Any]:
    """Build the ``payment_required`` body returned with HTTP 402."""
    amount = requirement.amount_usdc
    recipient = requirement.recipient
    return {
        "ok": False,
        "error": "Payment required",
        "code": "payment_required",
        "payment": {
            "scheme": requirement.scheme,
            "amount": amount,
            "currency": CURRENCY,
            "network": requirement.network,
            "recipient": recipient,
            "facilitator": requirement.facilitator,
            "header_format": (
                f"X-Payment: {SCHEME} usdc/{NETWORK} amount={amount} "
                f"tx=<transaction_signature> recipient={recipient}"
            ),
            "instructions": [
                f"1. Send {amount} {CURRENCY} to {recipient} on Solana",
                "2. Include the transaction signature in your request header",
                "3. Retry your request with the X-Payment header",
            ],
            "docs": DOCS_URL,
        },
    }


@dataclass
class FacilitatorClient:
    """Client for the external payment facilitator.

    Attributes:
        base_url: Facilitator root URL; verification posts to ``/verify``.
        fallback: Policy applied when the facilitator is unreachable.
        timeout: Request timeout in seconds.
        client: Optional shared ``httpx.AsyncClient``.  When omitted a
            client is created per verification.
    """

    base_url: str = DEFAULT_FACILITATOR_URL
    fallback: FallbackPolicy = FallbackPolicy.CLOSED
    timeout: float = 10.0
    client: httpx.AsyncClient | None = field(default=None, repr=False)

    async def verify_payment(
        self,
        signature: str,
        expected_amount: float,
        expected_recipient: str = DEFAULT_WALLET,
    ) -> PaymentVerification:
        """Ask the facilitator to confirm a transfer.

        Returns a valid verification with the paid amount when the
        facilitator answers ``ok`` and ``verified``, an invalid one carrying
        the facilitator's reason on explicit rejection, and applies
        :attr:`fallback` when the facilitator cannot be reached.
        """
        payload = {
            "signature": signature,
            "expected_amount": expected_amount,
            "expected_recipient": expected_recipient,
            "token": CURRENCY,
            "network": NETWORK,
        }
        url = f"{self.base_url.rstrip('/')}/verify"

        try:
            if self.client is None:
                async with httpx.AsyncClient(timeout=self.timeout) as new_client:
                    response = await new_client.post(url, json=payload)
            else:
                response = await self.client.post(
                    url, json=payload, timeout=self.timeout
                )
            if response.status_code >= 500:
                raise httpx.HTTPStatusError(
                    f"Facilitator returned {response.status_code}",
                    request=response.request,
                    response=response,
                )
            data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            return self._unavailable(signature, expected_amount, exc)

        if not isinstance(data, dict):
            return self._unavailable(
                signature, expected_amount, ValueError("Non-object facilitator response")
            )

        if data.get("ok") and data.get("verified"):
            return PaymentVerification(
                valid=True,
                amount_paid=float(data.get("amount") or expected_amount),
                transaction_id=signature,
            )

        return PaymentVerification(
            valid=False,
            error=data.get("error") or "Payment verification failed",
        )

    def _unavailable(
        self, signature: str, expected_amount: float, exc: Exception
    ) -> PaymentVerification:
        if self.fallback is FallbackPolicy.OPEN:
            logger.warning(
                "Facilitator unavailable; accepting payment under open fallback",
                fallback=self.fallback.value,
                error=str(exc),
            )
            return PaymentVerification(
                valid=True,
                amount_paid=expected_amount,
                transaction_id=signature,
                fallback=True,
            )

        logger.warning(
            "Facilitator unavailable; rejecting payment under closed fallback",
            fallback=self.fallback.value,
            error=str(exc),
        )
        return PaymentVerification(
            valid=False, error="facilitator_unavailable", fallback=True
        )
