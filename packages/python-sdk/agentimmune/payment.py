"""x402 payment instructions as returned by an AgentImmune firewall.

Parses the ``payment`` block of a 402 response and builds the
``X-Payment`` header that proves payment on retry.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class PaymentInstructions:
    """Parsed ``payment`` block of a ``payment_required`` response."""

    amount: float
    recipient: str
    scheme: str = "x402"
    currency: str = "USDC"
    network: str = "solana"
    facilitator: str | None = None
    header_format: str | None = None
    instructions: list[str] = field(default_factory=list)
    raw: dict[str, Any] = field(default_factory=dict, repr=False)


def parse_payment_instructions(data: dict[str, Any]) -> PaymentInstructions:
    """Parse the ``payment`` block of a 402 body.

    Raises:
        KeyError: If ``amount`` or ``recipient`` is missing.
    """
    return PaymentInstructions(
        amount=float(data["amount"]),
        recipient=data["recipient"],
        scheme=data.get("scheme", "x402"),
        currency=data.get("currency", "USDC"),
        network=data.get("network", "solana"),
        facilitator=data.get("facilitator"),
        header_format=data.get("header_format"),
        instructions=list(data.get("instructions", [])),
        raw=data,
    )


def build_payment_header(
    instructions: PaymentInstructions, signature: str
) -> str:
    """Build the ``X-Payment`` value for a transfer matching *instructions*."""
    return (
        f"{instructions.scheme} {instructions.currency.lower()}/{instructions.network} "
        f"amount={instructions.amount} tx={signature} "
        f"recipient={instructions.recipient}"
    )
