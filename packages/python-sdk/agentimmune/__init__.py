"""AgentImmune Python SDK - call tools through an AgentImmune firewall.

This package provides a client for agents that send tool calls through an
AgentImmune firewall, including automatic x402 pay-and-retry.
"""

from .client import ClientConfig, ImmuneClient, PaymentRequiredError
from .payment import PaymentInstructions, build_payment_header

__all__ = [
    "ClientConfig",
    "ImmuneClient",
    "PaymentInstructions",
    "PaymentRequiredError",
    "build_payment_header",
]
