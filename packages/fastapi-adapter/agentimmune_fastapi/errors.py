"""Denial taxonomy and exceptions for the AgentImmune firewall.

Every request that does not end in ``allow`` ends in exactly one of the
:class:`DenialCode` values below.  Each code maps to a fixed HTTP status.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class DenialCode(str, Enum):
    """Terminal denial codes produced by the request gatekeeper."""

    UNAUTHORIZED = "unauthorized"
    QUARANTINED = "quarantined"
    BAD_REQUEST = "bad_request"
    RATE_LIMITED = "rate_limited"
    PAYMENT_REQUIRED = "payment_required"
    PAYMENT_INVALID = "payment_invalid"
    THREAT_BLOCKED = "threat_blocked"
    RESPONSE_THREAT = "response_threat"
    PROXY_ERROR = "proxy_error"
    INTERNAL_ERROR = "internal_error"


STATUS_BY_CODE: dict[DenialCode, int] = {
    DenialCode.BAD_REQUEST: 400,
    DenialCode.UNAUTHORIZED: 401,
    DenialCode.PAYMENT_REQUIRED: 402,
    DenialCode.PAYMENT_INVALID: 402,
    DenialCode.QUARANTINED: 403,
    DenialCode.RATE_LIMITED: 429,
    DenialCode.THREAT_BLOCKED: 400,
    DenialCode.RESPONSE_THREAT: 400,
    DenialCode.INTERNAL_ERROR: 500,
    DenialCode.PROXY_ERROR: 502,
}


def status_for(code: DenialCode | None) -> int:
    """Return the HTTP status for a denial code (``None`` means allow)."""
    if code is None:
        return 200
    return STATUS_BY_CODE[code]


class AgentImmuneError(Exception):
    """Base exception for AgentImmune components."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ProxyError(AgentImmuneError):
    """The outbound forwarding call failed at the transport level."""

    def __init__(self, target_url: str, message: str = "Proxy request failed") -> None:
        super().__init__(message, {"target_url": target_url})
        self.target_url = target_url


class RecordStoreError(AgentImmuneError):
    """The backing record store rejected a call or could not be reached."""

    def __init__(
        self,
        operation: str,
        message: str = "Record store error",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(f"{operation}: {message}", details)
        self.operation = operation
