"""Pydantic models for the AgentImmune FastAPI adapter.

Defines the proxy request body, the registration request/response schemas,
and the views returned by the account endpoints.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Proxy
# ---------------------------------------------------------------------------


class ProxyRequest(BaseModel):
    """POST /api/proxy request body.

    At least one of ``tool`` or ``target_url`` must be present; that rule
    is enforced by the gatekeeper so it can answer with ``bad_request``.
    """

    tool: str | None = None
    action: str | None = None
    data: dict[str, Any] | None = None
    target_url: str | None = None
    method: str | None = None
    headers: dict[str, str] | None = None

    @property
    def tool_name(self) -> str | None:
        return self.tool or self.target_url


class ThreatView(BaseModel):
    """The offending threat as surfaced to callers (no matched text)."""

    type: str
    severity: str
    description: str


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


class RegistrationRequest(BaseModel):
    """POST /api/register request body.  New agents start on the free tier."""

    agent_name: str = Field(min_length=1, max_length=200)


class RegistrationResponse(BaseModel):
    """POST /api/register response body."""

    ok: bool = True
    agent_id: str
    api_key: str
    subscription_tier: str
    price_per_request: float
    price_locked_at: str


# ---------------------------------------------------------------------------
# Account views
# ---------------------------------------------------------------------------


class EventView(BaseModel):
    """One entry of GET /api/events."""

    tool: str | None = None
    blocked: bool
    block_reason: str | None = None
    created_at: str | None = None


class ThreatFeedEntry(BaseModel):
    """One entry of GET /api/threats."""

    signature_hash: str
    threat_type: str
    pattern: str
    description: str
    severity: str
    times_seen: int = 1
    created_at: str | None = None
