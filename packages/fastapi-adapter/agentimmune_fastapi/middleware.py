"""AgentImmune FastAPI middleware.

Provides the :class:`AgentImmune` class that mounts the firewall endpoints
onto a FastAPI application:

- ``POST {prefix}/proxy`` -- run a tool call through the gatekeeper
- ``POST {prefix}/register`` -- register an agent and lock its price
- ``GET {prefix}/payment`` -- pricing and the caller's payment status
- ``GET {prefix}/agent`` -- the caller's account record
- ``GET {prefix}/events`` -- the caller's recent audit events
- ``GET {prefix}/threats`` -- the shared threat feed
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import httpx
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from fastapi.routing import APIRouter

from .inspector import ContentInspector, PatternInspector
from .logging import clear_context, get_logger, set_request_id
from .models import (
    EventView,
    RegistrationRequest,
    RegistrationResponse,
    ThreatFeedEntry,
)
from .payments import (
    CURRENCY,
    DEFAULT_FACILITATOR_URL,
    DEFAULT_WALLET,
    DOCS_URL,
    FREE_TIER_DAILY_LIMIT,
    LAUNCH_PRICE,
    LAUNCH_PRICING_ENDS,
    NETWORK,
    SCHEME,
    STANDARD_PRICE,
    FacilitatorClient,
    FallbackPolicy,
    check_payment_required,
    price_for_registration,
)
from .pipeline import Gatekeeper, ProxyCall, bearer_token
from .ratelimit import RateLimiter, limits_for_tier
from .store import AgentRecord, InMemoryRecordStore, RecordStore

logger = get_logger("agentimmune.middleware")

_LAUNCH_CUTOFF = (
    f"{LAUNCH_PRICING_ENDS:%B} {LAUNCH_PRICING_ENDS.day}, {LAUNCH_PRICING_ENDS.year}"
)


@dataclass
class AgentImmuneConfig:
    """Configuration for the AgentImmune middleware.

    Attributes:
        store: The record store backend.  Defaults to an in-memory store.
        rate_limiter: Hourly rate limiter.  Defaults to a fresh limiter.
        inspector: Content inspector.  Defaults to :class:`PatternInspector`.
        facilitator_url: Payment facilitator root URL.
        facilitator: Prebuilt facilitator client; overrides
            ``facilitator_url`` and ``payment_fallback``.
        wallet: Wallet that receives payments.
        payment_fallback: What to do when the facilitator is unreachable.
        free_tier_limit: Free calls per agent per day.
        default_price: Price for agents without a locked price.
        forward_timeout: Outbound call timeout, in seconds.
        count_response_threats: Whether a ``response_threat`` verdict
            counts against the daily quota.
        http_client: Optional shared client for outbound calls.
        route_prefix: URL prefix for the endpoints (no trailing slash).
    """

    store: RecordStore | None = None
    rate_limiter: RateLimiter | None = None
    inspector: ContentInspector | None = None
    facilitator_url: str = DEFAULT_FACILITATOR_URL
    facilitator: FacilitatorClient | None = None
    wallet: str = DEFAULT_WALLET
    payment_fallback: FallbackPolicy = FallbackPolicy.CLOSED
    free_tier_limit: int = FREE_TIER_DAILY_LIMIT
    default_price: float = LAUNCH_PRICE
    forward_timeout: float = 5.0
    count_response_threats: bool = True
    payload_sample_chars: int = 500
    pattern_sample_chars: int = 200
    http_client: httpx.AsyncClient | None = field(default=None, repr=False)
    route_prefix: str = "/api"


class AgentImmune:
    """Mount the AgentImmune firewall endpoints onto a FastAPI application.

    Usage::

        app = FastAPI()
        immune = AgentImmune(app, config=AgentImmuneConfig(wallet="..."))
    """

    def __init__(
        self,
        app: FastAPI,
        config: AgentImmuneConfig | None = None,
    ) -> None:
        self._app = app
        self._config = config or AgentImmuneConfig()
        self._store: RecordStore = self._config.store or InMemoryRecordStore()
        facilitator = self._config.facilitator or FacilitatorClient(
            base_url=self._config.facilitator_url,
            fallback=self._config.payment_fallback,
        )

        self._gatekeeper = Gatekeeper(
            store=self._store,
            rate_limiter=self._config.rate_limiter or RateLimiter(),
            inspector=self._config.inspector or PatternInspector(),
            facilitator=facilitator,
            wallet=self._config.wallet,
            free_tier_limit=self._config.free_tier_limit,
            default_price=self._config.default_price,
            forward_timeout=self._config.forward_timeout,
            count_response_threats=self._config.count_response_threats,
            payload_sample_chars=self._config.payload_sample_chars,
            pattern_sample_chars=self._config.pattern_sample_chars,
            http_client=self._config.http_client,
        )

        self._mount_routes()

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def store(self) -> RecordStore:
        """The underlying record store."""
        return self._store

    @property
    def gatekeeper(self) -> Gatekeeper:
        return self._gatekeeper

    @property
    def config(self) -> AgentImmuneConfig:
        """The current configuration."""
        return self._config

    # ------------------------------------------------------------------
    # Route mounting
    # ------------------------------------------------------------------

    def _mount_routes(self) -> None:
        """Add all AgentImmune routes to the FastAPI application."""
        prefix = self._config.route_prefix
        router = APIRouter()

        router.add_api_route(
            f"{prefix}/proxy",
            self._handle_proxy,
            methods=["POST"],
            tags=["agentimmune"],
        )
        router.add_api_route(
            f"{prefix}/register",
            self._handle_register,
            methods=["POST"],
            response_model=RegistrationResponse,
            tags=["agentimmune"],
        )
        router.add_api_route(
            f"{prefix}/payment",
            self._handle_payment_info,
            methods=["GET"],
            tags=["agentimmune"],
        )
        router.add_api_route(
            f"{prefix}/agent",
            self._handle_agent,
            methods=["GET"],
            tags=["agentimmune"],
        )
        router.add_api_route(
            f"{prefix}/events",
            self._handle_events,
            methods=["GET"],
            tags=["agentimmune"],
        )
        router.add_api_route(
            f"{prefix}/threats",
            self._handle_threats,
            methods=["GET"],
            tags=["agentimmune"],
        )

        self._app.include_router(router)

    # ------------------------------------------------------------------
    # Endpoint handlers
    # ------------------------------------------------------------------

    async def _handle_proxy(self, request: Request) -> JSONResponse:
        """POST /api/proxy

        The body is read raw so malformed JSON reaches the gatekeeper and
        is answered with ``bad_request`` after authentication.
        """
        set_request_id(request.headers.get("X-Request-ID"))
        try:
            verdict = await self._gatekeeper.process(
                ProxyCall(
                    authorization=request.headers.get("Authorization"),
                    payment_header=request.headers.get("X-Payment"),
                    body=await request.body(),
                )
            )
        finally:
            clear_context()
        return JSONResponse(status_code=verdict.status_code, content=verdict.body)

    async def _handle_register(
        self, body: RegistrationRequest
    ) -> RegistrationResponse:
        """POST /api/register

        Creates a free-tier agent.  The price per request is locked at the
        registration-time rate and never changes afterwards.
        """
        now = datetime.now(timezone.utc)
        record = await self._store.create_agent(
            agent_name=body.agent_name,
            subscription_tier="free",
            price_per_request=price_for_registration(now),
            price_locked_at=now.isoformat(),
        )
        logger.info("Agent registered", agent_id=record.id)
        return RegistrationResponse(
            agent_id=record.id,
            api_key=record.api_key,
            subscription_tier=record.subscription_tier,
            price_per_request=record.price_per_request or self._config.default_price,
            price_locked_at=record.price_locked_at or now.isoformat(),
        )

    async def _handle_payment_info(
        self, request: Request, api_key: str | None = Query(None, alias="apiKey")
    ) -> dict[str, Any]:
        """GET /api/payment

        Without credentials, returns general pricing.  With credentials,
        returns the caller's quota, locked price and current requirement.
        """
        key = _credential(request, api_key)
        if key is None:
            return {
                "ok": True,
                "message": "Agent Immune System - Payment Information",
                "wallet": self._config.wallet,
                "pricing": {
                    "free_tier": f"{self._config.free_tier_limit:,} requests/day",
                    "launch_price": (
                        f"${LAUNCH_PRICE}/request (for agents registered before "
                        f"{_LAUNCH_CUTOFF})"
                    ),
                    "standard_price": (
                        f"${STANDARD_PRICE}/request (for agents registered after "
                        f"{_LAUNCH_CUTOFF})"
                    ),
                },
                "payment_method": {
                    "scheme": SCHEME,
                    "currency": CURRENCY,
                    "network": NETWORK,
                    "facilitator": self._gatekeeper.facilitator.base_url,
                },
                "header_format": (
                    f"X-Payment: {SCHEME} usdc/{NETWORK} amount=<amount> "
                    "tx=<transaction_signature> recipient=<wallet>"
                ),
                "docs": DOCS_URL,
            }

        agent = await self._resolve(key)
        price = agent.price_per_request or self._config.default_price
        requirement = check_payment_required(
            agent.requests_today,
            price,
            recipient=self._config.wallet,
            facilitator=self._gatekeeper.facilitator.base_url,
            free_limit=self._config.free_tier_limit,
        )
        limits = limits_for_tier(agent.subscription_tier)
        return {
            "ok": True,
            "agent": {
                "name": agent.agent_name,
                "tier": agent.subscription_tier,
                "requests_today": agent.requests_today,
                "free_remaining": max(0, self._config.free_tier_limit - agent.requests_today),
                "requests_per_hour": limits.requests_per_hour,
                "requests_per_day": limits.requests_per_day,
            },
            "pricing": {
                "price_per_request": price,
                "price_locked_at": agent.price_locked_at,
                "is_launch_pricing": price == LAUNCH_PRICE,
            },
            "payment": {
                "required": requirement.required,
                "amount_if_required": price,
                "wallet": requirement.recipient,
                "scheme": requirement.scheme,
                "network": requirement.network,
                "currency": CURRENCY,
            },
            "credits": {"balance_usdc": agent.credits_usdc},
        }

    async def _handle_agent(
        self, request: Request, api_key: str | None = Query(None, alias="apiKey")
    ) -> dict[str, Any]:
        """GET /api/agent"""
        agent = await self._resolve(_require_credential(request, api_key))
        return {"ok": True, "agent": agent.public_view()}

    async def _handle_events(
        self,
        request: Request,
        api_key: str | None = Query(None, alias="apiKey"),
        limit: int = Query(20, ge=1, le=500),
    ) -> dict[str, Any]:
        """GET /api/events"""
        agent = await self._resolve(_require_credential(request, api_key))
        events = await self._store.get_events_for_agent(agent.id, limit=limit)
        return {
            "ok": True,
            "events": [
                EventView(
                    tool=e.tool_name,
                    blocked=e.decision == "block",
                    block_reason=e.threat_type or e.event_type,
                    created_at=e.created_at,
                ).model_dump()
                for e in events
            ],
        }

    async def _handle_threats(
        self,
        request: Request,
        api_key: str | None = Query(None, alias="apiKey"),
        limit: int = Query(50, ge=1, le=500),
    ) -> dict[str, Any]:
        """GET /api/threats"""
        await self._resolve(_require_credential(request, api_key))
        signatures = await self._store.list_threat_signatures(limit=limit)
        return {
            "ok": True,
            "threats": [
                ThreatFeedEntry(**s.to_dict()).model_dump() for s in signatures
            ],
        }

    async def _resolve(self, api_key: str) -> AgentRecord:
        agent = await self._store.get_agent_by_api_key(api_key)
        if agent is None:
            raise HTTPException(status_code=401, detail="Invalid API key")
        return agent


def _credential(request: Request, api_key: str | None) -> str | None:
    return bearer_token(request.headers.get("Authorization")) or api_key or None


def _require_credential(request: Request, api_key: str | None) -> str:
    key = _credential(request, api_key)
    if key is None:
        raise HTTPException(status_code=400, detail="API key required")
    return key
