"""The request gatekeeper.

A proxied tool call passes through a fixed, ordered tuple of gates::

    authenticate -> enforce_quarantine -> parse_request -> enforce_rate_limit
    -> enforce_payment -> inspect_inbound -> redact_secrets -> forward

Each gate returns either :class:`Continue` carrying the request context or
:class:`Deny` carrying the terminal :class:`Verdict`.  The first ``Deny``
ends the request; later gates never run.  A request that clears every gate
is allowed, audited once as ``tool_call`` and counted once.

Side effects already applied by earlier gates (a payment credit, a
``key_redacted`` event) are not undone when a later gate denies.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Union

import httpx
from pydantic import ValidationError

from .accounting import AccountLedger, AuditSink, RequestTimer
from .errors import DenialCode, ProxyError, status_for
from .inspector import ContentInspector, Threat
from .logging import get_logger, set_agent_context
from .models import ProxyRequest, ThreatView
from .payments import (
    FREE_TIER_DAILY_LIMIT,
    LAUNCH_PRICE,
    FacilitatorClient,
    PaymentVerification,
    check_payment_required,
    generate_402_response,
    parse_payment_header,
)
from .ratelimit import RateLimiter, limits_for_tier
from .store import AgentRecord, RecordStore

logger = get_logger("agentimmune.pipeline")

BODYLESS_METHODS = ("GET", "HEAD")


@dataclass
class ProxyCall:
    """A raw incoming call as received by the HTTP layer."""

    authorization: str | None
    payment_header: str | None
    body: bytes | str | None


@dataclass
class Verdict:
    """Terminal outcome of one request."""

    decision: str
    code: DenialCode | None
    body: dict[str, Any]

    @property
    def status_code(self) -> int:
        return status_for(self.code)

    @property
    def allowed(self) -> bool:
        return self.code is None


@dataclass
class RequestContext:
    """State threaded through the gates for one request."""

    call: ProxyCall
    timer: RequestTimer = field(default_factory=RequestTimer)
    agent: AgentRecord | None = None
    request: ProxyRequest | None = None
    payload: Any = None
    payload_text: str = ""
    secrets_redacted: int = 0
    payment: PaymentVerification | None = None
    proxy_response: Any = None
    proxy_status: int | None = None

    @property
    def tool_name(self) -> str | None:
        return self.request.tool_name if self.request is not None else None

    @property
    def agent_id(self) -> str | None:
        return self.agent.id if self.agent is not None else None


@dataclass
class Continue:
    context: RequestContext


@dataclass
class Deny:
    verdict: Verdict


GateResult = Union[Continue, Deny]
Gate = Callable[[RequestContext], Awaitable[GateResult]]


def _scan_text(value: Any) -> str:
    """Serialize *value* for inspection with non-ASCII text left unescaped."""
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


def _threat_view(threat: Threat) -> dict[str, Any]:
    return ThreatView(
        type=threat.type, severity=threat.severity, description=threat.description
    ).model_dump()


class Gatekeeper:
    """Orchestrates the gate chain for proxied tool calls.

    Args:
        store: Record store for account lookups, counters and events.
        rate_limiter: Per-agent hourly counter.
        inspector: Content inspector used for threats and secrets.
        facilitator: Payment facilitator client.
        wallet: Destination wallet for payments.
        free_tier_limit: Free calls per agent per day.
        default_price: Price used when an agent has no locked price.
        forward_timeout: Timeout in seconds for the outbound call.
        count_response_threats: Whether a ``response_threat`` verdict
            still counts against the daily quota.
        http_client: Optional shared client for outbound calls.
    """

    def __init__(
        self,
        store: RecordStore,
        rate_limiter: RateLimiter,
        inspector: ContentInspector,
        facilitator: FacilitatorClient,
        *,
        wallet: str,
        free_tier_limit: int = FREE_TIER_DAILY_LIMIT,
        default_price: float = LAUNCH_PRICE,
        forward_timeout: float = 5.0,
        count_response_threats: bool = True,
        payload_sample_chars: int = 500,
        pattern_sample_chars: int = 200,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.store = store
        self.rate_limiter = rate_limiter
        self.inspector = inspector
        self.facilitator = facilitator
        self.wallet = wallet
        self.free_tier_limit = free_tier_limit
        self.default_price = default_price
        self.forward_timeout = forward_timeout
        self.count_response_threats = count_response_threats
        self.audit = AuditSink(store, payload_sample_chars=payload_sample_chars)
        self.ledger = AccountLedger(store, pattern_sample_chars=pattern_sample_chars)
        self._http_client = http_client

        self.gates: tuple[Gate, ...] = (
            self.authenticate,
            self.enforce_quarantine,
            self.parse_request,
            self.enforce_rate_limit,
            self.enforce_payment,
            self.inspect_inbound,
            self.redact_secrets,
            self.forward,
        )

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def process(self, call: ProxyCall) -> Verdict:
        """Run *call* through every gate and return its verdict."""
        ctx = RequestContext(call=call)
        try:
            for gate in self.gates:
                result = await gate(ctx)
                if isinstance(result, Deny):
                    return self._finish(ctx, result.verdict)
                ctx = result.context
            return self._finish(ctx, await self.allow(ctx))
        except Exception:
            logger.exception("Unhandled error in proxy pipeline", agent_id=ctx.agent_id)
            await self._record_internal_error(ctx)
            return self._finish(
                ctx,
                Verdict(
                    decision="block",
                    code=DenialCode.INTERNAL_ERROR,
                    body={"ok": False, "error": "Internal error", "code": "internal_error"},
                ),
            )

    # ------------------------------------------------------------------
    # Gates
    # ------------------------------------------------------------------

    async def authenticate(self, ctx: RequestContext) -> GateResult:
        api_key = bearer_token(ctx.call.authorization)
        if not api_key:
            return await self._deny(ctx, DenialCode.UNAUTHORIZED, "Missing API key")

        agent = await self.store.get_agent_by_api_key(api_key)
        if agent is None:
            return await self._deny(ctx, DenialCode.UNAUTHORIZED, "Invalid API key")

        ctx.agent = agent
        set_agent_context(agent.id)
        return Continue(ctx)

    async def enforce_quarantine(self, ctx: RequestContext) -> GateResult:
        assert ctx.agent is not None
        if ctx.agent.is_quarantined:
            return await self._deny(
                ctx, DenialCode.QUARANTINED, "Agent is quarantined. Contact support."
            )
        return Continue(ctx)

    async def parse_request(self, ctx: RequestContext) -> GateResult:
        raw = ctx.call.body
        try:
            parsed = json.loads(raw) if raw else {}
        except ValueError:
            return await self._deny(ctx, DenialCode.BAD_REQUEST, "Malformed JSON body")

        if not isinstance(parsed, dict):
            return await self._deny(
                ctx, DenialCode.BAD_REQUEST, "Request body must be a JSON object"
            )

        try:
            request = ProxyRequest.model_validate(parsed)
        except ValidationError as exc:
            return await self._deny(
                ctx,
                DenialCode.BAD_REQUEST,
                "Invalid request body",
                details=[err["msg"] for err in exc.errors()],
            )

        if not request.tool and not request.target_url:
            return await self._deny(
                ctx, DenialCode.BAD_REQUEST, "Missing tool or target_url"
            )

        ctx.request = request
        ctx.payload = request.data
        return Continue(ctx)

    async def enforce_rate_limit(self, ctx: RequestContext) -> GateResult:
        assert ctx.agent is not None
        limits = limits_for_tier(ctx.agent.subscription_tier)
        result = self.rate_limiter.check(ctx.agent.id, limits.requests_per_hour)
        if result.allowed:
            return Continue(ctx)

        reset_at = datetime.fromtimestamp(result.reset_time, tz=timezone.utc)
        return await self._deny(
            ctx,
            DenialCode.RATE_LIMITED,
            "Rate limit exceeded",
            limit=result.limit,
            reset_at=reset_at.isoformat(),
        )

    async def enforce_payment(self, ctx: RequestContext) -> GateResult:
        agent = ctx.agent
        assert agent is not None
        price = agent.price_per_request or self.default_price
        requirement = check_payment_required(
            agent.requests_today,
            price,
            recipient=self.wallet,
            facilitator=self.facilitator.base_url,
            free_limit=self.free_tier_limit,
        )
        if not requirement.required:
            return Continue(ctx)

        payment_block = generate_402_response(requirement)["payment"]
        envelope = parse_payment_header(ctx.call.payment_header)
        if not envelope.valid:
            extra: dict[str, Any] = {"payment": payment_block}
            if ctx.call.payment_header:
                extra["details"] = envelope.error
            return await self._deny(
                ctx, DenialCode.PAYMENT_REQUIRED, "Payment required", **extra
            )

        assert envelope.amount is not None and envelope.signature is not None
        if envelope.amount < requirement.amount_usdc:
            return await self._deny(
                ctx,
                DenialCode.PAYMENT_INVALID,
                "Payment verification failed",
                details="Payment amount below required amount",
                payment=payment_block,
            )
        if envelope.recipient and envelope.recipient != requirement.recipient:
            return await self._deny(
                ctx,
                DenialCode.PAYMENT_INVALID,
                "Payment verification failed",
                details="Payment recipient does not match",
                payment=payment_block,
            )

        verification = await self.facilitator.verify_payment(
            envelope.signature, requirement.amount_usdc, requirement.recipient
        )
        if not verification.valid:
            return await self._deny(
                ctx,
                DenialCode.PAYMENT_INVALID,
                "Payment verification failed",
                details=verification.error,
                payment=payment_block,
            )

        await self.ledger.credit(agent, verification.amount_paid or 0.0)
        ctx.payment = verification
        return Continue(ctx)

    async def inspect_inbound(self, ctx: RequestContext) -> GateResult:
        agent = ctx.agent
        assert agent is not None
        ctx.payload_text = _scan_text(ctx.payload or {})
        scan = self.inspector.scan_for_threats(ctx.payload_text)
        threat = scan.first_threat
        if scan.safe or threat is None:
            return Continue(ctx)

        # The stored sample must not carry secrets the next gate would redact.
        sample = self.inspector.scan_and_redact_secrets(ctx.payload_text).redacted
        verdict = await self._deny(
            ctx,
            DenialCode.THREAT_BLOCKED,
            "Threat detected and blocked",
            request_data=sample,
            threat=threat,
        )
        await self.ledger.record_threat_signature(
            agent, threat, self.inspector.generate_signature_hash(threat)
        )
        await self.ledger.count_threats(agent, 1)
        return verdict

    async def redact_secrets(self, ctx: RequestContext) -> GateResult:
        agent = ctx.agent
        assert agent is not None
        scan = self.inspector.scan_and_redact_secrets(ctx.payload_text)
        found = len(scan.secrets_found)
        if not found:
            return Continue(ctx)

        await self.audit.record(
            agent_id=agent.id,
            event_type="key_redacted",
            decision="redact",
            tool_name=ctx.tool_name,
            latency_ms=ctx.timer.elapsed_ms(),
            threat_type="secret_leak",
        )
        try:
            ctx.payload = json.loads(scan.redacted)
        except ValueError:
            ctx.payload = scan.redacted
        ctx.payload_text = scan.redacted
        ctx.secrets_redacted = found
        await self.ledger.count_threats(agent, found)
        return Continue(ctx)

    async def forward(self, ctx: RequestContext) -> GateResult:
        request = ctx.request
        agent = ctx.agent
        assert request is not None and agent is not None
        if not request.target_url:
            return Continue(ctx)

        try:
            response = await self._send_outbound(request, ctx.payload)
        except ProxyError as exc:
            logger.warning("Outbound request failed", target_url=exc.target_url, error=exc.message)
            return await self._deny(ctx, DenialCode.PROXY_ERROR, "Proxy request failed")

        try:
            proxy_response: Any = response.json()
        except ValueError:
            proxy_response = response.text
        ctx.proxy_response = proxy_response
        ctx.proxy_status = response.status_code

        scan = self.inspector.scan_for_threats(_scan_text(proxy_response))
        threat = scan.first_threat
        if scan.safe or threat is None:
            return Continue(ctx)

        verdict = await self._deny(
            ctx,
            DenialCode.RESPONSE_THREAT,
            "Response contained potential threat",
            threat=threat,
        )
        if self.count_response_threats:
            await self.ledger.count_request(agent)
        return verdict

    # ------------------------------------------------------------------
    # Terminal steps
    # ------------------------------------------------------------------

    async def allow(self, ctx: RequestContext) -> Verdict:
        agent = ctx.agent
        assert agent is not None
        await self.audit.record(
            agent_id=agent.id,
            event_type="tool_call",
            decision="allow",
            tool_name=ctx.tool_name,
            latency_ms=ctx.timer.elapsed_ms(),
        )
        await self.ledger.count_request(agent)

        body: dict[str, Any] = {
            "ok": True,
            "decision": "allow",
            "processed_data": ctx.payload,
            "proxy_response": ctx.proxy_response,
            "secrets_redacted": ctx.secrets_redacted,
            "latency_ms": ctx.timer.elapsed_ms(),
        }
        if ctx.proxy_status is not None:
            body["proxy_status"] = ctx.proxy_status
        if ctx.payment is not None:
            body["payment"] = {
                "transaction_id": ctx.payment.transaction_id,
                "amount_paid": ctx.payment.amount_paid,
            }
        return Verdict(decision="allow", code=None, body=body)

    async def _deny(
        self,
        ctx: RequestContext,
        code: DenialCode,
        error: str,
        *,
        request_data: str | None = None,
        threat: Threat | None = None,
        **extra: Any,
    ) -> Deny:
        """Record the denial's audit event and build its verdict."""
        await self.audit.record(
            agent_id=ctx.agent_id,
            event_type=code.value,
            decision="block",
            tool_name=ctx.tool_name,
            latency_ms=ctx.timer.elapsed_ms(),
            request_data=request_data,
            threat=threat,
        )
        body: dict[str, Any] = {"ok": False, "error": error, "code": code.value}
        if threat is not None:
            body["threat"] = _threat_view(threat)
        body.update(extra)
        return Deny(Verdict(decision="block", code=code, body=body))

    async def _record_internal_error(self, ctx: RequestContext) -> None:
        try:
            await self.audit.record(
                agent_id=ctx.agent_id,
                event_type=DenialCode.INTERNAL_ERROR.value,
                decision="block",
                tool_name=ctx.tool_name,
                latency_ms=ctx.timer.elapsed_ms(),
            )
        except Exception:
            logger.exception("Failed to record internal_error event", agent_id=ctx.agent_id)

    def _finish(self, ctx: RequestContext, verdict: Verdict) -> Verdict:
        logger.info(
            "Proxy decision",
            agent_id=ctx.agent_id,
            tool=ctx.tool_name,
            decision=verdict.decision,
            code=verdict.code.value if verdict.code else "allow",
            latency_ms=ctx.timer.elapsed_ms(),
        )
        return verdict

    async def _send_outbound(self, request: ProxyRequest, payload: Any) -> httpx.Response:
        assert request.target_url is not None
        method = (request.method or "GET").upper()
        kwargs: dict[str, Any] = {"headers": request.headers or {}}
        if method not in BODYLESS_METHODS:
            if isinstance(payload, str):
                kwargs["content"] = payload
            else:
                kwargs["json"] = payload if payload is not None else {}

        try:
            if self._http_client is None:
                async with httpx.AsyncClient(timeout=self.forward_timeout) as client:
                    return await client.request(method, request.target_url, **kwargs)
            return await self._http_client.request(
                method, request.target_url, timeout=self.forward_timeout, **kwargs
            )
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise ProxyError(request.target_url, str(exc) or type(exc).__name__) from exc


def bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None
