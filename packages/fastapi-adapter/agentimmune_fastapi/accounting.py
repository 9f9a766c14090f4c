"""Audit events and account counter updates.

:class:`AuditSink` appends one :class:`~.store.EventRecord` per decision.
:class:`AccountLedger` applies counter deltas through
:meth:`~.store.RecordStore.increment_agent` and refreshes the request's
snapshot with the values the store reports back.
"""

from __future__ import annotations

import time

from .inspector import Threat
from .logging import get_logger
from .store import AgentRecord, EventRecord, RecordStore, ThreatSignature

logger = get_logger("agentimmune.accounting")


class RequestTimer:
    """Monotonic latency timer started when a request arrives."""

    def __init__(self) -> None:
        self._started = time.monotonic()

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self._started) * 1000)


class AuditSink:
    """Append-only audit log writer."""

    def __init__(self, store: RecordStore, payload_sample_chars: int = 500) -> None:
        self._store = store
        self._payload_sample_chars = payload_sample_chars

    async def record(
        self,
        *,
        agent_id: str | None,
        event_type: str,
        decision: str,
        tool_name: str | None,
        latency_ms: int,
        request_data: str | None = None,
        threat: Threat | None = None,
        threat_type: str | None = None,
    ) -> EventRecord:
        event = EventRecord(
            agent_id=agent_id,
            event_type=event_type,
            decision=decision,
            tool_name=tool_name,
            request_data=(
                request_data[: self._payload_sample_chars]
                if request_data is not None
                else None
            ),
            threat_detected=threat is not None or threat_type is not None,
            threat_type=threat.type if threat is not None else threat_type,
            latency_ms=latency_ms,
        )
        await self._store.append_event(event)
        return event


class AccountLedger:
    """Counter updates and threat-feed writes for one agent account.

    Updates are read-modify-write against the snapshot loaded for the
    current request.  Whether concurrent requests from the same agent can
    lose updates depends on the store's ``increment_agent``.
    """

    def __init__(self, store: RecordStore, pattern_sample_chars: int = 200) -> None:
        self._store = store
        self._pattern_sample_chars = pattern_sample_chars

    async def credit(self, agent: AgentRecord, amount_usdc: float) -> AgentRecord:
        return await self._apply(agent, credits_usdc=amount_usdc)

    async def count_request(self, agent: AgentRecord) -> AgentRecord:
        return await self._apply(agent, requests_today=1, requests_total=1)

    async def count_threats(self, agent: AgentRecord, count: int = 1) -> AgentRecord:
        return await self._apply(agent, threats_blocked=count)

    async def record_threat_signature(
        self, agent: AgentRecord, threat: Threat, signature_hash: str
    ) -> ThreatSignature:
        signature = ThreatSignature(
            signature_hash=signature_hash,
            threat_type=threat.type,
            pattern=threat.pattern[: self._pattern_sample_chars],
            description=threat.description,
            severity=threat.severity,
            source_agent_id=agent.id,
        )
        return await self._store.add_threat_signature(signature)

    async def _apply(self, agent: AgentRecord, **deltas: float) -> AgentRecord:
        updated = await self._store.increment_agent(agent, **deltas)
        for name in deltas:
            setattr(agent, name, getattr(updated, name))
        logger.debug("Account counters updated", agent_id=agent.id, **deltas)
        return agent
