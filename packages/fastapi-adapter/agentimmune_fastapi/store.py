"""Record store for agent accounts, audit events and threat signatures.

Provides an abstract protocol and a default in-memory implementation.
Deployments reach the real record store over a network API through
:class:`~agentimmune_fastapi.remote_store.HttpRecordStore`; both implement
the :class:`RecordStore` protocol.

Counter writes go through :meth:`RecordStore.increment_agent`, the one place
where the consistency of concurrent updates is decided.  The in-memory store
applies deltas atomically to its own record.  The HTTP store writes the
request's snapshot plus the delta, so two concurrent requests from the same
agent can both read ``N`` and both write ``N + 1`` (last writer wins).
"""

from __future__ import annotations

import secrets
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol, runtime_checkable

COUNTER_FIELDS = ("requests_today", "requests_total", "threats_blocked", "credits_usdc")


@dataclass
class AgentRecord:
    """A caller account, keyed by its secret API key."""

    id: str
    agent_name: str
    api_key: str
    status: str = "active"
    subscription_tier: str = "free"
    requests_today: int = 0
    requests_total: int = 0
    threats_blocked: int = 0
    price_per_request: float | None = None
    credits_usdc: float = 0.0
    price_locked_at: str | None = None
    created_at: str | None = None

    @property
    def is_quarantined(self) -> bool:
        return self.status == "quarantined"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def public_view(self) -> dict[str, Any]:
        """Serialize without the API key."""
        data = self.to_dict()
        data.pop("api_key", None)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AgentRecord:
        values = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        values["id"] = str(values["id"])
        for name in ("requests_today", "requests_total", "threats_blocked"):
            if values.get(name) is None:
                values.pop(name, None)
            else:
                values[name] = int(values[name])
        if values.get("credits_usdc") is not None:
            values["credits_usdc"] = float(values["credits_usdc"])
        else:
            values.pop("credits_usdc", None)
        if values.get("price_per_request") is not None:
            values["price_per_request"] = float(values["price_per_request"])
        return cls(**values)


@dataclass
class EventRecord:
    """One append-only audit row per pipeline decision."""

    agent_id: str | None
    event_type: str
    decision: str
    tool_name: str | None = None
    request_data: str | None = None
    threat_detected: bool = False
    threat_type: str | None = None
    latency_ms: int = 0
    created_at: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EventRecord:
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


@dataclass
class ThreatSignature:
    """A deduplicated, hashed record of an observed threat pattern."""

    signature_hash: str
    threat_type: str
    pattern: str
    description: str
    severity: str
    source_agent_id: str | None = None
    times_seen: int = 1
    created_at: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ThreatSignature:
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


@runtime_checkable
class RecordStore(Protocol):
    """Protocol for record store backends."""

    async def get_agent_by_api_key(self, api_key: str) -> AgentRecord | None:
        """Resolve a credential to an agent, or ``None`` if unknown."""
        ...

    async def create_agent(
        self,
        agent_name: str,
        subscription_tier: str,
        price_per_request: float,
        price_locked_at: str,
    ) -> AgentRecord:
        """Register a new agent and issue its API key."""
        ...

    async def increment_agent(
        self, snapshot: AgentRecord, **deltas: float
    ) -> AgentRecord:
        """Add *deltas* to the agent's counters and return the new values."""
        ...

    async def append_event(self, event: EventRecord) -> None:
        """Append one audit event."""
        ...

    async def get_events_for_agent(
        self, agent_id: str, limit: int = 20
    ) -> list[EventRecord]:
        """Return the agent's most recent events, newest first."""
        ...

    async def add_threat_signature(
        self, signature: ThreatSignature
    ) -> ThreatSignature:
        """Store a signature, or bump ``times_seen`` if its hash exists."""
        ...

    async def list_threat_signatures(self, limit: int = 50) -> list[ThreatSignature]:
        """Return the shared threat feed, newest first."""
        ...


def _today() -> str:
    return datetime.now(timezone.utc).date().isoformat()


class InMemoryRecordStore:
    """In-memory record store.

    Suitable for development and testing.  All data is lost when the
    process exits.  ``requests_today`` rolls over when the UTC date changes.
    """

    def __init__(self, clock=_today) -> None:
        self._clock = clock
        self._agents: dict[str, AgentRecord] = {}
        self._agents_by_api_key: dict[str, AgentRecord] = {}
        self._counter_day: dict[str, str] = {}
        self._events: list[EventRecord] = []
        self._signatures: dict[str, ThreatSignature] = {}

    @property
    def events(self) -> list[EventRecord]:
        """All events in append order."""
        return list(self._events)

    def add_agent(self, record: AgentRecord) -> AgentRecord:
        """Insert a prebuilt record (fixtures, seeding)."""
        self._agents[record.id] = record
        self._agents_by_api_key[record.api_key] = record
        self._counter_day[record.id] = self._clock()
        return record

    async def get_agent_by_api_key(self, api_key: str) -> AgentRecord | None:
        record = self._agents_by_api_key.get(api_key)
        if record is None:
            return None
        self._roll_over(record)
        # Callers get a snapshot; only increment_agent mutates the record.
        return AgentRecord(**record.to_dict())

    async def get_agent(self, agent_id: str) -> AgentRecord | None:
        record = self._agents.get(agent_id)
        if record is None:
            return None
        self._roll_over(record)
        return AgentRecord(**record.to_dict())

    async def create_agent(
        self,
        agent_name: str,
        subscription_tier: str,
        price_per_request: float,
        price_locked_at: str,
    ) -> AgentRecord:
        record = AgentRecord(
            id=f"agent_{secrets.token_urlsafe(12)}",
            agent_name=agent_name,
            api_key=f"ais_{secrets.token_urlsafe(24)}",
            subscription_tier=subscription_tier,
            price_per_request=price_per_request,
            price_locked_at=price_locked_at,
            created_at=datetime.now(timezone.utc).isoformat(),
        )
        self.add_agent(record)
        return AgentRecord(**record.to_dict())

    async def increment_agent(
        self, snapshot: AgentRecord, **deltas: float
    ) -> AgentRecord:
        record = self._agents[snapshot.id]
        self._roll_over(record)
        for name, delta in deltas.items():
            if name not in COUNTER_FIELDS:
                raise ValueError(f"Not a counter field: {name}")
            setattr(record, name, getattr(record, name) + delta)
        return AgentRecord(**record.to_dict())

    async def append_event(self, event: EventRecord) -> None:
        self._events.append(event)

    async def get_events_for_agent(
        self, agent_id: str, limit: int = 20
    ) -> list[EventRecord]:
        matching = [e for e in reversed(self._events) if e.agent_id == agent_id]
        return matching[:limit]

    async def add_threat_signature(
        self, signature: ThreatSignature
    ) -> ThreatSignature:
        existing = self._signatures.get(signature.signature_hash)
        if existing is not None:
            existing.times_seen += 1
            return existing
        self._signatures[signature.signature_hash] = signature
        return signature

    async def list_threat_signatures(self, limit: int = 50) -> list[ThreatSignature]:
        return list(reversed(self._signatures.values()))[:limit]

    def _roll_over(self, record: AgentRecord) -> None:
        today = self._clock()
        if self._counter_day.get(record.id) != today:
            record.requests_today = 0
            self._counter_day[record.id] = today

