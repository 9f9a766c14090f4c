"""AgentImmune FastAPI adapter - a firewall for agent tool calls.

Provides server-side middleware that authenticates agents, rate limits
them, meters calls with x402 payments, inspects payloads for threats and
secrets, and optionally forwards calls to an external target.
"""

from .errors import DenialCode
from .middleware import AgentImmune, AgentImmuneConfig
from .payments import FallbackPolicy
from .pipeline import Gatekeeper, ProxyCall, Verdict
from .store import AgentRecord, InMemoryRecordStore, RecordStore

__all__ = [
    "AgentImmune",
    "AgentImmuneConfig",
    "AgentRecord",
    "DenialCode",
    "FallbackPolicy",
    "Gatekeeper",
    "InMemoryRecordStore",
    "ProxyCall",
    "RecordStore",
    "Verdict",
]
