"""Record store reached over the backing JSON API.

Tables are exposed as ``/db/<table>`` resources.  Every response is an
envelope ``{"ok": bool, "data": ..., "error": {"code", "message"}}``.
Requests authenticate with a service key bearer token.

Counter updates PATCH absolute values computed from the request's snapshot,
so concurrent requests from one agent are last-writer-wins.
"""

from __future__ import annotations

import secrets
from datetime import datetime, timezone
from typing import Any

import httpx

from .errors import RecordStoreError
from .store import COUNTER_FIELDS, AgentRecord, EventRecord, ThreatSignature

DEFAULT_TIMEOUT = 10.0


class HttpRecordStore:
    """:class:`~.store.RecordStore` backed by the ``/db`` network API."""

    def __init__(
        self,
        base_url: str,
        service_key: str = "",
        client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._service_key = service_key
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def close(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # RecordStore
    # ------------------------------------------------------------------

    async def get_agent_by_api_key(self, api_key: str) -> AgentRecord | None:
        rows = await self._call(
            "GET",
            "/db/agents",
            params={"where": f"api_key:eq:{api_key}", "limit": 1},
        )
        if not rows:
            return None
        return AgentRecord.from_dict(rows[0])

    async def create_agent(
        self,
        agent_name: str,
        subscription_tier: str,
        price_per_request: float,
        price_locked_at: str,
    ) -> AgentRecord:
        data = await self._call(
            "POST",
            "/db/agents",
            json={
                "agent_name": agent_name,
                "api_key": f"ais_{secrets.token_urlsafe(24)}",
                "status": "active",
                "subscription_tier": subscription_tier,
                "price_per_request": price_per_request,
                "price_locked_at": price_locked_at,
                "requests_today": 0,
                "requests_total": 0,
                "threats_blocked": 0,
                "credits_usdc": 0,
                "created_at": datetime.now(timezone.utc).isoformat(),
            },
        )
        return AgentRecord.from_dict(data)

    async def increment_agent(
        self, snapshot: AgentRecord, **deltas: float
    ) -> AgentRecord:
        updates: dict[str, float] = {}
        for name, delta in deltas.items():
            if name not in COUNTER_FIELDS:
                raise ValueError(f"Not a counter field: {name}")
            updates[name] = (getattr(snapshot, name) or 0) + delta

        data = await self._call("PATCH", f"/db/agents/{snapshot.id}", json=updates)
        if isinstance(data, dict) and data:
            return AgentRecord.from_dict({**snapshot.to_dict(), **data})
        return AgentRecord.from_dict({**snapshot.to_dict(), **updates})

    async def append_event(self, event: EventRecord) -> None:
        await self._call("POST", "/db/events", json=event.to_dict())

    async def get_events_for_agent(
        self, agent_id: str, limit: int = 20
    ) -> list[EventRecord]:
        rows = await self._call(
            "GET",
            "/db/events",
            params={
                "where": f"agent_id:eq:{agent_id}",
                "order": "created_at:desc",
                "limit": limit,
            },
        )
        return [EventRecord.from_dict(row) for row in rows or []]

    async def add_threat_signature(
        self, signature: ThreatSignature
    ) -> ThreatSignature:
        rows = await self._call(
            "GET",
            "/db/threat_signatures",
            params={"where": f"signature_hash:eq:{signature.signature_hash}", "limit": 1},
        )
        if rows:
            existing = rows[0]
            times_seen = int(existing.get("times_seen") or 1) + 1
            await self._call(
                "PATCH",
                f"/db/threat_signatures/{existing['id']}",
                json={"times_seen": times_seen},
            )
            return ThreatSignature.from_dict({**existing, "times_seen": times_seen})

        await self._call("POST", "/db/threat_signatures", json=signature.to_dict())
        return signature

    async def list_threat_signatures(self, limit: int = 50) -> list[ThreatSignature]:
        rows = await self._call(
            "GET",
            "/db/threat_signatures",
            params={"order": "created_at:desc", "limit": limit},
        )
        return [ThreatSignature.from_dict(row) for row in rows or []]

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _call(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> Any:
        operation = f"{method} {path}"
        try:
            response = await self._client.request(
                method,
                self._base_url + path,
                params=params,
                json=json,
                headers={"Authorization": f"Bearer {self._service_key}"},
            )
            body = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise RecordStoreError(operation, str(exc)) from exc

        if not isinstance(body, dict) or not body.get("ok"):
            error = body.get("error") if isinstance(body, dict) else None
            message = (
                error.get("message", "Request failed")
                if isinstance(error, dict)
                else "Request failed"
            )
            raise RecordStoreError(
                operation, message, {"status_code": response.status_code}
            )
        return body.get("data")
