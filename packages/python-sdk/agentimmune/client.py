"""Client for agents calling an AgentImmune firewall.

Wraps ``POST /api/proxy`` and handles the x402 flow: when the firewall
answers ``payment_required`` and a payer is configured, the client pays,
attaches the ``X-Payment`` header and retries the call once.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import httpx

from .payment import PaymentInstructions, build_payment_header, parse_payment_instructions

Payer = Callable[[PaymentInstructions], Awaitable[str]]


@dataclass
class ClientConfig:
    """Configuration for an ImmuneClient instance.

    Attributes:
        api_key: The agent's API key.
        base_url: Root URL of the firewall service.
        route_prefix: Prefix of the firewall endpoints.
        payer: Async callback that sends a payment and returns the
            transaction signature.  Without one, 402 responses are
            returned to the caller unchanged.
        http_timeout: Timeout in seconds for HTTP requests.
    """

    api_key: str
    base_url: str = "http://localhost:3000"
    route_prefix: str = "/api"
    payer: Payer | None = None
    http_timeout: float = 30.0


class PaymentRequiredError(Exception):
    """Raised by :meth:`ImmuneClient.raise_for_verdict` on a 402."""

    def __init__(self, body: dict[str, Any]) -> None:
        self.body = body
        payment = body.get("payment")
        self.instructions = parse_payment_instructions(payment) if payment else None
        super().__init__(body.get("error", "Payment required"))


class ImmuneClient:
    """AgentImmune client.

    Usage::

        async def pay(instr: PaymentInstructions) -> str:
            return await wallet.transfer(instr.recipient, instr.amount)

        client = ImmuneClient(ClientConfig(api_key="ais_...", payer=pay))
        result = await client.call_tool("search", data={"q": "weather"})
    """

    def __init__(
        self,
        config: ClientConfig,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._config = config
        self._client = client or httpx.AsyncClient(
            base_url=config.base_url.rstrip("/"),
            timeout=config.http_timeout,
        )
        self._payments_made = 0

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def payments_made(self) -> int:
        """Number of payments sent through the configured payer."""
        return self._payments_made

    # ------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------

    async def call_tool(
        self,
        tool: str,
        action: str | None = None,
        data: dict[str, Any] | None = None,
    ) -> httpx.Response:
        """Send a tool call through the firewall."""
        body: dict[str, Any] = {"tool": tool, "data": data or {}}
        if action is not None:
            body["action"] = action
        return await self._proxy(body)

    async def forward(
        self,
        target_url: str,
        method: str = "GET",
        data: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        tool: str | None = None,
    ) -> httpx.Response:
        """Ask the firewall to forward a call to *target_url*."""
        body: dict[str, Any] = {
            "target_url": target_url,
            "method": method,
            "data": data or {},
        }
        if headers:
            body["headers"] = headers
        if tool:
            body["tool"] = tool
        return await self._proxy(body)

    async def payment_info(self) -> dict[str, Any]:
        """Fetch the agent's quota, price and credit balance."""
        response = await self._client.get(
            f"{self._config.route_prefix}/payment", headers=self._auth_headers()
        )
        response.raise_for_status()
        return response.json()

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    @staticmethod
    def raise_for_verdict(response: httpx.Response) -> dict[str, Any]:
        """Return the body of an allowed call, or raise.

        Raises:
            PaymentRequiredError: On a 402 response.
            httpx.HTTPStatusError: On any other error response.
        """
        if response.status_code == 402:
            raise PaymentRequiredError(response.json())
        response.raise_for_status()
        return response.json()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._config.api_key}"}

    async def _proxy(self, body: dict[str, Any]) -> httpx.Response:
        url = f"{self._config.route_prefix}/proxy"
        headers = self._auth_headers()
        response = await self._client.post(url, json=body, headers=headers)

        if response.status_code != 402 or self._config.payer is None:
            return response

        payload = response.json()
        if payload.get("code") != "payment_required" or not payload.get("payment"):
            return response

        # Pay once and retry once; a second 402 goes back to the caller.
        instructions = parse_payment_instructions(payload["payment"])
        signature = await self._config.payer(instructions)
        self._payments_made += 1
        headers["X-Payment"] = build_payment_header(instructions, signature)
        return await self._client.post(url, json=body, headers=headers)
