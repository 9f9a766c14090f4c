"""Python FastAPI example with the AgentImmune firewall.

Mounts the AgentImmune endpoints next to a small tool API.  Agents register
at ``/api/register`` and then send tool calls through ``/api/proxy``; calls
that name a ``target_url`` are forwarded after inspection, e.g. to the
``/tools/weather`` route below.

Run with:
    uvicorn main:app --reload --port 3000
"""

from fastapi import FastAPI

from agentimmune_fastapi import AgentImmune, AgentImmuneConfig
from agentimmune_fastapi.logging import configure_logging

# ---------------------------------------------------------------------------
# App setup
# ---------------------------------------------------------------------------

configure_logging("agentimmune-example", "debug")

app = FastAPI(
    title="AgentImmune Python Example",
    description="A sample FastAPI app behind the AgentImmune firewall",
)

immune = AgentImmune(
    app,
    config=AgentImmuneConfig(
        wallet="ExampleWa11et1111111111111111111111111111111",
        free_tier_limit=5,
    ),
)
# AgentImmune mounts:
#   - POST /api/register (new agent, free tier, locked price)
#   - POST /api/proxy (gated tool calls)
#   - GET /api/payment, /api/agent, /api/events, /api/threats

# ---------------------------------------------------------------------------
# Sample tools
# ---------------------------------------------------------------------------

forecasts = {
    "oslo": {"temp_c": 4, "sky": "overcast"},
    "lisbon": {"temp_c": 19, "sky": "clear"},
}


@app.post("/tools/weather")
async def weather(body: dict):
    """Forward target for proxied calls."""
    city = str(body.get("city", "")).lower()
    return {"city": city, "forecast": forecasts.get(city)}
