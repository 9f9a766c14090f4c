"""Application factory wiring :class:`~.config.Settings` into FastAPI."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from .config import Settings
from .logging import configure_logging, get_logger
from .middleware import AgentImmune, AgentImmuneConfig
from .payments import FacilitatorClient
from .remote_store import HttpRecordStore
from .store import InMemoryRecordStore, RecordStore

logger = get_logger("agentimmune.app")


def build_store(settings: Settings) -> RecordStore:
    """Use the networked record store when a URL is configured."""
    if settings.record_store_url:
        return HttpRecordStore(
            settings.record_store_url, service_key=settings.record_store_key
        )
    logger.warning("No record store URL configured; using in-memory store")
    return InMemoryRecordStore()


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or Settings()
    configure_logging(settings.service_name, settings.log_level)
    store = build_store(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        if isinstance(store, HttpRecordStore):
            await store.close()
            logger.info("Record store client closed")

    app = FastAPI(
        title="Agent Immune System",
        description="Authenticating, metering and inspecting firewall for agent tool calls",
        lifespan=lifespan,
    )
    immune = AgentImmune(
        app,
        config=AgentImmuneConfig(
            store=store,
            facilitator=FacilitatorClient(
                base_url=settings.facilitator_url,
                fallback=settings.payment_fallback,
                timeout=settings.facilitator_timeout_seconds,
            ),
            wallet=settings.wallet_address,
            forward_timeout=settings.forward_timeout_seconds,
            count_response_threats=settings.count_response_threats,
            route_prefix=settings.route_prefix,
        ),
    )
    app.state.immune = immune

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    logger.info(
        "AgentImmune configured",
        payment_fallback=settings.payment_fallback.value,
        route_prefix=settings.route_prefix,
    )
    return app
