"""Environment-driven settings for the AgentImmune service."""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .payments import DEFAULT_FACILITATOR_URL, DEFAULT_WALLET, FallbackPolicy


class Settings(BaseSettings):
    """Service settings, read from ``AIS_*`` environment variables or ``.env``."""

    model_config = SettingsConfigDict(
        env_prefix="AIS_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    service_name: str = "agentimmune"
    log_level: str = "info"

    facilitator_url: str = DEFAULT_FACILITATOR_URL
    facilitator_timeout_seconds: float = Field(default=10.0, gt=0)
    wallet_address: str = DEFAULT_WALLET
    payment_fallback: FallbackPolicy = FallbackPolicy.CLOSED

    # Empty means the in-memory store.
    record_store_url: str = ""
    record_store_key: str = ""

    forward_timeout_seconds: float = Field(default=5.0, gt=0)
    count_response_threats: bool = True
    route_prefix: str = "/api"
