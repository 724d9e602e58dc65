from __future__ import annotations

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="ROUNDRELAY_", extra="ignore", populate_by_name=True)

    # PORT is what most hosting platforms inject
    port: int = Field(
        default=5000,
        validation_alias=AliasChoices("PORT", "ROUNDRELAY_PORT", "port"),
        description="Listen port.",
    )
    host: str = Field(default="0.0.0.0", description="Bind host.")
    upstream_base_url: str = Field(
        default="https://lichess.org",
        description="Scheme and host of the broadcast stream API.",
    )
    upstream_accept: str = Field(
        default="application/x-ndjson",
        description="Accept header sent with every upstream request.",
    )
    connect_timeout: float = Field(default=10.0, gt=0, description="Upstream connect timeout (seconds).")
    heartbeat_interval: float = Field(default=30.0, gt=0, description="Seconds between per-client heartbeats.")
    client_buffer_size: int = Field(
        default=1000,
        ge=1,
        description="Frames buffered per client before it is considered dead.",
    )
    service_name: str = Field(default="roundrelay", description="Display name.")

    def upstream_root(self) -> str:
        return self.upstream_base_url.rstrip("/")
