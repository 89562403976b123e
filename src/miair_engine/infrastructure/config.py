"""Engine configuration — loaded from environment variables."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from miair_engine.domain.entities import RoutingPolicy


class Settings(BaseSettings):
    """Central configuration loaded from ``MIAIR_*`` env vars (or ``.env`` file)."""

    model_config = SettingsConfigDict(
        env_prefix="MIAIR_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # External backend (disabled without a key)
    openai_api_key: SecretStr | None = None
    openai_model: str = "gpt-4o-mini"
    max_external_unit_tokens: int = Field(default=4_000, gt=0)

    # Local backend
    local_backend: Literal["rules", "ollama"] = "rules"
    ollama_base_url: str = "http://localhost:11434"
    ollama_model: str = "llama3.1"

    # Concurrency & timeouts
    external_timeout_s: float = Field(default=30.0, gt=0)
    local_timeout_s: float = Field(default=120.0, gt=0)
    max_concurrent_backend_calls: int = Field(default=4, ge=1)
    max_concurrent_documents: int = Field(default=4, ge=1)

    # Analysis & optimization
    optimizer_max_iterations: int = Field(default=10, ge=1)
    optimizer_hard_timeout_s: float | None = Field(default=60.0, gt=0)
    large_input_bytes: int = Field(default=1024 * 1024, gt=0)

    # Routing
    default_routing_policy: RoutingPolicy = RoutingPolicy.HYBRID
    smart_route_threshold: float = Field(default=0.3, ge=0.0, le=1.0)

    log_level: str = "INFO"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the singleton engine settings (cached after first call)."""
    return Settings()
