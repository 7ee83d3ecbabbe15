from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator

from orchestrator_proxy.environment import (
    PROD_BASE_URL,
    STAGING_BASE_URL,
    TESTNET_CHAIN_IDS,
)


class EndpointsConfig(BaseModel):
    prod_base_url: str = PROD_BASE_URL
    staging_base_url: str = STAGING_BASE_URL

    @field_validator("prod_base_url", "staging_base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        normalized = value.strip().rstrip("/")
        if not normalized:
            raise ValueError("Base URL must not be empty.")
        return normalized


class RetryTimingConfig(BaseModel):
    max_retries: int = Field(default=2, ge=0)
    timeout_ms: float = Field(default=30000.0, gt=0)
    backoff_base_ms: float = Field(default=1000.0, ge=0)
    backoff_jitter_ms: float = Field(default=1000.0, ge=0)
    backoff_max_ms: float = Field(default=5000.0, ge=0)


class OrchestratorProfile(BaseModel):
    endpoints: EndpointsConfig = Field(default_factory=EndpointsConfig)
    testnet_chain_ids: frozenset[int] = TESTNET_CHAIN_IDS
    retry: RetryTimingConfig = Field(default_factory=RetryTimingConfig)

    @field_validator("testnet_chain_ids", mode="before")
    @classmethod
    def _coerce_chain_ids(cls, value: Any) -> Any:
        if value is None:
            return TESTNET_CHAIN_IDS
        return value


def load_orchestrator_profile(config_path: str | None) -> OrchestratorProfile:
    if not config_path:
        return OrchestratorProfile()

    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(
            f"Orchestrator profile not found at '{config_path}'. "
            "Create it or unset ORCHESTRATOR_PROFILE_PATH."
        )

    with path.open("r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle) or {}

    if not isinstance(raw, dict):
        raise ValueError(f"Expected YAML object in '{config_path}'.")

    return OrchestratorProfile.model_validate(raw)
