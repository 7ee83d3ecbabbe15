from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest
import yaml
from pydantic import ValidationError

from orchestrator_proxy.config import OrchestratorProfile, load_orchestrator_profile
from orchestrator_proxy.environment import (
    PROD_BASE_URL,
    STAGING_BASE_URL,
    TESTNET_CHAIN_IDS,
)
from orchestrator_proxy.settings import Settings, get_settings


def _write_profile(tmp_path: Path, payload: Any) -> str:
    path = tmp_path / "orchestrator.profile.yaml"
    path.write_text(yaml.safe_dump(payload), encoding="utf-8")
    return str(path)


def test_profile_defaults_without_path() -> None:
    profile = load_orchestrator_profile(None)
    assert profile.endpoints.prod_base_url == PROD_BASE_URL
    assert profile.endpoints.staging_base_url == STAGING_BASE_URL
    assert profile.testnet_chain_ids == TESTNET_CHAIN_IDS
    assert profile.retry.max_retries == 2
    assert profile.retry.timeout_ms == 30000
    assert profile.retry.backoff_max_ms == 5000


def test_missing_profile_file_raises(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError, match="ORCHESTRATOR_PROFILE_PATH"):
        load_orchestrator_profile(str(tmp_path / "missing.yaml"))


def test_profile_overrides_and_normalizes_base_urls(tmp_path: Path) -> None:
    config_path = _write_profile(
        tmp_path,
        {
            "endpoints": {
                "prod_base_url": "http://prod.internal/",
                "staging_base_url": " http://staging.internal ",
            },
            "testnet_chain_ids": [5, "80001"],
            "retry": {"max_retries": 0, "timeout_ms": 1500},
        },
    )

    profile = load_orchestrator_profile(config_path)

    assert profile.endpoints.prod_base_url == "http://prod.internal"
    assert profile.endpoints.staging_base_url == "http://staging.internal"
    assert profile.testnet_chain_ids == frozenset({5, 80001})
    assert profile.retry.max_retries == 0
    assert profile.retry.timeout_ms == 1500
    assert profile.retry.backoff_base_ms == 1000


def test_null_testnet_list_falls_back_to_defaults(tmp_path: Path) -> None:
    config_path = _write_profile(tmp_path, {"testnet_chain_ids": None})
    assert load_orchestrator_profile(config_path).testnet_chain_ids == (
        TESTNET_CHAIN_IDS
    )


def test_empty_profile_file_uses_defaults(tmp_path: Path) -> None:
    path = tmp_path / "empty.yaml"
    path.write_text("", encoding="utf-8")
    assert load_orchestrator_profile(str(path)) == OrchestratorProfile()


def test_non_mapping_profile_is_rejected(tmp_path: Path) -> None:
    config_path = _write_profile(tmp_path, ["not", "a", "mapping"])
    with pytest.raises(ValueError, match="Expected YAML object"):
        load_orchestrator_profile(config_path)


def test_invalid_retry_values_are_rejected(tmp_path: Path) -> None:
    config_path = _write_profile(tmp_path, {"retry": {"max_retries": -1}})
    with pytest.raises(ValidationError):
        load_orchestrator_profile(config_path)


def test_empty_base_url_is_rejected() -> None:
    with pytest.raises(ValidationError):
        OrchestratorProfile.model_validate({"endpoints": {"prod_base_url": "/"}})


def test_settings_read_from_environment(monkeypatch: Any) -> None:
    monkeypatch.setenv("RHINESTONE_API_KEY", "  key-from-env  ")
    monkeypatch.setenv("UPSTREAM_CONNECT_TIMEOUT_SECONDS", "1.5")
    monkeypatch.setenv("PROXY_AUDIT_LOG_ENABLED", "true")
    get_settings.cache_clear()
    try:
        settings = get_settings()
        assert settings.api_key == "key-from-env"
        assert settings.upstream_connect_timeout_seconds == 1.5
        assert settings.proxy_audit_log_enabled is True
    finally:
        get_settings.cache_clear()


def test_settings_without_api_key(monkeypatch: Any) -> None:
    monkeypatch.delenv("RHINESTONE_API_KEY", raising=False)
    settings = Settings(_env_file=None)
    assert settings.api_key is None
    assert settings.upstream_read_timeout_seconds == 20.0
