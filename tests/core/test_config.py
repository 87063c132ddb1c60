"""Tests for :mod:`lifelogd.core.config`."""

from __future__ import annotations

import tomllib
from pathlib import Path

import pytest
from pydantic import ValidationError

from lifelogd.core.config import (
    AppConfig,
    EmbeddingProviderName,
    IndexBackend,
    env_overrides,
    load_config,
    load_packaged_defaults,
    load_user_config,
    render_user_config,
)


def test_packaged_defaults_validate() -> None:
    config = load_config(defaults=load_packaged_defaults())

    assert config.log_level == "INFO"
    assert config.api.page_size == 100
    assert config.sync.checkpoint_interval == 5
    assert config.sync.vectorize_checkpoint_interval == 10
    assert config.embeddings.provider is EmbeddingProviderName.OLLAMA
    assert config.embeddings.fallback is EmbeddingProviderName.HASHING
    assert config.index.backend is IndexBackend.FAISS
    assert config.workspace == Path("~/.lifelogd").expanduser()


def test_load_config_applies_layers_in_precedence_order(tmp_path: Path) -> None:
    config = load_config(
        defaults=load_packaged_defaults(),
        user_config={
            "log_level": "warning",
            "sync": {"checkpoint_interval": 7, "api_delay_seconds": 0.5},
        },
        env_config={"log_level": "error", "api": {"api_key": "secret"}},
        cli_overrides={"log_level": "debug", "workspace": str(tmp_path)},
    )

    assert config.log_level == "DEBUG"
    assert config.workspace == tmp_path
    assert config.api.api_key == "secret"
    assert config.sync.checkpoint_interval == 7
    assert config.sync.api_delay_seconds == 0.5
    # Untouched siblings survive the deep merge.
    assert config.sync.max_years_back == 10


def test_env_overrides_maps_supported_variables() -> None:
    layer = env_overrides(
        {
            "LIFELOGD_WORKSPACE": "/srv/lifelogd",
            "LIFELOGD_LOG_LEVEL": "debug",
            "LIMITLESS_API_KEY": "abc",
            "OLLAMA_BASE_URL": "http://ollama:11434",
            "UNRELATED": "ignored",
        }
    )

    assert layer == {
        "workspace": "/srv/lifelogd",
        "log_level": "debug",
        "api": {"api_key": "abc"},
        "embeddings": {"ollama_base_url": "http://ollama:11434"},
    }


def test_env_overrides_skips_blank_values() -> None:
    assert env_overrides({"LIMITLESS_API_KEY": ""}) == {}


def test_blank_fallback_disables_secondary_provider() -> None:
    config = load_config(
        defaults=load_packaged_defaults(),
        user_config={"embeddings": {"fallback": "none"}},
    )

    assert config.embeddings.fallback is None


def test_invalid_metric_is_rejected() -> None:
    with pytest.raises(ValidationError):
        load_config(
            defaults=load_packaged_defaults(),
            user_config={"index": {"metric": "manhattan"}},
        )


def test_invalid_sync_interval_is_rejected() -> None:
    with pytest.raises(ValidationError):
        load_config(
            defaults=load_packaged_defaults(),
            user_config={"sync": {"checkpoint_interval": 0}},
        )


def test_load_user_config_missing_file_returns_empty(tmp_path: Path) -> None:
    assert load_user_config(tmp_path / "missing.toml") == {}


def test_render_user_config_round_trips_without_api_key(tmp_path: Path) -> None:
    config = load_config(
        defaults=load_packaged_defaults(),
        env_config={"api": {"api_key": "do-not-write"}},
        cli_overrides={"workspace": str(tmp_path)},
    )

    rendered = render_user_config(config)

    assert "do-not-write" not in rendered
    assert rendered.startswith("# Generated by lifelogd init")
    parsed = tomllib.loads(rendered)
    assert parsed["workspace"]["root"] == str(tmp_path)
    reloaded = AppConfig.model_validate(parsed)
    assert reloaded.workspace == tmp_path
    assert reloaded.api.api_key is None
    assert reloaded.embeddings.model == config.embeddings.model
    assert reloaded.sync == config.sync
