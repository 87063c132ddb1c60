"""Configuration models and loaders for :mod:`lifelogd`."""

from __future__ import annotations

import os
from collections.abc import Mapping as MappingABC
from datetime import date
from enum import StrEnum
from pathlib import Path
from typing import Any, Mapping

import tomllib
import tomlkit
from pydantic import BaseModel, Field, field_validator, model_validator

from lifelogd.resources import get_resource


class ApiSettings(BaseModel):
    """Remote lifelog API connection settings."""

    base_url: str = Field(
        default="https://api.limitless.ai/v1",
        description="Base URL of the remote lifelog API.",
    )
    api_key: str | None = Field(
        default=None,
        description="API key sent via the X-API-Key header.",
    )
    timeout: float = Field(
        default=120.0,
        gt=0.0,
        description="Per-request timeout in seconds.",
    )
    max_retries: int = Field(
        default=3,
        ge=0,
        description="Retries attempted for transient failures.",
    )
    retry_delay: float = Field(
        default=1.0,
        ge=0.0,
        description="Initial retry delay in seconds (doubles per attempt).",
    )
    retry_delay_cap: float = Field(
        default=30.0,
        ge=0.0,
        description="Upper bound for a single retry delay in seconds.",
    )
    page_size: int = Field(
        default=100,
        ge=1,
        description="Records requested per page while paginating.",
    )
    timezone: str = Field(
        default="UTC",
        description="Timezone sent with date-partitioned requests.",
    )

    model_config = {
        "str_strip_whitespace": True,
        "validate_assignment": True,
    }


class SyncSettings(BaseModel):
    """Ingestion engine tuning knobs."""

    api_delay_seconds: float = Field(
        default=2.0,
        ge=0.0,
        description="Fixed delay separating remote calls.",
    )
    checkpoint_interval: int = Field(
        default=5,
        ge=1,
        description="Days processed between checkpoint writes while downloading.",
    )
    vectorize_checkpoint_interval: int = Field(
        default=10,
        ge=1,
        description="Days vectorized between checkpoint writes.",
    )
    monitor_interval_seconds: float = Field(
        default=60.0,
        gt=0.0,
        description="Polling interval for new arrivals.",
    )
    monitor_lookback_days: int = Field(
        default=2,
        ge=0,
        description="Days before the last processed timestamp re-read per tick.",
    )
    monitor_fetch_limit: int = Field(
        default=200,
        ge=1,
        description="Maximum records fetched per monitoring tick.",
    )
    max_years_back: int = Field(
        default=10,
        ge=1,
        description="Years scanned backwards when locating the oldest record.",
    )
    start_date: date | None = Field(
        default=None,
        description="Last day walked by the download phase (defaults to today).",
    )
    download_only: bool = Field(
        default=False,
        description="Skip vectorization and monitoring after the download.",
    )
    save_concurrency: int = Field(
        default=1,
        ge=1,
        description="Parallel record saves within a single day.",
    )
    max_errors: int = Field(
        default=500,
        ge=1,
        description="Maximum error entries retained in the checkpoint.",
    )

    model_config = {
        "str_strip_whitespace": True,
        "validate_assignment": True,
    }


class EmbeddingProviderName(StrEnum):
    """Embedding back-ends known to the provider registry."""

    HASHING = "hashing"
    SENTENCE_TRANSFORMERS = "sentence-transformers"
    OLLAMA = "ollama"
    OPENAI = "openai"


class EmbeddingSettings(BaseModel):
    """Embedding provider selection and tuning."""

    provider: EmbeddingProviderName = Field(
        default=EmbeddingProviderName.OLLAMA,
        description="Primary embedding provider.",
    )
    model: str | None = Field(
        default=None,
        description="Model name passed to the primary provider.",
    )
    fallback: EmbeddingProviderName | None = Field(
        default=EmbeddingProviderName.HASHING,
        description="Secondary provider used when the primary fails.",
    )
    contextual: bool = Field(
        default=True,
        description="Wrap the provider with contextual enrichment.",
    )
    max_context_length: int = Field(
        default=1000,
        ge=1,
        description="Maximum characters embedded after enrichment.",
    )
    entity_config: Path | None = Field(
        default=None,
        description="Optional JSON/TOML file describing people and places.",
    )
    ollama_base_url: str = Field(
        default="http://localhost:11434",
        description="Base URL of the Ollama daemon.",
    )
    timeout: float = Field(
        default=30.0,
        gt=0.0,
        description="Per-request timeout for remote embedding calls.",
    )
    batch_size: int = Field(
        default=10,
        ge=1,
        description="Texts embedded per provider request.",
    )

    model_config = {
        "str_strip_whitespace": True,
        "validate_assignment": True,
    }

    @field_validator("fallback", mode="before")
    @classmethod
    def _blank_fallback(cls, value: Any) -> Any:
        if isinstance(value, str) and value.strip().lower() in {"", "none"}:
            return None
        return value


class IndexBackend(StrEnum):
    """Vector index back-ends."""

    FAISS = "faiss"
    MEMORY = "memory"
    CHROMA = "chroma"


class IndexSettings(BaseModel):
    """Vector index selection and connection settings."""

    backend: IndexBackend = Field(
        default=IndexBackend.FAISS,
        description="Vector index back-end.",
    )
    collection: str = Field(
        default="lifelogs",
        description="Collection/table name inside the back-end.",
    )
    metric: str = Field(
        default="l2",
        description="Distance metric for the embedded index (l2 or cosine).",
    )
    chroma_host: str = Field(default="localhost", description="Chroma host.")
    chroma_port: int = Field(default=8000, ge=1, description="Chroma port.")
    chroma_ssl: bool = Field(default=False, description="Use HTTPS for Chroma.")

    model_config = {
        "str_strip_whitespace": True,
        "validate_assignment": True,
    }

    @field_validator("metric")
    @classmethod
    def _validate_metric(cls, value: str) -> str:
        normalized = value.lower()
        if normalized not in {"l2", "cosine"}:
            raise ValueError("index.metric must be 'l2' or 'cosine'")
        return normalized


class CacheSettings(BaseModel):
    """Sizes and lifetimes for the caching layer."""

    lookup_max_size: int = Field(default=100, ge=1)
    lookup_ttl: float = Field(default=300.0, gt=0.0)
    search_max_size: int = Field(default=50, ge=1)
    search_ttl: float = Field(default=180.0, gt=0.0)
    learning_enabled: bool = Field(default=True)
    learning_max_size: int = Field(default=1000, ge=1)
    learning_ttl: float = Field(default=300.0, gt=0.0)
    sweep_interval: float = Field(default=60.0, gt=0.0)
    pattern_limit: int = Field(default=500, ge=1)

    model_config = {
        "validate_assignment": True,
    }


class AppConfig(BaseModel):
    """Root configuration for the :mod:`lifelogd` application."""

    workspace: Path = Field(
        default_factory=lambda: Path("~/.lifelogd").expanduser(),
        description="Absolute path to the workspace root.",
    )
    log_level: str = Field(
        default="INFO",
        description="Default logging level for the application runtime.",
    )
    api: ApiSettings = Field(default_factory=ApiSettings)
    sync: SyncSettings = Field(default_factory=SyncSettings)
    embeddings: EmbeddingSettings = Field(default_factory=EmbeddingSettings)
    index: IndexSettings = Field(default_factory=IndexSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)

    model_config = {
        "str_strip_whitespace": True,
        "validate_assignment": True,
    }

    @model_validator(mode="before")
    @classmethod
    def _coerce_workspace(cls, value: Any) -> Any:
        """Accept ``[workspace] root = ...`` tables as well as scalars."""

        if isinstance(value, MappingABC):
            workspace = value.get("workspace")
            if isinstance(workspace, MappingABC):
                data = dict(value)
                data["workspace"] = workspace.get("root", "~/.lifelogd")
                return data
        return value

    @model_validator(mode="after")
    def _post_process(self) -> "AppConfig":
        """Normalize fields after validation."""

        object.__setattr__(self, "log_level", self.log_level.upper())
        object.__setattr__(self, "workspace", self.workspace.expanduser())
        return self


DEFAULTS_RESOURCE_NAME = "lifelogd.defaults.toml"


def read_packaged_defaults_text() -> str:
    """Return the raw packaged defaults TOML content.

    Example:
        >>> text = read_packaged_defaults_text()
        >>> text.startswith("#")
        True
    """

    resource = get_resource(DEFAULTS_RESOURCE_NAME)
    return resource.read_text(encoding="utf-8")


def load_packaged_defaults() -> dict[str, Any]:
    """Load the packaged defaults as a plain dictionary.

    Example:
        >>> defaults = load_packaged_defaults()
        >>> defaults["log_level"]
        'INFO'
    """

    return tomllib.loads(read_packaged_defaults_text())


def load_user_config(path: Path) -> dict[str, Any]:
    """Parse the workspace ``lifelogd.toml`` if present."""

    if not path.exists():
        return {}
    with path.open("rb") as handle:
        return tomllib.load(handle)


def env_overrides(environ: Mapping[str, str] | None = None) -> dict[str, Any]:
    """Translate supported environment variables into a config layer."""

    env = os.environ if environ is None else environ
    layer: dict[str, Any] = {}
    if env.get("LIFELOGD_WORKSPACE"):
        layer["workspace"] = env["LIFELOGD_WORKSPACE"]
    if env.get("LIFELOGD_LOG_LEVEL"):
        layer["log_level"] = env["LIFELOGD_LOG_LEVEL"]
    if env.get("LIMITLESS_API_KEY"):
        layer.setdefault("api", {})["api_key"] = env["LIMITLESS_API_KEY"]
    if env.get("OLLAMA_BASE_URL"):
        layer.setdefault("embeddings", {})["ollama_base_url"] = env[
            "OLLAMA_BASE_URL"
        ]
    return layer


def _deep_merge(
    base: Mapping[str, Any],
    overlay: Mapping[str, Any],
) -> dict[str, Any]:
    """Recursively merge ``overlay`` into ``base`` returning a new dict."""

    merged: dict[str, Any] = dict(base)
    for key, value in overlay.items():
        if (
            key in merged
            and isinstance(merged[key], MappingABC)
            and isinstance(value, MappingABC)
        ):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(
    *,
    defaults: Mapping[str, Any],
    user_config: Mapping[str, Any] | None = None,
    env_config: Mapping[str, Any] | None = None,
    cli_overrides: Mapping[str, Any] | None = None,
) -> AppConfig:
    """Load configuration according to the precedence stack.

    Args:
        defaults: Packaged defaults shipped with the application.
        user_config: Parsed user ``lifelogd.toml`` content.
        env_config: Settings derived from environment variables.
        cli_overrides: Settings supplied via CLI flags.

    Returns:
        A validated :class:`AppConfig` instance.
    """

    stack = dict(defaults)
    for layer in (user_config, env_config, cli_overrides):
        if layer:
            stack = _deep_merge(stack, layer)
    return AppConfig.model_validate(stack)


def _table(values: Mapping[str, Any]) -> tomlkit.items.Table:
    table = tomlkit.table()
    for key, value in values.items():
        if value is None:
            continue
        if isinstance(value, (Path, date)):
            value = str(value)
        table[key] = value
    return table


def render_user_config(
    config: AppConfig,
    *,
    include_defaults: bool = True,
) -> str:
    """Render a ``lifelogd.toml`` template for users to customize.

    The API key is never written; it belongs in ``LIMITLESS_API_KEY``.
    """

    document = tomlkit.document()

    if include_defaults:
        document.add(tomlkit.comment("Generated by lifelogd init"))
        document.add(
            tomlkit.comment(
                "Precedence: CLI flags > env vars > lifelogd.toml > defaults"
            )
        )
        document.add(tomlkit.comment("Environment overrides:"))
        document.add(tomlkit.comment("  LIFELOGD_WORKSPACE=/path/to/workspace"))
        document.add(tomlkit.comment("  LIFELOGD_LOG_LEVEL=info"))
        document.add(tomlkit.comment("  LIMITLESS_API_KEY=<secret>"))
        document.add(tomlkit.nl())

    workspace_table = tomlkit.table()
    workspace_table["root"] = str(config.workspace)
    document["workspace"] = workspace_table
    document["log_level"] = config.log_level

    api = config.api.model_dump(mode="json", exclude={"api_key"})
    document["api"] = _table(api)
    document["sync"] = _table(config.sync.model_dump(mode="json"))
    document["embeddings"] = _table(config.embeddings.model_dump(mode="json"))
    document["index"] = _table(config.index.model_dump(mode="json"))
    document["cache"] = _table(config.cache.model_dump(mode="json"))

    return tomlkit.dumps(document)


__all__ = [
    "ApiSettings",
    "AppConfig",
    "CacheSettings",
    "DEFAULTS_RESOURCE_NAME",
    "EmbeddingProviderName",
    "EmbeddingSettings",
    "IndexBackend",
    "IndexSettings",
    "SyncSettings",
    "env_overrides",
    "load_config",
    "load_packaged_defaults",
    "load_user_config",
    "read_packaged_defaults_text",
    "render_user_config",
]
