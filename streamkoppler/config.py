"""Configuration models and loaders for streamkoppler.

This module defines the runtime configuration schema and how values are loaded
from YAML plus environment variable overrides.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal
from urllib.parse import urlparse

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

DEFAULT_CONFIG_PATH = "streamkoppler/config.yaml"

DEFAULT_INSTRUCTION = "You are a helpful AI assistant."

DEFAULT_PROGRESSIVE_INSTRUCTION = """You are a quick-reaction assistant. Do not answer the user's question; give a natural transitional reply instead.
Keep it very short (under ten words), signal that you are thinking about or preparing the answer, and keep the wording generic.
Examples:
User: Tell me a story
Reply: Sure, let me think of a story
User: Explain quantum mechanics
Reply: Okay, let me explain quantum mechanics
User: Tell me a joke
Reply: No problem, let me think of a joke"""


class ConfigurationError(RuntimeError):
    """Raised when the configuration cannot be used to serve requests."""


class LoggingConfig(BaseModel):
    """Logging-related configuration."""

    model_config = ConfigDict(populate_by_name=True)

    level: str = "INFO"
    json_logs: bool = Field(default=False, alias="json")


class SessionConfig(BaseModel):
    """Bounds and expiry for server-held conversation sessions."""

    max_messages: int = 10
    expiry_seconds: float = 10 * 60 * 60
    sweep_interval_seconds: float = 30 * 60

    @field_validator("max_messages")
    @classmethod
    def _validate_max_messages(cls, value: int) -> int:
        if value < 1:
            raise ValueError("sessions.max_messages must be >= 1")
        return value

    @field_validator("expiry_seconds", "sweep_interval_seconds")
    @classmethod
    def _validate_positive_duration(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("session durations must be > 0")
        return value


class ProgressiveConfig(BaseModel):
    """Secondary-model settings for the short preliminary reply."""

    enabled: bool = False
    model: str = "Qwen/Qwen2.5-7B-Instruct"
    max_tokens: int = 100
    temperature: float = 0.4
    instruction: str = DEFAULT_PROGRESSIVE_INSTRUCTION


class ReferenceDocumentConfig(BaseModel):
    """One reference document as written in config or corpus files."""

    id: str
    title: str
    content: str

    @field_validator("id", mode="before")
    @classmethod
    def _id_to_str(cls, value: Any) -> Any:
        """Accept numeric ids from YAML."""
        if isinstance(value, int):
            return str(value)
        return value


class RetrievalConfig(BaseModel):
    """Retrieval augmentation of the instruction message."""

    enabled: bool = False
    similarity_threshold: float = 0.7
    max_documents: int = 3
    embedding: Literal["hash", "upstream"] = "hash"
    embedding_model: str = "text-embedding-ada-002"
    corpus_path: str | None = None
    documents: list[ReferenceDocumentConfig] = Field(default_factory=list)
    notice_text: str | None = None
    append_references: bool = True

    @field_validator("max_documents")
    @classmethod
    def _validate_max_documents(cls, value: int) -> int:
        if value < 1:
            raise ValueError("retrieval.max_documents must be >= 1")
        return value

    @field_validator("documents", mode="before")
    @classmethod
    def _none_to_empty_list(cls, value: Any) -> Any:
        """Treat explicit YAML `null` as an empty corpus."""
        if value is None:
            return []
        return value


class ToolsConfig(BaseModel):
    """Tool declaration and continuation limits."""

    enabled: bool = True
    max_rounds: int = 4


class RelayConfig(BaseModel):
    """Top-level relay configuration."""

    model_config = ConfigDict(extra="forbid")

    service_base_url: str = "http://127.0.0.1:8080"

    upstream_base_url: str = "https://api.openai.com/v1"
    upstream_api_key: str | None = None
    upstream_default_model: str = "gpt-4o"
    upstream_timeout_seconds: float = 300.0
    default_instruction: str = DEFAULT_INSTRUCTION
    stream_keepalive_seconds: float | None = None

    sessions: SessionConfig = Field(default_factory=SessionConfig)
    progressive: ProgressiveConfig = Field(default_factory=ProgressiveConfig)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    logging: LoggingConfig | None = None

    @model_validator(mode="after")
    def _validate_service_base_url(self) -> "RelayConfig":
        """Validate that service_base_url includes host and port."""
        parsed = urlparse(self.service_base_url)
        if not parsed.hostname or parsed.port is None:
            raise ValueError("service_base_url must include host and port, e.g. http://127.0.0.1:8080")
        if self.stream_keepalive_seconds is None:
            self.stream_keepalive_seconds = 15.0
        if self.logging is None:
            self.logging = LoggingConfig()
        return self

    @field_validator("sessions", "progressive", "retrieval", "tools", mode="before")
    @classmethod
    def _none_to_defaults(cls, value: Any) -> Any:
        """Treat explicit YAML `null` sections as defaults."""
        if value is None:
            return {}
        return value


def ensure_upstream_credentials(cfg: RelayConfig) -> RelayConfig:
    """Fail fast when no upstream credential is configured."""
    if not (cfg.upstream_api_key or "").strip():
        raise ConfigurationError(
            "Upstream API key is not configured. Set upstream_api_key or STREAMKOPPLER_UPSTREAM_API_KEY."
        )
    return cfg


def _load_yaml(path: str | None) -> dict[str, Any]:
    """Load a YAML file into a dictionary.

    Missing files are treated as empty config for environment-only deployments.
    """
    if not path:
        return {}
    cfg_path = Path(path)
    if not cfg_path.exists():
        return {}
    with cfg_path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config root must be object: {path}")
    return data


_ENV_MAP = {
    "service_base_url": "STREAMKOPPLER_SERVICE_BASE_URL",
    "upstream_base_url": "STREAMKOPPLER_UPSTREAM_BASE_URL",
    "upstream_api_key": "STREAMKOPPLER_UPSTREAM_API_KEY",
    "upstream_default_model": "STREAMKOPPLER_UPSTREAM_DEFAULT_MODEL",
    "upstream_timeout_seconds": "STREAMKOPPLER_UPSTREAM_TIMEOUT_SECONDS",
    "default_instruction": "STREAMKOPPLER_DEFAULT_INSTRUCTION",
    "stream_keepalive_seconds": "STREAMKOPPLER_STREAM_KEEPALIVE_SECONDS",
    "sessions.max_messages": "STREAMKOPPLER_MAX_CONTEXT_MESSAGES",
    "sessions.expiry_seconds": "STREAMKOPPLER_SESSION_EXPIRY_SECONDS",
    "sessions.sweep_interval_seconds": "STREAMKOPPLER_SESSION_SWEEP_INTERVAL_SECONDS",
    "progressive.enabled": "STREAMKOPPLER_PROGRESSIVE_ENABLED",
    "progressive.model": "STREAMKOPPLER_PROGRESSIVE_MODEL",
    "progressive.max_tokens": "STREAMKOPPLER_PROGRESSIVE_MAX_TOKENS",
    "progressive.temperature": "STREAMKOPPLER_PROGRESSIVE_TEMPERATURE",
    "retrieval.enabled": "STREAMKOPPLER_RETRIEVAL_ENABLED",
    "retrieval.similarity_threshold": "STREAMKOPPLER_RETRIEVAL_SIMILARITY_THRESHOLD",
    "retrieval.max_documents": "STREAMKOPPLER_RETRIEVAL_MAX_DOCUMENTS",
    "retrieval.embedding": "STREAMKOPPLER_RETRIEVAL_EMBEDDING",
    "retrieval.corpus_path": "STREAMKOPPLER_RETRIEVAL_CORPUS_PATH",
    "tools.enabled": "STREAMKOPPLER_TOOLS_ENABLED",
    "logging.level": "STREAMKOPPLER_LOG_LEVEL",
    "logging.json": "STREAMKOPPLER_LOG_JSON",
}

_INT_KEYS = {"sessions.max_messages", "progressive.max_tokens", "retrieval.max_documents"}
_FLOAT_KEYS = {
    "upstream_timeout_seconds",
    "stream_keepalive_seconds",
    "sessions.expiry_seconds",
    "sessions.sweep_interval_seconds",
    "progressive.temperature",
    "retrieval.similarity_threshold",
}
_BOOL_KEYS = {"progressive.enabled", "retrieval.enabled", "tools.enabled", "logging.json"}


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _override_from_env(data: dict[str, Any]) -> dict[str, Any]:
    """Apply environment variable overrides on top of file configuration."""
    out = dict(data)

    for key, env_name in _ENV_MAP.items():
        value = os.getenv(env_name)
        if value is None:
            continue

        parsed: Any
        if key in _INT_KEYS:
            parsed = int(value)
        elif key in _FLOAT_KEYS:
            parsed = float(value)
        elif key in _BOOL_KEYS:
            parsed = _parse_bool(value)
        elif key == "retrieval.embedding":
            parsed = value.strip().lower()
        else:
            parsed = value

        if "." in key:
            section, field = key.split(".", 1)
            nested = dict(out.get(section) or {})
            nested[field] = parsed
            out[section] = nested
        else:
            out[key] = parsed

    return out


def load_config(path: str | None = None, *, require_credentials: bool = True) -> RelayConfig:
    """Load, merge, and validate relay configuration."""
    final_path = path or os.getenv("STREAMKOPPLER_CONFIG") or DEFAULT_CONFIG_PATH
    raw = _load_yaml(final_path)
    raw = _override_from_env(raw)
    cfg = RelayConfig.model_validate(raw)
    if require_credentials:
        ensure_upstream_credentials(cfg)
    return cfg
