"""
Configuration for the run engine.

Provides a flexible configuration system that can be loaded from YAML
files, environment variables, or constructed programmatically.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Literal

import yaml
from dotenv import load_dotenv

Provider = Literal["anthropic", "openai"]

DEFAULT_STATIC_TOOL_IDS: list[str] = [
    "utility_get_current_datetime",
    "calculator",
]

ENV_PREFIX = "AGENT_RUN_"


@dataclass
class EngineConfig:
    """
    Main configuration for the run engine.

    Example YAML:
        provider: anthropic
        model: claude-sonnet-4-20250514
        token_budget: 20000
        thinking_budget: 1024
        max_attempts: 5
        max_cycles: 25
        catalog_url: http://localhost:3050
        identity_url: http://localhost:3050
        static_tool_ids:
          - utility_get_current_datetime
    """

    # Model
    provider: Provider = "anthropic"
    model: str = "claude-sonnet-4-20250514"
    api_key: str | None = None  # Defaults to the provider SDK's env var
    base_url: str | None = None
    max_tokens: int = 4096
    temperature: float = 0.1

    # Context window
    token_budget: int = 20_000  # Max estimated input tokens per model call
    thinking_budget: int = 1024  # Reserved for model reasoning

    # Retry policy
    max_attempts: int = 5
    initial_retry_delay: float = 1.0  # Seconds, doubled after each attempt
    max_retry_delay: float = 16.0
    retry_jitter: float = 0.0  # Extra random wait in [0, jitter] seconds
    attempt_timeout: float = 120.0  # Per-attempt model call timeout

    # Loop guard (None = unbounded)
    max_cycles: int | None = 25

    # Tools
    static_tool_ids: list[str] = field(default_factory=lambda: list(DEFAULT_STATIC_TOOL_IDS))

    # External services
    catalog_url: str | None = None
    tool_service_url: str | None = None
    identity_url: str | None = None
    service_timeout: float = 30.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.max_cycles is not None and self.max_cycles < 1:
            raise ValueError("max_cycles must be positive or None")
        if self.provider not in ("anthropic", "openai"):
            raise ValueError(f"Unknown provider: {self.provider}")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EngineConfig:
        """Create config from a dictionary. Unknown keys are ignored."""
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known}
        if "static_tool_ids" in kwargs:
            kwargs["static_tool_ids"] = list(kwargs["static_tool_ids"] or [])
        return cls(**kwargs)

    @classmethod
    def from_yaml(cls, path: Path) -> EngineConfig:
        """Load config from a YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f)
        return cls.from_dict(data or {})

    @classmethod
    def from_yaml_string(cls, content: str) -> EngineConfig:
        """Load config from a YAML string."""
        data = yaml.safe_load(content)
        return cls.from_dict(data or {})

    @classmethod
    def from_env(cls, **overrides: Any) -> EngineConfig:
        """
        Create config from ``AGENT_RUN_*`` environment variables.

        A ``.env`` file in the working directory (or a parent) is loaded
        first. Explicit keyword overrides win over the environment.
        """
        load_dotenv()
        data: dict[str, Any] = {}
        for f in fields(cls):
            raw = os.environ.get(f"{ENV_PREFIX}{f.name.upper()}")
            if raw is None:
                continue
            data[f.name] = _coerce_env(f.name, raw)
        data.update(overrides)
        return cls.from_dict(data)

    def to_dict(self) -> dict[str, Any]:
        """Convert config to a dictionary. The API key is masked."""
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data["static_tool_ids"] = list(self.static_tool_ids)
        if self.api_key:
            data["api_key"] = "***"
        return data


_INT_FIELDS = {"max_tokens", "token_budget", "thinking_budget", "max_attempts"}
_FLOAT_FIELDS = {
    "temperature",
    "initial_retry_delay",
    "max_retry_delay",
    "retry_jitter",
    "attempt_timeout",
    "service_timeout",
}


def _coerce_env(name: str, raw: str) -> Any:
    if name in _INT_FIELDS:
        return int(raw)
    if name in _FLOAT_FIELDS:
        return float(raw)
    if name == "max_cycles":
        return None if raw.strip().lower() in ("", "none", "0") else int(raw)
    if name == "static_tool_ids":
        return [part.strip() for part in raw.split(",") if part.strip()]
    return raw
