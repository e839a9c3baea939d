"""
Observability configuration.

Every tracing category can be switched off on its own, and metrics are toggled
independently of tracing. Values come from (lowest to highest precedence):

  1. dataclass defaults
  2. a YAML file            (ObservabilityConfig.from_yaml)
  3. AGENT_OBS_* env vars   (ObservabilityConfig.from_env)

YAML keys may be snake_case or kebab-case:

    trace-llm-calls: false
    metrics-enabled: true
"""
import os
import logging
from dataclasses import dataclass, fields, replace
from pathlib import Path

import yaml

from core.errors import ConfigurationError

logger = logging.getLogger(__name__)

ENV_PREFIX = "AGENT_OBS_"
TRACE_DB_PATH = os.environ.get("TRACE_DB_PATH", "./data/traces.db")

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class ObservabilityConfig:
    """Switches and limits for the tracing and metrics listeners."""
    enabled: bool = True
    service_name: str = "agent-observability"
    tracer_name: str = "agent-observability"
    tracer_version: str = "0.1.0"
    max_attribute_length: int = 4000

    # Tracing categories
    trace_agent_events: bool = True
    trace_tool_calls: bool = True
    trace_llm_calls: bool = True
    trace_tool_loop: bool = True
    trace_planning: bool = True
    trace_state_transitions: bool = True
    trace_lifecycle_states: bool = True
    trace_rag: bool = True
    trace_ranking: bool = True
    trace_dynamic_agent_creation: bool = True

    # Metrics
    metrics_enabled: bool = True

    # Local trace store
    trace_db_path: str = TRACE_DB_PATH

    @property
    def tracing_enabled(self) -> bool:
        return self.enabled and self.trace_agent_events

    @property
    def metrics_active(self) -> bool:
        return self.enabled and self.metrics_enabled

    # ── loading ────────────────────────────────────────────────────
    @classmethod
    def from_env(cls, base: "ObservabilityConfig | None" = None) -> "ObservabilityConfig":
        """Overlay AGENT_OBS_* environment variables on `base` (or defaults)."""
        config = base or cls()
        overrides = {}
        for f in fields(cls):
            env_name = ENV_PREFIX + f.name.upper()
            if f.name == "trace_db_path":
                env_name = "TRACE_DB_PATH"
            raw = os.environ.get(env_name)
            if raw is None:
                continue
            overrides[f.name] = _coerce(f.name, f.type, raw)
        if overrides:
            logger.debug(f"Config overrides from environment: {sorted(overrides)}")
        return replace(config, **overrides)

    @classmethod
    def from_yaml(cls, path: str | Path, apply_env: bool = True) -> "ObservabilityConfig":
        """Load a YAML mapping; env vars still win unless apply_env is False."""
        path = Path(path)
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Cannot read config {path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigurationError(f"Config {path} must be a mapping, got {type(data).__name__}")
        # Allow the whole block to be nested under an `observability:` key
        if set(data) == {"observability"} and isinstance(data["observability"], dict):
            data = data["observability"]

        config = cls.from_dict(data)
        return cls.from_env(config) if apply_env else config

    @classmethod
    def from_dict(cls, data: dict) -> "ObservabilityConfig":
        known = {f.name: f for f in fields(cls)}
        values = {}
        for key, value in data.items():
            name = str(key).replace("-", "_")
            if name not in known:
                raise ConfigurationError(f"Unknown config key: {key}")
            values[name] = _coerce(name, known[name].type, value)
        return cls(**values)


def _coerce(name: str, type_hint, value):
    """Convert env/YAML scalars into the field's declared type."""
    type_name = type_hint if isinstance(type_hint, str) else getattr(type_hint, "__name__", "")
    if type_name == "bool":
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in _TRUE:
            return True
        if text in _FALSE:
            return False
        raise ConfigurationError(f"{name}: expected a boolean, got {value!r}")
    if type_name == "int":
        try:
            result = int(value)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"{name}: expected an integer, got {value!r}") from e
        if result <= 0:
            raise ConfigurationError(f"{name}: must be positive, got {result}")
        return result
    return str(value)
