"""Core observability components: configuration, errors, CLI."""

from core.config import ObservabilityConfig
from core.errors import ObservabilityError, MalformedEventError, ConfigurationError, TracerError

__all__ = [
    "ObservabilityConfig",
    "ObservabilityError",
    "MalformedEventError",
    "ConfigurationError",
    "TracerError",
]
