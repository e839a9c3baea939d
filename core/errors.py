"""Observability-wide exception hierarchy."""

class ObservabilityError(Exception):
    """Base exception for all observability errors."""
    pass

class MalformedEventError(ObservabilityError):
    """Event is missing required identifiers or has an unknown type."""
    def __init__(self, event_type: str | None, message: str):
        self.event_type = event_type
        super().__init__(f"[{event_type or 'unknown'}] {message}")

class ConfigurationError(ObservabilityError):
    """Invalid configuration file or value."""
    pass

class TracerError(ObservabilityError):
    """Tracer backend was handed a span it does not own."""
    pass
