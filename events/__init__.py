"""Agent runtime events and their dispatch."""

from events.models import AgentEvent, EventType
from events.dispatcher import EventDispatcher, EventListener

__all__ = ["AgentEvent", "EventType", "EventDispatcher", "EventListener"]
