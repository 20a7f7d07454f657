"""Runtime plumbing: the status-change event bus."""

from flowcanvas.runtime.event_bus import EventBus, EventType, GraphEvent, Subscription

__all__ = ["EventBus", "EventType", "GraphEvent", "Subscription"]
