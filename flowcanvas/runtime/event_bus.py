"""
Event Bus - Pub/sub stream of live graph updates.

The scheduler publishes status, content, batch-item and connection-highlight
changes here; a UI layer subscribes to render them.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)


class EventType(StrEnum):
    """Types of events that can be published."""

    # Run lifecycle
    RUN_STARTED = "run_started"
    RUN_COMPLETED = "run_completed"

    # Node lifecycle
    NODE_STATUS_CHANGED = "node_status_changed"
    NODE_UPDATED = "node_updated"
    BATCH_ITEM_UPDATED = "batch_item_updated"

    # Connection highlighting
    CONNECTIONS_ACTIVATED = "connections_activated"
    CONNECTIONS_DEACTIVATED = "connections_deactivated"

    # Audit trail
    PROVENANCE_RECORDED = "provenance_recorded"


@dataclass
class GraphEvent:
    """An event emitted during graph execution."""

    type: EventType
    run_id: str | None = None
    node_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "type": self.type.value,
            "run_id": self.run_id,
            "node_id": self.node_id,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


EventHandler = Callable[[GraphEvent], Awaitable[None]]


@dataclass
class Subscription:
    """A subscription to events."""

    id: str
    event_types: set[EventType]
    handler: EventHandler
    filter_run: str | None = None  # Only receive events from this run
    filter_node: str | None = None  # Only receive events about this node


class EventBus:
    """
    Pub/sub event bus for live graph updates.

    Example:
        bus = EventBus()

        async def on_status(event: GraphEvent):
            print(event.node_id, event.data["status"])

        bus.subscribe(event_types=[EventType.NODE_STATUS_CHANGED], handler=on_status)
    """

    def __init__(
        self,
        max_history: int = 1000,
        max_concurrent_handlers: int = 10,
    ):
        """
        Initialize event bus.

        Args:
            max_history: Maximum events to keep in history
            max_concurrent_handlers: Maximum concurrent handler executions
        """
        self._subscriptions: dict[str, Subscription] = {}
        self._event_history: list[GraphEvent] = []
        self._max_history = max_history
        self._semaphore = asyncio.Semaphore(max_concurrent_handlers)
        self._subscription_counter = 0

    def subscribe(
        self,
        event_types: list[EventType],
        handler: EventHandler,
        filter_run: str | None = None,
        filter_node: str | None = None,
    ) -> str:
        """
        Subscribe to events.

        Returns:
            Subscription ID (use to unsubscribe)
        """
        self._subscription_counter += 1
        sub_id = f"sub_{self._subscription_counter}"

        self._subscriptions[sub_id] = Subscription(
            id=sub_id,
            event_types=set(event_types),
            handler=handler,
            filter_run=filter_run,
            filter_node=filter_node,
        )
        logger.debug(f"Subscription {sub_id} registered for {event_types}")
        return sub_id

    def unsubscribe(self, subscription_id: str) -> bool:
        """Remove a subscription. Returns True if it existed."""
        if subscription_id in self._subscriptions:
            del self._subscriptions[subscription_id]
            logger.debug(f"Subscription {subscription_id} removed")
            return True
        return False

    async def publish(self, event: GraphEvent) -> None:
        """Publish an event to all matching subscribers."""
        self._event_history.append(event)
        if len(self._event_history) > self._max_history:
            self._event_history = self._event_history[-self._max_history :]

        matching_handlers = [
            sub.handler for sub in self._subscriptions.values() if self._matches(sub, event)
        ]
        if matching_handlers:
            await self._execute_handlers(event, matching_handlers)

    def _matches(self, subscription: Subscription, event: GraphEvent) -> bool:
        if event.type not in subscription.event_types:
            return False
        if subscription.filter_run and subscription.filter_run != event.run_id:
            return False
        if subscription.filter_node and subscription.filter_node != event.node_id:
            return False
        return True

    async def _execute_handlers(
        self,
        event: GraphEvent,
        handlers: list[EventHandler],
    ) -> None:
        """Execute handlers concurrently with rate limiting."""

        async def run_handler(handler: EventHandler) -> None:
            async with self._semaphore:
                try:
                    await handler(event)
                except Exception as e:
                    logger.error(f"Handler error for {event.type}: {e}")

        await asyncio.gather(*[run_handler(h) for h in handlers], return_exceptions=True)

    # === CONVENIENCE PUBLISHERS ===

    async def emit_run_started(self, run_id: str, target: str, node_ids: list[str]) -> None:
        await self.publish(
            GraphEvent(
                type=EventType.RUN_STARTED,
                run_id=run_id,
                data={"target": target, "node_ids": node_ids},
            )
        )

    async def emit_run_completed(self, run_id: str, summary: dict[str, Any]) -> None:
        await self.publish(GraphEvent(type=EventType.RUN_COMPLETED, run_id=run_id, data=summary))

    async def emit_node_status(
        self,
        run_id: str | None,
        node_id: str,
        status: str,
        error: str | None = None,
    ) -> None:
        data: dict[str, Any] = {"status": status}
        if error is not None:
            data["error"] = error
        await self.publish(
            GraphEvent(
                type=EventType.NODE_STATUS_CHANGED,
                run_id=run_id,
                node_id=node_id,
                data=data,
            )
        )

    async def emit_node_updated(
        self,
        run_id: str | None,
        node_id: str,
        changes: dict[str, Any],
    ) -> None:
        await self.publish(
            GraphEvent(type=EventType.NODE_UPDATED, run_id=run_id, node_id=node_id, data=changes)
        )

    async def emit_batch_item_updated(
        self,
        run_id: str | None,
        node_id: str,
        item_id: str,
        status: str,
        result: str | None = None,
    ) -> None:
        await self.publish(
            GraphEvent(
                type=EventType.BATCH_ITEM_UPDATED,
                run_id=run_id,
                node_id=node_id,
                data={"item_id": item_id, "status": status, "result": result},
            )
        )

    async def emit_connections(
        self,
        run_id: str | None,
        node_id: str,
        connection_ids: list[str],
        active: bool,
    ) -> None:
        await self.publish(
            GraphEvent(
                type=(
                    EventType.CONNECTIONS_ACTIVATED if active else EventType.CONNECTIONS_DEACTIVATED
                ),
                run_id=run_id,
                node_id=node_id,
                data={"connection_ids": connection_ids},
            )
        )

    async def emit_provenance_recorded(
        self,
        run_id: str | None,
        node_id: str,
        record: dict[str, Any],
    ) -> None:
        await self.publish(
            GraphEvent(
                type=EventType.PROVENANCE_RECORDED,
                run_id=run_id,
                node_id=node_id,
                data=record,
            )
        )

    # === QUERY OPERATIONS ===

    def get_history(
        self,
        event_type: EventType | None = None,
        run_id: str | None = None,
        node_id: str | None = None,
        limit: int = 100,
    ) -> list[GraphEvent]:
        """Get event history, most recent first, with optional filtering."""
        events = self._event_history[::-1]

        if event_type:
            events = [e for e in events if e.type == event_type]
        if run_id:
            events = [e for e in events if e.run_id == run_id]
        if node_id:
            events = [e for e in events if e.node_id == node_id]

        return events[:limit]

    def get_stats(self) -> dict:
        """Get event bus statistics."""
        type_counts: dict[str, int] = {}
        for event in self._event_history:
            type_counts[event.type.value] = type_counts.get(event.type.value, 0) + 1

        return {
            "total_events": len(self._event_history),
            "subscriptions": len(self._subscriptions),
            "events_by_type": type_counts,
        }

    # === WAITING OPERATIONS ===

    async def wait_for(
        self,
        event_type: EventType,
        run_id: str | None = None,
        node_id: str | None = None,
        timeout: float | None = None,
    ) -> GraphEvent | None:
        """
        Wait for a specific event to occur.

        Returns:
            The event if received, None on timeout
        """
        result: GraphEvent | None = None
        event_received = asyncio.Event()

        async def handler(event: GraphEvent) -> None:
            nonlocal result
            result = event
            event_received.set()

        sub_id = self.subscribe(
            event_types=[event_type],
            handler=handler,
            filter_run=run_id,
            filter_node=node_id,
        )

        try:
            if timeout:
                try:
                    await asyncio.wait_for(event_received.wait(), timeout=timeout)
                except TimeoutError:
                    return None
            else:
                await event_received.wait()

            return result
        finally:
            self.unsubscribe(sub_id)
