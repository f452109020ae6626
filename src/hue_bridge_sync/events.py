"""Event bus for model and health change notifications."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Set

from .logging import get_logger


@dataclass
class SystemEvent:
    """System event with type, timestamp, and data."""

    event_type: str
    timestamp: str
    data: Dict[str, Any]

    @classmethod
    def create(cls, event_type: str, data: Dict[str, Any]) -> SystemEvent:
        """Create a new system event with current timestamp."""
        return cls(
            event_type=event_type,
            timestamp=datetime.now(tz=timezone.utc).isoformat(),
            data=data,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event": self.event_type,
            "timestamp": self.timestamp,
            "data": self.data,
        }


class EventBus:
    """
    Pub/sub bus for system events.

    Subscribers register for one event type or for '*' (every event).
    Plain callables run inline; coroutine functions are scheduled as tasks
    on the running loop.
    """

    def __init__(self) -> None:
        self._subscribers: Dict[str, Set[Callable[[SystemEvent], Any]]] = defaultdict(set)
        self._wildcard_subscribers: Set[Callable[[SystemEvent], Any]] = set()
        self._tasks: Set[asyncio.Task[Any]] = set()
        self.logger = get_logger("hue.events")

    def emit(self, event_type: str, data: Dict[str, Any]) -> SystemEvent:
        """Deliver an event synchronously; safe to call from non-async handlers."""

        event = SystemEvent.create(event_type, data)
        callbacks = list(self._subscribers.get(event_type, set())) + list(self._wildcard_subscribers)
        for callback in callbacks:
            try:
                if asyncio.iscoroutinefunction(callback):
                    task = asyncio.get_running_loop().create_task(callback(event))
                    self._tasks.add(task)
                    task.add_done_callback(self._tasks.discard)
                else:
                    callback(event)
            except Exception:
                # One failing subscriber must not starve the others.
                self.logger.exception("Event subscriber failed", extra={"event": event_type})
        return event

    async def publish(self, event_type: str, data: Dict[str, Any]) -> None:
        """Publish event to all subscribers."""

        self.emit(event_type, data)

    def subscribe(
        self,
        event_type: str,
        callback: Callable[[SystemEvent], Any],
    ) -> Callable[[], None]:
        """
        Subscribe to specific event type.

        Args:
            event_type: Type of event to subscribe to, or '*' for all events
            callback: Function to call when event is published (can be async)

        Returns:
            Unsubscribe function
        """
        if event_type == "*":
            self._wildcard_subscribers.add(callback)
        else:
            self._subscribers[event_type].add(callback)

        def unsubscribe() -> None:
            if event_type == "*":
                self._wildcard_subscribers.discard(callback)
            else:
                self._subscribers[event_type].discard(callback)

        return unsubscribe


EVENT_DEVICE_UPSERTED = "device_upserted"
EVENT_DEVICE_REMOVED = "device_removed"
EVENT_CHANNEL_VALUE = "channel_value"
EVENT_ROOM_UPSERTED = "room_upserted"
EVENT_ROOM_REMOVED = "room_removed"
EVENT_GROUP_UPSERTED = "group_upserted"
EVENT_GROUP_REMOVED = "group_removed"
EVENT_SCENES_REPLACED = "scenes_replaced"
EVENT_CONNECTIVITY_CHANGED = "connectivity_changed"
EVENT_HEALTH_STATUS_CHANGED = "health_status_changed"
