"""Host side of the sync engine: the sink protocol and an in-memory mirror."""

from __future__ import annotations

import copy
from typing import Any, Dict, List, Optional, Protocol, Sequence

from .events import (
    EVENT_CHANNEL_VALUE,
    EVENT_CONNECTIVITY_CHANGED,
    EVENT_DEVICE_REMOVED,
    EVENT_DEVICE_UPSERTED,
    EVENT_GROUP_REMOVED,
    EVENT_GROUP_UPSERTED,
    EVENT_ROOM_REMOVED,
    EVENT_ROOM_UPSERTED,
    EVENT_SCENES_REPLACED,
    EventBus,
)
from .logging import get_logger
from .metrics import set_known_devices
from .model import Channel, Device, Group, Room, Scene, jsonable


class StateSink(Protocol):
    """Receives every change the sync engine derives from the bridge."""

    def device_upsert(self, device: Device, channels: Sequence[Channel]) -> None: ...

    def device_remove(self, device_id: str) -> None: ...

    def channel_value(self, device_id: str, channel_id: str, value: Any, timestamp_ms: int) -> None: ...

    def room_upsert(self, room: Room) -> None: ...

    def room_remove(self, room_id: str) -> None: ...

    def group_upsert(self, group: Group) -> None: ...

    def group_remove(self, group_id: str) -> None: ...

    def scenes_replace(self, scenes: Sequence[Scene]) -> None: ...

    def connectivity(self, connected: bool) -> None: ...


class StateStore:
    """In-memory model of everything announced by the sync engine."""

    def __init__(self, event_bus: Optional[EventBus] = None) -> None:
        self._devices: Dict[str, Device] = {}
        self._channels: Dict[str, Dict[str, Channel]] = {}
        self._rooms: Dict[str, Room] = {}
        self._groups: Dict[str, Group] = {}
        self._scenes: List[Scene] = []
        self._connected = False
        self._event_bus = event_bus
        self.logger = get_logger("hue.sync")

    def device_upsert(self, device: Device, channels: Sequence[Channel]) -> None:
        previous = self._channels.get(device.id, {})
        merged: Dict[str, Channel] = {}
        for channel in channels:
            stored = copy.deepcopy(channel)
            old = previous.get(channel.id)
            if old is not None and stored.value is None:
                stored.value = old.value
                stored.updated_ms = old.updated_ms
            merged[channel.id] = stored
        self._devices[device.id] = copy.deepcopy(device)
        self._channels[device.id] = merged
        set_known_devices(len(self._devices))
        self._emit(EVENT_DEVICE_UPSERTED, {"device_id": device.id, "name": device.name})

    def device_remove(self, device_id: str) -> None:
        self._devices.pop(device_id, None)
        self._channels.pop(device_id, None)
        set_known_devices(len(self._devices))
        self._emit(EVENT_DEVICE_REMOVED, {"device_id": device_id})

    def channel_value(self, device_id: str, channel_id: str, value: Any, timestamp_ms: int) -> None:
        channel = self._channels.get(device_id, {}).get(channel_id)
        if channel is None:
            self.logger.debug(
                "Value for unknown channel ignored",
                extra={"device_id": device_id, "channel_id": channel_id},
            )
            return
        channel.value = copy.deepcopy(value)
        channel.updated_ms = timestamp_ms
        self._emit(
            EVENT_CHANNEL_VALUE,
            {
                "device_id": device_id,
                "channel_id": channel_id,
                "value": jsonable(value),
                "timestamp_ms": timestamp_ms,
            },
        )

    def room_upsert(self, room: Room) -> None:
        self._rooms[room.id] = copy.deepcopy(room)
        self._emit(EVENT_ROOM_UPSERTED, {"room_id": room.id})

    def room_remove(self, room_id: str) -> None:
        self._rooms.pop(room_id, None)
        self._emit(EVENT_ROOM_REMOVED, {"room_id": room_id})

    def group_upsert(self, group: Group) -> None:
        self._groups[group.id] = copy.deepcopy(group)
        self._emit(EVENT_GROUP_UPSERTED, {"group_id": group.id})

    def group_remove(self, group_id: str) -> None:
        self._groups.pop(group_id, None)
        self._emit(EVENT_GROUP_REMOVED, {"group_id": group_id})

    def scenes_replace(self, scenes: Sequence[Scene]) -> None:
        self._scenes = [copy.deepcopy(scene) for scene in scenes]
        self._emit(EVENT_SCENES_REPLACED, {"count": len(self._scenes)})

    def connectivity(self, connected: bool) -> None:
        changed = connected != self._connected
        self._connected = connected
        if changed:
            self._emit(EVENT_CONNECTIVITY_CHANGED, {"connected": connected})

    @property
    def connected(self) -> bool:
        return self._connected

    def devices(self) -> List[Device]:
        return sorted(self._devices.values(), key=lambda device: device.name.lower())

    def device(self, device_id: str) -> Optional[Device]:
        return self._devices.get(device_id)

    def channels(self, device_id: str) -> List[Channel]:
        return list(self._channels.get(device_id, {}).values())

    def rooms(self) -> List[Room]:
        return list(self._rooms.values())

    def groups(self) -> List[Group]:
        return list(self._groups.values())

    def scenes(self) -> List[Scene]:
        return list(self._scenes)

    def stats(self) -> Dict[str, Any]:
        return {
            "connected": self._connected,
            "devices": len(self._devices),
            "channels": sum(len(channels) for channels in self._channels.values()),
            "rooms": len(self._rooms),
            "groups": len(self._groups),
            "scenes": len(self._scenes),
        }

    def _emit(self, event_type: str, data: Dict[str, Any]) -> None:
        if self._event_bus is not None:
            self._event_bus.emit(event_type, data)
