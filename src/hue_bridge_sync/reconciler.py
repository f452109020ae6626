"""Model builder: reconcile snapshots and stream deltas into canonical entities."""

from __future__ import annotations

import asyncio
import copy
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Set, Tuple

from .buttons import MultiPressDebouncer, RotationPulseResetter
from .channels import (
    battery_channel,
    button_channel,
    button_control_ids,
    connectivity_channel,
    dial_channel,
    illuminance_channel,
    light_channels,
    motion_channels,
    software_update_channel,
    software_update_index,
    tamper_channel,
    temperature_channel,
)
from .config import Config
from .effects import parse_effects
from .handlers import (
    SOFTWARE_UPDATE_CHANNEL,
    ZIGBEE_STATUS_CHANNEL,
    ResourceHandlers,
    connectivity_meta,
    discovery_meta,
    now_ms,
    owner_device_id,
    parse_scene,
    parse_zigbee_status,
    software_update_payload,
)
from .logging import get_logger
from .metadata_queue import LazyMetadataFetchQueue
from .model import (
    Channel,
    ChannelKind,
    Device,
    DeviceClass,
    DeviceFlag,
    Gamut,
    Group,
    ResourceBinding,
    Room,
    Scene,
    SoftwareUpdateStatus,
    ZigbeeStatus,
    sorted_members,
)
from .scheduler import Scheduler
from .snapshot import SnapshotCycle
from .store import StateSink

PLACEHOLDER_NAME = "Hue Device"

# Service resource types owned by a device.
SERVICE_TYPES: Tuple[str, ...] = (
    "light",
    "motion",
    "tamper",
    "temperature",
    "light_level",
    "device_power",
    "button",
    "relative_rotary",
    "zigbee_connectivity",
    "device_software_update",
    "zigbee_device_discovery",
)

# Types whose snapshot state is replayed as channel values after a rebuild.
# Button and rotary reports are momentary and are not replayed.
SEED_TYPES: Tuple[str, ...] = (
    "light",
    "motion",
    "tamper",
    "temperature",
    "light_level",
    "device_power",
)

DERIVED_META_KEYS = ("zigbeeConnectivity", "softwareUpdate", "zigbeeDeviceDiscovery")

_SENSOR_TYPES = {
    "motion": motion_channels,
    "tamper": lambda resource: [tamper_channel()],
    "temperature": lambda resource: [temperature_channel()],
    "light_level": lambda resource: [illuminance_channel()],
}

FetchDeviceFn = Callable[[str], Awaitable[Optional[Mapping[str, Any]]]]
DeviceListener = Callable[[Device], None]


def _obj(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


def _refs(resource: Mapping[str, Any], key: str) -> List[Tuple[str, str]]:
    refs = []
    for item in resource.get(key) or []:
        if isinstance(item, Mapping) and item.get("rid"):
            refs.append((str(item.get("rtype") or ""), str(item["rid"])))
    return refs


def deep_merge(base: Mapping[str, Any], update: Mapping[str, Any]) -> Dict[str, Any]:
    merged: Dict[str, Any] = copy.deepcopy(dict(base))
    for key, value in update.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), Mapping):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def class_hint(resource: Mapping[str, Any]) -> Optional[DeviceClass]:
    """Device class suggested by archetype and product text, first hint wins."""

    product = _obj(resource.get("product_data"))
    metadata = _obj(resource.get("metadata"))
    texts = (
        product.get("product_archetype"),
        product.get("product_name"),
        metadata.get("archetype"),
        metadata.get("name"),
    )
    for raw in texts:
        text = str(raw or "").lower()
        if not text:
            continue
        if "plug" in text:
            return DeviceClass.PLUG
        if "sensor" in text:
            return DeviceClass.SENSOR
        if "switch" in text:
            return DeviceClass.SWITCH
        if "bridge" in text or "gateway" in text:
            return DeviceClass.GATEWAY
    return None


@dataclass
class ReconcileState:
    """Everything the model builder derives and remembers between passes."""

    devices: Dict[str, Device] = field(default_factory=dict)
    raw_devices: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    lazy_devices: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    channels: Dict[str, Dict[str, Channel]] = field(default_factory=dict)
    channel_sources: Dict[Tuple[str, str], str] = field(default_factory=dict)
    bindings: Dict[Tuple[str, str], ResourceBinding] = field(default_factory=dict)
    resource_to_device: Dict[Tuple[str, str], str] = field(default_factory=dict)
    button_to_channel: Dict[str, str] = field(default_factory=dict)
    gamuts: Dict[str, Gamut] = field(default_factory=dict)
    rooms: Dict[str, Room] = field(default_factory=dict)
    groups: Dict[str, Group] = field(default_factory=dict)
    scenes: Dict[str, Scene] = field(default_factory=dict)
    emitted: Dict[str, Tuple[Device, List[Channel]]] = field(default_factory=dict)
    emitted_rooms: Dict[str, Room] = field(default_factory=dict)
    emitted_groups: Dict[str, Group] = field(default_factory=dict)
    emitted_scenes: Optional[List[Scene]] = None
    values: Dict[Tuple[str, str], Any] = field(default_factory=dict)
    snapshot: Optional[SnapshotCycle] = None
    bootstrap_done: bool = False
    connected: Optional[bool] = None
    awaiting_metadata: bool = False
    pending_connectivity: Dict[str, ZigbeeStatus] = field(default_factory=dict)
    pending_software_updates: Dict[str, int] = field(default_factory=dict)


class ModelReconciler:
    """Build and diff the canonical model, reporting changes to a `StateSink`.

    `rebuild` runs after every snapshot cycle. When service resources
    reference owner devices missing from the snapshot, their metadata is
    requested through the lazy fetch queue and the pass is retried once the
    queue drains. Stream deltas reach the model through `handlers`.
    """

    def __init__(
        self,
        config: Config,
        sink: StateSink,
        scheduler: Scheduler,
        fetch_device: FetchDeviceFn,
        resync_callback: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.config = config
        self.sink = sink
        self.scheduler = scheduler
        self.state = ReconcileState()
        self.logger = get_logger("hue.reconcile")
        self.resync_callback = resync_callback
        self.metadata = LazyMetadataFetchQueue(
            fetch_device,
            on_result=self.apply_device_metadata,
            on_drained=self._metadata_drained,
            max_concurrent=config.metadata_max_concurrent,
            spacing=config.metadata_fetch_spacing,
        )
        self.multi_press = MultiPressDebouncer(
            scheduler,
            self.emit_event,
            window=config.multi_press_window,
            reset_gap=config.multi_press_reset_gap,
        )
        self.rotation = RotationPulseResetter(
            scheduler, self.emit_event, reset_delay=config.dial_reset_delay, clock=now_ms
        )
        self.handlers = ResourceHandlers(self)
        self._device_listeners: List[DeviceListener] = []
        self._settled = asyncio.Event()
        self._rebuild_error: Optional[BaseException] = None

    # Snapshot reconciliation

    def rebuild(self, cycle: Optional[SnapshotCycle] = None) -> bool:
        """Reconcile the model against a snapshot.

        Passing a cycle starts a new one; calling without arguments retries
        the current cycle after lazy metadata arrived. Returns False while
        owner metadata is still outstanding.
        """

        state = self.state
        if cycle is not None:
            state.snapshot = cycle
            state.lazy_devices.clear()
            self.metadata.reset_failures()
        cycle = state.snapshot
        if cycle is None:
            return False
        self._settled.clear()
        state.awaiting_metadata = False

        previous_channels = state.channels
        previous_sources = state.channel_sources
        previous_bindings = state.bindings
        previous_resources = state.resource_to_device
        previous_buttons = state.button_to_channel

        raw_devices: Dict[str, Dict[str, Any]] = {}
        for resource in cycle.get("device"):
            device_id = str(resource.get("id") or "")
            if device_id:
                raw_devices[device_id] = copy.deepcopy(dict(resource))
        raw_devices.update(state.lazy_devices)
        state.raw_devices = raw_devices

        state.resource_to_device = {}
        for device_id, raw in raw_devices.items():
            state.devices[device_id] = self._merge_device(raw)
            for rtype, rid in _refs(raw, "services"):
                state.resource_to_device[(rtype, rid)] = device_id
        for key, device_id in previous_resources.items():
            if key[0] in cycle.degraded_types and device_id in raw_devices:
                state.resource_to_device.setdefault(key, device_id)

        if not self._resolve_owners(cycle):
            state.awaiting_metadata = True
            self.logger.info(
                "Waiting for device metadata before reconciling",
                extra={"in_flight": self.metadata.in_flight, "queued": self.metadata.queued},
            )
            return False

        self._build_channels(cycle)
        for (device_id, channel_id), source in previous_sources.items():
            if source not in cycle.degraded_types or device_id not in raw_devices:
                continue
            old = previous_channels.get(device_id, {}).get(channel_id)
            if old is None or channel_id in state.channels.get(device_id, {}):
                continue
            self._add_channel(
                device_id, copy.deepcopy(old), source, previous_bindings.get((device_id, channel_id))
            )
        if "button" in cycle.degraded_types:
            for rid, channel_id in previous_buttons.items():
                state.button_to_channel.setdefault(rid, channel_id)
        for device_id, device in state.devices.items():
            if "battery" in state.channels.get(device_id, {}):
                device.flags |= DeviceFlag.BATTERY
            else:
                device.flags &= ~DeviceFlag.BATTERY

        for device_id in list(state.devices):
            if state.channels.get(device_id):
                self._emit_device(device_id)

        if "device" not in cycle.degraded_types:
            for device_id in list(state.emitted):
                if device_id not in raw_devices or not state.channels.get(device_id):
                    self.remove_device(device_id)
            for device_id in [device_id for device_id in state.devices if device_id not in raw_devices]:
                self._forget_device(device_id)

        rooms = {}
        for resource in cycle.get("room"):
            room = self._parse_room(resource)
            if room is not None:
                rooms[room.id] = room
        groups = {}
        for resource in cycle.get("zone"):
            group = self._parse_group(resource, rooms)
            if group is not None:
                groups[group.id] = group
        if "room" not in cycle.degraded_types:
            self._sync_rooms(rooms)
        if "zone" not in cycle.degraded_types:
            self._sync_groups(groups)

        if "scene" not in cycle.degraded_types:
            scenes: Dict[str, Scene] = {}
            for resource in cycle.get("scene"):
                scene = parse_scene(resource)
                if scene is None:
                    self.logger.debug("Scene without a name skipped", extra={"scene_id": resource.get("id")})
                    continue
                scenes[scene.id] = scene
            state.scenes = scenes
            self._publish_scenes(force=not state.bootstrap_done)

        timestamp = now_ms()
        for resource_type in SEED_TYPES:
            for resource in cycle.get(resource_type):
                self.handlers.handle(resource, timestamp, resource_type)

        state.bootstrap_done = True
        self._flush_pending(timestamp)
        self.set_connectivity(True)
        for device in list(state.devices.values()):
            self._notify_device(device)
        self._settled.set()
        self.logger.info(
            "Model reconciled",
            extra={
                "devices": len(state.emitted),
                "rooms": len(state.emitted_rooms),
                "groups": len(state.emitted_groups),
                "scenes": len(state.scenes),
                "degraded_types": sorted(cycle.degraded_types),
            },
        )
        return True

    async def wait_settled(self) -> None:
        """Wait until a pending rebuild completes after metadata drained."""

        await self._settled.wait()
        if self._rebuild_error is not None:
            error, self._rebuild_error = self._rebuild_error, None
            raise error

    def _metadata_drained(self) -> None:
        if not self.state.awaiting_metadata:
            return
        try:
            self.rebuild()
        except Exception as exc:
            self.logger.exception("Deferred reconciliation failed")
            self._rebuild_error = exc
            self._settled.set()

    def _resolve_owners(self, cycle: SnapshotCycle) -> bool:
        state = self.state
        missing: Set[str] = set()
        for resource_type in SERVICE_TYPES:
            for resource in cycle.get(resource_type):
                rid = str(resource.get("id") or "")
                key = (resource_type, rid)
                if key in state.resource_to_device:
                    continue
                owner = owner_device_id(resource)
                if owner in state.raw_devices:
                    state.resource_to_device[key] = owner
                elif owner and not self.metadata.is_failed(owner):
                    missing.add(owner)
        for owner in sorted(missing):
            self.metadata.request(owner)
        return self.metadata.idle

    def _merge_device(self, raw: Mapping[str, Any]) -> Device:
        device_id = str(raw.get("id") or "")
        device = self.state.devices.get(device_id) or Device(id=device_id)
        metadata = _obj(raw.get("metadata"))
        product = _obj(raw.get("product_data"))
        device.name = (
            str(metadata.get("name") or "").strip()
            or str(product.get("product_name") or "").strip()
            or PLACEHOLDER_NAME
        )
        for attr, key in (
            ("manufacturer", "manufacturer_name"),
            ("model", "model_id"),
            ("firmware", "software_version"),
        ):
            value = str(product.get(key) or "").strip()
            if value:
                setattr(device, attr, value)
        derived = {key: device.meta[key] for key in DERIVED_META_KEYS if key in device.meta}
        meta = copy.deepcopy(dict(raw))
        meta.update(derived)
        device.meta = meta
        hint = class_hint(raw)
        if hint is not None and device.device_class in (DeviceClass.UNKNOWN, DeviceClass.LIGHT):
            device.device_class = hint
        return device

    def _promote(self, device_id: str, device_class: DeviceClass) -> None:
        device = self.state.devices.get(device_id)
        if device is not None and device.device_class == DeviceClass.UNKNOWN:
            device.device_class = device_class

    def _add_channel(
        self,
        device_id: str,
        channel: Channel,
        source: str,
        binding: Optional[ResourceBinding] = None,
    ) -> None:
        channels = self.state.channels.setdefault(device_id, {})
        if channel.id in channels:
            return
        channels[channel.id] = channel
        self.state.channel_sources[(device_id, channel.id)] = source
        if binding is not None:
            self.state.bindings[(device_id, channel.id)] = binding

    def _owner_of(self, resource_type: str, resource: Mapping[str, Any]) -> str:
        return self.state.resource_to_device.get((resource_type, str(resource.get("id") or "")), "")

    def _build_channels(self, cycle: SnapshotCycle) -> None:
        state = self.state
        state.channels = {}
        state.channel_sources = {}
        state.bindings = {}
        state.button_to_channel = {}
        state.gamuts = {}
        for device in state.devices.values():
            device.effects = []

        for resource in cycle.get("light"):
            device_id = self._owner_of("light", resource)
            if not device_id:
                continue
            rid = str(resource.get("id"))
            binding = ResourceBinding("light", rid)
            for channel in light_channels(resource):
                self._add_channel(device_id, channel, "light", binding)
            gamut = Gamut.from_payload(_obj(resource.get("color")).get("gamut"))
            if gamut is not None:
                state.gamuts[rid] = gamut
            device = state.devices[device_id]
            device.effects.extend(parse_effects(resource, device.effects))
            self._promote(device_id, DeviceClass.LIGHT)

        for resource_type, factory in _SENSOR_TYPES.items():
            for resource in cycle.get(resource_type):
                device_id = self._owner_of(resource_type, resource)
                if not device_id:
                    continue
                binding = ResourceBinding(resource_type, str(resource.get("id")))
                for channel in factory(resource):
                    self._add_channel(device_id, channel, resource_type, binding)
                self._promote(device_id, DeviceClass.SENSOR)

        for resource in cycle.get("device_power"):
            device_id = self._owner_of("device_power", resource)
            if device_id:
                binding = ResourceBinding("device_power", str(resource.get("id")))
                self._add_channel(device_id, battery_channel(), "device_power", binding)

        buttons: Dict[str, List[Mapping[str, Any]]] = {}
        for resource in cycle.get("button"):
            device_id = self._owner_of("button", resource)
            if device_id:
                buttons.setdefault(device_id, []).append(resource)
        for device_id, resources in buttons.items():
            if len(resources) == 1:
                rid = str(resources[0].get("id"))
                self._add_channel(
                    device_id, button_channel("button", "Button"), "button", ResourceBinding("button", rid)
                )
                state.button_to_channel[rid] = "button"
            else:
                for control_id, resource in button_control_ids(resources):
                    channel_id = f"button{control_id}"
                    rid = str(resource.get("id"))
                    self._add_channel(
                        device_id,
                        button_channel(channel_id, f"Button {control_id}"),
                        "button",
                        ResourceBinding("button", rid),
                    )
                    state.button_to_channel[rid] = channel_id
            self._promote(device_id, DeviceClass.BUTTON)

        for device_id, raw in state.raw_devices.items():
            for rtype, rid in _refs(raw, "services"):
                if rtype == "relative_rotary":
                    self._add_channel(
                        device_id, dial_channel(), "relative_rotary", ResourceBinding(rtype, rid)
                    )
                    self._promote(device_id, DeviceClass.BUTTON)

        for resource in cycle.get("zigbee_connectivity"):
            device_id = self._owner_of("zigbee_connectivity", resource)
            if not device_id:
                continue
            self._add_channel(device_id, connectivity_channel(), "zigbee_connectivity")
            state.devices[device_id].meta["zigbeeConnectivity"] = connectivity_meta(resource)
            state.pending_connectivity[device_id] = parse_zigbee_status(resource.get("status"))

        for resource in cycle.get("device_software_update"):
            device_id = self._owner_of("device_software_update", resource)
            if not device_id:
                continue
            payload = software_update_payload(resource)
            self._add_channel(device_id, software_update_channel(), "device_software_update")
            state.devices[device_id].meta["softwareUpdate"] = payload
            state.pending_software_updates[device_id] = software_update_index(
                SoftwareUpdateStatus(payload["status"])
            )

        for resource in cycle.get("zigbee_device_discovery"):
            device_id = self._owner_of("zigbee_device_discovery", resource)
            if device_id:
                state.devices[device_id].meta["zigbeeDeviceDiscovery"] = discovery_meta(resource)

    def _flush_pending(self, timestamp: int) -> None:
        state = self.state
        for device_id, status in state.pending_connectivity.items():
            self.set_value(device_id, ZIGBEE_STATUS_CHANNEL, status, timestamp)
        for device_id, index in state.pending_software_updates.items():
            self.set_value(device_id, SOFTWARE_UPDATE_CHANNEL, index, timestamp)
        state.pending_connectivity.clear()
        state.pending_software_updates.clear()

    # Emission

    def _emit_device(self, device_id: str) -> bool:
        state = self.state
        device = state.devices.get(device_id)
        channels = list(state.channels.get(device_id, {}).values())
        if device is None or not channels:
            return False
        for channel in channels:
            if (device_id, channel.id) in state.values:
                channel.value = state.values[(device_id, channel.id)]
        previous = state.emitted.get(device_id)
        if previous is not None and previous[0] == device:
            if {c.id: c for c in previous[1]} == {c.id: c for c in channels}:
                return False
        snapshot = (copy.deepcopy(device), copy.deepcopy(channels))
        state.emitted[device_id] = snapshot
        self.sink.device_upsert(copy.deepcopy(device), copy.deepcopy(channels))
        self.logger.debug(
            "Device announced",
            extra={"device_id": device_id, "channels": [channel.id for channel in channels]},
        )
        return True

    def emit_value(
        self, device_id: str, channel_id: str, value: Any, timestamp_ms: int, force: bool = False
    ) -> bool:
        """Report a channel value; unchanged values are dropped unless `force`."""

        state = self.state
        if device_id not in state.emitted:
            return False
        channel = state.channels.get(device_id, {}).get(channel_id)
        if channel is None:
            return False
        key = (device_id, channel_id)
        if not force and key in state.values and state.values[key] == value:
            return False
        state.values[key] = value
        channel.value = value
        channel.updated_ms = timestamp_ms
        self.sink.channel_value(device_id, channel_id, value, timestamp_ms)
        return True

    def set_value(self, device_id: str, channel_id: str, value: Any, timestamp_ms: int) -> bool:
        return self.emit_value(device_id, channel_id, value, timestamp_ms)

    def emit_event(self, device_id: str, channel_id: str, value: Any, timestamp_ms: int) -> None:
        self.emit_value(device_id, channel_id, value, timestamp_ms, force=True)

    def set_connectivity(self, connected: bool) -> None:
        if self.state.connected == connected:
            return
        self.state.connected = connected
        self.sink.connectivity(connected)

    def device_changed(self, device_id: str) -> None:
        if device_id in self.state.emitted:
            self._emit_device(device_id)

    def remove_device(self, device_id: str) -> bool:
        """Drop a device and everything derived from it; reported once."""

        was_emitted = self.state.emitted.pop(device_id, None) is not None
        self._forget_device(device_id)
        if was_emitted:
            self.sink.device_remove(device_id)
            self.logger.info("Device removed", extra={"device_id": device_id})
        return was_emitted

    def _forget_device(self, device_id: str) -> None:
        state = self.state
        state.devices.pop(device_id, None)
        state.raw_devices.pop(device_id, None)
        state.lazy_devices.pop(device_id, None)
        state.channels.pop(device_id, None)
        state.pending_connectivity.pop(device_id, None)
        state.pending_software_updates.pop(device_id, None)
        for mapping in (state.values, state.bindings, state.channel_sources):
            for key in [key for key in mapping if key[0] == device_id]:
                del mapping[key]
        for key in [key for key, owner in state.resource_to_device.items() if owner == device_id]:
            del state.resource_to_device[key]
            state.button_to_channel.pop(key[1], None)
        self.multi_press.clear_device(device_id)
        self.rotation.clear_device(device_id)

    # Rooms, zones and scenes

    def _resolve_member(self, rtype: str, rid: str) -> str:
        if rtype == "device":
            return rid
        return self.state.resource_to_device.get((rtype, rid), "")

    def _parse_room(self, resource: Mapping[str, Any]) -> Optional[Room]:
        room_id = str(resource.get("id") or "")
        if not room_id:
            return None
        metadata = _obj(resource.get("metadata"))
        refs = _refs(resource, "children") + _refs(resource, "services")
        return Room(
            id=room_id,
            name=str(metadata.get("name") or ""),
            zone=str(metadata.get("archetype") or ""),
            members=sorted_members(self._resolve_member(rtype, rid) for rtype, rid in refs),
        )

    def _parse_group(self, resource: Mapping[str, Any], rooms: Mapping[str, Room]) -> Optional[Group]:
        group_id = str(resource.get("id") or "")
        if not group_id:
            return None
        metadata = _obj(resource.get("metadata"))
        members: List[str] = []
        for rtype, rid in _refs(resource, "children") + _refs(resource, "services"):
            if rtype == "room":
                room = rooms.get(rid)
                if room is not None:
                    members.extend(room.members)
            else:
                members.append(self._resolve_member(rtype, rid))
        return Group(
            id=group_id,
            name=str(metadata.get("name") or ""),
            zone=str(metadata.get("archetype") or ""),
            members=sorted_members(members),
        )

    def _sync_rooms(self, rooms: Dict[str, Room]) -> None:
        state = self.state
        state.rooms = rooms
        for room_id, room in rooms.items():
            if state.emitted_rooms.get(room_id) != room:
                state.emitted_rooms[room_id] = copy.deepcopy(room)
                self.sink.room_upsert(copy.deepcopy(room))
        for room_id in [room_id for room_id in state.emitted_rooms if room_id not in rooms]:
            del state.emitted_rooms[room_id]
            self.sink.room_remove(room_id)

    def _sync_groups(self, groups: Dict[str, Group]) -> None:
        state = self.state
        state.groups = groups
        for group_id, group in groups.items():
            if state.emitted_groups.get(group_id) != group:
                state.emitted_groups[group_id] = copy.deepcopy(group)
                self.sink.group_upsert(copy.deepcopy(group))
        for group_id in [group_id for group_id in state.emitted_groups if group_id not in groups]:
            del state.emitted_groups[group_id]
            self.sink.group_remove(group_id)

    def _publish_scenes(self, force: bool = False) -> None:
        scenes = list(self.state.scenes.values())
        if not force and self.state.emitted_scenes == scenes:
            return
        self.state.emitted_scenes = copy.deepcopy(scenes)
        self.sink.scenes_replace(copy.deepcopy(scenes))

    def update_room(self, resource: Mapping[str, Any]) -> None:
        """Apply a partial room update (name, archetype)."""

        room_id = str(resource.get("id") or "")
        existing = self.state.rooms.get(room_id)
        if existing is None:
            self.request_resync("unknown room")
            return
        metadata = _obj(resource.get("metadata"))
        updated = replace(existing)
        if "name" in metadata:
            updated.name = str(metadata.get("name") or "")
        if "archetype" in metadata:
            updated.zone = str(metadata.get("archetype") or "")
        self.state.rooms[room_id] = updated
        if self.state.emitted_rooms.get(room_id) != updated:
            self.state.emitted_rooms[room_id] = copy.deepcopy(updated)
            self.sink.room_upsert(copy.deepcopy(updated))

    def update_group(self, resource: Mapping[str, Any]) -> None:
        group_id = str(resource.get("id") or "")
        existing = self.state.groups.get(group_id)
        if existing is None:
            self.request_resync("unknown zone")
            return
        metadata = _obj(resource.get("metadata"))
        updated = replace(existing)
        if "name" in metadata:
            updated.name = str(metadata.get("name") or "")
        if "archetype" in metadata:
            updated.zone = str(metadata.get("archetype") or "")
        self.state.groups[group_id] = updated
        if self.state.emitted_groups.get(group_id) != updated:
            self.state.emitted_groups[group_id] = copy.deepcopy(updated)
            self.sink.group_upsert(copy.deepcopy(updated))

    def update_scene(self, resource: Mapping[str, Any]) -> None:
        """Merge a full or partial scene resource; nameless scenes are rejected."""

        scene_id = str(resource.get("id") or "")
        scene = parse_scene(resource, self.state.scenes.get(scene_id))
        if scene is None:
            self.logger.debug("Scene update without a name ignored", extra={"scene_id": scene_id})
            return
        self.state.scenes[scene.id] = scene
        if self.state.bootstrap_done:
            self._publish_scenes()

    def remove_room(self, room_id: str) -> None:
        self.state.rooms.pop(room_id, None)
        if self.state.emitted_rooms.pop(room_id, None) is not None:
            self.sink.room_remove(room_id)

    def remove_group(self, group_id: str) -> None:
        self.state.groups.pop(group_id, None)
        if self.state.emitted_groups.pop(group_id, None) is not None:
            self.sink.group_remove(group_id)

    def remove_scene(self, scene_id: str) -> None:
        if self.state.scenes.pop(scene_id, None) is not None and self.state.bootstrap_done:
            self._publish_scenes()

    # Device metadata

    def apply_device_metadata(self, device_id: str, resource: Mapping[str, Any]) -> None:
        """Merge a fetched or streamed device resource into the model."""

        if not device_id:
            return
        state = self.state
        known = device_id in state.devices
        merged = deep_merge(state.raw_devices.get(device_id, {}), resource)
        merged.setdefault("id", device_id)
        state.raw_devices[device_id] = merged
        state.lazy_devices[device_id] = merged
        device = self._merge_device(merged)
        state.devices[device_id] = device
        for rtype, rid in _refs(merged, "services"):
            state.resource_to_device[(rtype, rid)] = device_id
        self._notify_device(device)
        if device_id in state.emitted:
            self._emit_device(device_id)
        elif not known and state.bootstrap_done and not state.awaiting_metadata:
            self.request_resync("new device")

    def update_device_meta(self, device_id: str, key: str, value: Any) -> None:
        device = self.state.devices.get(device_id)
        if device is None or device.meta.get(key) == value:
            return
        device.meta = dict(device.meta)
        device.meta[key] = copy.deepcopy(value)
        self.device_changed(device_id)

    def add_device_listener(self, listener: DeviceListener) -> Callable[[], None]:
        """Call `listener` whenever device metadata is merged; returns an unsubscribe."""

        self._device_listeners.append(listener)

        def _remove() -> None:
            if listener in self._device_listeners:
                self._device_listeners.remove(listener)

        return _remove

    def _notify_device(self, device: Device) -> None:
        for listener in list(self._device_listeners):
            try:
                listener(device)
            except Exception:
                self.logger.exception("Device listener failed", extra={"device_id": device.id})

    # Lookups used by handlers and the command path

    def resolve_device(self, resource_type: str, resource_id: str, resource: Mapping[str, Any]) -> str:
        """Owning device of a service resource; requests metadata for unknown owners."""

        state = self.state
        key = (resource_type, resource_id)
        if key in state.resource_to_device:
            return state.resource_to_device[key]
        if resource_type == "device":
            return resource_id if resource_id in state.devices else ""
        owner = owner_device_id(resource)
        if not owner:
            return ""
        if owner in state.devices:
            state.resource_to_device[key] = owner
            return owner
        if state.bootstrap_done and not self.metadata.is_failed(owner) and not self.metadata.is_pending(owner):
            self.metadata.request(owner)
        return ""

    def has_channel(self, device_id: str, channel_id: str) -> bool:
        return channel_id in self.state.channels.get(device_id, {})

    def channel(self, device_id: str, channel_id: str) -> Optional[Channel]:
        return self.state.channels.get(device_id, {}).get(channel_id)

    def binding(self, device_id: str, channel_id: str) -> Optional[ResourceBinding]:
        return self.state.bindings.get((device_id, channel_id))

    def gamut_for(self, binding: ResourceBinding) -> Optional[Gamut]:
        return self.state.gamuts.get(binding.resource_id)

    def button_channel(self, device_id: str, resource: Mapping[str, Any]) -> str:
        """Channel receiving events for a button resource on `device_id`."""

        channels = self.state.channels.get(device_id, {})
        mapped = self.state.button_to_channel.get(str(resource.get("id") or ""))
        if mapped and mapped in channels:
            return mapped
        control_id = _obj(resource.get("metadata")).get("control_id")
        if isinstance(control_id, int) and f"button{control_id}" in channels:
            return f"button{control_id}"
        if "button" in channels:
            return "button"
        for channel_id, channel in channels.items():
            if channel_id.startswith("button") and channel.kind == ChannelKind.BUTTON_EVENT:
                return channel_id
        return ""

    def request_resync(self, reason: str) -> None:
        self.logger.debug("Full resync requested", extra={"reason": reason})
        if self.resync_callback is not None:
            self.resync_callback(reason)

    def stats(self) -> Dict[str, Any]:
        state = self.state
        return {
            "bootstrap_done": state.bootstrap_done,
            "devices": len(state.emitted),
            "channels": sum(len(channels) for channels in state.channels.values()),
            "rooms": len(state.emitted_rooms),
            "groups": len(state.emitted_groups),
            "scenes": len(state.scenes),
            "degraded_types": sorted(state.snapshot.degraded_types) if state.snapshot else [],
            "metadata_in_flight": self.metadata.in_flight,
            "metadata_queued": self.metadata.queued,
        }

    async def close(self) -> None:
        await self.metadata.close()
