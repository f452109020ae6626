"""Per resource type handlers applying bridge state to the local model.

The same handlers seed values after a snapshot rebuild and apply deltas
arriving on the event stream.
"""

from __future__ import annotations

import time
from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, Iterable, Mapping, Optional

from .channels import software_update_index
from .color import rgb_to_hex, xy_to_rgb
from .effects import parse_effects
from .logging import get_logger
from .model import (
    ButtonEvent,
    Scene,
    SceneFlag,
    SceneState,
    SoftwareUpdateStatus,
    ZigbeeStatus,
)

if TYPE_CHECKING:
    from .reconciler import ModelReconciler

ZIGBEE_STATUS_CHANNEL = "zigbee_status"
SOFTWARE_UPDATE_CHANNEL = "device_software_update"

_BUTTON_EVENTS = {
    "initial_press": ButtonEvent.INITIAL_PRESS,
    "long_press": ButtonEvent.LONG_PRESS,
    "repeat": ButtonEvent.REPEAT,
    "short_release": ButtonEvent.SHORT_PRESS_RELEASE,
    "long_release": ButtonEvent.LONG_PRESS_RELEASE,
}


def now_ms() -> int:
    return int(time.time() * 1000)


def parse_timestamp_ms(value: Any) -> Optional[int]:
    """Parse the bridge's ISO-8601 `changed`/`updated` stamps to epoch ms."""

    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return int(datetime.fromisoformat(text).timestamp() * 1000)
    except ValueError:
        return None


def report_timestamp(report: Any, fallback: int) -> int:
    if isinstance(report, Mapping):
        for key in ("changed", "updated"):
            parsed = parse_timestamp_ms(report.get(key))
            if parsed is not None:
                return parsed
    return fallback


def _obj(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


def _first_non_empty(source: Mapping[str, Any], keys: Iterable[str]) -> Optional[Any]:
    for key in keys:
        value = source.get(key)
        if value is None:
            continue
        if isinstance(value, str) and not value.strip():
            continue
        return value
    return None


def owner_device_id(resource: Mapping[str, Any]) -> str:
    owner = _obj(resource.get("owner"))
    if owner.get("rtype") != "device":
        return ""
    return str(owner.get("rid") or "")


def parse_zigbee_status(raw: Any) -> ZigbeeStatus:
    text = str(raw or "").strip().lower()
    if text == "connected":
        return ZigbeeStatus.CONNECTED
    if text == "disconnected":
        return ZigbeeStatus.DISCONNECTED
    if any(token in text for token in ("issue", "limited", "degraded")):
        return ZigbeeStatus.LIMITED
    return ZigbeeStatus.UNKNOWN


def parse_software_update_status(raw: Any) -> SoftwareUpdateStatus:
    text = str(raw or "").strip().lower()
    if not text:
        return SoftwareUpdateStatus.UNKNOWN
    if text.replace("_", "").replace(" ", "") in {"uptodate", "noupdate", "noupdates"}:
        return SoftwareUpdateStatus.UP_TO_DATE
    if "ready" in text or "available" in text:
        return SoftwareUpdateStatus.UPDATE_AVAILABLE
    if "download" in text:
        return SoftwareUpdateStatus.DOWNLOADING
    if "install" in text:
        return SoftwareUpdateStatus.INSTALLING
    if "reboot" in text or "restart" in text:
        return SoftwareUpdateStatus.REBOOT_REQUIRED
    if "fail" in text:
        return SoftwareUpdateStatus.FAILED
    return SoftwareUpdateStatus.UNKNOWN


def software_update_payload(resource: Mapping[str, Any]) -> Dict[str, Any]:
    """Normalised software update state; keys absent from the resource are omitted."""

    raw = _first_non_empty(resource, ("state", "status"))
    payload: Dict[str, Any] = {
        "status": parse_software_update_status(raw).value,
        "statusRaw": str(raw or ""),
    }
    optional = {
        "currentVersion": ("current_version", "currentVersion", "version", "firmware", "installed_version"),
        "targetVersion": ("target_version", "targetVersion", "available_version", "version_available"),
        "releaseNotesUrl": ("release_notes_url", "releaseNotesUrl", "release_notes"),
        "message": ("message", "description", "details"),
    }
    for key, candidates in optional.items():
        value = _first_non_empty(resource, candidates)
        if value is not None:
            payload[key] = value
    if resource.get("id"):
        payload["payloadId"] = str(resource["id"])
    return payload


def connectivity_meta(resource: Mapping[str, Any]) -> Dict[str, Any]:
    meta: Dict[str, Any] = {"status": str(resource.get("status") or "")}
    if resource.get("mac_address"):
        meta["macAddress"] = resource["mac_address"]
    if resource.get("id"):
        meta["resourceId"] = resource["id"]
    return meta


def discovery_meta(resource: Mapping[str, Any]) -> Dict[str, Any]:
    meta: Dict[str, Any] = {"status": str(resource.get("status") or "")}
    if resource.get("id"):
        meta["resourceId"] = resource["id"]
    actions = _obj(resource.get("action")).get("action_type_values")
    if isinstance(actions, list):
        meta["actions"] = list(actions)
    return meta


def motion_value(resource: Mapping[str, Any]) -> Optional[bool]:
    motion = _obj(resource.get("motion"))
    if isinstance(motion.get("motion"), bool):
        return motion["motion"]
    report = _obj(motion.get("motion_report"))
    if isinstance(report.get("motion"), bool):
        return report["motion"]
    return None


def tamper_value(resource: Mapping[str, Any]) -> Optional[bool]:
    tamper = _obj(resource.get("tamper"))
    if isinstance(tamper.get("tamper"), bool):
        return tamper["tamper"]
    report = _obj(resource.get("tamper_report")) or _obj(tamper.get("tamper_report"))
    if isinstance(report.get("tamper"), bool):
        return report["tamper"]
    reports = resource.get("tamper_reports")
    if isinstance(reports, list) and reports:
        state = _obj(reports[-1]).get("state")
        if isinstance(state, str):
            return state == "tampered"
    return None


def temperature_value(resource: Mapping[str, Any]) -> Optional[float]:
    temperature = _obj(resource.get("temperature"))
    value = temperature.get("temperature")
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        value = _obj(temperature.get("temperature_report")).get("temperature")
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        return None
    value = float(value)
    # Some firmware reports hundredths of a degree.
    if abs(value) > 200:
        value /= 100.0
    return round(value, 2)


def light_level_value(resource: Mapping[str, Any]) -> Optional[int]:
    light = _obj(resource.get("light"))
    report = _obj(light.get("light_level_report"))
    for source in (report, light):
        lux = source.get("lux")
        if isinstance(lux, (int, float)) and not isinstance(lux, bool):
            return int(round(lux))
    for source in (report, light):
        level = source.get("light_level")
        if isinstance(level, (int, float)) and not isinstance(level, bool):
            return int(round(10 ** ((float(level) - 1.0) / 10000.0)))
    return None


def battery_level(resource: Mapping[str, Any]) -> Optional[int]:
    level = _obj(resource.get("power_state")).get("battery_level")
    if isinstance(level, (int, float)) and not isinstance(level, bool) and level >= 0:
        return int(level)
    return None


def button_event(resource: Mapping[str, Any]) -> Optional[ButtonEvent]:
    button = _obj(resource.get("button"))
    raw = _obj(button.get("button_report")).get("event") or button.get("last_event")
    if not isinstance(raw, str):
        return None
    return _BUTTON_EVENTS.get(raw)


def rotation_steps(resource: Mapping[str, Any]) -> Optional[int]:
    rotary = _obj(resource.get("relative_rotary"))
    event = _obj(_obj(rotary.get("rotary_report")).get("rotation")) or _obj(
        _obj(rotary.get("last_event")).get("rotation")
    )
    steps = event.get("steps")
    direction = event.get("direction")
    if not isinstance(steps, (int, float)) or isinstance(steps, bool) or steps == 0:
        return None
    if direction == "clock_wise":
        return int(steps)
    if direction == "counter_clock_wise":
        return -int(steps)
    return None


def scene_state(resource: Mapping[str, Any], default: SceneState = SceneState.INACTIVE) -> SceneState:
    active = _obj(resource.get("status")).get("active")
    if not isinstance(active, str):
        return default
    active = active.lower()
    if active in {"dynamic", "dynamic_palette"}:
        return SceneState.ACTIVE_DYNAMIC
    if active in {"static", "active"}:
        return SceneState.ACTIVE_STATIC
    return SceneState.INACTIVE


def parse_scene(resource: Mapping[str, Any], existing: Optional[Scene] = None) -> Optional[Scene]:
    """Build a scene from a full or partial resource; None for nameless stubs."""

    scene_id = str(resource.get("id") or "")
    if not scene_id:
        return None
    scene = Scene(id=scene_id, name="") if existing is None else Scene(**vars(existing))
    scene.meta = dict(scene.meta)
    metadata = _obj(resource.get("metadata"))
    if "name" in metadata:
        scene.name = str(metadata.get("name") or "").strip()
    if "description" in metadata:
        scene.description = str(metadata.get("description") or "")
    image = _obj(metadata.get("image")).get("rid")
    if image:
        scene.image = str(image)
    if "status" in resource:
        scene.state = scene_state(resource, scene.state)
    group = _obj(resource.get("group"))
    if group.get("rid"):
        scene.scope_id = str(group["rid"])
        rtype = str(group.get("rtype") or "")
        scene.scope_type = {"room": "room", "zone": "group"}.get(rtype, rtype)
        scene.meta["group"] = {"rid": scene.scope_id, "rtype": rtype}
    action_values = _obj(resource.get("status")).get("action_values") or resource.get("action_values")
    dynamic = (
        (isinstance(action_values, list) and "dynamic_palette" in action_values)
        or "speed" in resource
        or "auto_dynamic" in resource
    )
    if dynamic:
        scene.flags |= SceneFlag.SUPPORTS_DYNAMIC
    if not scene.name:
        return None
    return scene


class ResourceHandlers:
    """Apply one resource object of a given type to the model."""

    def __init__(self, reconciler: "ModelReconciler") -> None:
        self.reconciler = reconciler
        self.logger = get_logger("hue.reconcile")
        self._dispatch = {
            "light": self.handle_light,
            "motion": self.handle_motion,
            "camera_motion": self.handle_motion,
            "tamper": self.handle_tamper,
            "temperature": self.handle_temperature,
            "light_level": self.handle_light_level,
            "device_power": self.handle_device_power,
            "button": self.handle_button,
            "relative_rotary": self.handle_relative_rotary,
            "zigbee_connectivity": self.handle_zigbee_connectivity,
            "device_software_update": self.handle_software_update,
            "zigbee_device_discovery": self.handle_zigbee_discovery,
            "room": self.handle_room,
            "zone": self.handle_zone,
            "scene": self.handle_scene,
            "device": self.handle_device,
        }

    def handle(
        self,
        resource: Mapping[str, Any],
        timestamp_ms: Optional[int] = None,
        resource_type: Optional[str] = None,
    ) -> bool:
        """Route a resource to its handler; False when the type is not handled."""

        if resource_type is not None and "type" not in resource:
            resource = dict(resource, type=resource_type)
        handler = self._dispatch.get(str(resource.get("type") or ""))
        if handler is None:
            return False
        handler(resource, timestamp_ms if timestamp_ms is not None else now_ms())
        return True

    def _device_for(self, resource: Mapping[str, Any]) -> str:
        resource_type = str(resource.get("type") or "")
        return self.reconciler.resolve_device(resource_type, str(resource.get("id") or ""), resource)

    def handle_light(self, resource: Mapping[str, Any], ts: int) -> None:
        device_id = self._device_for(resource)
        if not device_id:
            return
        recon = self.reconciler
        values: Dict[str, Any] = {}
        on = _obj(resource.get("on")).get("on")
        if isinstance(on, bool):
            values["on"] = on
        brightness = _obj(resource.get("dimming")).get("brightness")
        if isinstance(brightness, (int, float)) and not isinstance(brightness, bool) and brightness >= 0:
            values["bri"] = min(100.0, max(0.0, float(brightness)))
        mirek = _obj(resource.get("color_temperature")).get("mirek")
        if isinstance(mirek, (int, float)) and not isinstance(mirek, bool) and mirek > 0:
            values["ct"] = int(mirek)
        xy = _obj(_obj(resource.get("color")).get("xy"))
        if isinstance(xy.get("x"), (int, float)) and isinstance(xy.get("y"), (int, float)):
            x, y = float(xy["x"]), float(xy["y"])
            values["color"] = {"x": x, "y": y, "hex": rgb_to_hex(xy_to_rgb(x, y))}

        missing = [channel_id for channel_id in values if not recon.has_channel(device_id, channel_id)]
        if missing:
            # The light reports a capability its channel list lacks.
            recon.request_resync(f"light gained {', '.join(missing)}")
        for channel_id, value in values.items():
            recon.set_value(device_id, channel_id, value, ts)

        device = recon.state.devices.get(device_id)
        if device is not None:
            added = parse_effects(resource, device.effects)
            if added:
                device.effects.extend(added)
                recon.device_changed(device_id)

    def handle_motion(self, resource: Mapping[str, Any], ts: int) -> None:
        device_id = self._device_for(resource)
        if not device_id:
            return
        motion = _obj(resource.get("motion"))
        value = motion_value(resource)
        if value is not None:
            self.reconciler.set_value(
                device_id, "motion", value, report_timestamp(motion.get("motion_report"), ts)
            )
        sensitivity = _obj(resource.get("sensitivity")).get("sensitivity")
        if isinstance(sensitivity, int) and not isinstance(sensitivity, bool) and 1 <= sensitivity <= 4:
            self.reconciler.set_value(device_id, "motion_sensitivity", sensitivity, ts)

    def handle_tamper(self, resource: Mapping[str, Any], ts: int) -> None:
        device_id = self._device_for(resource)
        value = tamper_value(resource)
        if device_id and value is not None:
            self.reconciler.set_value(device_id, "tamper", value, ts)

    def handle_temperature(self, resource: Mapping[str, Any], ts: int) -> None:
        device_id = self._device_for(resource)
        value = temperature_value(resource)
        if device_id and value is not None:
            report = _obj(resource.get("temperature")).get("temperature_report")
            self.reconciler.set_value(device_id, "temperature", value, report_timestamp(report, ts))

    def handle_light_level(self, resource: Mapping[str, Any], ts: int) -> None:
        device_id = self._device_for(resource)
        value = light_level_value(resource)
        if device_id and value is not None:
            report = _obj(resource.get("light")).get("light_level_report")
            self.reconciler.set_value(device_id, "illuminance", value, report_timestamp(report, ts))

    def handle_device_power(self, resource: Mapping[str, Any], ts: int) -> None:
        device_id = self._device_for(resource)
        value = battery_level(resource)
        if device_id and value is not None:
            self.reconciler.set_value(device_id, "battery", value, ts)

    def handle_button(self, resource: Mapping[str, Any], ts: int) -> None:
        device_id = self._device_for(resource)
        code = button_event(resource)
        if not device_id or code is None:
            return
        recon = self.reconciler
        channel_id = recon.button_channel(device_id, resource)
        if not channel_id:
            return
        report = _obj(resource.get("button")).get("button_report")
        event_ts = report_timestamp(report, ts)
        recon.multi_press.flush_stale(device_id, channel_id, event_ts)
        recon.emit_event(device_id, channel_id, code, event_ts)
        if code == ButtonEvent.SHORT_PRESS_RELEASE:
            recon.multi_press.short_release(device_id, channel_id, event_ts)

    def handle_relative_rotary(self, resource: Mapping[str, Any], ts: int) -> None:
        device_id = self._device_for(resource)
        steps = rotation_steps(resource)
        if not device_id or steps is None:
            return
        if not self.reconciler.has_channel(device_id, "dial"):
            return
        report = _obj(resource.get("relative_rotary")).get("rotary_report")
        self.reconciler.rotation.pulse(device_id, "dial", steps, report_timestamp(report, ts))

    def handle_zigbee_connectivity(self, resource: Mapping[str, Any], ts: int) -> None:
        device_id = self._device_for(resource)
        if not device_id:
            return
        recon = self.reconciler
        recon.update_device_meta(device_id, "zigbeeConnectivity", connectivity_meta(resource))
        status = parse_zigbee_status(resource.get("status"))
        if not recon.state.bootstrap_done or not recon.has_channel(device_id, ZIGBEE_STATUS_CHANNEL):
            recon.state.pending_connectivity[device_id] = status
            return
        recon.set_value(device_id, ZIGBEE_STATUS_CHANNEL, status, ts)

    def handle_software_update(self, resource: Mapping[str, Any], ts: int) -> None:
        device_id = self._device_for(resource)
        if not device_id:
            return
        recon = self.reconciler
        payload = software_update_payload(resource)
        recon.update_device_meta(device_id, "softwareUpdate", payload)
        index = software_update_index(SoftwareUpdateStatus(payload["status"]))
        if not recon.state.bootstrap_done or not recon.has_channel(device_id, SOFTWARE_UPDATE_CHANNEL):
            recon.state.pending_software_updates[device_id] = index
            return
        recon.set_value(device_id, SOFTWARE_UPDATE_CHANNEL, index, ts)

    def handle_zigbee_discovery(self, resource: Mapping[str, Any], ts: int) -> None:
        device_id = self._device_for(resource)
        if device_id:
            self.reconciler.update_device_meta(device_id, "zigbeeDeviceDiscovery", discovery_meta(resource))

    def handle_room(self, resource: Mapping[str, Any], ts: int) -> None:
        self.reconciler.update_room(resource)

    def handle_zone(self, resource: Mapping[str, Any], ts: int) -> None:
        self.reconciler.update_group(resource)

    def handle_scene(self, resource: Mapping[str, Any], ts: int) -> None:
        self.reconciler.update_scene(resource)

    def handle_device(self, resource: Mapping[str, Any], ts: int) -> None:
        self.reconciler.apply_device_metadata(str(resource.get("id") or ""), resource)
