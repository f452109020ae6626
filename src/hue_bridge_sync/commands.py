"""Translate host commands into bridge resource updates."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Tuple

from .channels import CT_PRESET_COUNT, DEFAULT_MIREK_MAX, DEFAULT_MIREK_MIN
from .color import clamp_to_gamut, parse_hex, rgb_to_xy
from .errors import CommandValidationFailure, UnknownEntityError
from .model import Device, EffectDescriptor, Scene
from .reconciler import ModelReconciler

# Protocol limits for raw color temperature writes, wider than any light's
# advertised range. Preset writes interpolate inside the advertised range.
MIREK_WRITE_MIN = 100
MIREK_WRITE_MAX = 1000

_TRUE_STRINGS = {"1", "true", "on", "yes"}
_FALSE_STRINGS = {"0", "false", "off", "no"}

_SCENE_ACTIONS = {
    "": "active",
    "activate": "active",
    "active": "active",
    "static": "static",
    "deactivate": "inactive",
    "inactive": "inactive",
    "dynamic": "dynamic_palette",
    "dynamic_palette": "dynamic_palette",
}

DISCOVERY_BODY: Dict[str, Any] = {
    "state": "start",
    "action": {"type": "search", "action_type": "search"},
}


@dataclass(frozen=True)
class BridgeCommand:
    """A validated resource update ready to PUT, plus the value to echo back."""

    resource_type: str
    resource_id: str
    body: Dict[str, Any]
    value: Any = None


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    if isinstance(value, str):
        text = value.strip().lower()
        if text in _TRUE_STRINGS:
            return True
        if text in _FALSE_STRINGS:
            return False
    raise CommandValidationFailure(f"Expected a boolean, got {value!r}")


def parse_number(value: Any, name: str) -> float:
    result = None
    if _is_number(value):
        result = float(value)
    elif isinstance(value, str):
        try:
            result = float(value.strip())
        except ValueError:
            pass
    if result is None:
        raise CommandValidationFailure(f"{name} must be numeric, got {value!r}")
    if not math.isfinite(result):
        raise CommandValidationFailure(f"{name} must be a finite number, got {value!r}")
    return result


def parse_rgb(value: Any) -> Tuple[float, float, float]:
    """Accept `#rrggbb`, `{"hex": ...}` or `{"r","g","b"}` and return 0-1 components."""

    if isinstance(value, Mapping) and "hex" in value:
        value = value["hex"]
    if isinstance(value, str):
        rgb = parse_hex(value)
        if rgb is None:
            raise CommandValidationFailure(f"Invalid hex color {value!r}")
        return rgb[0] / 255.0, rgb[1] / 255.0, rgb[2] / 255.0
    if isinstance(value, Mapping):
        components = [value.get(key) for key in ("r", "g", "b")]
        if not all(_is_number(component) and math.isfinite(component) for component in components):
            raise CommandValidationFailure("Color object needs numeric r, g and b")
        floats = [float(component) for component in components]
        if any(component < 0 for component in floats):
            raise CommandValidationFailure("Color components must not be negative")
        scale = 255.0 if any(component > 1.0 for component in floats) else 1.0
        r, g, b = (min(1.0, component / scale) for component in floats)
        return r, g, b
    raise CommandValidationFailure(f"Unsupported color value {value!r}")


def scene_action(action: Optional[str]) -> str:
    key = (action or "").strip().lower()
    return _SCENE_ACTIONS.get(key, key)


def scene_target(scene: Scene) -> Tuple[str, str]:
    """Group resource (type, id) a scene recall applies to."""

    group = scene.meta.get("group") or {}
    rtype = str(group.get("rtype") or "")
    if not rtype:
        rtype = {"room": "room", "group": "zone"}.get(scene.scope_type, scene.scope_type)
    return rtype, str(group.get("rid") or scene.scope_id)


def recall_body(
    action: Optional[str],
    target: Optional[Mapping[str, str]] = None,
    duration_ms: Optional[int] = None,
) -> Dict[str, Any]:
    recall: Dict[str, Any] = {"action": scene_action(action)}
    if target is not None:
        recall["target"] = dict(target)
    if duration_ms is not None:
        if duration_ms < 0:
            raise CommandValidationFailure("Transition duration must not be negative")
        recall["duration"] = int(duration_ms)
    return {"recall": recall}


def rename_body(name: str) -> Dict[str, Any]:
    cleaned = (name or "").strip()
    if not cleaned:
        raise CommandValidationFailure("Device name must not be empty")
    if len(cleaned) > 32:
        raise CommandValidationFailure("Device name must be at most 32 characters")
    return {"metadata": {"name": cleaned}}


def find_effect(device: Device, effect: str) -> Optional[EffectDescriptor]:
    key = effect.strip().lower()
    for descriptor in device.effects:
        if key in (descriptor.id.lower(), descriptor.label.lower()):
            return descriptor
    for descriptor in device.effects:
        if descriptor.effect.value == key:
            return descriptor
    return None


def effect_body(descriptor: Optional[EffectDescriptor], duration_ms: Optional[int] = None) -> Dict[str, Any]:
    """Body starting an effect; None stops any running effect."""

    if descriptor is None:
        return {"effects": {"effect": "no_effect"}}
    if descriptor.category == "timed_effects":
        timed: Dict[str, Any] = {"effect": descriptor.id}
        if duration_ms is not None:
            if duration_ms < 0:
                raise CommandValidationFailure("Effect duration must not be negative")
            timed["duration"] = int(duration_ms)
        return {"timed_effects": timed}
    return {"effects": {"effect": descriptor.id}}


class CommandTranslator:
    """Validate channel writes and build the matching resource update.

    Every failure raises before a request is built, so the caller never
    sends a partial update.
    """

    def __init__(self, reconciler: ModelReconciler) -> None:
        self.reconciler = reconciler

    def translate(self, device_id: str, channel_id: str, value: Any) -> BridgeCommand:
        if device_id not in self.reconciler.state.devices:
            raise UnknownEntityError(f"Unknown device {device_id}")
        channel = self.reconciler.channel(device_id, channel_id)
        if channel is None:
            raise UnknownEntityError(f"Unknown channel {channel_id} on device {device_id}")
        binding = self.reconciler.binding(device_id, channel_id)
        if binding is None or binding.resource_type != "light":
            raise CommandValidationFailure(f"Channel {channel_id} is not writable")

        if channel_id == "on":
            on = parse_bool(value)
            return BridgeCommand("light", binding.resource_id, {"on": {"on": on}}, on)

        if channel_id == "bri":
            brightness = min(100.0, max(0.0, parse_number(value, "Brightness")))
            return BridgeCommand("light", binding.resource_id, {"dimming": {"brightness": brightness}}, brightness)

        if channel_id == "ct":
            mirek = parse_number(value, "Color temperature")
            mirek = int(round(min(float(MIREK_WRITE_MAX), max(float(MIREK_WRITE_MIN), mirek))))
            return BridgeCommand("light", binding.resource_id, {"color_temperature": {"mirek": mirek}}, mirek)

        if channel_id == "ctPreset":
            index = int(round(parse_number(value, "Color temperature preset")))
            index = min(CT_PRESET_COUNT - 1, max(0, index))
            ct = self.reconciler.channel(device_id, "ct")
            low = ct.min_value if ct is not None and ct.min_value is not None else DEFAULT_MIREK_MIN
            high = ct.max_value if ct is not None and ct.max_value is not None else DEFAULT_MIREK_MAX
            mirek = int(round(low + (index / (CT_PRESET_COUNT - 1)) * (high - low)))
            return BridgeCommand("light", binding.resource_id, {"color_temperature": {"mirek": mirek}}, index)

        if channel_id == "color":
            x, y = rgb_to_xy(*parse_rgb(value))
            gamut = self.reconciler.gamut_for(binding)
            x, y = clamp_to_gamut((x, y), gamut.points if gamut is not None else None)
            x, y = round(x, 4), round(y, 4)
            return BridgeCommand("light", binding.resource_id, {"color": {"xy": {"x": x, "y": y}}}, value)

        raise CommandValidationFailure(f"Channel {channel_id} does not accept writes")

    def light_target(self, device_id: str) -> str:
        """Light resource id used for device wide commands such as effects."""

        for channel_id in ("on", "bri", "color", "ct"):
            binding = self.reconciler.binding(device_id, channel_id)
            if binding is not None and binding.resource_type == "light":
                return binding.resource_id
        raise CommandValidationFailure(f"Device {device_id} has no light service")

    def effect(self, device_id: str, effect: Optional[str], duration_ms: Optional[int] = None) -> BridgeCommand:
        device = self.reconciler.state.devices.get(device_id)
        if device is None:
            raise UnknownEntityError(f"Unknown device {device_id}")
        target = self.light_target(device_id)
        descriptor = None
        if effect and effect.strip().lower() not in ("none", "no_effect", "stop"):
            descriptor = find_effect(device, effect)
            if descriptor is None:
                raise CommandValidationFailure(f"Device {device_id} does not support effect {effect!r}")
        return BridgeCommand("light", target, effect_body(descriptor, duration_ms), effect)

    def scene(
        self,
        scene_id: str,
        action: Optional[str] = None,
        group_id: Optional[str] = None,
        duration_ms: Optional[int] = None,
    ) -> BridgeCommand:
        scene = self.reconciler.state.scenes.get(scene_id)
        if scene is None:
            raise UnknownEntityError(f"Unknown scene {scene_id}")
        rtype, scope_id = scene_target(scene)
        rid = group_id or scope_id
        target = {"rid": rid, "rtype": rtype} if rid else None
        body = recall_body(action, target, duration_ms)
        return BridgeCommand("scene", scene_id, body, scene_action(action))

    def rename(self, device_id: str, name: str) -> BridgeCommand:
        if not device_id:
            raise CommandValidationFailure("Device id must not be empty")
        if device_id not in self.reconciler.state.devices:
            raise UnknownEntityError(f"Unknown device {device_id}")
        body = rename_body(name)
        return BridgeCommand("device", device_id, body, body["metadata"]["name"])
