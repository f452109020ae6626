"""Light effect lists reported by the bridge."""

from __future__ import annotations

from typing import Any, Iterable, List, Mapping

from .model import DeviceEffect, EffectDescriptor

_SPARKLE_NAMES = {"sparkle", "glisten", "opal", "prism", "underwater", "enchant", "cosmos"}


def beautify_label(value: str) -> str:
    words = value.replace("_", " ").replace("-", " ").split()
    return " ".join(word[:1].upper() + word[1:].lower() for word in words)


def map_effect_name(value: str) -> DeviceEffect:
    key = value.strip().lower()
    if key == "candle":
        return DeviceEffect.CANDLE
    if key in {"fire", "sunbeam"}:
        return DeviceEffect.FIREPLACE
    if key in _SPARKLE_NAMES:
        return DeviceEffect.SPARKLE
    if key == "colorloop" or "palette" in key:
        return DeviceEffect.COLOR_LOOP
    if key in {"sunrise", "sunset"}:
        return DeviceEffect.RELAX
    return DeviceEffect.CUSTOM_VENDOR


def _effect_values(source: Mapping[str, Any], *path: str) -> List[Any]:
    node: Any = source
    for key in path:
        if not isinstance(node, Mapping):
            return []
        node = node.get(key)
    return list(node) if isinstance(node, list) else []


def parse_effects(
    source: Mapping[str, Any], existing: Iterable[EffectDescriptor] = ()
) -> List[EffectDescriptor]:
    """Return descriptors for effects in a light resource not already in `existing`."""

    seen = set()
    for descriptor in existing:
        seen.add(descriptor.id.lower())
        seen.add(descriptor.label.lower())

    added: List[EffectDescriptor] = []
    sources = (
        (_effect_values(source, "effects", "effect_values"), "effects"),
        (_effect_values(source, "effects_v2", "action", "effect_values"), "effects"),
        (_effect_values(source, "timed_effects", "effect_values"), "timed_effects"),
    )
    for values, category in sources:
        for raw in values:
            if not isinstance(raw, str):
                continue
            value = raw.strip()
            key = value.lower()
            if not value or key == "no_effect" or key in seen:
                continue
            seen.add(key)
            label = beautify_label(value)
            added.append(
                EffectDescriptor(
                    id=value,
                    label=label,
                    effect=map_effect_name(value),
                    description=f"Hue effect {label}",
                    category=category,
                )
            )
    return added
