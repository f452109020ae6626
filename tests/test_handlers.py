import pytest

from hue_bridge_sync.effects import parse_effects
from hue_bridge_sync.handlers import (
    button_event,
    light_level_value,
    parse_scene,
    parse_software_update_status,
    parse_timestamp_ms,
    parse_zigbee_status,
    rotation_steps,
    software_update_payload,
    temperature_value,
)
from hue_bridge_sync.model import (
    ButtonEvent,
    DeviceEffect,
    SceneFlag,
    SceneState,
    SoftwareUpdateStatus,
    ZigbeeStatus,
)


def test_timestamps_parse_to_epoch_ms() -> None:
    assert parse_timestamp_ms("2024-05-01T10:00:00Z") == 1714557600000
    assert parse_timestamp_ms("2024-05-01T10:00:00.250Z") == 1714557600250
    assert parse_timestamp_ms("yesterday") is None
    assert parse_timestamp_ms(None) is None


@pytest.mark.parametrize(
    "raw, status",
    [
        ("connected", ZigbeeStatus.CONNECTED),
        ("connectivity_issue", ZigbeeStatus.LIMITED),
        ("disconnected", ZigbeeStatus.DISCONNECTED),
        ("", ZigbeeStatus.UNKNOWN),
    ],
)
def test_zigbee_status(raw, status) -> None:
    assert parse_zigbee_status(raw) == status


@pytest.mark.parametrize(
    "raw, status",
    [
        ("no_update", SoftwareUpdateStatus.UP_TO_DATE),
        ("ready_to_install", SoftwareUpdateStatus.UPDATE_AVAILABLE),
        ("transferring_download", SoftwareUpdateStatus.DOWNLOADING),
        ("installing", SoftwareUpdateStatus.INSTALLING),
        ("reboot_needed", SoftwareUpdateStatus.REBOOT_REQUIRED),
        ("failed", SoftwareUpdateStatus.FAILED),
        (None, SoftwareUpdateStatus.UNKNOWN),
    ],
)
def test_software_update_status(raw, status) -> None:
    assert parse_software_update_status(raw) == status


def test_software_update_payload_keeps_known_fields() -> None:
    payload = software_update_payload(
        {"id": "swu-1", "state": "ready_to_install", "target_version": "1.122.8", "message": ""}
    )

    assert payload == {
        "status": "UpdateAvailable",
        "statusRaw": "ready_to_install",
        "targetVersion": "1.122.8",
        "payloadId": "swu-1",
    }


def test_sensor_values_are_normalised() -> None:
    assert temperature_value({"temperature": {"temperature": 2150}}) == 21.5
    assert temperature_value({"temperature": {"temperature_report": {"temperature": 19.874}}}) == 19.87
    assert temperature_value({"temperature": {}}) is None
    assert light_level_value({"light": {"light_level_report": {"light_level": 20001}}}) == 100
    assert light_level_value({"light": {"light_level": 1, "lux": 12.6}}) == 13


def test_button_and_rotary_reports() -> None:
    assert button_event({"button": {"button_report": {"event": "long_release"}}}) == ButtonEvent.LONG_PRESS_RELEASE
    assert button_event({"button": {"last_event": "initial_press"}}) == ButtonEvent.INITIAL_PRESS
    assert button_event({"button": {"last_event": "double_short_release"}}) is None

    rotary = {"relative_rotary": {"rotary_report": {"rotation": {"direction": "clock_wise", "steps": 15}}}}
    assert rotation_steps(rotary) == 15
    rotary["relative_rotary"]["rotary_report"]["rotation"]["steps"] = 0
    assert rotation_steps(rotary) is None


def test_effects_from_every_source_once() -> None:
    light = {
        "effects": {"effect_values": ["no_effect", "candle", "sparkle"]},
        "effects_v2": {"action": {"effect_values": ["candle", "opal"]}},
        "timed_effects": {"effect_values": ["sunrise"]},
    }

    effects = parse_effects(light)

    assert [(effect.id, effect.category) for effect in effects] == [
        ("candle", "effects"),
        ("sparkle", "effects"),
        ("opal", "effects"),
        ("sunrise", "timed_effects"),
    ]
    assert effects[0].effect == DeviceEffect.CANDLE
    assert effects[2].effect == DeviceEffect.SPARKLE
    assert effects[3].effect == DeviceEffect.RELAX
    assert parse_effects(light, effects) == []


def test_scene_merges_partial_updates() -> None:
    scene = parse_scene(
        {
            "id": "scene-1",
            "metadata": {"name": "Relax"},
            "group": {"rid": "zone-1", "rtype": "zone"},
            "status": {"active": "dynamic_palette"},
            "speed": 0.5,
        }
    )

    assert scene.scope_type == "group"
    assert scene.state == SceneState.ACTIVE_DYNAMIC
    assert scene.flags & SceneFlag.SUPPORTS_DYNAMIC

    updated = parse_scene({"id": "scene-1", "status": {"active": "inactive"}}, scene)
    assert updated.name == "Relax"
    assert updated.state == SceneState.INACTIVE
    assert parse_scene({"id": "scene-2", "metadata": {}}) is None
