import asyncio

import pytest

from bridge_data import (
    button,
    color_light,
    cycle,
    device,
    lamp_resources,
    owner,
    plain_light,
    room,
)
from hue_bridge_sync.model import ButtonEvent, DeviceClass, ZigbeeStatus


def test_rebuild_announces_devices_channels_and_values(make_reconciler, sink) -> None:
    reconciler = make_reconciler()

    assert reconciler.rebuild(cycle()) is True

    assert sink.channel_ids("dev-lamp") == ["on", "bri", "ct", "ctPreset", "color", "zigbee_status"]
    lamp, channels = sink.devices["dev-lamp"]
    assert lamp.name == "Desk Lamp"
    assert lamp.model == "LCA001"
    assert lamp.device_class == DeviceClass.LIGHT
    assert [effect.id for effect in lamp.effects] == ["candle", "fire"]
    ct = next(channel for channel in channels if channel.id == "ct")
    assert (ct.min_value, ct.max_value) == (153.0, 454.0)

    assert sink.values("dev-lamp", "on") == [True]
    assert sink.values("dev-lamp", "bri") == [42.0]
    assert sink.values("dev-lamp", "ct") == [300]
    assert sink.values("dev-lamp", "zigbee_status") == [ZigbeeStatus.CONNECTED]
    color = sink.values("dev-lamp", "color")[0]
    assert color["x"] == 0.4 and color["hex"].startswith("#")

    assert sink.of("connectivity") == [("connectivity", True)]
    assert sink.of("room_upsert") == [("room_upsert", "room-1", ("dev-lamp", "dev-switch"))]
    assert sink.of("scenes_replace") == [("scenes_replace", ["scene-1"])]


def test_rebuild_is_idempotent(make_reconciler, sink) -> None:
    reconciler = make_reconciler()
    reconciler.rebuild(cycle())
    sink.clear()

    reconciler.rebuild(cycle())

    assert sink.calls == []


def test_button_channels_follow_button_count(make_reconciler, sink) -> None:
    reconciler = make_reconciler()
    reconciler.rebuild(cycle())

    assert sink.channel_ids("dev-switch") == ["button1", "button2"]
    assert sink.channel_ids("dev-remote") == ["button"]
    assert sink.devices["dev-switch"][0].device_class == DeviceClass.SWITCH
    assert sink.devices["dev-remote"][0].device_class == DeviceClass.BUTTON
    # Momentary button state from the snapshot is not replayed.
    assert sink.values("dev-switch", "button1") == []


def test_buttons_without_control_id_get_distinct_channels(make_reconciler, sink) -> None:
    reconciler = make_reconciler()
    resources = lamp_resources()
    for resource in resources["button"]:
        if resource["owner"]["rid"] == "dev-switch":
            resource["metadata"] = {}
    resources["button"].append(button("btn-3", "dev-switch", 1))
    switch = next(item for item in resources["device"] if item["id"] == "dev-switch")
    switch["services"].append({"rtype": "button", "rid": "btn-3"})

    reconciler.rebuild(cycle(resources))

    assert sink.channel_ids("dev-switch") == ["button1", "button2", "button3"]
    channel_ids = ("button1", "button2", "button3")
    bound = {reconciler.binding("dev-switch", channel_id).resource_id for channel_id in channel_ids}
    assert bound == {"btn-1", "btn-2", "btn-3"}
    assert reconciler.binding("dev-switch", "button1").resource_id == "btn-3"
    assert reconciler.button_channel("dev-switch", {"id": "btn-2"}) == "button2"


def test_on_only_light_exposes_single_channel(make_reconciler, sink) -> None:
    resyncs = []
    reconciler = make_reconciler(resyncs=resyncs)
    resources = {
        "device": [device("dev-plug", "Coffee", [("light", "light-7")], product_name="Hue smart plug")],
        "light": [plain_light("light-7", "dev-plug")],
    }

    reconciler.rebuild(cycle(resources))

    assert sink.channel_ids("dev-plug") == ["on"]
    assert sink.devices["dev-plug"][0].device_class == DeviceClass.PLUG
    assert sink.values("dev-plug", "on") == [False]

    reconciler.handlers.handle(
        {"id": "light-7", "type": "light", "owner": owner("dev-plug"), "dimming": {"brightness": 10.0}}
    )
    assert resyncs == ["light gained bri"]
    assert sink.values("dev-plug", "bri") == []


def test_degraded_cycle_keeps_button_channels(make_reconciler, sink) -> None:
    reconciler = make_reconciler()
    reconciler.rebuild(cycle())
    sink.clear()

    assert reconciler.rebuild(cycle(degraded=["button"])) is True

    assert sink.of("device_upsert") == []
    assert sink.of("device_remove") == []
    assert reconciler.has_channel("dev-switch", "button2")

    pressed = button("btn-2", "dev-switch", 2)
    pressed["button"] = {"button_report": {"event": "initial_press", "updated": "2024-05-01T10:00:00Z"}}
    reconciler.handlers.handle(pressed)
    assert sink.values("dev-switch", "button2") == [ButtonEvent.INITIAL_PRESS]


@pytest.mark.asyncio
async def test_removed_device_is_reported_once(make_reconciler, sink) -> None:
    reconciler = make_reconciler()
    reconciler.rebuild(cycle())
    resources = lamp_resources()
    resources["device"] = [item for item in resources["device"] if item["id"] != "dev-lamp"]
    resources["light"] = []
    resources["zigbee_connectivity"] = []
    sink.clear()

    reconciler.rebuild(cycle(resources))
    assert sink.of("device_remove") == [("device_remove", "dev-lamp")]

    reconciler.handlers.handle(color_light("light-1", "dev-lamp", brightness=90.0))
    await asyncio.sleep(0.05)
    reconciler.remove_device("dev-lamp")
    reconciler.rebuild(cycle(resources))

    assert sink.of("device_remove") == [("device_remove", "dev-lamp")]
    assert [call for call in sink.of("channel_value") if call[1] == "dev-lamp"] == []
    await reconciler.close()


def test_zone_membership_expands_rooms(make_reconciler, sink) -> None:
    reconciler = make_reconciler()
    resources = lamp_resources()
    resources["zone"] = [
        {
            "id": "zone-1",
            "type": "zone",
            "metadata": {"name": "Downstairs", "archetype": "home"},
            "children": [{"rtype": "room", "rid": "room-1"}, {"rtype": "light", "rid": "light-1"}],
        }
    ]

    reconciler.rebuild(cycle(resources))

    assert sink.of("group_upsert") == [("group_upsert", "zone-1", ("dev-lamp", "dev-switch"))]

    resources["zone"] = []
    reconciler.rebuild(cycle(resources))
    assert sink.of("group_remove") == [("group_remove", "zone-1")]


def test_partial_room_update_keeps_members(make_reconciler, sink) -> None:
    resyncs = []
    reconciler = make_reconciler(resyncs=resyncs)
    reconciler.rebuild(cycle())
    sink.clear()

    reconciler.handlers.handle({"id": "room-1", "type": "room", "metadata": {"name": "Lounge"}})
    reconciler.handlers.handle({"id": "room-404", "type": "room", "metadata": {"name": "Attic"}})

    assert sink.of("room_upsert") == [("room_upsert", "room-1", ("dev-lamp", "dev-switch"))]
    assert reconciler.state.rooms["room-1"].name == "Lounge"
    assert resyncs == ["unknown room"]


def test_nameless_scene_is_skipped(make_reconciler, sink) -> None:
    reconciler = make_reconciler()
    resources = lamp_resources()
    resources["scene"].append({"id": "scene-2", "type": "scene", "metadata": {}, "group": {"rid": "room-1", "rtype": "room"}})

    reconciler.rebuild(cycle(resources))

    assert sink.of("scenes_replace") == [("scenes_replace", ["scene-1"])]


def test_device_name_falls_back_to_product_then_placeholder(make_reconciler, sink) -> None:
    reconciler = make_reconciler()
    named_by_product = device("dev-a", "", [("light", "light-a")])
    anonymous = device("dev-b", "", [("light", "light-b")], product_name="")
    resources = {
        "device": [named_by_product, anonymous],
        "light": [plain_light("light-a", "dev-a"), plain_light("light-b", "dev-b")],
    }

    reconciler.rebuild(cycle(resources))

    assert sink.devices["dev-a"][0].name == "Hue color lamp"
    assert sink.devices["dev-b"][0].name == "Hue Device"


def test_software_update_reported_as_choice(make_reconciler, sink) -> None:
    reconciler = make_reconciler()
    resources = lamp_resources()
    resources["device_software_update"] = [
        {"id": "swu-1", "type": "device_software_update", "owner": owner("dev-lamp"), "state": "ready_to_install"}
    ]

    reconciler.rebuild(cycle(resources))

    assert "device_software_update" in sink.channel_ids("dev-lamp")
    assert sink.values("dev-lamp", "device_software_update") == [1]
    assert sink.devices["dev-lamp"][0].meta["softwareUpdate"]["status"] == "UpdateAvailable"


@pytest.mark.asyncio
async def test_missing_owner_metadata_is_fetched_before_reconciling(make_reconciler, sink) -> None:
    remote = {"dev-late": device("dev-late", "Late Lamp", [("light", "light-5")])}
    reconciler = make_reconciler(remote=remote)
    resources = {"device": [], "light": [color_light("light-5", "dev-late")]}

    assert reconciler.rebuild(cycle(resources)) is False
    await asyncio.wait_for(reconciler.wait_settled(), timeout=1.0)

    assert sink.devices["dev-late"][0].name == "Late Lamp"
    assert sink.values("dev-late", "bri") == [42.0]
    await reconciler.close()


@pytest.mark.asyncio
async def test_failed_owner_metadata_skips_resources(make_reconciler, sink) -> None:
    reconciler = make_reconciler(remote={"dev-late": RuntimeError("bridge busy")})
    resources = {
        "device": [device("dev-lamp", "Desk Lamp", [("light", "light-1")])],
        "light": [color_light("light-1", "dev-lamp"), color_light("light-5", "dev-late")],
    }

    assert reconciler.rebuild(cycle(resources)) is False
    await asyncio.wait_for(reconciler.wait_settled(), timeout=1.0)

    assert "dev-late" not in sink.devices
    assert "dev-lamp" in sink.devices
    assert sink.of("connectivity") == [("connectivity", True)]
    await reconciler.close()


@pytest.mark.asyncio
async def test_short_releases_aggregate_into_multi_press(make_reconciler, sink) -> None:
    reconciler = make_reconciler()
    reconciler.rebuild(cycle())

    for index in range(4):
        release = button("btn-1", "dev-switch", 1)
        release["button"] = {
            "button_report": {"event": "short_release", "updated": f"2024-05-01T10:00:00.{index}00Z"}
        }
        reconciler.handlers.handle(release)
    await asyncio.sleep(0.2)

    assert sink.values("dev-switch", "button1") == [ButtonEvent.SHORT_PRESS_RELEASE] * 4 + [
        ButtonEvent.QUADRUPLE_PRESS
    ]


@pytest.mark.asyncio
async def test_dial_rotation_pulses_then_resets(make_reconciler, sink) -> None:
    reconciler = make_reconciler()
    resources = {
        "device": [
            device("dev-tap", "Tap Dial", [("button", "btn-t1"), ("relative_rotary", "rot-1")], product_name="Hue tap dial switch")
        ],
        "button": [button("btn-t1", "dev-tap", 1)],
        "room": [room("room-1", "Living Room", ["dev-tap"])],
    }
    reconciler.rebuild(cycle(resources))

    reconciler.handlers.handle(
        {
            "id": "rot-1",
            "type": "relative_rotary",
            "owner": owner("dev-tap"),
            "relative_rotary": {
                "rotary_report": {
                    "action": "repeat",
                    "rotation": {"direction": "counter_clock_wise", "steps": 30, "duration": 400},
                }
            },
        }
    )
    await asyncio.sleep(0.1)

    assert sink.values("dev-tap", "dial") == [-30, 0]
