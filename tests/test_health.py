import asyncio

import pytest

from hue_bridge_sync.events import (
    EVENT_CHANNEL_VALUE,
    EVENT_DEVICE_REMOVED,
    EVENT_HEALTH_STATUS_CHANGED,
    EventBus,
)
from hue_bridge_sync.health import BackoffPolicy, HealthMonitor, ReconnectSchedule
from hue_bridge_sync.model import Channel, ChannelDataType, ChannelKind, Device
from hue_bridge_sync.store import StateStore


def test_backoff_grows_to_maximum() -> None:
    policy = BackoffPolicy(base=1.0, factor=2.0, maximum=5.0)

    assert [policy.delay(failures) for failures in range(5)] == [0.0, 1.0, 2.0, 4.0, 5.0]
    assert policy.delay(10_000) == 5.0


def test_reconnect_schedule_switches_to_slow_interval() -> None:
    schedule = ReconnectSchedule(fast_retries=2, fast_delay=0.5, slow_interval=10.0)

    assert [schedule.phase(attempt) for attempt in (1, 2, 3)] == ["fast", "fast", "slow"]
    assert [schedule.delay(attempt) for attempt in (1, 2, 3)] == [0.5, 0.5, 10.0]


@pytest.mark.asyncio
async def test_circuit_opens_then_recovers() -> None:
    bus = EventBus()
    changes = []
    bus.subscribe(EVENT_HEALTH_STATUS_CHANGED, lambda event: changes.append(event.data["status"]))
    monitor = HealthMonitor(("snapshot",), failure_threshold=2, cooldown_seconds=0.05, event_bus=bus)

    await monitor.record_failure("snapshot", RuntimeError("timeout"))
    assert (await monitor.allow_attempt("snapshot"))[0] is True
    await monitor.record_failure("snapshot", RuntimeError("timeout"))

    allowed, remaining = await monitor.allow_attempt("snapshot")
    assert allowed is False
    assert 0 < remaining <= 0.05

    await asyncio.sleep(0.06)
    assert (await monitor.allow_attempt("snapshot"))[0] is True
    await monitor.record_success("snapshot")

    snapshot = await monitor.snapshot()
    assert snapshot["snapshot"]["status"] == "ok"
    assert snapshot["snapshot"]["suppressions"] == 1
    assert changes == ["failing", "suppressed", "recovering", "ok"]


@pytest.mark.asyncio
async def test_degraded_cycle_does_not_count_toward_suppression() -> None:
    bus = EventBus()
    changes = []
    bus.subscribe(EVENT_HEALTH_STATUS_CHANGED, lambda event: changes.append(event.data))
    monitor = HealthMonitor(("snapshot",), failure_threshold=2, cooldown_seconds=30, event_bus=bus)

    await monitor.record_failure("snapshot", RuntimeError("timeout"))
    await monitor.record_degraded("snapshot", ["temperature", "button"])
    await monitor.record_failure("snapshot", RuntimeError("timeout"))

    state = (await monitor.snapshot())["snapshot"]
    assert state["status"] == "failing"
    assert state["failures"] == 1
    assert (await monitor.allow_attempt("snapshot"))[0] is True
    assert changes[1]["status"] == "degraded"
    assert changes[1]["degraded_types"] == ["button", "temperature"]


@pytest.mark.asyncio
async def test_stream_retry_phase_is_reported_until_reconnected() -> None:
    monitor = HealthMonitor(("stream",), failure_threshold=5, cooldown_seconds=30)

    await monitor.record_failure("stream", RuntimeError("closed"))
    await monitor.record_retry("stream", 6, "slow")
    state = (await monitor.snapshot())["stream"]
    assert (state["retry_attempt"], state["retry_phase"]) == (6, "slow")

    await monitor.record_success("stream")
    state = (await monitor.snapshot())["stream"]
    assert (state["status"], state["retry_attempt"], state["retry_phase"]) == ("ok", 0, None)


def _device(device_id: str = "dev-1") -> Device:
    return Device(id=device_id, name="Lamp")


def _channel(value=None) -> Channel:
    return Channel(
        id="bri",
        name="Brightness",
        kind=ChannelKind.BRIGHTNESS,
        data_type=ChannelDataType.FLOAT,
        value=value,
    )


@pytest.mark.asyncio
async def test_store_keeps_values_across_reannouncement() -> None:
    store = StateStore()
    store.device_upsert(_device(), [_channel()])
    store.channel_value("dev-1", "bri", 40.0, 1000)

    store.device_upsert(_device(), [_channel()])

    assert store.channels("dev-1")[0].value == 40.0
    assert store.channels("dev-1")[0].updated_ms == 1000


@pytest.mark.asyncio
async def test_store_publishes_model_events() -> None:
    bus = EventBus()
    seen = []
    unsubscribe = bus.subscribe("*", lambda event: seen.append(event.to_dict()))
    store = StateStore(bus)

    store.device_upsert(_device(), [_channel()])
    store.channel_value("dev-1", "bri", 12.5, 2000)
    store.channel_value("dev-1", "missing", 1, 2000)
    store.device_remove("dev-1")
    unsubscribe()
    store.connectivity(True)

    assert [event["event"] for event in seen] == ["device_upserted", EVENT_CHANNEL_VALUE, EVENT_DEVICE_REMOVED]
    assert seen[1]["data"] == {"device_id": "dev-1", "channel_id": "bri", "value": 12.5, "timestamp_ms": 2000}
    assert store.devices() == []


@pytest.mark.asyncio
async def test_failing_subscriber_does_not_block_others() -> None:
    bus = EventBus()
    received = []

    def _broken(event) -> None:
        raise RuntimeError("boom")

    async def _async_listener(event) -> None:
        received.append(event.event_type)

    bus.subscribe("connectivity_changed", _broken)
    bus.subscribe("connectivity_changed", _async_listener)

    await bus.publish("connectivity_changed", {"connected": False})
    await asyncio.sleep(0)

    assert received == ["connectivity_changed"]
