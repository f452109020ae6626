import asyncio

import pytest

from hue_bridge_sync.buttons import MultiPressDebouncer, RotationPulseResetter, aggregated_event
from hue_bridge_sync.model import ButtonEvent
from hue_bridge_sync.scheduler import Scheduler


def test_aggregated_event_saturates_at_five() -> None:
    assert aggregated_event(2) == ButtonEvent.DOUBLE_PRESS
    assert aggregated_event(4) == ButtonEvent.QUADRUPLE_PRESS
    assert aggregated_event(5) == ButtonEvent.QUINTUPLE_PRESS
    assert aggregated_event(9) == ButtonEvent.QUINTUPLE_PRESS


@pytest.mark.asyncio
async def test_double_press_emitted_after_window() -> None:
    emitted = []
    debouncer = MultiPressDebouncer(Scheduler(), lambda *args: emitted.append(args), window=0.05)

    debouncer.short_release("dev", "button1", 1000)
    debouncer.short_release("dev", "button1", 1200)
    assert emitted == []
    assert debouncer.pending_count("dev", "button1") == 2

    await asyncio.sleep(0.15)

    assert emitted == [("dev", "button1", ButtonEvent.DOUBLE_PRESS, 1200)]
    assert debouncer.pending_count("dev", "button1") == 0


@pytest.mark.asyncio
async def test_single_press_emits_nothing_extra() -> None:
    emitted = []
    debouncer = MultiPressDebouncer(Scheduler(), lambda *args: emitted.append(args), window=0.05)

    debouncer.short_release("dev", "button", 1000)
    await asyncio.sleep(0.15)

    assert emitted == []


@pytest.mark.asyncio
async def test_long_gap_starts_a_new_sequence() -> None:
    emitted = []
    debouncer = MultiPressDebouncer(
        Scheduler(), lambda *args: emitted.append(args), window=0.05, reset_gap=0.5
    )

    debouncer.short_release("dev", "button1", 1000)
    debouncer.short_release("dev", "button1", 1100)
    debouncer.short_release("dev", "button1", 5000)
    assert emitted == [("dev", "button1", ButtonEvent.DOUBLE_PRESS, 1100)]

    await asyncio.sleep(0.15)
    assert len(emitted) == 1


@pytest.mark.asyncio
async def test_stale_burst_flushes_before_a_new_press() -> None:
    emitted = []
    debouncer = MultiPressDebouncer(
        Scheduler(), lambda *args: emitted.append(args), window=0.05, reset_gap=0.5
    )

    debouncer.short_release("dev", "button1", 1000)
    debouncer.short_release("dev", "button1", 1200)
    debouncer.flush_stale("dev", "button1", 1500)
    assert emitted == []

    debouncer.flush_stale("dev", "button1", 1900)
    assert emitted == [("dev", "button1", ButtonEvent.DOUBLE_PRESS, 1200)]
    assert debouncer.pending_count("dev", "button1") == 0


@pytest.mark.asyncio
async def test_channels_are_counted_independently() -> None:
    emitted = []
    debouncer = MultiPressDebouncer(Scheduler(), lambda *args: emitted.append(args), window=0.05)

    debouncer.short_release("dev", "button1", 1000)
    debouncer.short_release("dev", "button2", 1050)
    debouncer.short_release("dev", "button1", 1100)
    await asyncio.sleep(0.15)

    assert emitted == [("dev", "button1", ButtonEvent.DOUBLE_PRESS, 1100)]


@pytest.mark.asyncio
async def test_cleared_device_never_reports() -> None:
    emitted = []
    debouncer = MultiPressDebouncer(Scheduler(), lambda *args: emitted.append(args), window=0.05)

    debouncer.short_release("dev", "button1", 1000)
    debouncer.short_release("dev", "button1", 1100)
    debouncer.clear_device("dev")
    await asyncio.sleep(0.15)

    assert emitted == []


@pytest.mark.asyncio
async def test_rotation_resets_to_zero_once_after_burst() -> None:
    emitted = []
    resetter = RotationPulseResetter(
        Scheduler(), lambda *args: emitted.append(args), reset_delay=0.05, clock=lambda: 9999
    )

    resetter.pulse("dev", "dial", 8, 1000)
    resetter.pulse("dev", "dial", 16, 1020)
    await asyncio.sleep(0.15)

    assert emitted == [
        ("dev", "dial", 8, 1000),
        ("dev", "dial", 16, 1020),
        ("dev", "dial", 0, 9999),
    ]


@pytest.mark.asyncio
async def test_cancel_all_stops_pending_timers() -> None:
    fired = []
    scheduler = Scheduler()
    scheduler.schedule("token", 0.02, lambda: fired.append("token"))
    assert scheduler.schedule_if_idle("token", 0.02, lambda: fired.append("other")) is False

    scheduler.cancel_all()
    await asyncio.sleep(0.05)

    assert fired == []
    assert scheduler.is_scheduled("token") is False
