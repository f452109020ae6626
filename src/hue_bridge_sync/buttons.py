"""Timers turning bursts of button and dial events into aggregated values."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

from .model import ButtonEvent
from .scheduler import Scheduler

EmitFn = Callable[[str, str, Any, int], None]

_AGGREGATED = {
    2: ButtonEvent.DOUBLE_PRESS,
    3: ButtonEvent.TRIPLE_PRESS,
    4: ButtonEvent.QUADRUPLE_PRESS,
}


def aggregated_event(count: int) -> ButtonEvent:
    """Multi-press code for `count` presses (2 or more), saturating at five."""

    if count >= 5:
        return ButtonEvent.QUINTUPLE_PRESS
    return _AGGREGATED[count]


@dataclass
class PressTracker:
    count: int = 0
    last_ts: int = 0


class MultiPressDebouncer:
    """Count short releases per (device, channel) and report multi-presses.

    Raw events are emitted by the caller as they arrive; this class only
    adds the aggregated Double/Triple/Quadruple/Quintuple event once the
    aggregation window closes.
    """

    def __init__(
        self,
        scheduler: Scheduler,
        emit: EmitFn,
        window: float = 1.2,
        reset_gap: float = 0.5,
    ) -> None:
        self._scheduler = scheduler
        self._emit = emit
        self._window = window
        self._reset_gap_ms = int(reset_gap * 1000)
        self._trackers: Dict[Tuple[str, str], PressTracker] = {}

    def flush_stale(self, device_id: str, channel_id: str, timestamp_ms: int) -> None:
        """Finalize a pending burst that ended more than the reset gap before `timestamp_ms`.

        Called before a new raw event on the channel is reported, so the
        prior burst's aggregated event always comes first.
        """

        tracker = self._trackers.get((device_id, channel_id))
        if tracker is not None and tracker.count and timestamp_ms - tracker.last_ts > self._reset_gap_ms:
            self.finalize(device_id, channel_id)

    def short_release(self, device_id: str, channel_id: str, timestamp_ms: int) -> None:
        key = (device_id, channel_id)
        self.flush_stale(device_id, channel_id, timestamp_ms)
        tracker = self._trackers.setdefault(key, PressTracker())
        tracker.count += 1
        tracker.last_ts = timestamp_ms
        self._scheduler.schedule(
            ("multi_press",) + key,
            self._window,
            lambda: self.finalize(device_id, channel_id),
        )

    def finalize(self, device_id: str, channel_id: str) -> None:
        key = (device_id, channel_id)
        self._scheduler.cancel(("multi_press",) + key)
        tracker = self._trackers.pop(key, None)
        if tracker is None or tracker.count < 2:
            return
        self._emit(device_id, channel_id, aggregated_event(tracker.count), tracker.last_ts)

    def pending_count(self, device_id: str, channel_id: str) -> int:
        tracker = self._trackers.get((device_id, channel_id))
        return tracker.count if tracker else 0

    def clear_device(self, device_id: str) -> None:
        for key in [key for key in self._trackers if key[0] == device_id]:
            self._scheduler.cancel(("multi_press",) + key)
            del self._trackers[key]


class RotationPulseResetter:
    """Report dial rotation as a pulse: the step count, then zero after a delay."""

    def __init__(
        self,
        scheduler: Scheduler,
        emit: EmitFn,
        reset_delay: float = 0.2,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        self._scheduler = scheduler
        self._emit = emit
        self._reset_delay = reset_delay
        self._clock = clock
        self._armed: Dict[Tuple[str, str], int] = {}

    def pulse(self, device_id: str, channel_id: str, steps: int, timestamp_ms: int) -> None:
        key = (device_id, channel_id)
        self._emit(device_id, channel_id, steps, timestamp_ms)
        self._armed[key] = timestamp_ms
        self._scheduler.schedule(("dial_reset",) + key, self._reset_delay, lambda: self._reset(key))

    def _reset(self, key: Tuple[str, str]) -> None:
        last_ts = self._armed.pop(key, None)
        if last_ts is None:
            return
        timestamp = self._clock() if self._clock is not None else last_ts + int(self._reset_delay * 1000)
        self._emit(key[0], key[1], 0, timestamp)

    def clear_device(self, device_id: str) -> None:
        for key in [key for key in self._armed if key[0] == device_id]:
            self._scheduler.cancel(("dial_reset",) + key)
            del self._armed[key]
