"""Health of the bridge facing loops: snapshot cycles, the event stream and the API.

Each subsystem moves between these states:

* ``ok``: the last attempt succeeded completely.
* ``degraded``: the last snapshot cycle completed but some resource types
  were carried over from the previous model.
* ``failing``: attempts fail, fewer than the threshold in a row.
* ``suppressed``: the threshold was reached; attempts wait for the cooldown.
* ``recovering``: the cooldown passed and a new attempt is running.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from .config import Config
from .events import EVENT_HEALTH_STATUS_CHANGED, EventBus
from .metrics import record_subsystem_failure, record_subsystem_status

STATUS_OK = "ok"
STATUS_DEGRADED = "degraded"
STATUS_FAILING = "failing"
STATUS_SUPPRESSED = "suppressed"
STATUS_RECOVERING = "recovering"

# Keeps factor ** exponent finite for long outages.
_MAX_EXPONENT = 32


@dataclass
class BackoffPolicy:
    """Delay before the next snapshot cycle after consecutive failed cycles."""

    base: float
    factor: float
    maximum: float

    def delay(self, failures: int) -> float:
        if failures <= 0:
            return 0.0
        exponent = min(failures - 1, _MAX_EXPONENT)
        return min(self.maximum, max(0.0, self.base) * self.factor ** exponent)


@dataclass
class ReconnectSchedule:
    """Event stream reconnect delays: quick retries first, then a steady interval."""

    fast_retries: int
    fast_delay: float
    slow_interval: float

    @classmethod
    def from_config(cls, config: Config) -> "ReconnectSchedule":
        return cls(
            fast_retries=config.stream_fast_retries,
            fast_delay=config.stream_fast_retry_delay,
            slow_interval=config.stream_retry_interval,
        )

    def phase(self, attempt: int) -> str:
        return "fast" if attempt <= self.fast_retries else "slow"

    def delay(self, attempt: int) -> float:
        return self.fast_delay if self.phase(attempt) == "fast" else self.slow_interval


@dataclass
class SubsystemState:
    name: str
    status: str = STATUS_OK
    failures: int = 0
    suppressions: int = 0
    suppressed_until: Optional[float] = None
    last_error: Optional[str] = None
    last_success: Optional[float] = None
    last_failure: Optional[float] = None
    degraded_types: List[str] = field(default_factory=list)
    retry_attempt: int = 0
    retry_phase: Optional[str] = None

    def as_dict(self, now: float) -> Dict[str, Any]:
        remaining = None
        if self.suppressed_until is not None:
            remaining = max(0.0, self.suppressed_until - now)
        return {
            "status": self.status,
            "failures": self.failures,
            "suppressions": self.suppressions,
            "suppressed_for": remaining,
            "last_error": self.last_error,
            "last_success": self.last_success,
            "last_failure": self.last_failure,
            "degraded_types": list(self.degraded_types),
            "retry_attempt": self.retry_attempt,
            "retry_phase": self.retry_phase,
        }


class HealthMonitor:
    """Per subsystem circuit breaker.

    ``failure_threshold`` consecutive failures suppress a subsystem for
    ``cooldown_seconds``. Degraded snapshot cycles are reported but never
    count toward the threshold, since the cycle itself completed.
    """

    def __init__(
        self,
        subsystem_names: Tuple[str, ...],
        failure_threshold: int,
        cooldown_seconds: float,
        event_bus: Optional[EventBus] = None,
    ) -> None:
        self._states = {name: SubsystemState(name=name) for name in subsystem_names}
        self._failure_threshold = max(1, failure_threshold)
        self._cooldown = max(0.0, cooldown_seconds)
        self._event_bus = event_bus
        self._lock = asyncio.Lock()
        for name in subsystem_names:
            record_subsystem_status(name, STATUS_OK)

    @staticmethod
    def _move(state: SubsystemState, status: str) -> Optional[str]:
        """Set `status` and return the previous one when it changed."""

        previous = state.status
        state.status = status
        record_subsystem_status(state.name, status)
        return previous if previous != status else None

    async def _publish(self, subsystem: str, status: str, previous: Optional[str], **details: Any) -> None:
        if self._event_bus is None or previous is None:
            return
        payload = {"subsystem": subsystem, "status": status, "previous_status": previous}
        payload.update(details)
        await self._event_bus.publish(EVENT_HEALTH_STATUS_CHANGED, payload)

    async def record_success(self, subsystem: str) -> None:
        async with self._lock:
            state = self._states[subsystem]
            state.failures = 0
            state.last_error = None
            state.suppressed_until = None
            state.degraded_types = []
            state.retry_attempt = 0
            state.retry_phase = None
            state.last_success = time.monotonic()
            previous = self._move(state, STATUS_OK)
        await self._publish(subsystem, STATUS_OK, previous, failure_count=0)

    async def record_degraded(self, subsystem: str, resource_types: Iterable[str]) -> None:
        """A cycle completed while `resource_types` could not be fetched."""

        async with self._lock:
            state = self._states[subsystem]
            state.failures = 0
            state.suppressed_until = None
            state.degraded_types = sorted(resource_types)
            state.last_success = time.monotonic()
            previous = self._move(state, STATUS_DEGRADED)
            degraded_types = list(state.degraded_types)
        await self._publish(subsystem, STATUS_DEGRADED, previous, degraded_types=degraded_types)

    async def record_failure(self, subsystem: str, error: Optional[BaseException] = None) -> None:
        async with self._lock:
            state = self._states[subsystem]
            state.failures += 1
            state.last_failure = time.monotonic()
            if error is not None:
                state.last_error = str(error)
            if state.failures >= self._failure_threshold:
                state.suppressions += 1
                state.suppressed_until = state.last_failure + self._cooldown
                record_subsystem_failure(subsystem)
                status = STATUS_SUPPRESSED
            else:
                status = STATUS_FAILING
            previous = self._move(state, status)
            failures = state.failures
        await self._publish(subsystem, status, previous, failure_count=failures)

    async def record_retry(self, subsystem: str, attempt: int, phase: str) -> None:
        """Note the reconnect attempt about to be made and its retry phase."""

        async with self._lock:
            state = self._states[subsystem]
            state.retry_attempt = attempt
            state.retry_phase = phase

    async def allow_attempt(self, subsystem: str) -> Tuple[bool, float]:
        """Whether an attempt may run now, plus the remaining cooldown if not."""

        async with self._lock:
            state = self._states[subsystem]
            now = time.monotonic()
            if state.suppressed_until is not None and state.suppressed_until > now:
                return False, state.suppressed_until - now
            previous = None
            if state.status == STATUS_SUPPRESSED:
                previous = self._move(state, STATUS_RECOVERING)
        await self._publish(subsystem, STATUS_RECOVERING, previous)
        return True, 0.0

    async def snapshot(self) -> Mapping[str, Dict[str, Any]]:
        async with self._lock:
            now = time.monotonic()
            return {name: state.as_dict(now) for name, state in self._states.items()}
