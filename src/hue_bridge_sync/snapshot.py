"""Full snapshot acquisition, one resource collection at a time."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Set, Tuple

from .config import Config
from .errors import CoreResourceFailure, HueSyncError, PartialResourceFailure
from .logging import get_logger
from .metrics import observe_snapshot_cycle, record_snapshot_fetch
from .transport import BridgeTransport

# Fetch order matters: owners (devices) before the services that reference them.
RESOURCE_TYPES: Tuple[str, ...] = (
    "device",
    "room",
    "zone",
    "light",
    "motion",
    "tamper",
    "temperature",
    "light_level",
    "device_power",
    "button",
    "device_software_update",
    "zigbee_connectivity",
    "zigbee_device_discovery",
    "scene",
)

CORE_TYPES = frozenset({"device", "light", "room", "zone", "scene"})


def is_core_type(resource_type: str) -> bool:
    return resource_type in CORE_TYPES


@dataclass
class SnapshotCycle:
    """Per-type resource arrays gathered in one cycle.

    A type listed in `degraded_types` exhausted its retries and is present
    as an empty array; its absence must not be read as deletion.
    """

    resources: Dict[str, List[Mapping[str, Any]]] = field(default_factory=dict)
    degraded_types: Set[str] = field(default_factory=set)
    failures: Dict[str, PartialResourceFailure] = field(default_factory=dict)

    @property
    def degraded(self) -> bool:
        return bool(self.degraded_types)

    def get(self, resource_type: str) -> List[Mapping[str, Any]]:
        return self.resources.get(resource_type, [])


class ResourceSnapshotFetcher:
    """Fetch every resource type with staggered starts and bounded retries."""

    def __init__(
        self,
        config: Config,
        transport: BridgeTransport,
        resource_types: Sequence[str] = RESOURCE_TYPES,
    ) -> None:
        self.config = config
        self.transport = transport
        self.resource_types = tuple(resource_types)
        self.logger = get_logger("hue.snapshot")
        self.pending = 0
        self.retry_counts: Dict[str, int] = {}

    async def fetch_cycle(self) -> SnapshotCycle:
        """Run one cycle; raises `CoreResourceFailure` when a core type fails."""

        started = time.perf_counter()
        self.pending = len(self.resource_types)
        self.retry_counts = {name: 0 for name in self.resource_types}
        tasks = [
            asyncio.create_task(self._fetch_type(name, self._start_delay(index, name)))
            for index, name in enumerate(self.resource_types)
        ]
        try:
            results = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            self.pending = 0
            observe_snapshot_cycle("failed", time.perf_counter() - started)
            raise

        cycle = SnapshotCycle()
        for name, data, failure in results:
            cycle.resources[name] = data
            if failure is not None:
                cycle.degraded_types.add(name)
                cycle.failures[name] = failure
        observe_snapshot_cycle(
            "degraded" if cycle.degraded else "ok", time.perf_counter() - started
        )
        self.logger.info(
            "Snapshot cycle fetched",
            extra={
                "counts": {name: len(data) for name, data in cycle.resources.items()},
                "degraded_types": sorted(cycle.degraded_types),
            },
        )
        return cycle

    def _start_delay(self, index: int, resource_type: str) -> float:
        delay = index * self.config.snapshot_stagger
        if resource_type == "button":
            delay += self.config.snapshot_button_extra_delay
        return delay

    async def _fetch_type(
        self, resource_type: str, delay: float
    ) -> Tuple[str, List[Mapping[str, Any]], Optional[PartialResourceFailure]]:
        try:
            if delay > 0:
                await asyncio.sleep(delay)
            attempt = 0
            while True:
                attempt += 1
                try:
                    data = await self.transport.fetch_resources(resource_type)
                except HueSyncError as exc:
                    record_snapshot_fetch(resource_type, "error")
                    if is_core_type(resource_type):
                        self.logger.error(
                            "Core resource fetch failed; aborting cycle",
                            extra={"resource_type": resource_type, "error": str(exc)},
                        )
                        raise CoreResourceFailure(resource_type, str(exc)) from exc
                    if attempt >= self.config.snapshot_retries:
                        self.logger.warning(
                            "Resource fetch retries exhausted; cycle degraded",
                            extra={"resource_type": resource_type, "attempts": attempt, "error": str(exc)},
                        )
                        record_snapshot_fetch(resource_type, "degraded")
                        return resource_type, [], PartialResourceFailure(resource_type, str(exc))
                    self.retry_counts[resource_type] = attempt
                    retry_in = self.config.snapshot_retry_delay * attempt
                    self.logger.warning(
                        "Resource fetch failed; retrying",
                        extra={
                            "resource_type": resource_type,
                            "attempt": attempt,
                            "retry_in": retry_in,
                            "error": str(exc),
                        },
                    )
                    await asyncio.sleep(retry_in)
                    continue
                record_snapshot_fetch(resource_type, "ok")
                return resource_type, data, None
        finally:
            self.pending -= 1


async def fetch_single_device(
    transport: BridgeTransport, device_id: str
) -> Optional[Mapping[str, Any]]:
    """Fetch one device resource; None when the bridge returns no data entry."""

    data = await transport.fetch_resources("device", device_id)
    return data[0] if data else None
