"""Bounded-concurrency queue fetching device metadata on demand."""

from __future__ import annotations

import asyncio
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Mapping, Optional, Set

from .logging import get_logger
from .metrics import record_metadata_fetch, set_metadata_queue_depth

FetchFn = Callable[[str], Awaitable[Optional[Mapping[str, Any]]]]


class LazyMetadataFetchQueue:
    """Fetch single device resources, at most `max_concurrent` at a time.

    `request` is idempotent: ids in flight, queued or failed in this cycle
    are ignored. When a fetch finishes and work is queued, the same slot
    waits `spacing` seconds and starts the next queued id. Once nothing is
    in flight or queued, `on_drained` runs.
    """

    def __init__(
        self,
        fetch: FetchFn,
        on_result: Callable[[str, Mapping[str, Any]], None],
        on_failure: Optional[Callable[[str, BaseException], None]] = None,
        on_drained: Optional[Callable[[], None]] = None,
        max_concurrent: int = 4,
        spacing: float = 0.02,
    ) -> None:
        self._fetch = fetch
        self._on_result = on_result
        self._on_failure = on_failure
        self._on_drained = on_drained
        self._max_concurrent = max(1, max_concurrent)
        self._spacing = max(0.0, spacing)
        self._queue: Deque[str] = deque()
        self._in_flight: Set[str] = set()
        self._failed: Set[str] = set()
        self._workers: Set[asyncio.Task[None]] = set()
        self.logger = get_logger("hue.metadata")

    def request(self, device_id: str) -> bool:
        """Ask for a device's metadata; returns False when the call was a no-op."""

        if not device_id:
            return False
        if device_id in self._failed or device_id in self._in_flight or device_id in self._queue:
            return False
        if len(self._workers) >= self._max_concurrent:
            self._queue.append(device_id)
            set_metadata_queue_depth(len(self._queue))
            self.logger.debug("Metadata fetch queued", extra={"device_id": device_id})
            return True
        self._in_flight.add(device_id)
        task = asyncio.get_running_loop().create_task(self._worker(device_id))
        self._workers.add(task)
        return True

    def reset_failures(self) -> None:
        """Forget failures; called at the start of every snapshot cycle."""

        self._failed.clear()

    def is_failed(self, device_id: str) -> bool:
        return device_id in self._failed

    def is_pending(self, device_id: str) -> bool:
        return device_id in self._in_flight or device_id in self._queue

    @property
    def idle(self) -> bool:
        return not self._workers and not self._queue

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    @property
    def queued(self) -> int:
        return len(self._queue)

    async def close(self) -> None:
        self._queue.clear()
        set_metadata_queue_depth(0)
        workers = list(self._workers)
        for task in workers:
            task.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        self._workers.clear()
        self._in_flight.clear()

    async def _worker(self, device_id: str) -> None:
        current: Optional[str] = device_id
        try:
            while current is not None:
                await self._fetch_one(current)
                self._in_flight.discard(current)
                current = None
                if self._queue:
                    if self._spacing:
                        await asyncio.sleep(self._spacing)
                    if self._queue:
                        current = self._queue.popleft()
                        self._in_flight.add(current)
                        set_metadata_queue_depth(len(self._queue))
        finally:
            if current is not None:
                self._in_flight.discard(current)
            task = asyncio.current_task()
            if task is not None:
                self._workers.discard(task)
        if self.idle and self._on_drained is not None:
            self._on_drained()

    async def _fetch_one(self, device_id: str) -> None:
        try:
            resource = await self._fetch(device_id)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._mark_failed(device_id, exc)
            return
        if resource is None:
            self._mark_failed(device_id, LookupError(f"device {device_id} returned no data"))
            return
        record_metadata_fetch("ok")
        try:
            self._on_result(device_id, resource)
        except Exception:
            self.logger.exception("Metadata result handler failed", extra={"device_id": device_id})

    def _mark_failed(self, device_id: str, exc: BaseException) -> None:
        self._failed.add(device_id)
        record_metadata_fetch("error")
        self.logger.warning(
            "Metadata fetch failed; not retrying this cycle",
            extra={"device_id": device_id, "error": str(exc)},
        )
        if self._on_failure is not None:
            self._on_failure(device_id, exc)
