"""Token keyed single-shot timers on the asyncio loop."""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, Hashable, Optional, Set

from .logging import get_logger


class Scheduler:
    """Run callbacks after a delay, at most one armed timer per token.

    Scheduling a token that is already armed replaces the earlier timer.
    Callbacks may be plain functions or coroutine functions; the latter run
    as tasks that `cancel_all` also cancels.
    """

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop
        self._handles: Dict[Hashable, asyncio.TimerHandle] = {}
        self._tasks: Set[asyncio.Task[Any]] = set()
        self._closed = False
        self.logger = get_logger("hue.sync")

    def schedule(self, token: Hashable, delay: float, callback: Callable[[], Any]) -> None:
        if self._closed:
            return
        self.cancel(token)
        loop = self._loop or asyncio.get_running_loop()
        self._handles[token] = loop.call_later(max(0.0, delay), self._fire, token, callback)

    def schedule_if_idle(self, token: Hashable, delay: float, callback: Callable[[], Any]) -> bool:
        """Arm the timer unless one is already pending for the token."""

        if token in self._handles:
            return False
        self.schedule(token, delay, callback)
        return True

    def cancel(self, token: Hashable) -> bool:
        handle = self._handles.pop(token, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def is_scheduled(self, token: Hashable) -> bool:
        return token in self._handles

    def cancel_all(self) -> None:
        """Stop every timer and task; no callback runs afterwards."""

        self._closed = True
        for handle in self._handles.values():
            handle.cancel()
        self._handles.clear()
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()

    def reopen(self) -> None:
        self._closed = False

    def _fire(self, token: Hashable, callback: Callable[[], Any]) -> None:
        self._handles.pop(token, None)
        if self._closed:
            return
        try:
            result = callback()
        except Exception:
            self.logger.exception("Scheduled callback failed", extra={"token": str(token)})
            return
        if asyncio.iscoroutine(result):
            loop = self._loop or asyncio.get_running_loop()
            task = loop.create_task(result)
            self._tasks.add(task)
            task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.logger.error(
                "Scheduled task failed",
                exc_info=(type(exc), exc, exc.__traceback__),
            )
