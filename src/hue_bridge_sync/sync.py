"""Connection and sync state machine plus command entry points."""

from __future__ import annotations

import asyncio
import contextlib
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from .commands import DISCOVERY_BODY, BridgeCommand, CommandTranslator
from .config import Config
from .errors import (
    CommandRejected,
    HueSyncError,
    TransientTransportError,
    UnknownEntityError,
)
from .health import BackoffPolicy, HealthMonitor, ReconnectSchedule
from .logging import get_logger
from .metrics import record_command, set_stream_connected
from .model import Device
from .reconciler import ModelReconciler
from .scheduler import Scheduler
from .snapshot import ResourceSnapshotFetcher, fetch_single_device
from .store import StateSink
from .stream import EventStreamIngestor
from .transport import BridgeTransport

RESYNC_TOKEN = "resync"


@dataclass(frozen=True)
class CommandResult:
    """Outcome of a command accepted by the bridge."""

    ok: bool
    value: Any = None
    message: str = ""

    def as_dict(self) -> Dict[str, Any]:
        return {"ok": self.ok, "value": self.value, "message": self.message}


class HueSyncService:
    """Keep the local model in sync with one bridge.

    Two loops run side by side: the snapshot loop fetches every resource
    type, rebuilds the model and then waits for the poll interval or a
    resync request; the stream loop holds the event stream open and feeds
    its frames to the ingestor, reconnecting quickly a few times before
    falling back to a slow retry.
    """

    def __init__(
        self,
        config: Config,
        sink: StateSink,
        health: Optional[HealthMonitor] = None,
        transport: Optional[BridgeTransport] = None,
        scheduler: Optional[Scheduler] = None,
    ) -> None:
        self.config = config
        self.sink = sink
        self.logger = get_logger("hue.sync")
        self.command_logger = get_logger("hue.commands")
        self._health = health or HealthMonitor(
            ("snapshot", "stream"),
            failure_threshold=config.subsystem_failure_threshold,
            cooldown_seconds=config.subsystem_failure_cooldown,
        )
        self.transport = transport or BridgeTransport(config)
        self.scheduler = scheduler or Scheduler()
        self.fetcher = ResourceSnapshotFetcher(config, self.transport)
        self.reconciler = ModelReconciler(
            config,
            sink,
            self.scheduler,
            self._fetch_device,
            resync_callback=self.request_resync,
        )
        self.reconciler.add_device_listener(self._on_device)
        self.ingestor = EventStreamIngestor(self.reconciler, self.request_resync)
        self.translator = CommandTranslator(self.reconciler)
        self._backoff = BackoffPolicy(
            base=config.sync_backoff_base,
            factor=config.sync_backoff_factor,
            maximum=config.sync_backoff_max,
        )
        self._reconnect = ReconnectSchedule.from_config(config)
        self._stop_event = asyncio.Event()
        self._wake_event = asyncio.Event()
        self._sync_task: Optional[asyncio.Task[None]] = None
        self._stream_task: Optional[asyncio.Task[None]] = None
        self._renames: Dict[str, Tuple[str, asyncio.Future[str]]] = {}
        self._cycle_running = False
        self.stream_connected = False
        self.cycles = 0
        self.last_cycle_at: Optional[float] = None
        self.last_error: Optional[str] = None
        self.degraded_types: List[str] = []

    async def start(self) -> None:
        if self._sync_task:
            return
        self._stop_event.clear()
        self._wake_event.clear()
        self.scheduler.reopen()
        self._sync_task = asyncio.create_task(self._run())
        self._stream_task = asyncio.create_task(self._stream_loop())
        self.logger.info(
            "Hue sync started",
            extra={"bridge": self.config.bridge_base_url, "poll_interval": self.config.poll_interval},
        )

    async def stop(self) -> None:
        self._stop_event.set()
        self._wake_event.set()
        for task in (self._sync_task, self._stream_task):
            if task:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._sync_task = None
        self._stream_task = None
        self.scheduler.cancel_all()
        for _, future in self._renames.values():
            if not future.done():
                future.cancel()
        self._renames.clear()
        await self.reconciler.close()
        await self.transport.aclose()
        self._set_stream_connected(False)
        self.logger.info("Hue sync stopped")

    # Snapshot loop

    async def _run(self) -> None:
        await self._sleep_with_stop(self.config.initial_snapshot_delay)
        failures = 0
        while not self._stop_event.is_set():
            allowed, remaining = await self._health.allow_attempt("snapshot")
            if not allowed:
                self.logger.warning(
                    "Snapshot cycles suppressed after failures",
                    extra={"cooldown_seconds": round(remaining, 2)},
                )
                await self._sleep_with_stop(remaining)
                continue
            try:
                complete = await self.run_cycle()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                failures += 1
                self.last_error = str(exc)
                self.logger.exception("Snapshot cycle failed", extra={"failures": failures})
                self.reconciler.set_connectivity(False)
                await self._health.record_failure("snapshot", exc)
                await self._sleep_with_stop(self._backoff.delay(failures))
                continue
            failures = 0
            self.last_error = None
            if complete:
                await self._health.record_success("snapshot")
            else:
                self.logger.warning(
                    "Snapshot cycle degraded", extra={"resource_types": self.degraded_types}
                )
                await self._health.record_degraded("snapshot", self.degraded_types)
            await self._wait_for_next_cycle()

    async def run_cycle(self) -> bool:
        """Fetch a full snapshot and reconcile it; True unless the cycle was degraded."""

        self._cycle_running = True
        self._wake_event.clear()
        self.scheduler.cancel(RESYNC_TOKEN)
        try:
            cycle = await self.fetcher.fetch_cycle()
            if not self.reconciler.rebuild(cycle):
                await self.reconciler.wait_settled()
        finally:
            self._cycle_running = False
        self.cycles += 1
        self.last_cycle_at = time.time()
        self.degraded_types = sorted(cycle.degraded_types)
        return not cycle.degraded

    async def _wait_for_next_cycle(self) -> None:
        interval = (
            self.config.poll_interval
            if self.stream_connected
            else self.config.poll_interval_stream_down
        )
        try:
            await asyncio.wait_for(self._wake_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            return

    def request_resync(self, reason: str = "") -> bool:
        """Schedule a debounced full resync; extra requests while pending are dropped."""

        if self._cycle_running or self._stop_event.is_set():
            return False
        scheduled = self.scheduler.schedule_if_idle(
            RESYNC_TOKEN, self.config.resync_debounce, self._wake_event.set
        )
        if scheduled:
            self.logger.debug("Resync scheduled", extra={"reason": reason})
        return scheduled

    async def _fetch_device(self, device_id: str) -> Optional[Mapping[str, Any]]:
        return await fetch_single_device(self.transport, device_id)

    # Event stream loop

    async def _stream_loop(self) -> None:
        attempts = 0
        while not self._stop_event.is_set():
            allowed, remaining = await self._health.allow_attempt("stream")
            if not allowed:
                await self._sleep_with_stop(remaining)
                continue
            try:
                async with self.transport.event_stream() as lines:
                    self._set_stream_connected(True)
                    attempts = 0
                    await self._health.record_success("stream")
                    async for line in lines:
                        self.ingestor.ingest_line(line)
                        if self._stop_event.is_set():
                            break
                self.logger.warning("Event stream closed by bridge")
            except asyncio.CancelledError:
                raise
            except TransientTransportError as exc:
                self.logger.warning("Event stream failed", extra={"error": str(exc)})
                await self._health.record_failure("stream", exc)
            except Exception as exc:
                self.logger.exception("Event stream handler failed")
                await self._health.record_failure("stream", exc)
            finally:
                self._set_stream_connected(False)
            if self._stop_event.is_set():
                break
            attempts += 1
            delay = self._reconnect.delay(attempts)
            phase = self._reconnect.phase(attempts)
            await self._health.record_retry("stream", attempts, phase)
            self.logger.info(
                "Reconnecting event stream",
                extra={"attempt": attempts, "delay": delay, "phase": phase},
            )
            await self._sleep_with_stop(delay)

    def _set_stream_connected(self, connected: bool) -> None:
        if connected == self.stream_connected:
            return
        self.stream_connected = connected
        set_stream_connected(connected)
        if connected:
            self.logger.info("Event stream connected")
        else:
            self.logger.info("Event stream disconnected; polling narrowed")
            # Re-evaluate the poll interval now instead of after a long wait.
            self._wake_event.set()

    async def _sleep_with_stop(self, delay: float) -> None:
        if delay <= 0:
            return
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return

    # Commands

    async def _send(self, command: BridgeCommand, name: str) -> None:
        try:
            await self.transport.put_resource(command.resource_type, command.resource_id, command.body)
        except CommandRejected as exc:
            record_command(name, "rejected")
            self.command_logger.warning(
                "Bridge rejected command",
                extra={"command": name, "resource_id": command.resource_id, "error": str(exc)},
            )
            raise
        except TransientTransportError as exc:
            record_command(name, "transport_error")
            self.command_logger.warning(
                "Command not delivered",
                extra={"command": name, "resource_id": command.resource_id, "error": str(exc)},
            )
            raise
        record_command(name, "ok")
        self.command_logger.info(
            "Command sent",
            extra={"command": name, "resource_type": command.resource_type, "resource_id": command.resource_id},
        )

    def _validated(self, name: str, build: Callable[..., BridgeCommand], *args: Any) -> BridgeCommand:
        try:
            return build(*args)
        except HueSyncError:
            record_command(name, "invalid")
            raise

    async def write_channel(self, device_id: str, channel_id: str, value: Any) -> CommandResult:
        command = self._validated("channel_write", self.translator.translate, device_id, channel_id, value)
        await self._send(command, "channel_write")
        return CommandResult(ok=True, value=command.value)

    async def invoke_scene(
        self,
        scene_id: str,
        action: Optional[str] = None,
        group_id: Optional[str] = None,
        duration_ms: Optional[int] = None,
    ) -> CommandResult:
        command = self._validated(
            "scene_invoke", self.translator.scene, scene_id, action, group_id, duration_ms
        )
        await self._send(command, "scene_invoke")
        return CommandResult(ok=True, value=command.value)

    async def invoke_effect(
        self, device_id: str, effect: Optional[str], duration_ms: Optional[int] = None
    ) -> CommandResult:
        command = self._validated("effect", self.translator.effect, device_id, effect, duration_ms)
        await self._send(command, "effect")
        return CommandResult(ok=True, value=command.value)

    async def start_discovery(self) -> CommandResult:
        """Ask the bridge to search for new Zigbee devices."""

        resource_id = next(
            (rid for rtype, rid in self.reconciler.state.resource_to_device if rtype == "zigbee_device_discovery"),
            "",
        )
        if not resource_id:
            resources = await self.transport.fetch_resources("zigbee_device_discovery")
            resource_id = str(resources[0].get("id") or "") if resources else ""
        if not resource_id:
            record_command("discovery", "invalid")
            raise UnknownEntityError("Bridge exposes no zigbee_device_discovery resource")
        command = BridgeCommand("zigbee_device_discovery", resource_id, dict(DISCOVERY_BODY), "start")
        await self._send(command, "discovery")
        return CommandResult(ok=True, value="start")

    async def rename_device(self, device_id: str, name: str) -> CommandResult:
        """Rename a device and wait until the bridge reports the new name.

        A newer rename of the same device fails the older one.
        """

        command = self._validated("rename", self.translator.rename, device_id, name)
        expected = command.value
        previous = self._renames.pop(device_id, None)
        if previous is not None and not previous[1].done():
            previous[1].set_exception(CommandRejected("Rename superseded by a newer request"))
        future: asyncio.Future[str] = asyncio.get_running_loop().create_future()
        entry = (expected, future)
        self._renames[device_id] = entry
        try:
            await self._send(command, "rename")
            device = self.reconciler.state.devices.get(device_id)
            if device is not None and device.name == expected and not future.done():
                # The stream may already have delivered the new name.
                future.set_result(expected)
            await self._verify_rename(device_id, future)
            if not future.done():
                record_command("rename_verify", "failed")
                future.set_exception(CommandRejected("Hue bridge did not confirm rename"))
            result = await future
        finally:
            if self._renames.get(device_id) is entry:
                del self._renames[device_id]
        record_command("rename_verify", "ok")
        return CommandResult(ok=True, value=result)

    async def _verify_rename(self, device_id: str, future: asyncio.Future[str]) -> None:
        for attempt in range(1, self.config.rename_verify_attempts + 1):
            if future.done():
                return
            await asyncio.wait({future}, timeout=self.config.rename_verify_delay)
            if future.done():
                return
            try:
                resource = await self._fetch_device(device_id)
            except HueSyncError as exc:
                self.command_logger.debug(
                    "Rename verification fetch failed",
                    extra={"device_id": device_id, "attempt": attempt, "error": str(exc)},
                )
                continue
            if resource is not None:
                self.reconciler.apply_device_metadata(device_id, resource)

    def _on_device(self, device: Device) -> None:
        entry = self._renames.get(device.id)
        if entry is None:
            return
        expected, future = entry
        if device.name == expected and not future.done():
            future.set_result(expected)

    def status(self) -> Dict[str, Any]:
        return {
            "running": self._sync_task is not None,
            "stream_connected": self.stream_connected,
            "cycles": self.cycles,
            "last_cycle_at": self.last_cycle_at,
            "last_error": self.last_error,
            "degraded_types": list(self.degraded_types),
            "stream_frames": self.ingestor.frames,
            "stream_dropped_frames": self.ingestor.dropped_frames,
            "snapshot_retries": dict(self.fetcher.retry_counts),
            "model": self.reconciler.stats(),
        }
