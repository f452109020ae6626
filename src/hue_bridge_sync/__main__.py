"""Entrypoint for the Hue bridge sync service."""

from __future__ import annotations

import asyncio
import contextlib
import signal
import logging
import sys
from typing import Iterable, List, Optional

from .api import ApiService
from .config import Config, load_config
from .events import EventBus
from .health import HealthMonitor
from .logging import configure_logging, get_logger
from .store import StateStore
from .sync import HueSyncService


async def _sync_loop(stop_event: asyncio.Event, service: HueSyncService) -> None:
    logger = get_logger("hue.sync")
    await service.start()
    try:
        await stop_event.wait()
    finally:
        await service.stop()
        logger.info("Sync loop stopped")


async def _api_loop(
    stop_event: asyncio.Event,
    config: Config,
    store: StateStore,
    service: HueSyncService,
    health: HealthMonitor,
) -> None:
    logger = get_logger("hue.api")
    api = ApiService(config, store, service, health=health)
    await api.start()
    try:
        await stop_event.wait()
    finally:
        await api.stop()
        logger.info("API loop stopped")


async def _run_async(config: Config) -> None:
    logger = get_logger("hue")
    stop_event = asyncio.Event()
    event_bus = EventBus()
    health = HealthMonitor(
        ("snapshot", "stream", "api"),
        failure_threshold=config.subsystem_failure_threshold,
        cooldown_seconds=config.subsystem_failure_cooldown,
        event_bus=event_bus,
    )
    store = StateStore(event_bus)
    service = HueSyncService(config, store, health=health)

    def _request_shutdown(sig: Optional[str] = None) -> None:
        if not stop_event.is_set():
            logger.warning("Shutdown requested", extra={"signal": sig})
            stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, _request_shutdown, sig.name)

    tasks: List[asyncio.Task[None]] = [
        asyncio.create_task(_sync_loop(stop_event, service)),
    ]
    if config.api_enabled:
        tasks.append(asyncio.create_task(_api_loop(stop_event, config, store, service, health)))
    logger.info(
        "Hue sync services started",
        extra={
            "bridge": config.bridge_base_url,
            "api_enabled": config.api_enabled,
            "api_port": config.api_port,
        },
    )

    try:
        await stop_event.wait()
    finally:
        await _shutdown_tasks(tasks, logger)
        logger.info("Hue sync shutdown complete")


async def _shutdown_tasks(
    tasks: Iterable[asyncio.Task[None]], logger: logging.Logger
) -> None:
    tasks = list(tasks)
    # Loops clean up in their finally blocks once cancelled.
    for task in tasks:
        task.cancel()
    results = await asyncio.gather(*tasks, return_exceptions=True)
    for result in results:
        if isinstance(result, Exception):
            logger.error("Service failed during shutdown", exc_info=result)


def run(cli_args: Optional[Iterable[str]] = None) -> None:
    """CLI entrypoint used by setuptools."""

    config = load_config(cli_args)
    configure_logging(config)
    logger = get_logger("hue")
    logger.info("Loaded configuration", extra={"config": config.logging_dict()})

    if not config.bridge_host:
        logger.error("No bridge host configured; set bridge_host or HUE_SYNC_BRIDGE_HOST")
        sys.exit(2)
    try:
        asyncio.run(_run_async(config))
    except KeyboardInterrupt:
        logger.warning("Interrupted by user")


if __name__ == "__main__":
    run()
