"""Prometheus metrics helpers."""

from __future__ import annotations

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

_REGISTRY = CollectorRegistry()

REQUEST_LATENCY = Histogram(
    "hue_sync_api_request_duration_seconds",
    "Time spent processing API requests",
    ["method", "path", "status"],
    registry=_REGISTRY,
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2, 5],
)
REQUEST_COUNT = Counter(
    "hue_sync_api_requests_total",
    "HTTP requests processed by the API",
    ["method", "path", "status"],
    registry=_REGISTRY,
)
SNAPSHOT_FETCHES = Counter(
    "hue_sync_snapshot_fetches_total",
    "Resource collection fetches by outcome",
    ["resource_type", "result"],
    registry=_REGISTRY,
)
SNAPSHOT_CYCLE_DURATION = Histogram(
    "hue_sync_snapshot_cycle_duration_seconds",
    "Time spent fetching and reconciling a full snapshot cycle",
    ["result"],
    registry=_REGISTRY,
    buckets=[0.1, 0.25, 0.5, 1, 2, 5, 10, 30, 60],
)
STREAM_EVENTS = Counter(
    "hue_sync_stream_events_total",
    "Event stream resource deltas by event and resource type",
    ["event_type", "resource_type"],
    registry=_REGISTRY,
)
STREAM_DROPPED_FRAMES = Counter(
    "hue_sync_stream_dropped_frames_total",
    "Event stream frames discarded as malformed",
    registry=_REGISTRY,
)
STREAM_CONNECTED = Gauge(
    "hue_sync_stream_connected",
    "Whether the event stream is currently connected (1) or not (0)",
    registry=_REGISTRY,
)
METADATA_FETCHES = Counter(
    "hue_sync_metadata_fetches_total",
    "Lazy device metadata fetches by outcome",
    ["result"],
    registry=_REGISTRY,
)
METADATA_QUEUE_DEPTH = Gauge(
    "hue_sync_metadata_queue_depth",
    "Lazy device metadata fetches waiting for a free slot",
    registry=_REGISTRY,
)
KNOWN_DEVICES = Gauge(
    "hue_sync_known_devices",
    "Devices currently present in the local model",
    registry=_REGISTRY,
)
COMMAND_RESULTS = Counter(
    "hue_sync_commands_total",
    "Commands sent to the bridge by outcome",
    ["command", "result"],
    registry=_REGISTRY,
)
SUBSYSTEM_FAILURES = Counter(
    "hue_sync_subsystem_failures_total",
    "Subsystem failures leading to suppression",
    ["subsystem"],
    registry=_REGISTRY,
)
SUBSYSTEM_STATUS = Gauge(
    "hue_sync_subsystem_status",
    "Subsystem health (0=suppressed,1=degraded/failing/recovering,2=ok)",
    ["subsystem"],
    registry=_REGISTRY,
)


def latest_metrics() -> bytes:
    """Render the latest metrics payload for scraping."""

    return generate_latest(_REGISTRY)


def observe_request(method: str, path: str, status: int, duration_seconds: float) -> None:
    """Record API request metrics."""

    status_str = str(status)
    REQUEST_COUNT.labels(method=method, path=path, status=status_str).inc()
    REQUEST_LATENCY.labels(method=method, path=path, status=status_str).observe(duration_seconds)


def record_snapshot_fetch(resource_type: str, result: str) -> None:
    """Record the outcome of one resource collection fetch."""

    SNAPSHOT_FETCHES.labels(resource_type=resource_type, result=result).inc()


def observe_snapshot_cycle(result: str, duration_seconds: float) -> None:
    """Record the duration of a snapshot cycle."""

    SNAPSHOT_CYCLE_DURATION.labels(result=result).observe(duration_seconds)


def record_stream_event(event_type: str, resource_type: str) -> None:
    """Record a resource delta received on the event stream."""

    STREAM_EVENTS.labels(event_type=event_type, resource_type=resource_type).inc()


def record_stream_dropped_frame() -> None:
    """Record a malformed event stream frame."""

    STREAM_DROPPED_FRAMES.inc()


def set_stream_connected(connected: bool) -> None:
    STREAM_CONNECTED.set(1 if connected else 0)


def record_metadata_fetch(result: str) -> None:
    """Record the outcome of a lazy metadata fetch."""

    METADATA_FETCHES.labels(result=result).inc()


def set_metadata_queue_depth(depth: int) -> None:
    METADATA_QUEUE_DEPTH.set(depth)


def set_known_devices(count: int) -> None:
    """Set the number of devices in the local model."""

    KNOWN_DEVICES.set(count)


def record_command(command: str, result: str) -> None:
    """Record the outcome of a command sent to the bridge."""

    COMMAND_RESULTS.labels(command=command, result=result).inc()


def record_subsystem_failure(subsystem: str) -> None:
    """Record a subsystem failure triggering suppression."""

    SUBSYSTEM_FAILURES.labels(subsystem=subsystem).inc()


def record_subsystem_status(subsystem: str, status: str) -> None:
    """Record the current subsystem status."""

    code = 0
    if status == "ok":
        code = 2
    elif status in {"recovering", "degraded", "failing"}:
        code = 1
    SUBSYSTEM_STATUS.labels(subsystem=subsystem).set(code)


METRICS_CONTENT_TYPE = CONTENT_TYPE_LATEST
