"""Event stream framing and delta routing."""

from __future__ import annotations

import json
from typing import Any, Callable, List, Mapping, Optional

from .errors import ProtocolDecodeFailure
from .handlers import now_ms, parse_timestamp_ms
from .logging import get_logger
from .metrics import record_stream_dropped_frame, record_stream_event
from .reconciler import ModelReconciler

DATA_PREFIX = "data:"
TOPOLOGY_FIELDS = ("children", "services")


def parse_line(line: str) -> Optional[List[Mapping[str, Any]]]:
    """Decode one stream line into a list of event objects.

    Lines other than `data:` frames (comments, ids, keep-alives) return None.
    Malformed frames raise `ProtocolDecodeFailure`.
    """

    text = line.strip()
    if not text.startswith(DATA_PREFIX):
        return None
    payload = text[len(DATA_PREFIX):].strip()
    if not payload:
        return None
    try:
        decoded = json.loads(payload)
    except ValueError as exc:
        raise ProtocolDecodeFailure(f"Undecodable event frame: {exc}") from exc
    if isinstance(decoded, Mapping):
        return [decoded]
    if isinstance(decoded, list) and all(isinstance(item, Mapping) for item in decoded):
        return list(decoded)
    raise ProtocolDecodeFailure("Event frame is neither an object nor an array of objects")


def is_topology_change(resource: Mapping[str, Any]) -> bool:
    resource_type = resource.get("type")
    if resource_type == "device":
        return True
    if resource_type in ("room", "zone"):
        return any(key in resource for key in TOPOLOGY_FIELDS)
    return False


class EventStreamIngestor:
    """Apply event stream frames to the model, strictly in arrival order."""

    def __init__(
        self,
        reconciler: ModelReconciler,
        request_resync: Callable[[str], None],
    ) -> None:
        self.reconciler = reconciler
        self.request_resync = request_resync
        self.logger = get_logger("hue.stream")
        self.frames = 0
        self.dropped_frames = 0

    def ingest_line(self, line: str) -> int:
        """Ingest one raw line; returns the number of events applied."""

        try:
            events = parse_line(line)
        except ProtocolDecodeFailure as exc:
            self.dropped_frames += 1
            record_stream_dropped_frame()
            self.logger.warning("Dropped malformed event frame", extra={"error": str(exc)})
            return 0
        if events is None:
            return 0
        self.frames += 1
        return self.ingest_payload(events)

    def ingest_payload(self, events: List[Mapping[str, Any]]) -> int:
        applied = 0
        for event in events:
            event_type = event.get("type")
            data = event.get("data")
            if not isinstance(data, list):
                self.logger.debug("Event without data ignored", extra={"event_type": event_type})
                continue
            timestamp = parse_timestamp_ms(event.get("creationtime")) or now_ms()
            for resource in data:
                if not isinstance(resource, Mapping):
                    continue
                resource_type = str(resource.get("type") or "")
                record_stream_event(str(event_type), resource_type or "unknown")
                if event_type == "delete":
                    self._apply_delete(resource)
                elif event_type in ("update", "add"):
                    self._apply_update(resource, timestamp, event_type)
                else:
                    continue
                applied += 1
        return applied

    def _apply_delete(self, resource: Mapping[str, Any]) -> None:
        resource_type = resource.get("type")
        resource_id = str(resource.get("id") or "")
        if not resource_id:
            return
        reconciler = self.reconciler
        if resource_type == "device":
            reconciler.remove_device(resource_id)
            self.request_resync("device deleted")
        elif resource_type == "room":
            reconciler.remove_room(resource_id)
        elif resource_type == "zone":
            reconciler.remove_group(resource_id)
        elif resource_type == "scene":
            reconciler.remove_scene(resource_id)
        else:
            self.request_resync(f"{resource_type} deleted")

    def _apply_update(self, resource: Mapping[str, Any], timestamp: int, event_type: str) -> None:
        if event_type == "add" or is_topology_change(resource):
            self.request_resync(f"{resource.get('type')} {event_type}")
        if not self.reconciler.handlers.handle(resource, timestamp):
            self.logger.debug("Unhandled resource type", extra={"resource_type": resource.get("type")})
