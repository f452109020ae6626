from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import httpx
import pytest
import pytest_asyncio

from bridge_data import FakeBridge
from hue_bridge_sync.config import Config
from hue_bridge_sync.model import Channel, Device, Group, Room, Scene
from hue_bridge_sync.reconciler import ModelReconciler
from hue_bridge_sync.scheduler import Scheduler
from hue_bridge_sync.store import StateStore
from hue_bridge_sync.sync import HueSyncService
from hue_bridge_sync.transport import BridgeTransport


class RecordingSink:
    """StateSink that keeps every call for assertions."""

    def __init__(self) -> None:
        self.calls: List[Tuple[Any, ...]] = []
        self.devices: Dict[str, Tuple[Device, List[Channel]]] = {}
        self.scenes: List[Scene] = []

    def device_upsert(self, device: Device, channels: Sequence[Channel]) -> None:
        self.calls.append(("device_upsert", device.id))
        self.devices[device.id] = (device, list(channels))

    def device_remove(self, device_id: str) -> None:
        self.calls.append(("device_remove", device_id))
        self.devices.pop(device_id, None)

    def channel_value(self, device_id: str, channel_id: str, value: Any, timestamp_ms: int) -> None:
        self.calls.append(("channel_value", device_id, channel_id, value, timestamp_ms))

    def room_upsert(self, room: Room) -> None:
        self.calls.append(("room_upsert", room.id, room.members))

    def room_remove(self, room_id: str) -> None:
        self.calls.append(("room_remove", room_id))

    def group_upsert(self, group: Group) -> None:
        self.calls.append(("group_upsert", group.id, group.members))

    def group_remove(self, group_id: str) -> None:
        self.calls.append(("group_remove", group_id))

    def scenes_replace(self, scenes: Sequence[Scene]) -> None:
        self.calls.append(("scenes_replace", [scene.id for scene in scenes]))
        self.scenes = list(scenes)

    def connectivity(self, connected: bool) -> None:
        self.calls.append(("connectivity", connected))

    def of(self, kind: str) -> List[Tuple[Any, ...]]:
        return [call for call in self.calls if call[0] == kind]

    def values(self, device_id: str, channel_id: str) -> List[Any]:
        return [
            call[3]
            for call in self.calls
            if call[0] == "channel_value" and call[1] == device_id and call[2] == channel_id
        ]

    def channel_ids(self, device_id: str) -> List[str]:
        return [channel.id for channel in self.devices[device_id][1]]

    def clear(self) -> None:
        self.calls.clear()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def make_reconciler(sink: RecordingSink) -> Callable[..., ModelReconciler]:
    """Build a reconciler whose lazy metadata fetches read from `remote`."""

    def _make(
        remote: Optional[Mapping[str, Mapping[str, Any]]] = None,
        resyncs: Optional[List[str]] = None,
        **overrides: Any,
    ) -> ModelReconciler:
        settings: Dict[str, Any] = {
            "bridge_host": "bridge.test",
            "metadata_fetch_spacing": 0.0,
            "multi_press_window": 0.05,
            "dial_reset_delay": 0.02,
        }
        settings.update(overrides)
        devices = dict(remote or {})

        async def _fetch(device_id: str) -> Optional[Mapping[str, Any]]:
            resource = devices.get(device_id)
            if isinstance(resource, Exception):
                raise resource
            return resource

        return ModelReconciler(
            Config(**settings),
            sink,
            Scheduler(),
            _fetch,
            resync_callback=resyncs.append if resyncs is not None else None,
        )

    return _make


@pytest.fixture
def bridge() -> FakeBridge:
    return FakeBridge()


@pytest_asyncio.fixture
async def service(bridge: FakeBridge):
    """Sync service wired to the fake bridge; `service.store` is its StateStore."""

    config = Config(
        bridge_host="bridge.test",
        application_key="app-key",
        snapshot_stagger=0.0,
        snapshot_button_extra_delay=0.0,
        snapshot_retry_delay=0.0,
        metadata_fetch_spacing=0.0,
        rename_verify_delay=0.01,
        rename_verify_attempts=2,
    )
    store = StateStore()
    transport = BridgeTransport(config, transport=httpx.MockTransport(bridge))
    service = HueSyncService(config, store, transport=transport)
    service.store = store
    yield service
    await service.stop()
