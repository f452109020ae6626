"""Sample bridge resources shared by the test modules."""

import copy
import json
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

import httpx

from hue_bridge_sync.snapshot import SnapshotCycle

GAMUT_C = {
    "red": {"x": 0.6915, "y": 0.3083},
    "green": {"x": 0.17, "y": 0.7},
    "blue": {"x": 0.1532, "y": 0.0475},
}


def owner(device_id: str) -> Dict[str, str]:
    return {"rid": device_id, "rtype": "device"}


def device(
    device_id: str,
    name: str,
    services: Iterable[Tuple[str, str]] = (),
    product_name: str = "Hue color lamp",
) -> Dict[str, Any]:
    return {
        "id": device_id,
        "type": "device",
        "metadata": {"name": name, "archetype": "classic_bulb"},
        "product_data": {
            "manufacturer_name": "Signify Netherlands B.V.",
            "model_id": "LCA001",
            "software_version": "1.104.2",
            "product_name": product_name,
        },
        "services": [{"rtype": rtype, "rid": rid} for rtype, rid in services],
    }


def color_light(light_id: str, device_id: str, brightness: float = 42.0) -> Dict[str, Any]:
    return {
        "id": light_id,
        "type": "light",
        "owner": owner(device_id),
        "on": {"on": True},
        "dimming": {"brightness": brightness},
        "color_temperature": {
            "mirek": 300,
            "mirek_schema": {"mirek_minimum": 153, "mirek_maximum": 454},
        },
        "color": {"xy": {"x": 0.4, "y": 0.4}, "gamut": GAMUT_C, "gamut_type": "C"},
        "effects": {"effect_values": ["no_effect", "candle", "fire"]},
    }


def plain_light(light_id: str, device_id: str, on: bool = False) -> Dict[str, Any]:
    return {"id": light_id, "type": "light", "owner": owner(device_id), "on": {"on": on}}


def button(button_id: str, device_id: str, control_id: int, event: Optional[str] = None) -> Dict[str, Any]:
    resource: Dict[str, Any] = {
        "id": button_id,
        "type": "button",
        "owner": owner(device_id),
        "metadata": {"control_id": control_id},
        "button": {},
    }
    if event:
        resource["button"]["last_event"] = event
    return resource


def connectivity(resource_id: str, device_id: str, status: str = "connected") -> Dict[str, Any]:
    return {
        "id": resource_id,
        "type": "zigbee_connectivity",
        "owner": owner(device_id),
        "status": status,
        "mac_address": "00:17:88:01:0b:aa:bb:cc",
    }


def room(room_id: str, name: str, device_ids: Iterable[str]) -> Dict[str, Any]:
    return {
        "id": room_id,
        "type": "room",
        "metadata": {"name": name, "archetype": "living_room"},
        "children": [{"rtype": "device", "rid": device_id} for device_id in device_ids],
        "services": [],
    }


def scene(scene_id: str, name: str, room_id: str, active: str = "inactive") -> Dict[str, Any]:
    return {
        "id": scene_id,
        "type": "scene",
        "metadata": {"name": name},
        "group": {"rid": room_id, "rtype": "room"},
        "status": {"active": active},
    }


def lamp_resources() -> Dict[str, List[Dict[str, Any]]]:
    """A color lamp, a two button switch and a single button remote in one room."""

    return {
        "device": [
            device(
                "dev-lamp",
                "Desk Lamp",
                [("light", "light-1"), ("zigbee_connectivity", "zc-1")],
            ),
            device(
                "dev-switch",
                "Hall Switch",
                [("button", "btn-1"), ("button", "btn-2")],
                product_name="Hue dimmer switch",
            ),
            device(
                "dev-remote",
                "Smart Button",
                [("button", "btn-9")],
                product_name="Hue Smart button",
            ),
        ],
        "light": [color_light("light-1", "dev-lamp")],
        "zigbee_connectivity": [connectivity("zc-1", "dev-lamp")],
        "button": [
            button("btn-2", "dev-switch", 2),
            button("btn-1", "dev-switch", 1, event="short_release"),
            button("btn-9", "dev-remote", 1),
        ],
        "room": [room("room-1", "Living Room", ["dev-lamp", "dev-switch"])],
        "scene": [scene("scene-1", "Relax", "room-1")],
    }


def cycle(resources: Optional[Dict[str, List[Dict[str, Any]]]] = None, degraded: Iterable[str] = ()) -> SnapshotCycle:
    resources = lamp_resources() if resources is None else resources
    snapshot = SnapshotCycle(resources={key: list(value) for key, value in resources.items()})
    for resource_type in degraded:
        snapshot.resources[resource_type] = []
        snapshot.degraded_types.add(resource_type)
    return snapshot


def data_line(events: List[Dict[str, Any]]) -> str:
    return "data: " + json.dumps(events)


def update_event(resources: List[Dict[str, Any]], event_type: str = "update") -> Dict[str, Any]:
    return {
        "creationtime": "2024-05-01T10:00:00Z",
        "id": "evt-1",
        "type": event_type,
        "data": resources,
    }


class FakeBridge:
    """In-memory CLIP v2 resource server for httpx.MockTransport."""

    def __init__(self) -> None:
        self.resources = lamp_resources()
        self.resources["zigbee_device_discovery"] = [
            {"id": "zdd-1", "type": "zigbee_device_discovery", "owner": owner("dev-lamp"), "status": "ready"}
        ]
        self.puts: List[Tuple[str, Dict[str, Any]]] = []
        self.reject: Optional[str] = None
        self.apply_renames = True
        self.offline = False
        self.failing_types: Set[str] = set()

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if self.offline:
            raise httpx.ConnectError("no route to host", request=request)
        parts = request.url.path.split("/")[4:]
        if request.method == "PUT":
            body = json.loads(request.content)
            self.puts.append((request.url.path, body))
            if self.reject:
                return httpx.Response(400, json={"errors": [{"description": self.reject}], "data": []})
            if parts[0] == "device" and self.apply_renames:
                self._find("device", parts[1])["metadata"]["name"] = body["metadata"]["name"]
            return httpx.Response(200, json={"errors": [], "data": [{"rid": parts[1], "rtype": parts[0]}]})
        if parts and parts[0] in self.failing_types:
            return httpx.Response(503, json={"errors": [{"description": "service unavailable"}], "data": []})
        if len(parts) == 2:
            return httpx.Response(200, json={"errors": [], "data": [copy.deepcopy(self._find(*parts))]})
        data = copy.deepcopy(self.resources.get(parts[0], []))
        return httpx.Response(200, json={"errors": [], "data": data})

    def _find(self, resource_type: str, resource_id: str) -> Dict[str, Any]:
        return next(item for item in self.resources[resource_type] if item["id"] == resource_id)
