"""Canonical entities derived from the bridge resource graph."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple


class DeviceClass(str, enum.Enum):
    LIGHT = "light"
    SENSOR = "sensor"
    SWITCH = "switch"
    PLUG = "plug"
    BUTTON = "button"
    GATEWAY = "gateway"
    UNKNOWN = "unknown"


class DeviceFlag(enum.IntFlag):
    NONE = 0
    BATTERY = 1


class ChannelKind(str, enum.Enum):
    POWER_ON_OFF = "power_on_off"
    BRIGHTNESS = "brightness"
    COLOR_TEMPERATURE = "color_temperature"
    COLOR_TEMPERATURE_PRESET = "color_temperature_preset"
    COLOR_RGB = "color_rgb"
    MOTION = "motion"
    TAMPER = "tamper"
    TEMPERATURE = "temperature"
    ILLUMINANCE = "illuminance"
    BATTERY = "battery"
    MOTION_SENSITIVITY = "motion_sensitivity"
    BUTTON_EVENT = "button_event"
    RELATIVE_ROTATION = "relative_rotation"
    CONNECTIVITY_STATUS = "connectivity_status"
    DEVICE_SOFTWARE_UPDATE = "device_software_update"


class ChannelDataType(str, enum.Enum):
    BOOL = "bool"
    INT = "int"
    FLOAT = "float"
    ENUM = "enum"
    COLOR = "color"


class ChannelFlag(enum.IntFlag):
    NONE = 0
    READ = 1
    WRITE = 2
    REPORTABLE = 4
    RETAINED = 8

    DEFAULT_READ = READ | REPORTABLE
    DEFAULT_WRITE = READ | WRITE | REPORTABLE


class ButtonEvent(enum.IntEnum):
    INITIAL_PRESS = 1
    LONG_PRESS = 2
    REPEAT = 3
    SHORT_PRESS_RELEASE = 4
    LONG_PRESS_RELEASE = 5
    DOUBLE_PRESS = 6
    TRIPLE_PRESS = 7
    QUADRUPLE_PRESS = 8
    QUINTUPLE_PRESS = 9


class ZigbeeStatus(enum.IntEnum):
    UNKNOWN = 0
    CONNECTED = 1
    LIMITED = 2
    DISCONNECTED = 3


class SoftwareUpdateStatus(str, enum.Enum):
    UP_TO_DATE = "UpToDate"
    UPDATE_AVAILABLE = "UpdateAvailable"
    DOWNLOADING = "Downloading"
    INSTALLING = "Installing"
    REBOOT_REQUIRED = "RebootRequired"
    FAILED = "Failed"
    UNKNOWN = "Unknown"


class MotionSensitivity(enum.IntEnum):
    LOW = 1
    MEDIUM = 2
    HIGH = 3
    VERY_HIGH = 4

    @property
    def label(self) -> str:
        return {1: "Low", 2: "Medium", 3: "High", 4: "VeryHigh"}[int(self)]


class SceneState(str, enum.Enum):
    INACTIVE = "inactive"
    ACTIVE_STATIC = "active_static"
    ACTIVE_DYNAMIC = "active_dynamic"


class SceneFlag(enum.IntFlag):
    NONE = 0
    SUPPORTS_DYNAMIC = 1


class DeviceEffect(str, enum.Enum):
    CANDLE = "candle"
    FIREPLACE = "fireplace"
    SPARKLE = "sparkle"
    COLOR_LOOP = "color_loop"
    RELAX = "relax"
    CONCENTRATE = "concentrate"
    ALARM = "alarm"
    CUSTOM_VENDOR = "custom_vendor"


@dataclass(frozen=True)
class ChannelChoice:
    value: int
    label: str


@dataclass
class Channel:
    """A typed read/write point exposed on a device.

    `value` and `updated_ms` hold the last reported state and are ignored
    when comparing channel definitions.
    """

    id: str
    name: str
    kind: ChannelKind
    data_type: ChannelDataType
    flags: ChannelFlag = ChannelFlag.DEFAULT_READ
    min_value: Optional[float] = None
    max_value: Optional[float] = None
    step_value: Optional[float] = None
    unit: Optional[str] = None
    choices: Tuple[ChannelChoice, ...] = ()
    meta: Dict[str, Any] = field(default_factory=dict)
    value: Any = field(default=None, compare=False)
    updated_ms: Optional[int] = field(default=None, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "kind": self.kind.value,
            "data_type": self.data_type.value,
            "readable": bool(self.flags & ChannelFlag.READ),
            "writable": bool(self.flags & ChannelFlag.WRITE),
            "reportable": bool(self.flags & ChannelFlag.REPORTABLE),
            "retained": bool(self.flags & ChannelFlag.RETAINED),
            "min": self.min_value,
            "max": self.max_value,
            "step": self.step_value,
            "unit": self.unit,
            "choices": [{"value": c.value, "label": c.label} for c in self.choices],
            "meta": dict(self.meta),
            "value": jsonable(self.value),
            "updated_ms": self.updated_ms,
        }


@dataclass(frozen=True)
class EffectDescriptor:
    id: str
    label: str
    effect: DeviceEffect
    description: str
    category: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "label": self.label,
            "effect": self.effect.value,
            "description": self.description,
            "category": self.category,
        }


@dataclass
class Device:
    """A bridge device keyed by its stable bridge id."""

    id: str
    name: str = ""
    manufacturer: str = ""
    model: str = ""
    firmware: str = ""
    device_class: DeviceClass = DeviceClass.UNKNOWN
    flags: DeviceFlag = DeviceFlag.NONE
    meta: Dict[str, Any] = field(default_factory=dict)
    effects: List[EffectDescriptor] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "manufacturer": self.manufacturer,
            "model": self.model,
            "firmware": self.firmware,
            "device_class": self.device_class.value,
            "battery": bool(self.flags & DeviceFlag.BATTERY),
            "effects": [effect.to_dict() for effect in self.effects],
            "meta": self.meta,
        }


@dataclass
class Room:
    id: str
    name: str
    zone: str = ""
    members: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "zone": self.zone, "members": list(self.members)}


@dataclass
class Group:
    """A bridge zone; membership may include the devices of whole rooms."""

    id: str
    name: str
    zone: str = ""
    members: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "zone": self.zone, "members": list(self.members)}


@dataclass
class Scene:
    id: str
    name: str
    description: str = ""
    image: str = ""
    state: SceneState = SceneState.INACTIVE
    scope_type: str = ""
    scope_id: str = ""
    flags: SceneFlag = SceneFlag.NONE
    meta: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "image": self.image,
            "state": self.state.value,
            "scope_type": self.scope_type,
            "scope_id": self.scope_id,
            "supports_dynamic": bool(self.flags & SceneFlag.SUPPORTS_DYNAMIC),
        }


@dataclass(frozen=True)
class ResourceBinding:
    """Bridge resource receiving writes for a (device, channel) pair."""

    resource_type: str
    resource_id: str


@dataclass(frozen=True)
class Gamut:
    """Chromaticity triangle a light can reproduce."""

    red: Tuple[float, float]
    green: Tuple[float, float]
    blue: Tuple[float, float]

    @property
    def points(self) -> Tuple[Tuple[float, float], Tuple[float, float], Tuple[float, float]]:
        return (self.red, self.green, self.blue)

    @classmethod
    def from_payload(cls, payload: Any) -> Optional["Gamut"]:
        """Parse `color.gamut` ({red,green,blue: {x,y}}); None when incomplete."""

        if not isinstance(payload, Mapping):
            return None
        points: List[Tuple[float, float]] = []
        for key in ("red", "green", "blue"):
            point = payload.get(key)
            if not isinstance(point, Mapping):
                return None
            x, y = point.get("x"), point.get("y")
            if not isinstance(x, (int, float)) or not isinstance(y, (int, float)):
                return None
            points.append((float(x), float(y)))
        return cls(points[0], points[1], points[2])

    def as_list(self) -> List[List[float]]:
        return [[x, y] for x, y in self.points]


def sorted_members(members: Iterable[str]) -> Tuple[str, ...]:
    return tuple(sorted({member for member in members if member}))


def jsonable(value: Any) -> Any:
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, Mapping):
        return {key: jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [jsonable(item) for item in value]
    return value
