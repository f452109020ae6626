"""Channel definitions derived from bridge service resources."""

from __future__ import annotations

from typing import Any, List, Mapping, Optional, Sequence, Set, Tuple

from .model import (
    ButtonEvent,
    Channel,
    ChannelChoice,
    ChannelDataType,
    ChannelFlag,
    ChannelKind,
    Gamut,
    MotionSensitivity,
    SoftwareUpdateStatus,
    ZigbeeStatus,
)

DEFAULT_MIREK_MIN = 153
DEFAULT_MIREK_MAX = 500
CT_PRESET_COUNT = 5

_CT_PRESET_LABELS = ("Warmest", "Warm", "Neutral", "Cool", "Coolest")


def _obj(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


def _number(value: Any) -> Optional[float]:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    return None


def mirek_range(resource: Mapping[str, Any]) -> Tuple[int, int]:
    schema = _obj(_obj(resource.get("color_temperature")).get("mirek_schema"))
    low = _number(schema.get("mirek_minimum"))
    high = _number(schema.get("mirek_maximum"))
    if low is None or high is None or low >= high:
        return DEFAULT_MIREK_MIN, DEFAULT_MIREK_MAX
    return int(low), int(high)


def light_channels(resource: Mapping[str, Any]) -> List[Channel]:
    """Channels for one light service; only the capabilities it reports."""

    channels: List[Channel] = []
    if isinstance(resource.get("on"), Mapping):
        channels.append(
            Channel(
                id="on",
                name="Power",
                kind=ChannelKind.POWER_ON_OFF,
                data_type=ChannelDataType.BOOL,
                flags=ChannelFlag.DEFAULT_WRITE,
            )
        )
    if isinstance(resource.get("dimming"), Mapping):
        channels.append(
            Channel(
                id="bri",
                name="Brightness",
                kind=ChannelKind.BRIGHTNESS,
                data_type=ChannelDataType.FLOAT,
                flags=ChannelFlag.DEFAULT_WRITE,
                min_value=0.0,
                max_value=100.0,
                step_value=0.1,
                unit="%",
            )
        )
    if isinstance(resource.get("color_temperature"), Mapping):
        low, high = mirek_range(resource)
        channels.append(
            Channel(
                id="ct",
                name="Color Temperature",
                kind=ChannelKind.COLOR_TEMPERATURE,
                data_type=ChannelDataType.INT,
                flags=ChannelFlag.DEFAULT_WRITE,
                min_value=float(low),
                max_value=float(high),
                step_value=1.0,
                unit="mirek",
            )
        )
        channels.append(
            Channel(
                id="ctPreset",
                name="Color Temperature Preset",
                kind=ChannelKind.COLOR_TEMPERATURE_PRESET,
                data_type=ChannelDataType.ENUM,
                flags=ChannelFlag.READ | ChannelFlag.WRITE,
                min_value=0.0,
                max_value=float(CT_PRESET_COUNT - 1),
                step_value=1.0,
                choices=tuple(
                    ChannelChoice(index, label) for index, label in enumerate(_CT_PRESET_LABELS)
                ),
            )
        )
    color = _obj(resource.get("color"))
    if isinstance(color.get("xy"), Mapping):
        capabilities = {"space": "cie1931_xy"}
        gamut = Gamut.from_payload(color.get("gamut"))
        if gamut is not None:
            capabilities["gamut"] = gamut.as_list()
        if color.get("gamut_type"):
            capabilities["gamutType"] = color["gamut_type"]
        channels.append(
            Channel(
                id="color",
                name="Color",
                kind=ChannelKind.COLOR_RGB,
                data_type=ChannelDataType.COLOR,
                flags=ChannelFlag.DEFAULT_WRITE,
                meta={"colorCapabilities": capabilities},
            )
        )
    return channels


def motion_channels(resource: Mapping[str, Any]) -> List[Channel]:
    channels = [
        Channel(
            id="motion",
            name="Motion",
            kind=ChannelKind.MOTION,
            data_type=ChannelDataType.BOOL,
        )
    ]
    if isinstance(resource.get("sensitivity"), Mapping):
        channels.append(
            Channel(
                id="motion_sensitivity",
                name="Motion Sensitivity",
                kind=ChannelKind.MOTION_SENSITIVITY,
                data_type=ChannelDataType.ENUM,
                min_value=1.0,
                max_value=4.0,
                step_value=1.0,
                choices=tuple(ChannelChoice(int(level), level.label) for level in MotionSensitivity),
            )
        )
    return channels


def tamper_channel() -> Channel:
    return Channel(id="tamper", name="Tamper", kind=ChannelKind.TAMPER, data_type=ChannelDataType.BOOL)


def temperature_channel() -> Channel:
    return Channel(
        id="temperature",
        name="Temperature",
        kind=ChannelKind.TEMPERATURE,
        data_type=ChannelDataType.FLOAT,
        step_value=0.01,
        unit="C",
    )


def illuminance_channel() -> Channel:
    return Channel(
        id="illuminance",
        name="Illuminance",
        kind=ChannelKind.ILLUMINANCE,
        data_type=ChannelDataType.INT,
        min_value=0.0,
        unit="lx",
    )


def battery_channel() -> Channel:
    return Channel(
        id="battery",
        name="Battery",
        kind=ChannelKind.BATTERY,
        data_type=ChannelDataType.INT,
        min_value=0.0,
        max_value=100.0,
        step_value=1.0,
        unit="%",
    )


def connectivity_channel() -> Channel:
    return Channel(
        id="zigbee_status",
        name="Zigbee Status",
        kind=ChannelKind.CONNECTIVITY_STATUS,
        data_type=ChannelDataType.ENUM,
        choices=tuple(ChannelChoice(int(status), status.name.title()) for status in ZigbeeStatus),
    )


def software_update_channel() -> Channel:
    return Channel(
        id="device_software_update",
        name="Software Update",
        kind=ChannelKind.DEVICE_SOFTWARE_UPDATE,
        data_type=ChannelDataType.ENUM,
        choices=tuple(
            ChannelChoice(index, status.value) for index, status in enumerate(SoftwareUpdateStatus)
        ),
    )


def button_channel(channel_id: str, name: str) -> Channel:
    return Channel(
        id=channel_id,
        name=name,
        kind=ChannelKind.BUTTON_EVENT,
        data_type=ChannelDataType.ENUM,
        flags=ChannelFlag.READ | ChannelFlag.REPORTABLE | ChannelFlag.RETAINED,
        choices=tuple(
            ChannelChoice(int(event), event.name.replace("_", " ").title()) for event in ButtonEvent
        ),
    )


def dial_channel() -> Channel:
    return Channel(
        id="dial",
        name="Dial",
        kind=ChannelKind.RELATIVE_ROTATION,
        data_type=ChannelDataType.INT,
        flags=ChannelFlag.READ | ChannelFlag.REPORTABLE,
        step_value=1.0,
    )


def _declared_control_id(resource: Mapping[str, Any]) -> Optional[int]:
    control_id = _obj(resource.get("metadata")).get("control_id")
    if isinstance(control_id, int) and not isinstance(control_id, bool) and control_id > 0:
        return control_id
    return None


def button_control_ids(resources: Sequence[Mapping[str, Any]]) -> List[Tuple[int, Mapping[str, Any]]]:
    """Pair each button of one device with a distinct control id, ordered by id.

    A button without a usable `metadata.control_id`, or repeating one already
    taken, gets its position in the device's button list, moved up to the
    next free number.
    """

    taken: Set[int] = set()
    assigned: List[Tuple[int, Mapping[str, Any]]] = []
    unnumbered: List[Tuple[int, Mapping[str, Any]]] = []
    for position, resource in enumerate(resources, start=1):
        control_id = _declared_control_id(resource)
        if control_id is None or control_id in taken:
            unnumbered.append((position, resource))
            continue
        taken.add(control_id)
        assigned.append((control_id, resource))
    for position, resource in unnumbered:
        control_id = position
        while control_id in taken:
            control_id += 1
        taken.add(control_id)
        assigned.append((control_id, resource))
    return sorted(assigned, key=lambda item: item[0])


def software_update_index(status: SoftwareUpdateStatus) -> int:
    """Choice value reported on the software update channel for `status`."""

    return list(SoftwareUpdateStatus).index(status)
