"""Messages of the kubelet device plugin and plugin registration APIs.

The messages are encoded in the protocol buffers wire format so that they
can be exchanged with the kubelet over gRPC.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterator, Optional, Union

HEALTHY = "Healthy"
UNHEALTHY = "Unhealthy"
VERSION = "v1beta1"
DEVICE_PLUGIN_TYPE = "DevicePlugin"
SUPPORTED_VERSIONS = ("v1alpha1", "v1beta1")

DEVICE_PLUGIN_SERVICE = "v1beta1.DevicePlugin"
REGISTRATION_SERVICE = "v1beta1.Registration"
PLUGIN_REGISTRATION_SERVICE = "pluginregistration.Registration"

_VARINT = 0
_FIXED64 = 1
_LENGTH = 2
_FIXED32 = 5

_Value = Union[int, bytes]


def _varint(value: int) -> bytes:
    value &= (1 << 64) - 1
    out = bytearray()
    while True:
        low = value & 0x7F
        value >>= 7
        if value:
            out.append(low | 0x80)
        else:
            out.append(low)
            return bytes(out)


def _key(number: int, wire: int) -> bytes:
    return _varint(number << 3 | wire)


def _length_field(number: int, payload: bytes) -> bytes:
    return _key(number, _LENGTH) + _varint(len(payload)) + payload


def _string(number: int, text: str) -> bytes:
    return _length_field(number, text.encode("utf-8")) if text else b""


def _strings(number: int, texts: list[str]) -> bytes:
    return b"".join(_length_field(number, text.encode("utf-8")) for text in texts)


def _boolean(number: int, flag: bool) -> bytes:
    return _key(number, _VARINT) + b"\x01" if flag else b""


def _messages(number: int, messages) -> bytes:
    return b"".join(_length_field(number, message.to_bytes()) for message in messages)


def _string_map(number: int, mapping: dict[str, str]) -> bytes:
    return b"".join(
        _length_field(
            number,
            _length_field(1, key.encode("utf-8")) + _length_field(2, value.encode("utf-8")),
        )
        for key, value in sorted(mapping.items())
    )


def _read_varint(data: bytes, pos: int) -> tuple[int, int]:
    result = 0
    shift = 0
    while True:
        if pos >= len(data):
            raise ValueError("truncated varint")
        byte = data[pos]
        pos += 1
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return result, pos
        shift += 7
        if shift >= 70:
            raise ValueError("varint is too long")


def _take(data: bytes, pos: int, size: int) -> tuple[bytes, int]:
    end = pos + size
    if end > len(data):
        raise ValueError("truncated field")
    return data[pos:end], end


def _fields(data) -> Iterator[tuple[int, int, _Value]]:
    """Yield (field number, wire type, raw value) for every field in data."""
    data = bytes(data)
    pos = 0
    while pos < len(data):
        key, pos = _read_varint(data, pos)
        number, wire = key >> 3, key & 0x7
        if number == 0:
            raise ValueError("invalid field number 0")
        if wire == _VARINT:
            value, pos = _read_varint(data, pos)
        elif wire == _FIXED64:
            value, pos = _take(data, pos, 8)
        elif wire == _LENGTH:
            size, pos = _read_varint(data, pos)
            value, pos = _take(data, pos, size)
        elif wire == _FIXED32:
            value, pos = _take(data, pos, 4)
        else:
            raise ValueError(f"unsupported wire type {wire}")
        yield number, wire, value


def _check_wire(number: int, wire: int, expected: int) -> None:
    if wire != expected:
        raise ValueError(f"field {number} has wire type {wire}, expected {expected}")


def _as_str(number: int, wire: int, value: _Value) -> str:
    _check_wire(number, wire, _LENGTH)
    return value.decode("utf-8")


def _as_bytes(number: int, wire: int, value: _Value) -> bytes:
    _check_wire(number, wire, _LENGTH)
    return value


def _as_bool(number: int, wire: int, value: _Value) -> bool:
    _check_wire(number, wire, _VARINT)
    return bool(value)


def _map_entry(number: int, wire: int, value: _Value) -> tuple[str, str]:
    key = text = ""
    for entry_number, entry_wire, entry_value in _fields(_as_bytes(number, wire, value)):
        if entry_number == 1:
            key = _as_str(entry_number, entry_wire, entry_value)
        elif entry_number == 2:
            text = _as_str(entry_number, entry_wire, entry_value)
    return key, text


@dataclass
class Device:
    """A device exposed to the kubelet."""

    id: str = ""
    health: str = ""

    def to_bytes(self) -> bytes:
        return _string(1, self.id) + _string(2, self.health)

    @classmethod
    def from_bytes(cls, data) -> "Device":
        message = cls()
        for number, wire, value in _fields(data):
            if number == 1:
                message.id = _as_str(number, wire, value)
            elif number == 2:
                message.health = _as_str(number, wire, value)
        return message


@dataclass
class DeviceSpec:
    """A host device node to be made available inside a container."""

    container_path: str = ""
    host_path: str = ""
    permissions: str = ""

    def to_bytes(self) -> bytes:
        return (
            _string(1, self.container_path)
            + _string(2, self.host_path)
            + _string(3, self.permissions)
        )

    @classmethod
    def from_bytes(cls, data) -> "DeviceSpec":
        message = cls()
        for number, wire, value in _fields(data):
            if number == 1:
                message.container_path = _as_str(number, wire, value)
            elif number == 2:
                message.host_path = _as_str(number, wire, value)
            elif number == 3:
                message.permissions = _as_str(number, wire, value)
        return message


@dataclass
class ListAndWatchResponse:
    """The current list of devices of a plugin."""

    devices: list[Device] = field(default_factory=list)

    def to_bytes(self) -> bytes:
        return _messages(1, self.devices)

    @classmethod
    def from_bytes(cls, data) -> "ListAndWatchResponse":
        message = cls()
        for number, wire, value in _fields(data):
            if number == 1:
                message.devices.append(Device.from_bytes(_as_bytes(number, wire, value)))
        return message


@dataclass
class ContainerAllocateRequest:
    """The device ids requested for one container."""

    devices_ids: list[str] = field(default_factory=list)

    def to_bytes(self) -> bytes:
        return _strings(1, self.devices_ids)

    @classmethod
    def from_bytes(cls, data) -> "ContainerAllocateRequest":
        message = cls()
        for number, wire, value in _fields(data):
            if number == 1:
                message.devices_ids.append(_as_str(number, wire, value))
        return message


@dataclass
class AllocateRequest:
    """An allocation request covering several containers."""

    container_requests: list[ContainerAllocateRequest] = field(default_factory=list)

    def to_bytes(self) -> bytes:
        return _messages(1, self.container_requests)

    @classmethod
    def from_bytes(cls, data) -> "AllocateRequest":
        message = cls()
        for number, wire, value in _fields(data):
            if number == 1:
                message.container_requests.append(
                    ContainerAllocateRequest.from_bytes(_as_bytes(number, wire, value))
                )
        return message


@dataclass
class ContainerAllocateResponse:
    """What the runtime has to give one container."""

    envs: dict[str, str] = field(default_factory=dict)
    devices: list[DeviceSpec] = field(default_factory=list)
    annotations: dict[str, str] = field(default_factory=dict)

    def to_bytes(self) -> bytes:
        return (
            _string_map(1, self.envs)
            + _messages(3, self.devices)
            + _string_map(4, self.annotations)
        )

    @classmethod
    def from_bytes(cls, data) -> "ContainerAllocateResponse":
        message = cls()
        for number, wire, value in _fields(data):
            if number == 1:
                key, text = _map_entry(number, wire, value)
                message.envs[key] = text
            elif number == 3:
                message.devices.append(DeviceSpec.from_bytes(_as_bytes(number, wire, value)))
            elif number == 4:
                key, text = _map_entry(number, wire, value)
                message.annotations[key] = text
        return message


@dataclass
class AllocateResponse:
    """The answer to an allocation request, one entry per container."""

    container_responses: list[ContainerAllocateResponse] = field(default_factory=list)

    def to_bytes(self) -> bytes:
        return _messages(1, self.container_responses)

    @classmethod
    def from_bytes(cls, data) -> "AllocateResponse":
        message = cls()
        for number, wire, value in _fields(data):
            if number == 1:
                message.container_responses.append(
                    ContainerAllocateResponse.from_bytes(_as_bytes(number, wire, value))
                )
        return message


@dataclass
class DevicePluginOptions:
    """Options a device plugin announces to the kubelet."""

    pre_start_required: bool = False
    get_preferred_allocation_available: bool = False

    def to_bytes(self) -> bytes:
        return _boolean(1, self.pre_start_required) + _boolean(
            2, self.get_preferred_allocation_available
        )

    @classmethod
    def from_bytes(cls, data) -> "DevicePluginOptions":
        message = cls()
        for number, wire, value in _fields(data):
            if number == 1:
                message.pre_start_required = _as_bool(number, wire, value)
            elif number == 2:
                message.get_preferred_allocation_available = _as_bool(number, wire, value)
        return message


@dataclass
class RegisterRequest:
    """A request to register a device plugin with the kubelet."""

    version: str = ""
    endpoint: str = ""
    resource_name: str = ""
    options: Optional[DevicePluginOptions] = None

    def to_bytes(self) -> bytes:
        encoded = _string(1, self.version) + _string(2, self.endpoint) + _string(3, self.resource_name)
        if self.options is not None:
            encoded += _length_field(4, self.options.to_bytes())
        return encoded

    @classmethod
    def from_bytes(cls, data) -> "RegisterRequest":
        message = cls()
        for number, wire, value in _fields(data):
            if number == 1:
                message.version = _as_str(number, wire, value)
            elif number == 2:
                message.endpoint = _as_str(number, wire, value)
            elif number == 3:
                message.resource_name = _as_str(number, wire, value)
            elif number == 4:
                message.options = DevicePluginOptions.from_bytes(_as_bytes(number, wire, value))
        return message


@dataclass
class PluginInfo:
    """Information a plugin gives the kubelet plugin watcher."""

    type: str = ""
    name: str = ""
    endpoint: str = ""
    supported_versions: list[str] = field(default_factory=list)

    def to_bytes(self) -> bytes:
        return (
            _string(1, self.type)
            + _string(2, self.name)
            + _string(3, self.endpoint)
            + _strings(4, self.supported_versions)
        )

    @classmethod
    def from_bytes(cls, data) -> "PluginInfo":
        message = cls()
        for number, wire, value in _fields(data):
            if number == 1:
                message.type = _as_str(number, wire, value)
            elif number == 2:
                message.name = _as_str(number, wire, value)
            elif number == 3:
                message.endpoint = _as_str(number, wire, value)
            elif number == 4:
                message.supported_versions.append(_as_str(number, wire, value))
        return message


@dataclass
class RegistrationStatus:
    """The outcome of a registration reported by the kubelet."""

    plugin_registered: bool = False
    error: str = ""

    def to_bytes(self) -> bytes:
        return _boolean(1, self.plugin_registered) + _string(2, self.error)

    @classmethod
    def from_bytes(cls, data) -> "RegistrationStatus":
        message = cls()
        for number, wire, value in _fields(data):
            if number == 1:
                message.plugin_registered = _as_bool(number, wire, value)
            elif number == 2:
                message.error = _as_str(number, wire, value)
        return message