"""Filters that pick network devices by one of their properties.

A device is any object with the attributes ``vendor``, ``device_id``,
``driver``, ``if_name`` and ``link_type``.
"""

from __future__ import annotations

from typing import Iterable, TypeVar

_Device = TypeVar("_Device")


class _AttributeSelector:
    _attribute = ""

    def __init__(self, values: Iterable[str]):
        self.values = tuple(values)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({list(self.values)!r})"

    def __eq__(self, other) -> bool:
        return type(self) is type(other) and self.values == other.values

    def filter(self, devices: Iterable[_Device]) -> list[_Device]:
        """Return the devices whose property is one of the selector's values."""
        return [device for device in devices if getattr(device, self._attribute) in self.values]


class VendorSelector(_AttributeSelector):
    """Selects devices by PCI vendor id."""

    _attribute = "vendor"

    def filter(self, devices):
        return super().filter(devices)


class DeviceIdSelector(_AttributeSelector):
    """Selects devices by PCI device id."""

    _attribute = "device_id"

    def filter(self, devices):
        return super().filter(devices)


class IfNameSelector(_AttributeSelector):
    """Selects devices by network interface name."""

    _attribute = "if_name"

    def filter(self, devices):
        return super().filter(devices)


class DriverSelector(_AttributeSelector):
    """Selects devices by the driver bound to them."""

    _attribute = "driver"

    def filter(self, devices):
        return super().filter(devices)


class LinkTypeSelector(_AttributeSelector):
    """Selects devices by link encapsulation type."""

    _attribute = "link_type"

    def filter(self, devices):
        return super().filter(devices)