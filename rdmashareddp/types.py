"""Configuration of the device plugin as read from its JSON file."""

from __future__ import annotations

import json
from dataclasses import dataclass, field, fields
from typing import Optional


def _strings(value, what: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ValueError(f"{what} must be a list of strings")
    return list(value)


def _object(value, what: str) -> dict:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"{what} must be a JSON object")
    return value


@dataclass
class Selectors:
    """Criteria a device has to meet to belong to a resource pool."""

    vendors: list[str] = field(default_factory=list)
    device_ids: list[str] = field(default_factory=list)
    drivers: list[str] = field(default_factory=list)
    if_names: list[str] = field(default_factory=list)
    link_types: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data) -> "Selectors":
        data = _object(data, "selectors")
        return cls(
            vendors=_strings(data.get("vendors"), "vendors"),
            device_ids=_strings(data.get("deviceIDs"), "deviceIDs"),
            drivers=_strings(data.get("drivers"), "drivers"),
            if_names=_strings(data.get("ifNames"), "ifNames"),
            link_types=_strings(data.get("linkTypes"), "linkTypes"),
        )

    def is_empty(self) -> bool:
        """True when no selector holds any value."""
        return not any(getattr(self, item.name) for item in fields(self))


@dataclass
class UserConfig:
    """The configuration of one shared RDMA resource."""

    resource_name: str = ""
    resource_prefix: str = ""
    rdma_hca_max: int = 0
    devices: list[str] = field(default_factory=list)
    selectors: Selectors = field(default_factory=Selectors)

    @classmethod
    def from_dict(cls, data) -> "UserConfig":
        data = _object(data, "resource configuration")
        hca_max = data.get("rdmaHcaMax") or 0
        if isinstance(hca_max, bool) or not isinstance(hca_max, int):
            raise ValueError("rdmaHcaMax must be an integer")
        return cls(
            resource_name=str(data.get("resourceName") or ""),
            resource_prefix=str(data.get("resourcePrefix") or ""),
            rdma_hca_max=hca_max,
            devices=_strings(data.get("devices"), "devices"),
            selectors=Selectors.from_dict(data.get("selectors")),
        )


@dataclass
class UserConfigList:
    """The whole configuration file."""

    periodic_update_interval: Optional[int] = None
    config_list: list[UserConfig] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data) -> "UserConfigList":
        data = _object(data, "configuration")
        interval = data.get("periodicUpdateInterval")
        if interval is not None and (isinstance(interval, bool) or not isinstance(interval, int)):
            raise ValueError("periodicUpdateInterval must be an integer")
        entries = data.get("configList") or []
        if not isinstance(entries, list):
            raise ValueError("configList must be a list")
        return cls(interval, [UserConfig.from_dict(entry) for entry in entries])

    @classmethod
    def from_json(cls, text) -> "UserConfigList":
        """Parse a configuration document; raises ValueError when it is malformed."""
        return cls.from_dict(json.loads(text))