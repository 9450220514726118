"""Container Device Interface specs and container annotations."""

from __future__ import annotations

import glob
import logging
import os
import re
import tempfile
from dataclasses import dataclass
from typing import Iterable, Optional

import yaml

log = logging.getLogger(__name__)

ANNOTATION_PREFIX = "cdi.k8s.io/"
CURRENT_VERSION = "0.5.0"
DEFAULT_SPEC_DIRS = ("/etc/cdi", "/var/run/cdi")
_MAX_ANNOTATION_NAME = 63

_VENDOR = re.compile(r"^[A-Za-z](?:[A-Za-z0-9._-]*[A-Za-z0-9])?$")
_CLASS = re.compile(r"^[A-Za-z](?:[A-Za-z0-9_-]*[A-Za-z0-9])?$")
_DEVICE = re.compile(r"^[A-Za-z0-9](?:[A-Za-z0-9._:-]*[A-Za-z0-9])?$")
_ANNOTATION_NAME = re.compile(r"^[A-Za-z0-9](?:[A-Za-z0-9._-]*[A-Za-z0-9])?$")


class _SpecDumper(yaml.SafeDumper):
    """Writes quoted scalars with double quotes."""

    def choose_scalar_style(self):
        style = super().choose_scalar_style()
        return '"' if style == "'" else style


def _check(pattern: re.Pattern, value: str, what: str) -> None:
    if not pattern.match(value):
        raise ValueError(f"invalid {what} {value!r}")


def _check_kind(kind: str) -> None:
    vendor, sep, klass = kind.partition("/")
    if not sep:
        raise ValueError(f"invalid kind {kind!r}, missing vendor")
    _check(_VENDOR, vendor, "vendor")
    _check(_CLASS, klass, "class")


def qualified_name(vendor: str, kind: str, name: str) -> str:
    """Return the fully qualified CDI device name vendor/kind=name."""
    return f"{vendor}/{kind}={name}"


def _check_qualified_name(device: str) -> None:
    kind, sep, name = device.partition("=")
    if not sep or not name:
        raise ValueError(f"unqualified device {device!r}, missing name")
    _check_kind(kind)
    _check(_DEVICE, name, "device name")


def annotation_key(prefix: str, kind: str) -> str:
    """Return the annotation key under which CDI devices are requested."""
    if not prefix:
        raise ValueError("invalid plugin name, empty")
    if not kind:
        raise ValueError("invalid deviceID, empty")
    name = prefix + "_" + kind.replace("/", "_")
    if len(name) > _MAX_ANNOTATION_NAME:
        raise ValueError(f"invalid plugin+deviceID {name!r}, too long")
    _check(_ANNOTATION_NAME, name, "plugin+deviceID")
    return ANNOTATION_PREFIX + name


def annotation_value(device_names: Iterable[str]) -> str:
    """Return the annotation value listing the qualified device names."""
    names = list(device_names)
    for name in names:
        _check_qualified_name(name)
    return ",".join(names)


def cleanup_specs(spec_file_prefix: str, spec_dirs: Optional[Iterable[str]] = None) -> None:
    """Remove spec files whose names start with the prefix."""
    for directory in spec_dirs if spec_dirs is not None else DEFAULT_SPEC_DIRS:
        for spec in glob.glob(os.path.join(directory, spec_file_prefix + "*")):
            log.info("Cleaning up CDI spec file: %s", spec)
            os.remove(spec)


def _write_atomically(path: str, text: str) -> None:
    directory = os.path.dirname(path)
    os.makedirs(directory, mode=0o755, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".spec-")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
        os.chmod(tmp_path, 0o644)
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise


@dataclass(frozen=True)
class Cdi:
    """Creates CDI specs and annotations; the last spec directory receives new specs."""

    spec_dirs: tuple[str, ...] = DEFAULT_SPEC_DIRS

    def create_cdi_spec(self, resource_prefix: str, resource_name: str, pool_name: str, devices) -> str:
        """Write a spec for the devices and return the path of the file written."""
        log.info('creating CDI spec for "%s" resource', resource_name)
        kind = f"{resource_prefix}/{resource_name}"
        _check_kind(kind)

        spec_devices = []
        for dev in devices:
            _check(_DEVICE, dev.pci_address, "device name")
            nodes = [
                {"path": spec.container_path, "hostPath": spec.host_path, "permissions": "rw"}
                for spec in dev.rdma_spec
            ]
            edits = {"deviceNodes": nodes} if nodes else {}
            spec_devices.append({"name": dev.pci_address, "containerEdits": edits})

        document = {"cdiVersion": CURRENT_VERSION, "kind": kind, "devices": spec_devices}
        text = yaml.dump(
            document, Dumper=_SpecDumper, default_flow_style=False, sort_keys=True, width=4096
        )
        path = os.path.join(self.spec_dirs[-1], f"{resource_prefix}_{pool_name}.yaml")
        try:
            _write_atomically(path, text)
        except OSError as err:
            log.error("createCDISpec(): can not create CDI spec: %s", err)
            raise

        log.info("createCDISpec(): listing cache")
        for vendor_kind, name in self._cached_devices():
            vendor = vendor_kind.partition("/")[0]
            log.info("createCDISpec(): device: %s, %s, %s", vendor, vendor_kind, name)
        return path

    def _cached_devices(self):
        for directory in self.spec_dirs:
            for spec_path in sorted(glob.glob(os.path.join(directory, "*.yaml"))):
                try:
                    with open(spec_path, encoding="utf-8") as handle:
                        spec = yaml.safe_load(handle) or {}
                except (OSError, yaml.YAMLError):
                    continue
                if not isinstance(spec, dict):
                    continue
                for device in spec.get("devices") or []:
                    if isinstance(device, dict):
                        yield str(spec.get("kind", "")), str(device.get("name", ""))

    def create_container_annotations(self, devices, resource_prefix: str, resource_kind: str) -> dict[str, str]:
        """Return the annotations that request the devices from a container runtime."""
        devices = list(devices)
        if not devices:
            raise ValueError("devices list is empty")
        key = annotation_key(resource_prefix, resource_kind)
        value = annotation_value(
            qualified_name(resource_prefix, resource_kind, dev.pci_address) for dev in devices
        )
        annotations = {key: value}
        log.info("created CDI annotations: %s", annotations)
        return annotations