"""Lookups of network and RDMA device information in sysfs."""

from __future__ import annotations

import os
import stat
from typing import Iterator, Optional

SYS_NET_DEVICES = "/sys/class/net"
SYS_BUS_PCI = "/sys/bus/pci/devices"
DEV_DIR = "/dev/infiniband"

# Character device classes in the order they are reported for an RDMA device.
_CHAR_DEVICE_CLASSES = (
    ("infiniband_ucm", "ucm"),
    ("infiniband_mad", "issm"),
    ("infiniband_mad", "umad"),
    ("infiniband_verbs", "uverbs"),
)


def get_pci_address(if_name: str, sys_net_devices: Optional[str] = None) -> str:
    """Return the PCI address of a network interface."""
    device_link = os.path.join(sys_net_devices or SYS_NET_DEVICES, if_name, "device")
    try:
        info = os.lstat(device_link)
    except OSError as err:
        raise OSError(f"can't get the symbolic link of the device {if_name!r}: {err}") from err
    if not stat.S_ISLNK(info.st_mode):
        raise OSError(f"no symbolic link for the device {if_name!r}")
    try:
        target = os.readlink(device_link)
    except OSError as err:
        raise OSError(f"can't read the symbolic link of the device {if_name!r}: {err}") from err
    return target[9:]


def _list_dir(path: str) -> list[str]:
    try:
        return sorted(os.listdir(path))
    except OSError:
        return []


def _find_char_device(class_dir: str, prefix: str, rdma_name: str) -> Optional[str]:
    for entry in _list_dir(class_dir):
        if not entry.startswith(prefix):
            continue
        try:
            with open(os.path.join(class_dir, entry, "ibdev"), encoding="utf-8") as handle:
                ibdev = handle.read().strip()
        except OSError:
            continue
        if ibdev == rdma_name:
            return entry
    return None


def _char_devices(pci_dir: str, rdma_name: str, dev_dir: str) -> Iterator[str]:
    for class_dir, prefix in _CHAR_DEVICE_CLASSES:
        entry = _find_char_device(os.path.join(pci_dir, class_dir), prefix, rdma_name)
        if entry is not None:
            yield os.path.join(dev_dir, entry)
    rdma_cm = os.path.join(dev_dir, "rdma_cm")
    if os.path.exists(rdma_cm):
        yield rdma_cm


def get_rdma_devices(
    pci_address: str, sys_bus_pci: Optional[str] = None, dev_dir: Optional[str] = None
) -> list[str]:
    """Return the RDMA character device paths belonging to a PCI device."""
    pci_dir = os.path.join(sys_bus_pci or SYS_BUS_PCI, pci_address)
    dev_dir = dev_dir or DEV_DIR
    devices: list[str] = []
    for rdma_name in _list_dir(os.path.join(pci_dir, "infiniband")):
        devices.extend(_char_devices(pci_dir, rdma_name, dev_dir))
    return devices


def is_empty_selector(selector) -> bool:
    """True when the selectors hold no value at all."""
    return selector.is_empty()


def get_net_names(pci_addr: str, sys_bus_pci: Optional[str] = None) -> list[str]:
    """Return the network interface names of a PCI device."""
    net_dir = os.path.join(sys_bus_pci or SYS_BUS_PCI, pci_addr, "net")
    try:
        os.lstat(net_dir)
    except OSError as err:
        raise OSError(f"no net directory under pci device {pci_addr}: {err}") from err
    try:
        return sorted(os.listdir(net_dir))
    except OSError as err:
        raise OSError(f"failed to read net directory {net_dir}: {err}") from err


def get_pci_dev_driver(pci_addr: str, sys_bus_pci: Optional[str] = None) -> str:
    """Return the name of the driver bound to a PCI device."""
    driver_link = os.path.join(sys_bus_pci or SYS_BUS_PCI, pci_addr, "driver")
    try:
        target = os.readlink(driver_link)
    except OSError as err:
        raise OSError(f"error getting driver info for device {pci_addr} {err}") from err
    return os.path.basename(target)