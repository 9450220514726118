"""PCI network devices and their discovery in sysfs."""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from typing import Optional

from .api import DeviceSpec
from .utils import get_net_names, get_pci_dev_driver

log = logging.getLogger(__name__)

_MODALIAS = re.compile(r"pci:v\w{4}(\w{4})d\w{4}(\w{4})sv\w{8}sd\w{8}bc(\w{2})sc(\w{2})")


@dataclass
class PciDevice:
    """A PCI device found on the host."""

    address: str
    vendor_id: str = ""
    device_id: str = ""
    class_id: str = ""
    subclass_id: str = ""
    vendor_name: str = ""
    product_name: str = ""


@dataclass
class PciNetDevice:
    """A PCI network device with the properties used to select and expose it."""

    pci_address: str = ""
    if_name: str = ""
    vendor: str = ""
    device_id: str = ""
    driver: str = ""
    link_type: str = ""
    rdma_spec: list[DeviceSpec] = field(default_factory=list)


def list_pci_devices(sys_bus_pci: Optional[str] = None) -> list[PciDevice]:
    """Return every PCI device whose modalias can be read, in address order.

    By default the host's sysfs is used, rooted at GHW_CHROOT when that is set.
    """
    if sys_bus_pci is None:
        root = os.environ.get("GHW_CHROOT", "/")
        sys_bus_pci = os.path.join(root, "sys", "bus", "pci", "devices")
    try:
        addresses = sorted(os.listdir(sys_bus_pci))
    except OSError:
        return []
    devices = []
    for address in addresses:
        try:
            with open(os.path.join(sys_bus_pci, address, "modalias"), encoding="utf-8") as handle:
                match = _MODALIAS.match(handle.read().strip())
        except OSError:
            continue
        if match:
            vendor, product, klass, subclass = (part.lower() for part in match.groups())
            devices.append(PciDevice(address, vendor, product, klass, subclass))
    return devices


def create_pci_net_device(dev: PciDevice, rds, netlink, sys_bus_pci: Optional[str] = None) -> PciNetDevice:
    """Build a PciNetDevice from a PCI device.

    Raises OSError when the driver cannot be read, the netlink lookup's error
    when the interface is not found, and LookupError when RDMA devices are missing.
    """
    address = dev.address
    try:
        net_names = get_net_names(address, sys_bus_pci)
    except OSError:
        net_names = []
    if_name = net_names[0] if net_names else ""
    if len(net_names) > 1:
        log.warning("found several names for device %s %s, using first name %s", address, net_names, if_name)

    driver = get_pci_dev_driver(address, sys_bus_pci)
    link_type = netlink.link_by_name(if_name).encap_type if if_name else ""

    rdma_spec = rds.get(address)
    try:
        rds.verify(rdma_spec)
    except LookupError as err:
        raise LookupError(f"missing RDMA device spec for device {address}, {err}") from err

    return PciNetDevice(address, if_name, dev.vendor_id, dev.device_id, driver, link_type, rdma_spec)