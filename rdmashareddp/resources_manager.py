"""Reads the plugin configuration and runs one resource server per resource."""

from __future__ import annotations

import errno
import logging
import re
import threading
from typing import Callable, Iterable, Optional

from .cdi import Cdi, cleanup_specs
from .device_selectors import (
    DeviceIdSelector,
    DriverSelector,
    IfNameSelector,
    LinkTypeSelector,
    VendorSelector,
)
from .netlink import EXCLUSIVE, NetlinkManager, rdma_netns_mode
from .pci_net_device import PciDevice, PciNetDevice, create_pci_net_device, list_pci_devices
from .rdma_device_spec import RdmaDeviceSpec
from .server import (
    ACTIVE_SOCK_DIR,
    CDI_RESOURCE_PREFIX,
    detect_plugin_watch_mode,
    new_resource_server,
)
from .types import Selectors, UserConfig, UserConfigList
from .utils import is_empty_selector

log = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE_PATH = "/k8s-rdma-shared-dev-plugin/config.json"
SOCKET_SUFFIX = "sock"
RDMA_HCA_RESOURCE_PREFIX = "rdma"

NET_CLASS = 0x02
MAX_VENDOR_NAME_LENGTH = 20
MAX_PRODUCT_NAME_LENGTH = 40

DEFAULT_PERIODIC_UPDATE_INTERVAL = 60

_RESOURCE_NAME = re.compile(r"[a-zA-Z0-9_]+")


def valid_resource_name(name: str) -> bool:
    """True when the name holds only letters, digits and underscores."""
    return _RESOURCE_NAME.fullmatch(name) is not None


def _shorten(text: str, limit: int) -> str:
    return text[: limit - 3] + "..." if len(text) > limit else text


class ResourceManager:
    """Manages the resource servers of every configured shared RDMA resource."""

    def __init__(
        self,
        config_file: str = DEFAULT_CONFIG_FILE_PATH,
        use_cdi: bool = False,
        *,
        watch_mode: Optional[bool] = None,
        active_sock_dir: str = ACTIVE_SOCK_DIR,
        netlink_manager=None,
        rds=None,
        sys_bus_pci: Optional[str] = None,
        cdi_spec_dirs: Optional[Iterable[str]] = None,
        netns_mode: Callable[[], str] = rdma_netns_mode,
    ):
        if watch_mode is None:
            watch_mode = detect_plugin_watch_mode(active_sock_dir)
            if watch_mode:
                log.info("Using Kubelet Plugin Registry Mode")
            else:
                log.info("Using Deprecated Device Plugin Registry Path")
        self.config_file = config_file
        self.use_cdi = use_cdi
        self.watch_mode = watch_mode
        self.default_resource_prefix = RDMA_HCA_RESOURCE_PREFIX
        self.socket_suffix = SOCKET_SUFFIX
        self.netlink_manager = netlink_manager if netlink_manager is not None else NetlinkManager()
        self.rds = rds if rds is not None else RdmaDeviceSpec()
        self.sys_bus_pci = sys_bus_pci
        self.cdi_spec_dirs = tuple(cdi_spec_dirs) if cdi_spec_dirs is not None else None
        self.periodic_update_interval: float = 0
        self.config_list: list[UserConfig] = []
        self.resource_servers: list = []
        self.device_list: list[PciDevice] = []
        self._netns_mode = netns_mode
        self._watchers: list[threading.Thread] = []

    def read_config(self) -> None:
        """Load the configuration file; raises OSError or ValueError."""
        log.info("Reading %s", self.config_file)
        with open(self.config_file, encoding="utf-8") as handle:
            raw = handle.read()
        config = UserConfigList.from_json(raw)
        log.info("loaded config: %s", config.config_list)

        if config.periodic_update_interval is None:
            log.info("no periodic update interval is set, use default interval 60 seconds")
            self.periodic_update_interval = DEFAULT_PERIODIC_UPDATE_INTERVAL
        else:
            if config.periodic_update_interval == 0:
                log.warning("periodic update interval is 0, no periodic update will run")
            else:
                log.info("periodic update interval: %+d", config.periodic_update_interval)
            self.periodic_update_interval = config.periodic_update_interval

        self.config_list.extend(config.config_list)

    def validate_configs(self) -> None:
        """Check the configuration and fill in defaults; raises ValueError."""
        if self.periodic_update_interval < 0:
            raise ValueError(
                f'invalid "periodicUpdateInterval" configuration "{self.periodic_update_interval}"'
            )
        if not self.config_list:
            raise ValueError("no resources configuration found")

        seen: set[str] = set()
        for conf in self.config_list:
            if not valid_resource_name(conf.resource_name):
                raise ValueError(
                    f'error: resource name "{conf.resource_name}" contains invalid characters'
                )
            if conf.resource_name in seen:
                raise ValueError(f'error: resource name "{conf.resource_name}" already exists')
            if not conf.resource_prefix:
                conf.resource_prefix = self.default_resource_prefix
            if conf.rdma_hca_max < 0:
                raise ValueError(f"error: Invalid value for rdmaHcaMax < 0: {conf.rdma_hca_max}")

            empty_selector = is_empty_selector(conf.selectors)
            if empty_selector and not conf.devices:
                raise ValueError(
                    'error: configuration missmatch. neither "selectors" nor "devices" fields exits,'
                    ' it is recommended to use the new "selectors" field'
                )
            if not empty_selector and conf.devices:
                raise ValueError(
                    'configuration mismatch. Cannot specify both "selectors" and "devices" fields'
                )
            if empty_selector:
                log.warning(
                    '"devices" field is deprecated, it is recommended to use the new "selectors" field'
                )
                conf.selectors.if_names = list(conf.devices)

            seen.add(conf.resource_name)

    def validate_rdma_system_mode(self) -> None:
        """Raise RuntimeError unless the RDMA subsystem runs in shared namespace mode."""
        try:
            mode = self._netns_mode()
        except OSError as err:
            if err.errno == errno.EINVAL:
                log.info("too old kernel to get RDMA subsystem")
                return
            raise RuntimeError("can not get RDMA subsystem network namespace mode") from err
        except ValueError as err:
            raise RuntimeError("can not get RDMA subsystem network namespace mode") from err
        if mode == EXCLUSIVE:
            raise RuntimeError("incorrect RDMA subsystem network namespace")

    def discover_host_devices(self) -> None:
        """Refresh the list of PCI network controllers on the host."""
        log.info("discovering host network devices")
        devices = list_pci_devices(self.sys_bus_pci)
        if not devices:
            log.warning("DiscoverHostDevices(): no PCI network device found")

        found = []
        for device in devices:
            try:
                dev_class = int(device.class_id, 16)
            except ValueError as err:
                log.warning(
                    "DiscoverHostDevices(): unable to parse device class for device %s %r",
                    device,
                    err,
                )
                continue
            if dev_class != NET_CLASS:
                continue
            log.info(
                "DiscoverHostDevices(): device found: %-12s\t%-12s\t%-20s\t%-40s",
                device.address,
                device.class_id,
                _shorten(device.vendor_name, MAX_VENDOR_NAME_LENGTH),
                _shorten(device.product_name, MAX_PRODUCT_NAME_LENGTH),
            )
            found.append(device)
        self.device_list = found

    def get_devices(self) -> list[PciNetDevice]:
        """Build network devices from the discovered PCI devices, skipping failures."""
        devices = []
        for device in self.device_list:
            try:
                devices.append(
                    create_pci_net_device(device, self.rds, self.netlink_manager, self.sys_bus_pci)
                )
            except Exception as err:
                log.error("error creating new device: %s", err)
        return devices

    def get_filtered_devices(self, devices, selectors: Selectors) -> list:
        """Return the devices that pass every non-empty selector."""
        filtered = list(devices)
        for values, selector in (
            (selectors.vendors, VendorSelector),
            (selectors.device_ids, DeviceIdSelector),
            (selectors.drivers, DriverSelector),
            (selectors.if_names, IfNameSelector),
            (selectors.link_types, LinkTypeSelector),
        ):
            if values:
                filtered = selector(values).filter(filtered)
        return list(filtered)

    def _cleanup_cdi_specs(self) -> None:
        if self.use_cdi:
            cleanup_specs(CDI_RESOURCE_PREFIX, self.cdi_spec_dirs)

    def init_servers(self) -> None:
        """Create a resource server for every configured resource."""
        for config in self.config_list:
            log.info("Resource: %s", config)
            filtered = self.get_filtered_devices(self.get_devices(), config.selectors)
            # Bring the interfaces up until something else takes care of it.
            for device in filtered:
                try:
                    link = self.netlink_manager.link_by_name(device.if_name)
                except Exception as err:
                    log.warning("InitServers(): unable to get NIC info: %s", err)
                    continue
                try:
                    self.netlink_manager.link_set_up(link)
                except Exception as err:
                    log.warning(
                        "InitServers(): unable to set NIC %s to up state: %s", device.if_name, err
                    )

            if not filtered:
                log.warning(
                    "no devices in device pool, creating empty resource server for %s",
                    config.resource_name,
                )

            self._cleanup_cdi_specs()
            server = new_resource_server(
                config, filtered, self.watch_mode, self.socket_suffix, self.use_cdi
            )
            if self.cdi_spec_dirs is not None:
                server.cdi = Cdi(self.cdi_spec_dirs)
            self.resource_servers.append(server)

    def start_all_servers(self) -> None:
        """Start every server and, without plugin watcher, watch its socket."""
        for server in self.resource_servers:
            server.start()
            if not self.watch_mode:
                watcher = threading.Thread(target=server.watch, daemon=True)
                watcher.start()
                self._watchers.append(watcher)

    def stop_all_servers(self) -> None:
        self._cleanup_cdi_specs()
        for server in self.resource_servers:
            server.stop()

    def restart_all_servers(self) -> None:
        self._cleanup_cdi_specs()
        for server in self.resource_servers:
            server.restart()

    def _update_servers(self) -> None:
        for server, config in zip(self.resource_servers, self.config_list):
            devices = self.get_devices()
            server.update_devices(self.get_filtered_devices(devices, config.selectors))

    def periodic_update(self) -> Callable[[], None]:
        """Rediscover devices periodically in the background; return a function that stops it."""
        if self.periodic_update_interval <= 0:
            return lambda: None

        interval = self.periodic_update_interval
        stopped = threading.Event()

        def run() -> None:
            while not stopped.wait(interval):
                try:
                    self.discover_host_devices()
                except Exception as err:
                    log.error("failed to discover host devices: %s", err)
                    continue
                self._update_servers()

        worker = threading.Thread(target=run, daemon=True)
        worker.start()

        def stop() -> None:
            stopped.set()
            if worker is not threading.current_thread():
                worker.join()

        return stop