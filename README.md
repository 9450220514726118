# rdmashareddp

A Kubernetes device plugin that exposes the RDMA devices of a Linux host as
shared resources.

Each configured resource pool selects host network devices by vendor, device
ID, driver, interface name or link type. The plugin advertises a fixed number
of identical slots (`rdmaHcaMax`, with IDs `"0"`, `"1"`, ...) to the kubelet.
Every container that is allocated a slot receives the RDMA character devices
of all devices in the pool. A device is only taken into a pool when its
`rdma_cm`, `umad` and `uverbs` device nodes are all present.

## Installation

```
pip install rdmashareddp
```

The package runs on Linux only. It reads sysfs, uses `ioctl` to bring links
up, and opens an RDMA netlink socket.

## Running

```
rdma-shared-dev-plugin --config-file /k8s-rdma-shared-dev-plugin/config.json
```

The same command is available as `python -m rdmashareddp.cli`.

Options (each also accepted with a single dash, e.g. `-config-file`):

- `--config-file PATH`: the plugin configuration. The default is
  `/k8s-rdma-shared-dev-plugin/config.json`.
- `--use-cdi`: expose devices through Container Device Interface spec files
  and container annotations instead of plain device specs.
- `--version`, `-v`: print the version line and exit.

On start the command does the following, and exits with status 1 if any step
fails:

1. Reads and validates the configuration.
2. Checks that the RDMA subsystem is not in exclusive network-namespace mode.
   Kernels too old to report the mode are accepted.
3. Discovers PCI network controllers (PCI class `02`).
4. Creates one gRPC device-plugin server per resource, trying to set each
   selected interface up, and starts the servers.

It then rediscovers devices in the background at the configured interval,
and waits for one signal:

- On `SIGHUP` it restarts all servers and returns.
- On `SIGINT`, `SIGTERM` or `SIGQUIT` it stops the periodic update, stops all
  servers and returns.

If `/var/lib/kubelet/plugins_registry` exists, the servers listen there and
are registered by the kubelet plugin watcher. Otherwise they listen in
`/var/lib/kubelet/device-plugins` and register themselves through
`kubelet.sock` in that directory. In that case each server also watches its
socket and restarts itself when the socket disappears.

PCI devices are read from `/sys/bus/pci/devices`. When the `GHW_CHROOT`
environment variable is set, that path is taken under it.

## Configuration

```json
{
  "periodicUpdateInterval": 300,
  "configList": [
    {
      "resourceName": "hca_shared_devices_a",
      "rdmaHcaMax": 1000,
      "selectors": {"vendors": ["15b3"], "deviceIDs": ["1017"]}
    },
    {
      "resourceName": "hca_shared_devices_b",
      "resourcePrefix": "example.com",
      "rdmaHcaMax": 500,
      "selectors": {"ifNames": ["ib1"], "linkTypes": ["infiniband"]}
    }
  ]
}
```

- `resourceName` may contain only letters, digits and underscores. It must be
  unique across the list. The resource is announced as
  `<resourcePrefix>/<resourceName>`.
- `resourcePrefix` defaults to `rdma`.
- `rdmaHcaMax` must not be negative.
- `selectors` may hold `vendors`, `deviceIDs`, `drivers`, `ifNames` and
  `linkTypes`. A device must match every list that is given.
- `devices` is deprecated. It is a list of interface names, is used as
  `ifNames`, and cannot be combined with `selectors`. One of the two must be
  given.
- `periodicUpdateInterval` is in seconds and defaults to 60. A value of 0
  turns periodic rediscovery off, and negative values are rejected.

## CDI

With `--use-cdi`, each server writes a CDI spec when a kubelet starts
`ListAndWatch`, and again whenever its devices change. The spec has kind
`nvidia.com/net-rdma` and is written to `/var/run/cdi/nvidia.com_<resourceName>.yaml`.
Allocation then returns the annotation
`cdi.k8s.io/nvidia.com_net-rdma` in place of device specs. Spec files
starting with `nvidia.com` are removed when servers are created, restarted
or stopped.

## Library use

```python
from rdmashareddp.types import UserConfigList
from rdmashareddp.resources_manager import ResourceManager, valid_resource_name

with open("config.json") as handle:
    configs = UserConfigList.from_json(handle.read())
assert all(valid_resource_name(c.resource_name) for c in configs.config_list)

manager = ResourceManager("config.json", False)
manager.read_config()
manager.validate_configs()
manager.discover_host_devices()
devices = manager.get_devices()
pool = manager.get_filtered_devices(devices, manager.config_list[0].selectors)
```

`ResourceManager` also takes keyword arguments for tests and other
environments: `watch_mode`, `active_sock_dir`, `netlink_manager`, `rds`,
`sys_bus_pci`, `cdi_spec_dirs` and `netns_mode`.

Other modules:

- `rdmashareddp.api`: the device-plugin and registration messages as
  dataclasses, with `to_bytes()` / `from_bytes()` in protocol buffers wire
  format.
- `rdmashareddp.server`: `ResourceServer`, `GrpcServerPort`,
  `new_resource_server`, `devices_changed` and `get_devices_spec`.
- `rdmashareddp.device_selectors`: `VendorSelector`, `DeviceIdSelector`,
  `DriverSelector`, `IfNameSelector` and `LinkTypeSelector`.
- `rdmashareddp.pci_net_device`: `list_pci_devices` and
  `create_pci_net_device`.
- `rdmashareddp.rdma_device_spec`: `RdmaDeviceSpec` finds and checks a
  device's RDMA nodes.
- `rdmashareddp.netlink`: `NetlinkManager` and `rdma_netns_mode`.
- `rdmashareddp.cdi`: `Cdi`, plus `annotation_key`, `annotation_value`,
  `qualified_name` and `cleanup_specs`.
- `rdmashareddp.watcher`: `SignalNotifier` puts received signals on a queue.

## Limitations

- Device health is not checked. Slots are always reported as healthy.
- `SIGHUP` restarts the servers but does not re-read the configuration or
  rediscover devices.
- Vendor and product names of PCI devices are not looked up. Devices are
  identified by their numeric IDs only.