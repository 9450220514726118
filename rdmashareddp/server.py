"""The gRPC device plugin server that exposes one shared RDMA resource."""

from __future__ import annotations

import logging
import os
import queue
import threading
from concurrent import futures
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Iterable, Iterator, Optional

import grpc

from .api import (
    DEVICE_PLUGIN_SERVICE,
    DEVICE_PLUGIN_TYPE,
    HEALTHY,
    PLUGIN_REGISTRATION_SERVICE,
    REGISTRATION_SERVICE,
    SUPPORTED_VERSIONS,
    UNHEALTHY,
    VERSION,
    AllocateRequest,
    AllocateResponse,
    ContainerAllocateResponse,
    Device,
    DevicePluginOptions,
    DeviceSpec,
    ListAndWatchResponse,
    PluginInfo,
    RegisterRequest,
    RegistrationStatus,
)
from .cdi import Cdi

log = logging.getLogger(__name__)

ACTIVE_SOCK_DIR = "/var/lib/kubelet/plugins_registry"
DEPRECATED_SOCK_DIR = "/var/lib/kubelet/device-plugins"
KUBE_ENDPOINT = "kubelet.sock"

DIAL_TIMEOUT = 5.0
WATCH_WAIT_TIME = 5.0
CDI_RESOURCE_PREFIX = "nvidia.com"
CDI_RESOURCE_KIND = "net-rdma"

_POLL_INTERVAL = 0.1
_MAX_WORKERS = 10


def _encode(message) -> bytes:
    return b"" if message is None else message.to_bytes()


class GrpcServerPort:
    """Owns the gRPC server of a resource and the connections it makes."""

    def __init__(self):
        self._server: Optional[grpc.Server] = None

    def create_server(self) -> None:
        self._server = grpc.server(futures.ThreadPoolExecutor(max_workers=_MAX_WORKERS))

    def delete_server(self) -> None:
        self._server = None

    def has_server(self) -> bool:
        return self._server is not None

    def serve(self, socket_path: str, handlers: Iterable) -> None:
        """Listen on the unix socket and start serving the handlers in the background."""
        if self._server is None:
            raise RuntimeError("no grpc server has been created")
        self._server.add_generic_rpc_handlers(tuple(handlers))
        try:
            self._server.add_insecure_port("unix:" + socket_path)
        except RuntimeError as err:
            raise OSError(f"failed to listen on {socket_path}: {err}") from err
        self._server.start()

    def stop(self) -> None:
        if self._server is not None:
            self._server.stop(None)

    def dial(self, socket_path: str, timeout: float) -> grpc.Channel:
        """Return a channel once the server on the socket accepts connections."""
        channel = grpc.insecure_channel("unix:" + socket_path)
        try:
            grpc.channel_ready_future(channel).result(timeout=timeout)
        except grpc.FutureTimeoutError as err:
            channel.close()
            raise ConnectionError(f"failed to connect {socket_path}, timed out") from err
        return channel

    def register(self, kubelet_socket: str, request: RegisterRequest) -> None:
        """Register the plugin with the kubelet listening on kubelet_socket."""
        channel = self.dial(kubelet_socket, DIAL_TIMEOUT)
        try:
            call = channel.unary_unary(
                f"/{REGISTRATION_SERVICE}/Register", request_serializer=_encode
            )
            call(request, timeout=DIAL_TIMEOUT)
        finally:
            channel.close()


def _healthy_devices(count: int) -> list[Device]:
    return [Device(id=str(n), health=HEALTHY) for n in range(count)]


@dataclass(eq=False)
class ResourceServer:
    """Serves the kubelet device plugin API for one resource."""

    resource_name: str = ""
    socket_name: str = ""
    socket_path: str = ""
    watch_mode: bool = False
    devs: list[Device] = field(default_factory=list)
    device_spec: list[DeviceSpec] = field(default_factory=list)
    pci_devices: list = field(default_factory=list)
    rdma_hca_max: int = 0
    port: Optional[GrpcServerPort] = None
    use_cdi: bool = False
    cdi: Cdi = field(default_factory=Cdi)
    cdi_resource_name: str = ""
    watch_interval: float = WATCH_WAIT_TIME
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)
    _stop_watcher: threading.Event = field(default_factory=threading.Event, init=False, repr=False)
    _update_resource: threading.Event = field(
        default_factory=threading.Event, init=False, repr=False
    )
    _wakeup: threading.Event = field(default_factory=threading.Event, init=False, repr=False)
    _health: queue.Queue = field(default_factory=queue.Queue, init=False, repr=False)

    def _handlers(self) -> list:
        handlers = []
        if self.watch_mode:
            handlers.append(
                grpc.method_handlers_generic_handler(
                    PLUGIN_REGISTRATION_SERVICE,
                    {
                        "GetInfo": grpc.unary_unary_rpc_method_handler(
                            self.get_info, response_serializer=_encode
                        ),
                        "NotifyRegistrationStatus": grpc.unary_unary_rpc_method_handler(
                            self.notify_registration_status,
                            request_deserializer=RegistrationStatus.from_bytes,
                            response_serializer=_encode,
                        ),
                    },
                )
            )
        handlers.append(
            grpc.method_handlers_generic_handler(
                DEVICE_PLUGIN_SERVICE,
                {
                    "GetDevicePluginOptions": grpc.unary_unary_rpc_method_handler(
                        self.get_device_plugin_options, response_serializer=_encode
                    ),
                    "ListAndWatch": grpc.unary_stream_rpc_method_handler(
                        self.list_and_watch, response_serializer=_encode
                    ),
                    "GetPreferredAllocation": grpc.unary_unary_rpc_method_handler(
                        self.get_preferred_allocation, response_serializer=_encode
                    ),
                    "Allocate": grpc.unary_unary_rpc_method_handler(
                        self.allocate,
                        request_deserializer=AllocateRequest.from_bytes,
                        response_serializer=_encode,
                    ),
                    "PreStartContainer": grpc.unary_unary_rpc_method_handler(
                        self.pre_start_container, response_serializer=_encode
                    ),
                },
            )
        )
        return handlers

    def start(self) -> None:
        """Start serving on the socket and, without plugin watcher, register with the kubelet."""
        with suppress(OSError):
            self._cleanup()
        log.info("starting %s device plugin endpoint at: %s", self.resource_name, self.socket_name)
        self.port.create_server()
        self.port.serve(self.socket_path, self._handlers())

        # A blocking connection makes sure the server is up.
        self.port.dial(self.socket_path, DIAL_TIMEOUT).close()
        log.info("%s device plugin endpoint started serving", self.resource_name)

        if not self.watch_mode:
            try:
                self._register()
            except Exception:
                self.port.stop()
                raise

    def stop(self) -> None:
        """Stop the server and remove its socket; does nothing when no server runs."""
        log.info("stopping %s device plugin server...", self.resource_name)
        if self.port is None or not self.port.has_server():
            return
        if not self.watch_mode:
            self._stop_watcher.set()
        # Stopping the server cancels outstanding ListAndWatch calls.
        self.port.stop()
        self.port.delete_server()
        self._cleanup()

    def restart(self) -> None:
        log.info("restarting %s device plugin server...", self.resource_name)
        if self.port is None or not self.port.has_server():
            raise RuntimeError(f"grpc server instance not found for {self.resource_name}")
        self.port.stop()
        self.port.delete_server()
        self.start()

    def watch(self) -> None:
        """Restart the server whenever its socket disappears, until stop() is called."""
        while True:
            if self._stop_watcher.is_set():
                self._stop_watcher.clear()
                log.info("kubelet watcher stopped for server %s", self.socket_path)
                return
            try:
                os.lstat(self.socket_path)
            except OSError:
                log.warning("server endpoint not found %s", self.socket_name)
                log.warning("most likely Kubelet restarted")
                try:
                    self.restart()
                except Exception as err:
                    log.error("unable to restart server %s", err)
            self._stop_watcher.wait(self.watch_interval)

    def _register(self) -> None:
        request = RegisterRequest(
            version=VERSION, endpoint=self.socket_name, resource_name=self.resource_name
        )
        self.port.register(os.path.join(DEPRECATED_SOCK_DIR, KUBE_ENDPOINT), request)

    def _post_update(self) -> None:
        self._update_resource.set()
        self._wakeup.set()

    def _notify_health(self, device: Device) -> None:
        self._health.put(device)
        self._wakeup.set()

    def _device_list(self) -> ListAndWatchResponse:
        with self._lock:
            log.info('Updating "%s" devices', self.resource_name)
            log.info('exposing "%d" devices', len(self.devs))
            return ListAndWatchResponse(devices=list(self.devs))

    def _update_cdi_spec(self) -> None:
        if not self.use_cdi:
            return
        try:
            self.cdi.create_cdi_spec(
                CDI_RESOURCE_PREFIX, CDI_RESOURCE_KIND, self.cdi_resource_name, self.pci_devices
            )
        except Exception as err:
            log.error("updateCDISpec(): error creating CDI spec: %s", err)
            raise

    def list_and_watch(self, request, context) -> Iterator[ListAndWatchResponse]:
        """Yield the device list, and again whenever devices change or turn unhealthy."""
        log.info("ListAndWatch called by kubelet for: %s", self.resource_name)
        context.add_callback(self._wakeup.set)
        yield self._device_list()
        with self._lock:
            self._update_cdi_spec()

        while context.is_active():
            self._wakeup.wait(_POLL_INTERVAL)
            self._wakeup.clear()
            while True:
                try:
                    device = self._health.get_nowait()
                except queue.Empty:
                    break
                # There is no way back from the unhealthy state.
                device.health = UNHEALTHY
                yield ListAndWatchResponse(devices=list(self.devs))
            if self._update_resource.is_set():
                self._update_resource.clear()
                try:
                    yield self._device_list()
                except GeneratorExit:
                    # Hand the update over to the next stream.
                    self._post_update()
                    raise
                self._update_cdi_spec()
        log.info("ListAndWatch stream closed for: %s", self.resource_name)

    def allocate(self, request: AllocateRequest, context) -> AllocateResponse:
        log.info("allocate request: %s", request)
        with self._lock:
            responses = []
            for _ in request.container_requests:
                response = ContainerAllocateResponse()
                if self.use_cdi:
                    try:
                        annotations = self.cdi.create_container_annotations(
                            self.pci_devices, CDI_RESOURCE_PREFIX, CDI_RESOURCE_KIND
                        )
                    except Exception as err:
                        raise RuntimeError(f"cant create container annotation: {err}") from err
                    response.annotations = dict(annotations or {})
                else:
                    response.devices = list(self.device_spec)
                responses.append(response)
        result = AllocateResponse(container_responses=responses)
        log.info("allocate response: %s", result)
        return result

    def get_device_plugin_options(self, request, context) -> DevicePluginOptions:
        return DevicePluginOptions(pre_start_required=False)

    def pre_start_container(self, request, context) -> None:
        return None

    def get_preferred_allocation(self, request, context) -> None:
        return None

    def get_info(self, request, context) -> PluginInfo:
        return PluginInfo(
            type=DEVICE_PLUGIN_TYPE,
            name=self.resource_name,
            endpoint=os.path.join(ACTIVE_SOCK_DIR, self.socket_name),
            supported_versions=list(SUPPORTED_VERSIONS),
        )

    def notify_registration_status(self, request: RegistrationStatus, context) -> None:
        if request.plugin_registered:
            log.info("%s gets registered successfully at Kubelet", self.socket_name)
        else:
            log.error(
                "%s failed to be registered at Kubelet: %s; restarting.",
                self.socket_name,
                request.error,
            )
            self.port.stop()
        return None

    def _apply_devices(self, devices) -> bool:
        with self._lock:
            spec = get_devices_spec(devices)
            if not devices_changed(self.device_spec, spec):
                log.info('no changes to devices for "%s"', self.resource_name)
                log.info('exposing "%d" devices', len(self.devs))
                return False
            self.device_spec = spec
            if not spec:
                self.devs = []
            elif not self.devs:
                self.devs = _healthy_devices(self.rdma_hca_max)
            return True

    def update_devices(self, devices) -> None:
        """Replace the devices of the resource and notify watchers when they changed."""
        if self._apply_devices(devices):
            self._post_update()

    def _cleanup(self) -> None:
        with suppress(FileNotFoundError):
            os.remove(self.socket_path)


def new_resource_server(config, devices, watch_mode: bool, socket_suffix: str, use_cdi: bool) -> ResourceServer:
    """Create the server of one configured resource; raises ValueError on bad configuration."""
    if config.rdma_hca_max < 0:
        raise ValueError(f"error: Invalid value for rdmaHcaMax < 0: {config.rdma_hca_max}")
    if not config.resource_prefix:
        raise ValueError("error: Empty resourcePrefix")

    devices = list(devices)
    device_spec = get_devices_spec(devices)
    if device_spec:
        devs = _healthy_devices(config.rdma_hca_max)
    else:
        log.warning("no Rdma Devices were found for resource %s", config.resource_name)
        devs = []

    sock_dir = ACTIVE_SOCK_DIR if watch_mode else DEPRECATED_SOCK_DIR
    socket_name = f"{config.resource_name}.{socket_suffix}"
    return ResourceServer(
        resource_name=f"{config.resource_prefix}/{config.resource_name}",
        socket_name=socket_name,
        socket_path=os.path.join(sock_dir, socket_name),
        watch_mode=watch_mode,
        devs=devs,
        device_spec=device_spec,
        pci_devices=devices,
        rdma_hca_max=config.rdma_hca_max,
        port=GrpcServerPort(),
        use_cdi=use_cdi,
        cdi=Cdi(),
        cdi_resource_name=config.resource_name,
    )


def detect_plugin_watch_mode(sock_dir: str) -> bool:
    """True when the kubelet plugin registry directory exists."""
    return os.path.exists(sock_dir)


def devices_changed(old: list[DeviceSpec], new: list[DeviceSpec]) -> bool:
    """True when the two lists do not hold the same host paths."""
    if len(old) != len(new):
        return True
    known = {spec.host_path for spec in old}
    return any(spec.host_path not in known for spec in new)


def get_devices_spec(devices) -> list[DeviceSpec]:
    """Return the RDMA device specs of all devices, in order."""
    specs: list[DeviceSpec] = []
    for device in devices:
        if not device.rdma_spec:
            log.warning("non-Rdma Device %s", device.pci_address)
        specs.extend(device.rdma_spec)
    return specs