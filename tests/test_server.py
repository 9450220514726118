import os
import shutil
import tempfile
import threading
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager

import grpc
import pytest

from rdmashareddp import server as server_module
from rdmashareddp.api import (
    DEVICE_PLUGIN_SERVICE,
    PLUGIN_REGISTRATION_SERVICE,
    REGISTRATION_SERVICE,
    UNHEALTHY,
    AllocateRequest,
    AllocateResponse,
    ContainerAllocateRequest,
    Device,
    DevicePluginOptions,
    DeviceSpec,
    ListAndWatchResponse,
    PluginInfo,
    RegisterRequest,
    RegistrationStatus,
)
from rdmashareddp.pci_net_device import PciNetDevice
from rdmashareddp.server import (
    ResourceServer,
    detect_plugin_watch_mode,
    devices_changed,
    get_devices_spec,
    new_resource_server,
)
from rdmashareddp.types import UserConfig

FAKE_SPEC = [DeviceSpec(host_path="fake", container_path="fake")]


def fake_devices():
    return [PciNetDevice(pci_address="0000:02:00.0", rdma_spec=list(FAKE_SPEC))]


class FakeChannel:
    def __init__(self, port):
        self.port = port

    def close(self):
        self.port.calls.append("close")


class FakePort:
    def __init__(self, server=False, serve_error=None, dial_error=None, register_error=None):
        self.server = server
        self.serve_error = serve_error
        self.dial_error = dial_error
        self.register_error = register_error
        self.calls = []
        self.handlers = None
        self.requests = []

    def create_server(self):
        self.calls.append("create_server")
        self.server = True

    def delete_server(self):
        self.calls.append("delete_server")
        self.server = False

    def has_server(self):
        return self.server

    def serve(self, socket_path, handlers):
        self.calls.append("serve")
        self.handlers = list(handlers)
        if self.serve_error:
            raise self.serve_error

    def stop(self):
        self.calls.append("stop")

    def dial(self, socket_path, timeout):
        self.calls.append("dial")
        if self.dial_error:
            raise self.dial_error
        return FakeChannel(self)

    def register(self, kubelet_socket, request):
        self.calls.append("register")
        self.requests.append((kubelet_socket, request))
        if self.register_error:
            raise self.register_error


class FakeContext:
    def __init__(self, active=True):
        self.active = active
        self.callbacks = []

    def is_active(self):
        return self.active

    def add_callback(self, callback):
        self.callbacks.append(callback)
        return True


class FakeCdi:
    def __init__(self, error=None, annotations=None):
        self.error = error
        self.annotations = annotations
        self.calls = []

    def create_cdi_spec(self, prefix, kind, pool, devices):
        self.calls.append(("spec", prefix, kind, pool))

    def create_container_annotations(self, devices, prefix, kind):
        self.calls.append(("annotations", prefix, kind))
        if self.error:
            raise self.error
        return self.annotations


@pytest.fixture
def sock_dir():
    path = tempfile.mkdtemp(prefix="rdp")
    yield path
    shutil.rmtree(path, ignore_errors=True)


# --- new_resource_server -----------------------------------------------------


def test_new_server_with_plugin_watcher():
    conf = UserConfig(resource_name="test_server", resource_prefix="rdma", rdma_hca_max=100)
    rs = new_resource_server(conf, fake_devices(), True, "socket", False)
    assert rs.resource_name == "rdma/test_server"
    assert rs.socket_name == "test_server.socket"
    assert rs.socket_path == os.path.join(server_module.ACTIVE_SOCK_DIR, "test_server.socket")
    assert rs.watch_mode is True
    assert len(rs.devs) == 100
    assert rs.devs[0] == Device(id="0", health="Healthy")


def test_new_server_with_plugin_watcher_and_zero_resources():
    conf = UserConfig(resource_name="test_server", resource_prefix="rdma", rdma_hca_max=0)
    rs = new_resource_server(conf, fake_devices(), True, "socket", False)
    assert rs.watch_mode is True
    assert rs.devs == []


def test_new_server_without_rdma_resources():
    conf = UserConfig(resource_name="test_server", resource_prefix="rdma", rdma_hca_max=100)
    devices = [PciNetDevice(pci_address="0000:02:00.0", rdma_spec=[])]
    rs = new_resource_server(conf, devices, True, "socket", False)
    assert rs.resource_name == "rdma/test_server"
    assert rs.devs == []


def test_new_server_without_plugin_watcher():
    conf = UserConfig(resource_name="test_server", resource_prefix="rdma", rdma_hca_max=100)
    rs = new_resource_server(conf, fake_devices(), False, "socket", False)
    assert rs.watch_mode is False
    assert rs.socket_path == os.path.join(server_module.DEPRECATED_SOCK_DIR, "test_server.socket")
    assert len(rs.devs) == 100


def test_new_server_without_plugin_watcher_and_zero_resources():
    conf = UserConfig(resource_name="test_server", resource_prefix="rdma", rdma_hca_max=0)
    rs = new_resource_server(conf, fake_devices(), False, "socket", False)
    assert rs.socket_name == "test_server.socket"
    assert rs.devs == []


def test_new_server_with_invalid_max_resources():
    conf = UserConfig(resource_name="test_server", resource_prefix="rdma", rdma_hca_max=-100)
    with pytest.raises(ValueError, match="rdmaHcaMax < 0: -100"):
        new_resource_server(conf, fake_devices(), True, "socket", False)


def test_new_server_with_empty_prefix():
    conf = UserConfig(resource_name="test_server", rdma_hca_max=1)
    with pytest.raises(ValueError, match="Empty resourcePrefix"):
        new_resource_server(conf, fake_devices(), True, "socket", False)


# --- start / stop / restart ----------------------------------------------------


def test_start_with_plugin_watcher(tmp_path):
    port = FakePort()
    rs = ResourceServer(watch_mode=True, port=port, socket_path=str(tmp_path / "x.sock"))
    rs.start()
    assert port.calls == ["create_server", "serve", "dial", "close"]
    assert len(port.handlers) == 2


def test_start_without_plugin_watcher_registers(tmp_path):
    port = FakePort()
    rs = ResourceServer(
        resource_name="rdma/x",
        socket_name="x.sock",
        socket_path=str(tmp_path / "x.sock"),
        watch_mode=False,
        port=port,
    )
    rs.start()
    assert port.calls == ["create_server", "serve", "dial", "close", "register"]
    assert len(port.handlers) == 1
    assert port.requests == [
        (
            os.path.join(server_module.DEPRECATED_SOCK_DIR, "kubelet.sock"),
            RegisterRequest(version="v1beta1", endpoint="x.sock", resource_name="rdma/x"),
        )
    ]


def test_start_removes_stale_socket(tmp_path):
    socket_path = tmp_path / "x.sock"
    socket_path.write_text("")
    rs = ResourceServer(watch_mode=True, port=FakePort(), socket_path=str(socket_path))
    rs.start()
    assert not socket_path.exists()


def test_start_fails_to_listen(tmp_path):
    port = FakePort(serve_error=OSError("failed"))
    rs = ResourceServer(port=port, socket_path=str(tmp_path / "x.sock"))
    with pytest.raises(OSError, match="failed"):
        rs.start()
    assert port.calls == ["create_server", "serve"]


def test_start_fails_to_dial(tmp_path):
    port = FakePort(dial_error=ConnectionError("failed"))
    rs = ResourceServer(port=port, socket_path=str(tmp_path / "x.sock"))
    with pytest.raises(ConnectionError):
        rs.start()
    assert port.calls == ["create_server", "serve", "dial"]


def test_start_fails_to_register_and_stops(tmp_path):
    port = FakePort(register_error=ConnectionError("failed"))
    rs = ResourceServer(watch_mode=False, port=port, socket_path=str(tmp_path / "x.sock"))
    with pytest.raises(ConnectionError):
        rs.start()
    assert port.calls[-2:] == ["register", "stop"]


def test_stop_with_watch_mode(tmp_path):
    socket_path = tmp_path / "x.sock"
    socket_path.write_text("")
    port = FakePort(server=True)
    rs = ResourceServer(port=port, watch_mode=True, socket_path=str(socket_path))
    rs.stop()
    assert port.calls == ["stop", "delete_server"]
    assert not socket_path.exists()


def test_stop_without_watch_mode_stops_watcher(tmp_path):
    port = FakePort(server=True)
    rs = ResourceServer(port=port, watch_mode=False, socket_path=str(tmp_path / "missing"))
    rs.stop()
    rs.watch()
    assert port.calls == ["stop", "delete_server"]


def test_stop_without_server_keeps_socket(tmp_path):
    socket_path = tmp_path / "x.sock"
    socket_path.write_text("")
    rs = ResourceServer(socket_path=str(socket_path))
    rs.stop()
    assert socket_path.exists()


def test_restart_fails_in_start(tmp_path):
    port = FakePort(server=True, serve_error=OSError("failed in restart"))
    rs = ResourceServer(watch_mode=True, port=port, socket_path=str(tmp_path / "x.sock"))
    with pytest.raises(OSError, match="^failed in restart$"):
        rs.restart()
    assert port.calls == ["stop", "delete_server", "create_server", "serve"]


def test_restart_without_server():
    rs = ResourceServer(watch_mode=True, resource_name="rdma/x")
    with pytest.raises(RuntimeError, match="grpc server instance not found for rdma/x"):
        rs.restart()


def test_restart_fails_to_dial(tmp_path):
    port = FakePort(server=True, dial_error=ConnectionError("error"))
    rs = ResourceServer(watch_mode=True, port=port, socket_path=str(tmp_path / "x.sock"))
    with pytest.raises(ConnectionError):
        rs.restart()
    assert port.calls == ["stop", "delete_server", "create_server", "serve", "dial"]


# --- watch -------------------------------------------------------------------


def test_watch_existing_socket_then_stop(tmp_path):
    socket_path = tmp_path / "fake.socket"
    socket_path.write_text("")
    port = FakePort(server=True)
    rs = ResourceServer(
        socket_name="fake.socket",
        socket_path=str(socket_path),
        port=port,
        watch_interval=0.01,
    )
    timer = threading.Timer(0.05, rs.stop)
    timer.start()
    rs.watch()
    timer.join()
    assert port.calls == ["stop", "delete_server"]


def test_watch_restarts_when_socket_missing(tmp_path):
    port = FakePort(server=True)
    rs = ResourceServer(
        watch_mode=True,
        port=port,
        socket_name="fake.socket",
        socket_path=str(tmp_path / "fake deleted"),
        watch_interval=0.01,
    )
    rs._stop_watcher.set()
    rs._stop_watcher.clear()
    thread = threading.Thread(target=rs.watch)
    thread.start()
    threading.Event().wait(0.05)
    rs._stop_watcher.set()
    thread.join(timeout=5)
    assert not thread.is_alive()
    assert "serve" in port.calls
    assert "dial" in port.calls


# --- list_and_watch -------------------------------------------------------------


def test_list_and_watch_reports_unhealthy_device():
    conf = UserConfig(rdma_hca_max=100, resource_prefix="rdma", resource_name="fake")
    rs = new_resource_server(conf, fake_devices(), True, "fake", False)
    context = FakeContext()
    stream = rs.list_and_watch(None, context)
    first = next(stream)
    assert len(first.devices) == 100
    rs._notify_health(rs.devs[5])
    second = next(stream)
    assert second.devices == rs.devs
    assert second.devices[5].health == UNHEALTHY
    context.active = False
    assert list(stream) == []


def test_list_and_watch_updates_cdi_spec():
    conf = UserConfig(rdma_hca_max=1, resource_prefix="rdma", resource_name="fake")
    rs = new_resource_server(conf, fake_devices(), True, "fake", True)
    cdi = FakeCdi()
    rs.cdi = cdi
    responses = list(rs.list_and_watch(None, FakeContext(active=False)))
    assert len(responses) == 1
    assert cdi.calls == [("spec", "nvidia.com", "net-rdma", "fake")]


def test_list_and_watch_stops_when_stream_closed():
    rs = ResourceServer(resource_name="fake", socket_name="fake.sock")
    responses = list(rs.list_and_watch(None, FakeContext(active=False)))
    assert responses == [ListAndWatchResponse(devices=[])]


def test_list_and_watch_sends_updated_devices():
    rs = ResourceServer(resource_name="fake", rdma_hca_max=10)
    context = FakeContext()
    stream = rs.list_and_watch(None, context)
    assert next(stream).devices == []
    rs.update_devices(fake_devices())
    update = next(stream)
    assert len(update.devices) == 10
    context.active = False
    assert list(stream) == []


# --- update_devices ----------------------------------------------------------


def test_update_devices_creates_devices():
    rs = ResourceServer(rdma_hca_max=10)
    rs.update_devices(fake_devices())
    assert rs.device_spec == FAKE_SPEC
    assert len(rs.devs) == 10
    assert rs._update_resource.is_set()


def test_update_devices_without_change():
    rs = ResourceServer(rdma_hca_max=10)
    rs.update_devices([])
    assert rs.device_spec == []
    assert rs.devs == []
    assert not rs._update_resource.is_set()


def test_update_devices_removing_all_devices():
    rs = ResourceServer(rdma_hca_max=3)
    rs.update_devices(fake_devices())
    rs.update_devices([])
    assert rs.devs == []
    assert rs.device_spec == []


# --- allocate and other RPCs ----------------------------------------------------


def test_allocate_returns_one_response_per_container():
    rs = ResourceServer(resource_name="fake", device_spec=list(FAKE_SPEC))
    request = AllocateRequest(container_requests=[ContainerAllocateRequest()] * 2)
    response = rs.allocate(request, None)
    assert len(response.container_responses) == 2
    assert response.container_responses[0].devices == FAKE_SPEC


def test_allocate_calls_cdi_when_configured():
    cdi = FakeCdi(annotations={"cdi.k8s.io/a": "b"})
    rs = ResourceServer(resource_name="fake", use_cdi=True, cdi=cdi)
    request = AllocateRequest(container_requests=[ContainerAllocateRequest()] * 2)
    response = rs.allocate(request, None)
    assert cdi.calls == [("annotations", "nvidia.com", "net-rdma")] * 2
    assert response.container_responses[1].annotations == {"cdi.k8s.io/a": "b"}
    assert response.container_responses[1].devices == []


def test_allocate_fails_when_cdi_fails():
    rs = ResourceServer(use_cdi=True, cdi=FakeCdi(error=ValueError("devices list is empty")))
    request = AllocateRequest(container_requests=[ContainerAllocateRequest()])
    with pytest.raises(RuntimeError, match="cant create container annotation: devices list is empty"):
        rs.allocate(request, None)


@pytest.mark.parametrize(
    "request_message, expected",
    [
        (AllocateRequest(container_requests=[ContainerAllocateRequest(devices_ids=["00:00.01"])]), 1),
        (AllocateRequest(), 0),
    ],
)
def test_allocating(request_message, expected):
    conf = UserConfig(resource_name="fakename", resource_prefix="rdma", rdma_hca_max=100)
    rs = new_resource_server(conf, fake_devices(), True, "socket", False)
    response = rs.allocate(request_message, None)
    assert len(response.container_responses) == expected


def test_get_info():
    rs = ResourceServer(resource_name="fake", socket_name="fake.sock")
    info = rs.get_info(None, None)
    assert info.type == "DevicePlugin"
    assert info.name == "fake"
    assert info.endpoint == os.path.join(server_module.ACTIVE_SOCK_DIR, "fake.sock")
    assert info.supported_versions == ["v1alpha1", "v1beta1"]


def test_get_device_plugin_options():
    rs = ResourceServer()
    assert rs.get_device_plugin_options(None, None) == DevicePluginOptions(pre_start_required=False)


def test_notify_registration_status_registered():
    port = FakePort(server=True)
    rs = ResourceServer(socket_name="fake.sock", port=port)
    rs.notify_registration_status(RegistrationStatus(plugin_registered=True), None)
    assert port.calls == []


def test_notify_registration_status_unregistered_stops_server():
    port = FakePort(server=True)
    rs = ResourceServer(socket_name="fake.sock", port=port)
    rs.notify_registration_status(RegistrationStatus(plugin_registered=False, error="x"), None)
    assert port.calls == ["stop"]


# --- helpers -----------------------------------------------------------------


def test_devices_changed_same_devices():
    assert devices_changed([DeviceSpec(host_path="/foo/bar")], [DeviceSpec(host_path="/foo/bar")]) is False


def test_devices_changed_number_of_devices():
    old = [DeviceSpec(host_path="/foo/bar")]
    new = [DeviceSpec(host_path="/foo/bar"), DeviceSpec(host_path="/foo/bar2")]
    assert devices_changed(old, new) is True


def test_devices_changed_host_path():
    assert devices_changed([DeviceSpec(host_path="/foo/bar")], [DeviceSpec(host_path="/foo/bar2")]) is True


def test_get_devices_spec_concatenates():
    devices = [
        PciNetDevice(pci_address="a", rdma_spec=[DeviceSpec(host_path="/dev/a")]),
        PciNetDevice(pci_address="b", rdma_spec=[]),
        PciNetDevice(pci_address="c", rdma_spec=[DeviceSpec(host_path="/dev/c1"), DeviceSpec(host_path="/dev/c2")]),
    ]
    assert [spec.host_path for spec in get_devices_spec(devices)] == ["/dev/a", "/dev/c1", "/dev/c2"]


def test_detect_plugin_watch_mode(tmp_path):
    assert detect_plugin_watch_mode(str(tmp_path)) is True
    assert detect_plugin_watch_mode(str(tmp_path / "noDir")) is False


# --- real gRPC lifecycle ---------------------------------------------------------


@contextmanager
def fake_kubelet(directory, fail=False):
    requests = []

    def register(request, context):
        requests.append(RegisterRequest.from_bytes(request))
        if fail:
            context.abort(grpc.StatusCode.UNKNOWN, "fake registering error")
        return b""

    kubelet = grpc.server(ThreadPoolExecutor(max_workers=2))
    kubelet.add_generic_rpc_handlers(
        (
            grpc.method_handlers_generic_handler(
                REGISTRATION_SERVICE, {"Register": grpc.unary_unary_rpc_method_handler(register)}
            ),
        )
    )
    kubelet.add_insecure_port("unix:" + os.path.join(directory, "kubelet.sock"))
    kubelet.start()
    try:
        yield requests
    finally:
        kubelet.stop(None)


def _call(socket_path, method, payload, deserializer):
    with grpc.insecure_channel("unix:" + socket_path) as channel:
        return channel.unary_unary(method, response_deserializer=deserializer)(payload, timeout=5)


def test_lifecycle_without_watcher_mode(sock_dir, monkeypatch):
    monkeypatch.setattr(server_module, "DEPRECATED_SOCK_DIR", sock_dir)
    conf = UserConfig(resource_name="fakename", resource_prefix="rdma", rdma_hca_max=100)
    rs = new_resource_server(conf, fake_devices(), False, "socket", False)
    with fake_kubelet(sock_dir) as requests:
        rs.start()
        assert requests == [
            RegisterRequest(version="v1beta1", endpoint="fakename.socket", resource_name="rdma/fakename")
        ]
        rs.restart()
        assert len(requests) == 2
        rs.stop()
    assert not os.path.exists(rs.socket_path)


def test_registration_failure_raises(sock_dir, monkeypatch):
    monkeypatch.setattr(server_module, "DEPRECATED_SOCK_DIR", sock_dir)
    conf = UserConfig(resource_name="fake_test", resource_prefix="rdma", rdma_hca_max=100)
    rs = new_resource_server(conf, fake_devices(), False, "socket", False)
    with fake_kubelet(sock_dir, fail=True) as requests:
        with pytest.raises(grpc.RpcError):
            rs.start()
    assert len(requests) == 1


def test_lifecycle_with_watcher_mode(sock_dir, monkeypatch):
    monkeypatch.setattr(server_module, "ACTIVE_SOCK_DIR", sock_dir)
    conf = UserConfig(resource_name="fakename", resource_prefix="rdma", rdma_hca_max=100)
    rs = new_resource_server(conf, fake_devices(), True, "socket", False)
    rs.start()
    try:
        info = _call(rs.socket_path, f"/{PLUGIN_REGISTRATION_SERVICE}/GetInfo", b"", PluginInfo.from_bytes)
        assert info.name == "rdma/fakename"
        assert info.endpoint == os.path.join(sock_dir, "fakename.socket")

        request = AllocateRequest(container_requests=[ContainerAllocateRequest(devices_ids=["1"])])
        response = _call(
            rs.socket_path,
            f"/{DEVICE_PLUGIN_SERVICE}/Allocate",
            request.to_bytes(),
            AllocateResponse.from_bytes,
        )
        assert response.container_responses[0].devices == [
            DeviceSpec(host_path="fake", container_path="fake")
        ]

        with grpc.insecure_channel("unix:" + rs.socket_path) as channel:
            stream = channel.unary_stream(
                f"/{DEVICE_PLUGIN_SERVICE}/ListAndWatch",
                response_deserializer=ListAndWatchResponse.from_bytes,
            )(b"")
            first = next(stream)
            stream.cancel()
        assert len(first.devices) == 100

        rs.restart()
        info = _call(rs.socket_path, f"/{PLUGIN_REGISTRATION_SERVICE}/GetInfo", b"", PluginInfo.from_bytes)
        assert info.type == "DevicePlugin"
    finally:
        rs.stop()
    assert not os.path.exists(rs.socket_path)


def test_lifecycle_with_socket_watcher(sock_dir, monkeypatch):
    monkeypatch.setattr(server_module, "DEPRECATED_SOCK_DIR", sock_dir)
    conf = UserConfig(resource_name="fakename", resource_prefix="rdma", rdma_hca_max=100)
    rs = new_resource_server(conf, fake_devices(), False, "socket", False)
    rs.watch_interval = 0.05
    with fake_kubelet(sock_dir) as requests:
        rs.start()
        thread = threading.Thread(target=rs.watch)
        thread.start()
        rs.stop()
        thread.join(timeout=5)
    assert not thread.is_alive()
    assert len(requests) >= 1