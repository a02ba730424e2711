from __future__ import annotations

from pathlib import Path
from typing import List, Sequence

import threading
import time

import pytest

from deploy_toolkit.adb_core import BridgeTransport
from deploy_toolkit.device_interface import (
    Arch,
    Channel,
    DeviceDescriptor,
    LaunchTarget,
    Platform,
    RemoteProcess,
    Transport,
)
from deploy_toolkit.device_registry import DeviceRegistry
from deploy_toolkit.errors import (
    AmbiguousSelector,
    NotFound,
    TransportError,
    TransportProtocolError,
    TransportUnavailable,
)
from deploy_toolkit.host_core import HostTransport


class FinishedProcess(RemoteProcess):
    def __init__(self, argv: Sequence[str], returncode: int = 0) -> None:
        super().__init__(argv)
        self._finish(returncode)

    def kill(self):
        pass


class StubTransport(Transport):
    def __init__(self, kind: str, descriptors: Sequence[DeviceDescriptor] = (),
                 available: bool = True) -> None:
        self.kind = kind
        self.descriptors = list(descriptors)
        self.available = available
        self.calls: List[tuple] = []
        self.closed_devices: List[str] = []
        self.fail_with = None
        self.list_error = None
        self.list_delay = 0.0
        self.listing = threading.Event()

    def list_devices(self) -> List[DeviceDescriptor]:
        self.listing.set()
        if self.list_delay:
            time.sleep(self.list_delay)
        if not self.available:
            raise TransportUnavailable(f"{self.kind} daemon not running")
        if self.list_error is not None:
            raise self.list_error
        return list(self.descriptors)

    def _record(self, *call):
        self.calls.append(call)
        if self.fail_with is not None:
            raise self.fail_with

    def open_channel(self, device_id: str, service: str) -> Channel:
        self._record("open_channel", device_id, service)
        raise NotImplementedError

    def forward_port(self, device_id: str, remote_port: int) -> int:
        self._record("forward_port", device_id, remote_port)
        return 40000 + remote_port

    def remove_forward(self, device_id: str, local_port: int):
        self._record("remove_forward", device_id, local_port)

    def push_file(self, device_id: str, local_path: Path, remote_path: str):
        self._record("push_file", device_id, local_path, remote_path)

    def spawn_remote_process(self, device_id: str, argv: Sequence[str]) -> RemoteProcess:
        self._record("spawn_remote_process", device_id, list(argv))
        return FinishedProcess(argv)

    def read_property(self, device_id: str, key: str) -> str:
        self._record("read_property", device_id, key)
        return "value"

    def install(self, device_id: str, package_path: Path):
        self._record("install", device_id, package_path)

    def launch_target(self, device_id: str, executable: Path, app_id: str) -> LaunchTarget:
        return LaunchTarget(path=str(executable))

    def start_debug_server(self, device_id: str) -> int:
        return 5039

    def close_device(self, device_id: str):
        self.closed_devices.append(device_id)


def _desc(local_id: str, name: str, platform: Platform = Platform.ANDROID) -> DeviceDescriptor:
    return DeviceDescriptor(local_id=local_id, name=name, platform=platform, arch=Arch.ARM64)


@pytest.fixture
def transports():
    host = StubTransport("host", [_desc("host", "workstation", Platform.LINUX)])
    adb = StubTransport("adb", [_desc("emulator-5556", "Pixel 8"), _desc("emulator-5554", "Pixel 7")])
    imd = StubTransport("imd", [_desc("00008101-AAAA", "iPhone", Platform.IOS)])
    return host, adb, imd


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------
def test_refresh_unions_transports_in_stable_order(transports) -> None:
    registry = DeviceRegistry(transports)

    first = [d.identifier for d in registry.refresh()]
    second = [d.identifier for d in registry.refresh()]

    assert first == [
        "host",
        "adb:emulator-5554",
        "adb:emulator-5556",
        "imd:00008101-AAAA",
    ]
    assert first == second


def test_unavailable_transport_is_left_out(transports) -> None:
    host, adb, imd = transports
    imd.available = False

    devices = DeviceRegistry(transports).refresh()

    assert [d.kind for d in devices] == ["host", "adb", "adb"]


def test_duplicate_descriptors_are_listed_once() -> None:
    adb = StubTransport("adb", [_desc("emulator-5554", "Pixel 7"), _desc("emulator-5554", "Pixel 7")])
    assert len(DeviceRegistry([adb]).refresh()) == 1


def test_registered_transport_is_listed_last(transports) -> None:
    host, adb, imd = transports
    registry = DeviceRegistry([imd])
    registry.register(host)

    assert [d.identifier for d in registry.refresh()] == ["imd:00008101-AAAA", "host"]


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------
def test_resolve_by_identifier_local_id_and_name(transports) -> None:
    registry = DeviceRegistry(transports)

    assert registry.resolve("host").platform == Platform.LINUX
    assert registry.resolve("adb:emulator-5554").name == "Pixel 7"
    assert registry.resolve("00008101-AAAA").identifier == "imd:00008101-AAAA"
    assert registry.resolve("iph").identifier == "imd:00008101-AAAA"


def test_resolve_ambiguous_name_prefix(transports) -> None:
    registry = DeviceRegistry(transports)

    with pytest.raises(AmbiguousSelector) as excinfo:
        registry.resolve("pixel")
    assert excinfo.value.matches == ["adb:emulator-5554", "adb:emulator-5556"]


def test_resolve_unknown_selector(transports) -> None:
    with pytest.raises(NotFound):
        DeviceRegistry(transports).resolve("nokia")


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------
def test_session_is_reused_and_forwards_are_removed_on_close(transports) -> None:
    _, adb, _ = transports
    registry = DeviceRegistry(transports)
    device = registry.resolve("adb:emulator-5554")

    session = registry.session(device)
    assert registry.session(device) is session

    forward = session.forward_port(5039)
    assert forward.local_port == 45039
    registry.release(device)

    assert ("remove_forward", "emulator-5554", 45039) in adb.calls
    assert forward.closed
    assert "emulator-5554" in adb.closed_devices
    assert registry.session(device) is not session


def test_forward_close_is_idempotent(transports) -> None:
    _, adb, _ = transports
    registry = DeviceRegistry(transports)
    session = registry.session(registry.resolve("adb:emulator-5554"))

    forward = session.forward_port(5039)
    forward.close()
    forward.close()

    assert [c for c in adb.calls if c[0] == "remove_forward"] == [
        ("remove_forward", "emulator-5554", 45039)
    ]


def test_session_io_error_drops_device_state(transports) -> None:
    _, adb, _ = transports
    registry = DeviceRegistry(transports)
    session = registry.session(registry.resolve("adb:emulator-5554"))
    adb.fail_with = ConnectionResetError("reset by peer")

    with pytest.raises(TransportError, match="reset by peer"):
        session.read_property("ro.product.model")
    assert adb.closed_devices == ["emulator-5554"]


def test_vanished_device_session_is_closed(transports) -> None:
    _, adb, _ = transports
    registry = DeviceRegistry(transports)
    session = registry.session(registry.resolve("adb:emulator-5556"))

    adb.descriptors = [d for d in adb.descriptors if d.local_id != "emulator-5556"]
    registry.refresh()

    assert session.closed
    with pytest.raises(TransportError):
        session.read_property("ro.product.model")


def test_session_calls_go_to_the_device_transport(transports, tmp_path) -> None:
    _, adb, _ = transports
    registry = DeviceRegistry(transports)
    session = registry.session(registry.resolve("adb:emulator-5554"))

    proc = session.spawn(["ls", "/sdcard"])
    session.push_file(tmp_path / "a.bin", "/data/local/tmp/a.bin")

    assert proc.wait(1) == 0
    assert adb.calls == [
        ("spawn_remote_process", "emulator-5554", ["ls", "/sdcard"]),
        ("push_file", "emulator-5554", tmp_path / "a.bin", "/data/local/tmp/a.bin"),
    ]


# ---------------------------------------------------------------------------
# Partial failure
# ---------------------------------------------------------------------------
def test_failing_transport_does_not_fail_the_others(transports) -> None:
    host, adb, imd = transports
    adb.list_error = TransportProtocolError("device offline")
    imd.list_error = ConnectionResetError("usbmuxd hung up")

    devices = DeviceRegistry(transports).refresh()

    assert [d.identifier for d in devices] == ["host"]


def test_transports_are_queried_in_parallel(transports) -> None:
    host, adb, imd = transports
    adb.list_delay = 0.5
    imd.list_delay = 0.5

    started = time.monotonic()
    devices = DeviceRegistry(transports).refresh()
    elapsed = time.monotonic() - started

    assert len(devices) == 4
    assert elapsed < 0.9
    assert adb.listing.is_set() and imd.listing.is_set()


def test_bridge_device_that_fails_getprop_is_skipped(adb_server) -> None:
    adb_server.devices = {"emulator-5554": "device", "emulator-5556": "device"}
    adb_server.transport_fail = {"emulator-5556": "device offline"}

    registry = DeviceRegistry([HostTransport(), BridgeTransport(port=adb_server.port, timeout=5.0)])
    devices = registry.refresh()

    assert [d.identifier for d in devices] == ["host", "adb:emulator-5554"]


def test_bridge_with_only_failing_devices_still_refreshes(adb_server) -> None:
    adb_server.devices = {"emulator-5554": "device"}
    adb_server.transport_fail = {"emulator-5554": "device offline"}

    devices = DeviceRegistry([HostTransport(), BridgeTransport(port=adb_server.port, timeout=5.0)]).refresh()

    assert [d.identifier for d in devices] == ["host"]
