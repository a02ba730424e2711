from __future__ import annotations

import sys

import pytest

from deploy_toolkit.errors import NotFound, TransportProtocolError
from deploy_toolkit.host_core import HOST_ID, HostTransport


@pytest.fixture
def host(tmp_path) -> HostTransport:
    return HostTransport(install_dir=tmp_path / "apps")


def test_host_reports_exactly_one_device(host) -> None:
    devices = host.list_devices()
    assert len(devices) == 1
    assert devices[0].local_id == HOST_ID
    assert host.read_property(HOST_ID, "os.platform") == devices[0].platform.value


def test_other_device_ids_are_not_found(host) -> None:
    with pytest.raises(NotFound):
        host.forward_port("emulator-5554", 5039)


def test_forwarding_is_identity(host) -> None:
    assert host.forward_port(HOST_ID, 5039) == 5039
    host.remove_forward(HOST_ID, 5039)


def test_spawn_collects_output_and_exit_code(host) -> None:
    proc = host.spawn_remote_process(HOST_ID, [
        sys.executable, "-c",
        "import sys; print('out'); print('err', file=sys.stderr); sys.exit(4)",
    ])
    assert proc.stdout.read_lines() == ["out"]
    assert proc.stderr.read_lines() == ["err"]
    assert proc.wait(10) == 4


def test_spawn_missing_binary(host, tmp_path) -> None:
    with pytest.raises(TransportProtocolError, match="cannot start"):
        host.spawn_remote_process(HOST_ID, [str(tmp_path / "missing")])


def test_install_copies_bundle_directory(host, tmp_path) -> None:
    appdir = tmp_path / "hello.AppDir"
    (appdir / "usr" / "bin").mkdir(parents=True)
    (appdir / "usr" / "bin" / "hello").write_bytes(b"v1")

    host.install(HOST_ID, appdir)
    (appdir / "usr" / "bin" / "hello").write_bytes(b"v2")
    host.install(HOST_ID, appdir)

    assert (tmp_path / "apps" / "hello.AppDir" / "usr" / "bin" / "hello").read_bytes() == b"v2"


def test_push_file_creates_parents(host, tmp_path) -> None:
    src = tmp_path / "data.bin"
    src.write_bytes(b"\x00\x01")
    dest = tmp_path / "remote" / "nested" / "data.bin"

    host.push_file(HOST_ID, src, str(dest))

    assert dest.read_bytes() == b"\x00\x01"
