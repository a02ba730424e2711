"""Shared pytest fixtures."""

from __future__ import annotations

import datetime
import socket
import struct
import threading
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from deploy_toolkit.device_interface import Arch, Device, Platform
from deploy_toolkit.gdb_remote import PacketParser, encode_packet
from deploy_toolkit.utils import recv_exactly


# ---------------------------------------------------------------------------
# Loopback servers
# ---------------------------------------------------------------------------
class FakeServer:
    """Threaded loopback listener; each accepted socket goes to *handler*."""

    def __init__(self, handler: Callable[[socket.socket], None]) -> None:
        self.handler = handler
        self.connections = 0
        self.errors: List[BaseException] = []
        self._sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._sock.bind(("127.0.0.1", 0))
        self._sock.listen(16)
        self.port = self._sock.getsockname()[1]
        self._stopped = threading.Event()
        self._lock = threading.Lock()
        threading.Thread(target=self._accept_loop, daemon=True).start()

    def _accept_loop(self) -> None:
        while not self._stopped.is_set():
            try:
                conn, _ = self._sock.accept()
            except OSError:
                return
            with self._lock:
                self.connections += 1
            threading.Thread(target=self._serve, args=(conn,), daemon=True).start()

    def _serve(self, conn: socket.socket) -> None:
        try:
            self.handler(conn)
        except Exception as exc:  # noqa: BLE001
            self.errors.append(exc)
        finally:
            conn.close()

    def close(self) -> None:
        self._stopped.set()
        self._sock.close()


# ---------------------------------------------------------------------------
# adb server
# ---------------------------------------------------------------------------
def _lp(text: str) -> bytes:
    data = text.encode("utf-8")
    return f"{len(data):04x}".encode("ascii") + data


def _read_request(conn: socket.socket) -> str:
    length = int(recv_exactly(conn, 4).decode("ascii"), 16)
    return recv_exactly(conn, length).decode("utf-8")


GETPROP = (
    "[ro.product.model]: [Pixel 7]\n"
    "[ro.product.cpu.abi]: [arm64-v8a]\n"
    "[ro.build.version.release]: [14]\n"
)


class FakeAdbServer(FakeServer):
    """Speaks enough of the adb host protocol for the transport tests."""

    def __init__(self) -> None:
        self.devices: Dict[str, str] = {
            "emulator-5554": "device",
            "emulator-5556": "offline",
            "R58M123": "unauthorized",
        }
        self.features = "shell_v2,cmd"
        self.pushed: Dict[str, Tuple[int, bytes]] = {}
        # argv string -> (stdout, stderr, exit code)
        self.commands: Dict[str, Tuple[str, str, int]] = {}
        self.forwards: List[str] = []
        self.requests: List[str] = []
        # serial -> FAIL message for host:transport, whatever devices-l says
        self.transport_fail: Dict[str, str] = {}
        # replaces the exit status echoed by legacy shells
        self.legacy_status: Optional[str] = None
        self.jdwp: List[int] = []
        super().__init__(self._handle)

    def _handle(self, conn: socket.socket) -> None:
        request = _read_request(conn)
        self.requests.append(request)

        if request == "host:devices-l":
            lines = []
            for serial, state in self.devices.items():
                extra = " product:sdk model:Pixel_7 transport_id:1" if state == "device" else ""
                lines.append(f"{serial}\t{state}{extra}")
            conn.sendall(b"OKAY" + _lp("\n".join(lines) + "\n"))
        elif request.startswith("host-serial:") and request.endswith(":features"):
            conn.sendall(b"OKAY" + _lp(self.features))
        elif ":forward:" in request:
            self.forwards.append(request)
            conn.sendall(b"OKAY" + b"OKAY" + _lp("41234"))
        elif ":killforward:" in request:
            self.forwards.append(request)
            conn.sendall(b"OKAY")
        elif request.startswith("host:transport:"):
            serial = request[len("host:transport:"):]
            state = self.devices.get(serial)
            if serial in self.transport_fail:
                conn.sendall(b"FAIL" + _lp(self.transport_fail[serial]))
                return
            if state is None:
                conn.sendall(b"FAIL" + _lp(f"device '{serial}' not found"))
                return
            if state != "device":
                conn.sendall(b"FAIL" + _lp(f"device {state}"))
                return
            conn.sendall(b"OKAY")
            self._service(conn, _read_request(conn))
        else:
            conn.sendall(b"FAIL" + _lp(f"unknown request {request}"))

    def _service(self, conn: socket.socket, service: str) -> None:
        self.requests.append(service)
        if service == "shell:getprop":
            conn.sendall(b"OKAY" + GETPROP.encode("utf-8"))
        elif service == "sync:":
            conn.sendall(b"OKAY")
            self._sync(conn)
        elif service.startswith("shell,v2,raw:"):
            conn.sendall(b"OKAY")
            stdout, stderr, code = self.commands.get(service[len("shell,v2,raw:"):], ("", "", 0))
            if stdout:
                conn.sendall(struct.pack("<BI", 1, len(stdout)) + stdout.encode("utf-8"))
            if stderr:
                conn.sendall(struct.pack("<BI", 2, len(stderr)) + stderr.encode("utf-8"))
            conn.sendall(struct.pack("<BI", 3, 1) + bytes((code,)))
        elif service.startswith("shell:") and "; echo " in service:
            command, _, marker = service[len("shell:"):].partition("; echo ")
            stdout, _, code = self.commands.get(command, ("", "", 0))
            status = self.legacy_status if self.legacy_status is not None else str(code)
            conn.sendall(b"OKAY" + stdout.encode("utf-8")
                         + marker.replace("$?", status).encode("utf-8") + b"\n")
        elif service.startswith("jdwp:"):
            conn.sendall(b"OKAY")
            conn.sendall(recv_exactly(conn, 14))
            self.jdwp.append(int(service[len("jdwp:"):]))
            # the VM keeps the session until the debugger goes away
            while conn.recv(4096):
                pass
        else:
            conn.sendall(b"FAIL" + _lp(f"unknown service {service}"))

    def _sync(self, conn: socket.socket) -> None:
        ident, length = struct.unpack("<4sI", recv_exactly(conn, 8))
        assert ident == b"SEND"
        path, _, mode = recv_exactly(conn, length).decode("utf-8").rpartition(",")
        data = bytearray()
        while True:
            ident, length = struct.unpack("<4sI", recv_exactly(conn, 8))
            if ident == b"DONE":
                break
            data += recv_exactly(conn, length)
        self.pushed[path] = (int(mode), bytes(data))
        conn.sendall(b"OKAY" + struct.pack("<I", 0))
        ident, _ = struct.unpack("<4sI", recv_exactly(conn, 8))
        assert ident == b"QUIT"


@pytest.fixture
def adb_server():
    server = FakeAdbServer()
    yield server
    server.close()


# ---------------------------------------------------------------------------
# gdb-remote server
# ---------------------------------------------------------------------------
class FakeGdbServer(FakeServer):
    """Answers the handshake, then replies per ``self.replies``.

    ``replies`` maps a packet prefix to the payloads sent back; a prefix
    mapped to an empty list is swallowed. ``on_interrupt`` is sent when a
    bare ``\\x03`` arrives.
    """

    def __init__(self) -> None:
        self.replies: Dict[str, List[str]] = {
            "QStartNoAckMode": ["OK"],
            "qSupported": ["PacketSize=20000;QStartNoAckMode+;qXfer:features:read+"],
            "A": ["OK"],
            "qLaunchSuccess": ["OK"],
            "c": [],
            "D": ["OK"],
            "k": ["X09"],
            "QPassSignals": ["OK"],
            "vAttach": ["T13thread:01;"],
        }
        self.on_interrupt: List[str] = []
        self.hangup_on: List[str] = []
        self.received: List[str] = []
        self.interrupted = threading.Event()
        super().__init__(self._handle)

    def _reply_for(self, packet: str) -> List[str]:
        for prefix in sorted(self.replies, key=len, reverse=True):
            if packet.startswith(prefix):
                return self.replies[prefix]
        return [""]

    def _handle(self, conn: socket.socket) -> None:
        parser = PacketParser()
        while True:
            data = conn.recv(4096)
            if not data:
                return
            if b"\x03" in data:
                self.interrupted.set()
                for payload in self.on_interrupt:
                    conn.sendall(encode_packet(payload))
                data = data.replace(b"\x03", b"")
            for kind, payload in parser.feed(data):
                if kind != "packet":
                    continue
                packet = payload.decode("ascii")
                self.received.append(packet)
                for reply in self._reply_for(packet):
                    conn.sendall(encode_packet(reply))
                if any(packet.startswith(p) for p in self.hangup_on):
                    return


@pytest.fixture
def gdb_server():
    server = FakeGdbServer()
    yield server
    server.close()


class FakeForward:
    """Stands in for a PortForward pointing at a loopback server."""

    def __init__(self, local_port: int) -> None:
        self.local_port = local_port
        self.remote_port = local_port
        self.close_count = 0

    @property
    def closed(self) -> bool:
        return self.close_count > 0

    def close(self) -> None:
        self.close_count += 1


def make_device(identifier: str = "adb:emulator-5554", platform: Platform = Platform.ANDROID,
                arch: Arch = Arch.ARM64, name: str = "Pixel 7", transport=None) -> Device:
    kind, _, local_id = identifier.partition(":")
    return Device(
        identifier=identifier,
        name=name,
        platform=platform,
        arch=arch,
        os_version="",
        transport=transport,
        local_id=local_id or kind,
    )


# ---------------------------------------------------------------------------
# Signing identity
# ---------------------------------------------------------------------------
@pytest.fixture(scope="session")
def signing_pem(tmp_path_factory) -> Tuple[Path, Path]:
    """(key.pem, cert.pem) for a throwaway self-signed RSA identity."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "Deploy Toolkit Test")])
    now = datetime.datetime.now(datetime.timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(days=1))
        .not_valid_after(now + datetime.timedelta(days=365))
        .sign(key, hashes.SHA256())
    )
    out = tmp_path_factory.mktemp("signing")
    key_path = out / "key.pem"
    cert_path = out / "cert.pem"
    key_path.write_bytes(key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.TraditionalOpenSSL,
        serialization.NoEncryption(),
    ))
    cert_path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    return key_path, cert_path


@pytest.fixture
def signer(signing_pem):
    from deploy_toolkit.signer import Signer

    key_path, cert_path = signing_pem
    return Signer.from_pem(key_path, cert_path)


def wait_for(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()
