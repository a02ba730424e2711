"""
adb_core.py - Android bridge transport speaking the adb host protocol.

Talks directly to the adb server socket (default 127.0.0.1:5037) instead of
shelling out to the ``adb`` binary:

* requests are ASCII, prefixed with their length as four hex digits
* replies start with ``OKAY`` or ``FAIL``; a FAIL carries a hex-length message
* ``sync:`` pushes files with SEND / DATA / DONE records (little-endian)
* ``shell,v2,raw:`` multiplexes stdout, stderr and the exit code

Every channel is its own server connection, so a broken stream never takes
another one down with it.
"""

import codecs
import logging
import re
import shlex
import socket
import stat
import struct
import subprocess
import threading
import time
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Set, Tuple

from .device_interface import (
    Arch,
    Channel,
    DeviceDescriptor,
    LaunchTarget,
    Platform,
    RemoteProcess,
    Transport,
)
from .errors import InstallFailed, TransportError, TransportProtocolError, TransportUnavailable
from .utils import find_tool, format_bytes, recv_all, recv_exactly

log = logging.getLogger("deploy_toolkit.adb")

ADB_SERVER_PORT = 5037
SYNC_DATA_MAX = 64 * 1024
REMOTE_TMP = "/data/local/tmp"
DEFAULT_DEBUG_PORT = 5039
NATIVE_ACTIVITY = "android.app.NativeActivity"
JDWP_HANDSHAKE = b"JDWP-Handshake"

# shell protocol v2 packet ids
SHELL_STDIN = 0
SHELL_STDOUT = 1
SHELL_STDERR = 2
SHELL_EXIT = 3
SHELL_CLOSE_STDIN = 4

_GETPROP_RE = re.compile(r"^\[(.+?)\]: \[(.*)\]$")
_EXIT_MARKER = "__deploy_toolkit_exit__"
_LOGCAT_TIME_RE = re.compile(r"^\d\d-\d\d \d\d:\d\d:\d\d\.\d{3}")


def encode_request(payload: str) -> bytes:
    """Frame a host request: 4 hex digits of length, then the payload."""
    data = payload.encode("utf-8")
    if len(data) > 0xFFFF:
        raise ValueError(f"adb request too long ({len(data)} bytes)")
    return f"{len(data):04x}".encode("ascii") + data


def parse_getprop(text: str) -> Dict[str, str]:
    props: Dict[str, str] = {}
    for line in text.splitlines():
        m = _GETPROP_RE.match(line.strip())
        if m:
            props[m.group(1)] = m.group(2)
    return props


def parse_devices_l(text: str) -> List[Dict[str, str]]:
    """Parse ``host:devices-l`` output into one dict per device."""
    entries = []
    for line in text.splitlines():
        parts = line.split()
        if len(parts) < 2:
            continue
        entry = {"serial": parts[0], "state": parts[1]}
        for part in parts[2:]:
            if ":" in part:
                key, _, value = part.partition(":")
                entry[key] = value
        entries.append(entry)
    return entries


# ---------------------------------------------------------------------------
# One connection to the adb server
# ---------------------------------------------------------------------------
class AdbConnection:
    """A single socket to the adb server, used for exactly one request."""

    def __init__(self, sock: socket.socket):
        self.sock = sock

    def send_request(self, payload: str):
        log.debug("→ %s", payload)
        self.sock.sendall(encode_request(payload))

    def read_status(self):
        status = recv_exactly(self.sock, 4, "adb status")
        if status == b"OKAY":
            return
        if status == b"FAIL":
            message = self.read_string()
            log.debug("← FAIL %s", message)
            raise TransportProtocolError(message)
        raise TransportProtocolError(f"unexpected adb status {status!r}")

    def read_string(self) -> str:
        raw_len = recv_exactly(self.sock, 4, "adb length")
        try:
            length = int(raw_len.decode("ascii"), 16)
        except ValueError:
            raise TransportProtocolError(f"bad adb length prefix {raw_len!r}") from None
        return recv_exactly(self.sock, length, "adb message").decode("utf-8", "replace")

    def request(self, payload: str):
        self.send_request(payload)
        self.read_status()

    def read_until_close(self) -> bytes:
        return recv_all(self.sock)

    def detach(self) -> socket.socket:
        sock, self.sock = self.sock, None
        return sock

    def close(self):
        if self.sock is not None:
            self.sock.close()
            self.sock = None

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


# ---------------------------------------------------------------------------
# Remote processes
# ---------------------------------------------------------------------------
class BridgeProcess(RemoteProcess):
    """Process started with ``shell,v2,raw:``; demuxes the v2 packets."""

    def __init__(self, argv: Sequence[str], sock: socket.socket):
        super().__init__(argv)
        self._sock = sock
        self.error: Optional[Exception] = None
        threading.Thread(target=self._read_loop, daemon=True).start()

    def _read_loop(self):
        decoders = {
            SHELL_STDOUT: codecs.getincrementaldecoder("utf-8")("replace"),
            SHELL_STDERR: codecs.getincrementaldecoder("utf-8")("replace"),
        }
        streams = {SHELL_STDOUT: self.stdout, SHELL_STDERR: self.stderr}
        code = -1
        try:
            while True:
                first = self._sock.recv(1)
                if not first:
                    raise TransportProtocolError("shell stream closed before exit status")
                header = first + recv_exactly(self._sock, 4, "shell packet header")
                packet_id, length = struct.unpack("<BI", header)
                data = recv_exactly(self._sock, length, "shell packet") if length else b""
                if packet_id in streams:
                    streams[packet_id].feed(decoders[packet_id].decode(data))
                elif packet_id == SHELL_EXIT:
                    code = data[0] if data else 0
                    break
        except (OSError, TransportProtocolError) as exc:
            self.error = exc
            log.debug("shell stream for %s ended: %s", self.argv[0], exc)
        finally:
            self._sock.close()
            self._finish(code)

    def kill(self):
        try:
            self._sock.sendall(struct.pack("<BI", SHELL_CLOSE_STDIN, 0))
            self._sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass


class LegacyShellProcess(RemoteProcess):
    """Process started with plain ``shell:`` on devices without shell_v2.

    The legacy protocol has no exit status or stderr; the command is wrapped
    so the status is echoed as a trailing marker line.
    """

    def __init__(self, argv: Sequence[str], sock: socket.socket):
        super().__init__(argv)
        self._sock = sock
        self._code = -1
        threading.Thread(target=self._read_loop, daemon=True).start()

    def _read_loop(self):
        decoder = codecs.getincrementaldecoder("utf-8")("replace")
        text = ""
        try:
            while True:
                chunk = self._sock.recv(65536)
                if not chunk:
                    break
                text += decoder.decode(chunk)
                *lines, text = text.split("\n")
                for line in lines:
                    self._emit(line)
        except OSError as exc:
            log.debug("legacy shell stream ended: %s", exc)
        finally:
            if text:
                self._emit(text)
            self._sock.close()
            self._finish(self._code)

    def _emit(self, line: str):
        line = line.rstrip("\r")
        if line.startswith(_EXIT_MARKER):
            status = line[len(_EXIT_MARKER):].strip()
            if status.isdigit():
                self._code = int(status)
            else:
                log.debug("unreadable exit status %r", status)
        else:
            self.stdout.feed(line + "\n")

    def kill(self):
        try:
            self._sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------
class BridgeTransport(Transport):
    """Android devices reached through the adb server."""

    kind = "adb"

    def __init__(
        self,
        host: str = "127.0.0.1",
        port: int = ADB_SERVER_PORT,
        adb_path: str = "",
        timeout: float = 30.0,
        lldb_server: str = "",
        debug_port: int = 0,
    ):
        self.host = host
        self.port = port
        self.adb_path = adb_path
        self.timeout = timeout
        self.lldb_server = lldb_server
        self.debug_port = debug_port or DEFAULT_DEBUG_PORT
        self._lock = threading.Lock()
        self._features: Dict[str, Set[str]] = {}
        self._streams: Dict[int, Channel] = {}
        self._next_stream = 1
        self._debug_servers: Dict[str, RemoteProcess] = {}
        self._server_started = False

    # ---- Connections ----------------------------------------------------

    def _connect(self) -> AdbConnection:
        try:
            sock = socket.create_connection((self.host, self.port), timeout=self.timeout)
        except ConnectionRefusedError as exc:
            if not self._start_server():
                raise TransportUnavailable(
                    f"adb server not running on {self.host}:{self.port}"
                ) from exc
            try:
                sock = socket.create_connection((self.host, self.port), timeout=self.timeout)
            except OSError as exc2:
                raise TransportUnavailable(f"adb server did not start: {exc2}") from exc2
        except OSError as exc:
            raise TransportUnavailable(
                f"adb server unreachable at {self.host}:{self.port}: {exc}"
            ) from exc
        return AdbConnection(sock)

    def _start_server(self) -> bool:
        """Launch the daemon once through the adb binary, if one is available."""
        if self._server_started or self.host not in ("127.0.0.1", "localhost"):
            return False
        adb = find_tool("adb", self.adb_path)
        if adb is None:
            return False
        self._server_started = True
        log.info("Starting adb server via %s", adb)
        r = subprocess.run(
            [str(adb), "-P", str(self.port), "start-server"],
            capture_output=True, text=True, encoding="utf-8", errors="replace",
            timeout=self.timeout,
        )
        if r.returncode != 0:
            log.warning("adb start-server failed: %s", r.stderr.strip())
        return r.returncode == 0

    def _host_query(self, payload: str) -> str:
        with self._connect() as conn:
            conn.request(payload)
            return conn.read_string()

    def _open_service(self, serial: str, service: str) -> AdbConnection:
        conn = self._connect()
        try:
            conn.request(f"host:transport:{serial}")
            conn.request(service)
        except BaseException:
            conn.close()
            raise
        return conn

    def _shell_output(self, serial: str, command: str) -> str:
        with self._open_service(serial, f"shell:{command}") as conn:
            return conn.read_until_close().decode("utf-8", "replace")

    def features(self, serial: str) -> Set[str]:
        with self._lock:
            cached = self._features.get(serial)
        if cached is not None:
            return cached
        feats = set(filter(None, self._host_query(f"host-serial:{serial}:features").split(",")))
        with self._lock:
            self._features[serial] = feats
        return feats

    # ---- Discovery ------------------------------------------------------

    def list_devices(self) -> List[DeviceDescriptor]:
        devices: List[DeviceDescriptor] = []
        for entry in parse_devices_l(self._host_query("host:devices-l")):
            serial = entry["serial"]
            if entry["state"] != "device":
                log.debug("Skipping %s (%s)", serial, entry["state"])
                continue
            try:
                props = parse_getprop(self._shell_output(serial, "getprop"))
            except (TransportProtocolError, OSError) as exc:
                log.warning("Skipping %s: %s", serial, exc)
                continue
            abi = props.get("ro.product.cpu.abi", "")
            try:
                arch = Arch.parse(abi)
            except ValueError:
                log.warning("Skipping %s: unknown abi %r", serial, abi)
                continue
            release = props.get("ro.build.version.release", "")
            devices.append(DeviceDescriptor(
                local_id=serial,
                name=props.get("ro.product.model") or entry.get("model", serial),
                platform=Platform.ANDROID,
                arch=arch,
                os_version=f"Android {release}".strip(),
                properties=props,
            ))
        return devices

    # ---- Streams --------------------------------------------------------

    def open_channel(self, device_id: str, service: str) -> Channel:
        conn = self._open_service(device_id, service)
        sock = conn.detach()
        sock.settimeout(None)
        with self._lock:
            stream_id = self._next_stream
            self._next_stream += 1
            channel = Channel(
                sock,
                name=f"{device_id}/{service}#{stream_id}",
                on_close=lambda _ch, sid=stream_id: self._release_stream(sid),
            )
            self._streams[stream_id] = channel
        log.debug("Opened stream %d: %s %s", stream_id, device_id, service)
        return channel

    def _release_stream(self, stream_id: int):
        with self._lock:
            self._streams.pop(stream_id, None)

    def open_streams(self) -> List[int]:
        with self._lock:
            return sorted(self._streams)

    def forward_port(self, device_id: str, remote_port: int) -> int:
        with self._connect() as conn:
            conn.request(f"host-serial:{device_id}:forward:tcp:0;tcp:{remote_port}")
            conn.read_status()
            local_port = int(conn.read_string())
        log.info("Forwarded localhost:%d → %s:%d", local_port, device_id, remote_port)
        return local_port

    def remove_forward(self, device_id: str, local_port: int):
        with self._connect() as conn:
            conn.request(f"host-serial:{device_id}:killforward:tcp:{local_port}")
        log.debug("Removed forward localhost:%d (%s)", local_port, device_id)

    # ---- Files & processes ----------------------------------------------

    def push_file(self, device_id: str, local_path: Path, remote_path: str):
        local_path = Path(local_path)
        st = local_path.stat()
        mode = stat.S_IFREG | stat.S_IMODE(st.st_mode)
        header = f"{remote_path},{mode}".encode("utf-8")
        with self._open_service(device_id, "sync:") as conn:
            sock = conn.sock
            sock.sendall(b"SEND" + struct.pack("<I", len(header)) + header)
            with open(local_path, "rb") as fh:
                while True:
                    chunk = fh.read(SYNC_DATA_MAX)
                    if not chunk:
                        break
                    sock.sendall(b"DATA" + struct.pack("<I", len(chunk)) + chunk)
            sock.sendall(b"DONE" + struct.pack("<I", int(st.st_mtime)))
            reply_id, length = struct.unpack("<4sI", recv_exactly(sock, 8, "sync reply"))
            if reply_id == b"FAIL":
                message = recv_exactly(sock, length, "sync message").decode("utf-8", "replace")
                raise TransportProtocolError(message)
            if reply_id != b"OKAY":
                raise TransportProtocolError(f"unexpected sync reply {reply_id!r}")
            sock.sendall(b"QUIT" + struct.pack("<I", 0))
        log.debug("Pushed %s (%s) → %s:%s", local_path, format_bytes(st.st_size), device_id, remote_path)

    def spawn_remote_process(self, device_id: str, argv: Sequence[str]) -> RemoteProcess:
        command = " ".join(shlex.quote(a) for a in argv)
        if "shell_v2" in self.features(device_id):
            conn = self._open_service(device_id, f"shell,v2,raw:{command}")
            sock = conn.detach()
            sock.settimeout(None)
            return BridgeProcess(argv, sock)
        conn = self._open_service(device_id, f"shell:{command}; echo {_EXIT_MARKER}$?")
        sock = conn.detach()
        sock.settimeout(None)
        return LegacyShellProcess(argv, sock)

    def run_command(self, device_id: str, argv: Sequence[str]) -> Tuple[int, str]:
        """Run a command to completion; return (exit code, combined output)."""
        proc = self.spawn_remote_process(device_id, argv)
        out = proc.stdout.read_lines()
        err = proc.stderr.read_lines()
        code = proc.wait(self.timeout)
        return code, "\n".join(out + err)

    def read_property(self, device_id: str, key: str) -> str:
        return self._shell_output(device_id, f"getprop {shlex.quote(key)}").strip()

    # ---- Deployment -----------------------------------------------------

    def install(self, device_id: str, package_path: Path):
        package_path = Path(package_path)
        remote = f"{REMOTE_TMP}/{package_path.name}"
        self.push_file(device_id, package_path, remote)
        try:
            code, output = self.run_command(device_id, ["pm", "install", "-r", "-t", remote])
        finally:
            self.run_command(device_id, ["rm", "-f", remote])
        if code != 0 or "Success" not in output:
            raise InstallFailed(output.strip() or f"pm install exited with {code}")
        log.info("Installed %s on %s", package_path.name, device_id)

    def _checked(self, device_id: str, argv: Sequence[str]) -> str:
        code, output = self.run_command(device_id, argv)
        # am reports most failures on stdout with a zero status
        if code != 0 or any(line.startswith("Error") for line in output.splitlines()):
            raise TransportProtocolError(output.strip() or f"{argv[0]} exited with {code}")
        return output

    def _logcat_since(self, device_id: str) -> str:
        """Timestamp of the newest log line, so the app's logcat starts after it."""
        _, output = self.run_command(device_id, ["logcat", "-v", "time", "-t", "1"])
        for line in output.splitlines():
            m = _LOGCAT_TIME_RE.match(line)
            if m:
                return m.group(0)
        return ""

    def pidof(self, device_id: str, package: str, timeout: Optional[float] = None) -> int:
        """Wait for exactly one process named *package* and return its pid."""
        deadline = time.monotonic() + (self.timeout if timeout is None else timeout)
        while True:
            _, output = self.run_command(device_id, ["pidof", package])
            pids = output.split()
            # the old process may still be exiting
            if len(pids) == 1 and pids[0].isdigit():
                log.debug("pid of %s is %s", package, pids[0])
                return int(pids[0])
            if time.monotonic() >= deadline:
                raise TransportProtocolError(f"{package} is not running on {device_id}")
            time.sleep(0.1)

    def launch_target(self, device_id: str, executable: Path, app_id: str) -> LaunchTarget:
        """Start the installed app waiting for a debugger and hand back its pid.

        The app is stopped, marked as the debug app and started with
        ``am start -D``; logcat for its pid becomes the session's side
        output. Once the native debugger has resumed it, a JDWP handshake
        releases the Java-side wait.
        """
        component = f"{app_id}/{NATIVE_ACTIVITY}"
        self._checked(device_id, ["am", "force-stop", app_id])
        self._checked(device_id, ["am", "set-debug-app", "-w", app_id])
        since = self._logcat_since(device_id)
        self._checked(device_id, ["am", "start", "-D", "-n", component])
        pid = self.pidof(device_id, app_id)
        logcat = self.spawn_remote_process(
            device_id, ["logcat", "-v", "brief", "-T", since or "1", f"--pid={pid}"]
        )
        jdwp: List[Channel] = []

        def release():
            jdwp.append(self.release_java_wait(device_id, pid))

        def close():
            for channel in jdwp:
                channel.close()
            try:
                self._checked(device_id, ["am", "clear-debug-app"])
            except (TransportError, OSError) as exc:
                log.warning("Could not clear the debug app on %s: %s", device_id, exc)

        log.info("Started %s on %s (pid %d)", component, device_id, pid)
        return LaunchTarget(pid=pid, output=logcat, on_running=release, on_close=close)

    def release_java_wait(self, device_id: str, pid: int) -> Channel:
        """Complete a JDWP handshake with *pid*; the channel must stay open."""
        channel = self.open_channel(device_id, f"jdwp:{pid}")
        try:
            channel.settimeout(self.timeout)
            channel.send(JDWP_HANDSHAKE)
            reply = channel.recv_exactly(len(JDWP_HANDSHAKE))
            if reply != JDWP_HANDSHAKE:
                raise TransportProtocolError(f"unexpected JDWP handshake {reply!r}")
            channel.settimeout(None)
        except BaseException:
            channel.close()
            raise
        return channel

    def start_debug_server(self, device_id: str) -> int:
        tool = find_tool("lldb-server", self.lldb_server) if self.lldb_server else None
        if tool is None:
            raise TransportUnavailable("no Android lldb-server configured (debug.lldb_server)")
        remote = f"{REMOTE_TMP}/lldb-server"
        self.push_file(device_id, tool, remote)
        self.run_command(device_id, ["chmod", "755", remote])

        port = self.debug_port
        proc = self.spawn_remote_process(
            device_id, [remote, "gdbserver", f"127.0.0.1:{port}"]
        )
        with self._lock:
            old = self._debug_servers.pop(device_id, None)
            self._debug_servers[device_id] = proc
        if old is not None:
            old.kill()
        self._wait_listening(device_id, port, proc)
        log.info("lldb-server listening on %s:%d", device_id, port)
        return port

    def _wait_listening(self, device_id: str, port: int, proc: RemoteProcess, timeout: float = 10.0):
        wanted = f":{port:04X}"
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if proc.poll() is not None:
                raise TransportProtocolError(
                    f"lldb-server exited with {proc.returncode}: "
                    + "\n".join(proc.stderr.read_lines())
                )
            table = self._shell_output(device_id, "cat /proc/net/tcp /proc/net/tcp6")
            for line in table.splitlines()[1:]:
                fields = line.split()
                # state 0A is LISTEN
                if len(fields) > 3 and fields[1].endswith(wanted) and fields[3] == "0A":
                    return
            time.sleep(0.1)
        raise TransportProtocolError(f"lldb-server did not listen on {port}")

    def close_device(self, device_id: str):
        with self._lock:
            self._features.pop(device_id, None)
            proc = self._debug_servers.pop(device_id, None)
        if proc is not None:
            proc.kill()
