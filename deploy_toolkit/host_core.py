"""
host_core.py - The local machine as a pseudo-device.

The host transport always reports exactly one device. Files are copied,
processes are local subprocesses and "forwarding" is the identity because
the debug server already listens on loopback.
"""

import logging
import platform
import shutil
import socket
import subprocess
import threading
import time
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import psutil

from .device_interface import (
    Arch,
    Channel,
    DeviceDescriptor,
    LaunchTarget,
    Platform,
    RemoteProcess,
    Transport,
)
from .errors import InstallFailed, NotFound, TransportProtocolError, TransportUnavailable
from .utils import (
    ensure_directory,
    find_tool,
    free_tcp_port,
    host_arch,
    host_os_version,
    host_platform,
    kill_process_tree,
)

log = logging.getLogger("deploy_toolkit.host")

HOST_ID = "host"


class HostProcess(RemoteProcess):
    """A local subprocess exposed through the RemoteProcess interface."""

    def __init__(self, argv: Sequence[str], cwd: Optional[Path] = None):
        super().__init__(argv)
        try:
            self._proc = subprocess.Popen(
                self.argv,
                cwd=cwd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
            )
        except OSError as exc:
            raise TransportProtocolError(f"cannot start {self.argv[0]}: {exc}") from exc
        self.pid = self._proc.pid
        readers = [
            threading.Thread(target=self._pump, args=(self._proc.stdout, self.stdout), daemon=True),
            threading.Thread(target=self._pump, args=(self._proc.stderr, self.stderr), daemon=True),
        ]
        for t in readers:
            t.start()
        threading.Thread(target=self._reap, args=(readers,), daemon=True).start()

    @staticmethod
    def _pump(pipe, stream):
        for line in pipe:
            stream.feed(line)
        pipe.close()

    def _reap(self, readers):
        code = self._proc.wait()
        for t in readers:
            t.join()
        self._finish(code)

    def kill(self):
        if self._proc.poll() is None:
            kill_process_tree(self._proc.pid)


class HostTransport(Transport):
    kind = "host"

    def __init__(self, install_dir: Optional[Path] = None, debug_server: str = ""):
        self.install_dir = Path(install_dir) if install_dir else (
            Path.home() / ".deploy_toolkit" / "apps"
        )
        self.debug_server = debug_server
        self._servers: List[HostProcess] = []
        self._lock = threading.Lock()

    def _check(self, device_id: str):
        if device_id != HOST_ID:
            raise NotFound(device_id)

    # ---- Discovery ------------------------------------------------------

    def list_devices(self) -> List[DeviceDescriptor]:
        return [DeviceDescriptor(
            local_id=HOST_ID,
            name=platform.node() or "localhost",
            platform=Platform(host_platform()),
            arch=Arch.parse(host_arch()),
            os_version=host_os_version(),
        )]

    def properties(self) -> Dict[str, str]:
        return {
            "os.platform": host_platform(),
            "os.version": host_os_version(),
            "os.release": platform.release(),
            "cpu.arch": host_arch(),
            "hostname": platform.node(),
        }

    # ---- Streams --------------------------------------------------------

    def open_channel(self, device_id: str, service: str) -> Channel:
        self._check(device_id)
        if not service.startswith("tcp:"):
            raise TransportProtocolError(f"unsupported host service: {service}")
        port = int(service[4:])
        sock = socket.create_connection(("127.0.0.1", port))
        return Channel(sock, name=service)

    def forward_port(self, device_id: str, remote_port: int) -> int:
        self._check(device_id)
        return remote_port

    def remove_forward(self, device_id: str, local_port: int):
        self._check(device_id)

    # ---- Files & processes ----------------------------------------------

    def push_file(self, device_id: str, local_path: Path, remote_path: str):
        self._check(device_id)
        dest = Path(remote_path)
        ensure_directory(dest.parent)
        shutil.copy2(local_path, dest)
        log.debug("Copied %s → %s", local_path, dest)

    def spawn_remote_process(self, device_id: str, argv: Sequence[str]) -> RemoteProcess:
        self._check(device_id)
        log.debug("Spawning %s", " ".join(argv))
        return HostProcess(argv)

    def read_property(self, device_id: str, key: str) -> str:
        self._check(device_id)
        return self.properties().get(key, "")

    # ---- Deployment -----------------------------------------------------

    def install(self, device_id: str, package_path: Path):
        self._check(device_id)
        package_path = Path(package_path)
        if not package_path.exists():
            raise InstallFailed(f"{package_path} does not exist")
        dest = ensure_directory(self.install_dir) / package_path.name
        if dest.is_dir():
            shutil.rmtree(dest)
        elif dest.exists():
            dest.unlink()
        if package_path.is_dir():
            shutil.copytree(package_path, dest, symlinks=True)
        else:
            shutil.copy2(package_path, dest)
        log.info("Installed %s → %s", package_path.name, dest)

    def launch_target(self, device_id: str, executable: Path, app_id: str) -> LaunchTarget:
        self._check(device_id)
        return LaunchTarget(path=str(Path(executable).resolve()))

    def start_debug_server(self, device_id: str) -> int:
        self._check(device_id)
        tool = find_tool("lldb-server", self.debug_server)
        if tool is None and host_platform() == "macos":
            tool = find_tool("debugserver")
        if tool is None:
            raise TransportUnavailable("no lldb-server or debugserver found")

        port = free_tcp_port()
        if tool.name.startswith("lldb-server"):
            argv = [str(tool), "gdbserver", f"127.0.0.1:{port}"]
        else:
            argv = [str(tool), f"127.0.0.1:{port}"]
        proc = HostProcess(argv)
        with self._lock:
            self._servers.append(proc)
        self._wait_listening(proc, port)
        log.info("Debug server %s listening on %d", tool.name, port)
        return port

    def _wait_listening(self, proc: HostProcess, port: int, timeout: float = 10.0):
        # Probing with a connect would consume the server's only accept.
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if proc.poll() is not None:
                err = "\n".join(proc.stderr.read_lines())
                raise TransportProtocolError(
                    f"debug server exited with {proc.returncode}: {err}"
                )
            try:
                conns = psutil.Process(proc.pid).net_connections(kind="tcp")
            except psutil.NoSuchProcess:
                continue
            if any(c.status == psutil.CONN_LISTEN and c.laddr.port == port for c in conns):
                return
            time.sleep(0.05)
        proc.kill()
        raise TransportProtocolError(f"debug server did not listen on {port}")

    def close_device(self, device_id: str):
        with self._lock:
            servers, self._servers = self._servers, []
        for proc in servers:
            proc.kill()
