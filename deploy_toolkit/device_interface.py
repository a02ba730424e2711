"""
device_interface.py - Abstract base class for device transports.

Defines a protocol-agnostic capability interface so that the registry, the
deploy driver and the debug bridge work with the **local host**, **Android
(adb)** and **Apple (usbmux/lockdown)** devices interchangeably. Nothing
above this layer branches on which wire protocol a device speaks.
"""

import queue
import socket
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Sequence

from .utils import recv_exactly


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class Platform(Enum):
    ANDROID = "android"
    IOS = "ios"
    LINUX = "linux"
    MACOS = "macos"
    WINDOWS = "windows"


class Arch(Enum):
    ARM = "arm"
    ARM64 = "arm64"
    X86 = "x86"
    X64 = "x64"

    @classmethod
    def parse(cls, value: str) -> "Arch":
        """Accept the names the various daemons report (abi, uname, etc.)."""
        aliases = {
            "armeabi-v7a": cls.ARM, "armv7": cls.ARM, "armv7l": cls.ARM,
            "arm": cls.ARM,
            "arm64-v8a": cls.ARM64, "aarch64": cls.ARM64, "arm64": cls.ARM64,
            "arm64e": cls.ARM64,
            "x86": cls.X86, "i386": cls.X86, "i686": cls.X86,
            "x86_64": cls.X64, "amd64": cls.X64, "x64": cls.X64,
        }
        try:
            return aliases[value.strip().lower()]
        except KeyError:
            raise ValueError(f"unknown architecture: {value!r}") from None


# ---------------------------------------------------------------------------
# Device records
# ---------------------------------------------------------------------------
@dataclass
class DeviceDescriptor:
    """Raw record returned by ``Transport.list_devices``."""
    local_id: str
    name: str
    platform: Platform
    arch: Arch
    os_version: str = ""
    properties: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True, eq=False)
class Device:
    """An enumerated target. Immutable; rebuilt on every refresh."""
    identifier: str
    name: str
    platform: Platform
    arch: Arch
    os_version: str
    transport: "Transport" = field(repr=False)
    local_id: str = ""

    @property
    def kind(self) -> str:
        return self.transport.kind

    @classmethod
    def from_descriptor(cls, transport: "Transport", desc: DeviceDescriptor) -> "Device":
        if transport.kind == "host":
            identifier = "host"
        else:
            identifier = f"{transport.kind}:{desc.local_id}"
        return cls(
            identifier=identifier,
            name=desc.name,
            platform=desc.platform,
            arch=desc.arch,
            os_version=desc.os_version,
            transport=transport,
            local_id=desc.local_id,
        )

    def __eq__(self, other):
        if not isinstance(other, Device):
            return NotImplemented
        return self.identifier == other.identifier

    def __hash__(self):
        return hash(self.identifier)

    def __str__(self):
        return f"{self.name} ({self.identifier})"


# ---------------------------------------------------------------------------
# Streams
# ---------------------------------------------------------------------------
_EOF = object()


class OutputStream:
    """Line-oriented stream filled by a reader thread.

    Iterating blocks for new lines and ends once the producer closes the
    stream. Partial lines are held back until a newline or close.
    """

    def __init__(self, name: str = ""):
        self.name = name
        self._queue: "queue.Queue" = queue.Queue()
        self._partial = ""
        self._closed = False
        self._lock = threading.Lock()

    @property
    def closed(self) -> bool:
        return self._closed

    def feed(self, text: str):
        with self._lock:
            if self._closed:
                return
            text = self._partial + text
            *lines, self._partial = text.split("\n")
            for line in lines:
                self._queue.put(line.rstrip("\r"))

    def close(self):
        with self._lock:
            if self._closed:
                return
            self._closed = True
            if self._partial:
                self._queue.put(self._partial.rstrip("\r"))
                self._partial = ""
            self._queue.put(_EOF)

    def __iter__(self) -> Iterator[str]:
        while True:
            item = self._queue.get()
            if item is _EOF:
                # Leave the marker for any other consumer.
                self._queue.put(_EOF)
                return
            yield item

    def read_lines(self) -> List[str]:
        """Block until closed and return every remaining line."""
        return list(self)


class Channel:
    """A raw bidirectional byte stream to one device-side service."""

    def __init__(
        self,
        sock: socket.socket,
        name: str = "",
        on_close: Optional[Callable[["Channel"], None]] = None,
    ):
        self.sock = sock
        self.name = name
        self._on_close = on_close
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, data: bytes):
        self.sock.sendall(data)

    def recv(self, size: int = 65536) -> bytes:
        return self.sock.recv(size)

    def recv_exactly(self, size: int) -> bytes:
        return recv_exactly(self.sock, size, what=f"{self.name or 'channel'} frame")

    def settimeout(self, timeout: Optional[float]):
        self.sock.settimeout(timeout)

    def close(self):
        if self._closed:
            return
        self._closed = True
        try:
            self.sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self.sock.close()
        if self._on_close:
            self._on_close(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def __repr__(self):
        return f"<Channel {self.name!r}{' closed' if self._closed else ''}>"


@dataclass
class LaunchTarget:
    """What the debug session starts from.

    Either a device-side ``path`` the debug server launches, or the ``pid``
    of a process the transport already started and the server attaches to.
    ``output`` is a side stream (logcat) mirrored into the session, and
    ``on_running`` is called once the debugger let the process go.
    """
    path: str = ""
    pid: Optional[int] = None
    output: Optional["RemoteProcess"] = None
    on_running: Optional[Callable[[], None]] = None
    on_close: Optional[Callable[[], None]] = None

    @property
    def attach(self) -> bool:
        return self.pid is not None

    def close(self):
        if self.output is not None:
            self.output.kill()
        if self.on_close is not None:
            self.on_close()

    def __str__(self):
        return f"pid {self.pid}" if self.attach else self.path


class RemoteProcess(ABC):
    """Handle to a process started on a device."""

    def __init__(self, argv: Sequence[str]):
        self.argv = list(argv)
        self.stdout = OutputStream("stdout")
        self.stderr = OutputStream("stderr")
        self._returncode: Optional[int] = None
        self._exited = threading.Event()

    @property
    def returncode(self) -> Optional[int]:
        return self._returncode

    def poll(self) -> Optional[int]:
        return self._returncode

    def wait(self, timeout: Optional[float] = None) -> int:
        if not self._exited.wait(timeout):
            raise TimeoutError(f"{self.argv[0]} still running after {timeout}s")
        return self._returncode

    def _finish(self, returncode: int):
        self._returncode = returncode
        self.stdout.close()
        self.stderr.close()
        self._exited.set()

    @abstractmethod
    def kill(self):
        """Terminate the remote process."""
        ...


# ---------------------------------------------------------------------------
# Abstract Transport
# ---------------------------------------------------------------------------
class Transport(ABC):
    """One device-communication protocol family.

    Concrete implementations:
      - HostTransport      → the local machine as a pseudo-device
      - BridgeTransport    → adb host protocol
      - LockdownTransport  → usbmuxd + lockdownd
    """

    #: Prefix for device identifiers ("host", "adb", "imd").
    kind: str = ""

    # ---- Discovery ------------------------------------------------------

    @abstractmethod
    def list_devices(self) -> List[DeviceDescriptor]:
        """Enumerate devices. Raises TransportUnavailable if the daemon is absent."""
        ...

    # ---- Streams --------------------------------------------------------

    @abstractmethod
    def open_channel(self, device_id: str, service: str) -> Channel:
        """Open a raw byte stream to a device-side service."""
        ...

    @abstractmethod
    def forward_port(self, device_id: str, remote_port: int) -> int:
        """Forward a device TCP port; return the local port."""
        ...

    @abstractmethod
    def remove_forward(self, device_id: str, local_port: int):
        """Tear down a forward created by ``forward_port``."""
        ...

    # ---- Files & processes ----------------------------------------------

    @abstractmethod
    def push_file(self, device_id: str, local_path: Path, remote_path: str):
        """Copy a local file onto the device."""
        ...

    @abstractmethod
    def spawn_remote_process(self, device_id: str, argv: Sequence[str]) -> RemoteProcess:
        """Start a process on the device."""
        ...

    @abstractmethod
    def read_property(self, device_id: str, key: str) -> str:
        """Read a device property (empty string when unset)."""
        ...

    # ---- Deployment -----------------------------------------------------

    @abstractmethod
    def install(self, device_id: str, package_path: Path):
        """Install a packaged app. Raises InstallFailed on rejection."""
        ...

    @abstractmethod
    def launch_target(self, device_id: str, executable: Path, app_id: str) -> LaunchTarget:
        """Prepare the installed app for the debug server (path or running pid)."""
        ...

    @abstractmethod
    def start_debug_server(self, device_id: str) -> int:
        """Start the device-resident gdb-remote server; return its port."""
        ...

    def close_device(self, device_id: str):
        """Drop cached per-device state. Default: nothing cached."""
        return None
