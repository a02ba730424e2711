"""
utils.py - Utility helpers for Deploy Toolkit.
"""

import os
import platform
import shutil
import socket
import logging
from pathlib import Path
from typing import Optional

import psutil

from .errors import TransportProtocolError

log = logging.getLogger("deploy_toolkit.utils")


def format_bytes(size: int) -> str:
    """Human-readable file size."""
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if abs(size) < 1024.0:
            return f"{size:.1f} {unit}"
        size /= 1024.0
    return f"{size:.1f} PB"


def format_duration(seconds: float) -> str:
    """Human-readable duration."""
    if seconds < 1:
        return f"{seconds * 1000:.0f}ms"
    if seconds < 60:
        return f"{seconds:.1f}s"
    m, s = divmod(int(seconds), 60)
    if m < 60:
        return f"{m}m {s}s"
    h, m = divmod(m, 60)
    return f"{h}h {m}m {s}s"


def ensure_directory(path: Path) -> Path:
    """Create directory if it doesn't exist."""
    path.mkdir(parents=True, exist_ok=True)
    return path


def cpu_count() -> int:
    """Logical core count, used as the default build parallelism."""
    return psutil.cpu_count(logical=True) or os.cpu_count() or 1


# ---------------------------------------------------------------------------
# Host facts
# ---------------------------------------------------------------------------
_MACHINE_ARCH = {
    "x86_64": "x64",
    "amd64": "x64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "armv7l": "arm",
    "armv7": "arm",
    "i386": "x86",
    "i686": "x86",
    "x86": "x86",
}


def host_platform() -> str:
    """Return "linux", "macos" or "windows"."""
    system = platform.system().lower()
    if system == "darwin":
        return "macos"
    if system.startswith("win"):
        return "windows"
    return "linux"


def host_arch() -> str:
    machine = platform.machine().lower()
    return _MACHINE_ARCH.get(machine, machine or "unknown")


def host_os_version() -> str:
    if host_platform() == "linux":
        try:
            name = platform.freedesktop_os_release().get("NAME", "Linux")
        except OSError:
            name = "Linux"
        return f"{name} ({platform.release()})"
    if host_platform() == "macos":
        return f"macOS {platform.mac_ver()[0]}"
    return f"Windows {platform.version()}"


# ---------------------------------------------------------------------------
# Tools & processes
# ---------------------------------------------------------------------------
def find_tool(name: str, configured: str = "") -> Optional[Path]:
    """Locate an executable, preferring an explicitly configured path."""
    if configured:
        path = Path(configured).expanduser()
        return path if path.is_file() else None
    found = shutil.which(name)
    return Path(found) if found else None


def kill_process_tree(pid: int, timeout: float = 3.0):
    """Terminate *pid* and every descendant, escalating to kill."""
    try:
        parent = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return
    procs = parent.children(recursive=True) + [parent]
    for proc in procs:
        try:
            proc.terminate()
        except psutil.NoSuchProcess:
            pass
    _, alive = psutil.wait_procs(procs, timeout=timeout)
    for proc in alive:
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            pass


# ---------------------------------------------------------------------------
# Sockets
# ---------------------------------------------------------------------------
def free_tcp_port(host: str = "127.0.0.1") -> int:
    """Ask the OS for an unused TCP port."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind((host, 0))
        return s.getsockname()[1]


def recv_exactly(sock: socket.socket, size: int, what: str = "frame") -> bytes:
    """Read exactly *size* bytes or raise on a truncated stream."""
    buf = bytearray()
    while len(buf) < size:
        chunk = sock.recv(size - len(buf))
        if not chunk:
            raise TransportProtocolError(
                f"truncated {what}: expected {size} bytes, got {len(buf)}"
            )
        buf.extend(chunk)
    return bytes(buf)


def recv_all(sock: socket.socket) -> bytes:
    """Read until the peer closes the stream."""
    chunks = []
    while True:
        chunk = sock.recv(65536)
        if not chunk:
            break
        chunks.append(chunk)
    return b"".join(chunks)
