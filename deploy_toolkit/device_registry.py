"""
device_registry.py - Unified device discovery across all transports.

Aggregates the registered transports and provides a single, stably ordered
view of every reachable device. A transport whose daemon is absent, or whose
enumeration breaks, is left out of the listing; it never fails the refresh
as a whole.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from .device_interface import Channel, Device, LaunchTarget, RemoteProcess, Transport
from .errors import AmbiguousSelector, NotFound, TransportError, TransportUnavailable

log = logging.getLogger("deploy_toolkit.registry")


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------
class PortForward:
    """A forwarded port; closing it removes the forward exactly once."""

    def __init__(self, session: "TransportSession", local_port: int, remote_port: int):
        self.session = session
        self.local_port = local_port
        self.remote_port = remote_port
        self._closed = False
        self._lock = threading.Lock()

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self):
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self.session.remove_forward(self.local_port)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def __repr__(self):
        return f"<PortForward localhost:{self.local_port} → {self.remote_port}>"


class TransportSession:
    """Serialized access to one device through its transport.

    One call is in flight at a time. An I/O failure drops the transport's
    cached state for the device so the next call starts from a clean
    connection; the failed call itself is not retried.
    """

    def __init__(self, device: Device):
        self.device = device
        self.transport: Transport = device.transport
        self._lock = threading.RLock()
        self._forwards: List[PortForward] = []
        self._closed = False

    def _call(self, method: str, *args):
        with self._lock:
            if self._closed:
                raise TransportError(f"session for {self.device.identifier} is closed")
            fn = getattr(self.transport, method)
            try:
                return fn(self.device.local_id, *args)
            except OSError as exc:
                log.warning("%s on %s failed: %s", method, self.device.identifier, exc)
                self.transport.close_device(self.device.local_id)
                raise TransportError(
                    f"{method} on {self.device.identifier} failed: {exc}"
                ) from exc

    def open_channel(self, service: str) -> Channel:
        return self._call("open_channel", service)

    def forward_port(self, remote_port: int) -> PortForward:
        local_port = self._call("forward_port", remote_port)
        forward = PortForward(self, local_port, remote_port)
        with self._lock:
            self._forwards.append(forward)
        return forward

    def remove_forward(self, local_port: int):
        with self._lock:
            self._forwards = [f for f in self._forwards if f.local_port != local_port]
            if self._closed:
                return
        self._call("remove_forward", local_port)

    def push_file(self, local_path: Path, remote_path: str):
        self._call("push_file", Path(local_path), remote_path)

    def spawn(self, argv: Sequence[str]) -> RemoteProcess:
        return self._call("spawn_remote_process", list(argv))

    def read_property(self, key: str) -> str:
        return self._call("read_property", key)

    def install(self, package_path: Path):
        self._call("install", Path(package_path))

    def launch_target(self, executable: Path, app_id: str) -> LaunchTarget:
        return self._call("launch_target", Path(executable), app_id)

    def start_debug_server(self) -> int:
        return self._call("start_debug_server")

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self):
        with self._lock:
            if self._closed:
                return
            forwards, self._forwards = list(self._forwards), []
        for forward in forwards:
            try:
                forward.close()
            except TransportError as exc:
                log.warning("Could not remove %r: %s", forward, exc)
        with self._lock:
            self._closed = True
            self.transport.close_device(self.device.local_id)
        log.debug("Session for %s closed", self.device.identifier)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------
class DeviceRegistry:
    """Aggregates transports and provides a single view of all devices."""

    def __init__(self, transports: Sequence[Transport] = ()):
        self._transports: List[Transport] = list(transports)
        self._devices: List[Device] = []
        self._sessions: Dict[str, TransportSession] = {}
        self._refreshed = False
        self._lock = threading.Lock()

    def register(self, transport: Transport):
        """Register a transport; it is listed after those already registered."""
        self._transports.append(transport)

    @property
    def transports(self) -> List[Transport]:
        return list(self._transports)

    # ---- Discovery ------------------------------------------------------

    def _query(self, transport: Transport):
        try:
            return transport.list_devices()
        except TransportUnavailable as exc:
            log.info("Transport %s unavailable: %s", transport.kind, exc)
            return None
        except (TransportError, OSError) as exc:
            log.warning("Transport %s enumeration failed: %s", transport.kind, exc)
            return None

    def refresh(self) -> List[Device]:
        """Re-enumerate every transport in parallel."""
        if self._transports:
            with ThreadPoolExecutor(max_workers=len(self._transports)) as pool:
                results = list(pool.map(self._query, self._transports))
        else:
            results = []

        devices: List[Device] = []
        seen = set()
        for transport, descriptors in zip(self._transports, results):
            if descriptors is None:
                continue
            for desc in sorted(descriptors, key=lambda d: d.local_id):
                key: Tuple[str, str] = (transport.kind, desc.local_id)
                if key in seen:
                    continue
                seen.add(key)
                devices.append(Device.from_descriptor(transport, desc))

        current = {d.identifier for d in devices}
        with self._lock:
            gone = [s for ident, s in self._sessions.items() if ident not in current]
            self._sessions = {i: s for i, s in self._sessions.items() if i in current}
            self._devices = devices
            self._refreshed = True
        for session in gone:
            log.info("Device %s disappeared", session.device.identifier)
            session.close()

        log.debug("Refresh found %d device(s)", len(devices))
        return list(devices)

    def devices(self) -> List[Device]:
        with self._lock:
            return list(self._devices)

    def get(self, identifier: str) -> Optional[Device]:
        for device in self.devices():
            if device.identifier == identifier:
                return device
        return None

    def resolve(self, selector: str) -> Device:
        """Find one device by id, local id, "host" or unique name prefix."""
        if not self._refreshed:
            self.refresh()
        devices = self.devices()
        selector = selector.strip()

        for device in devices:
            if device.identifier == selector:
                return device
        by_local = [d for d in devices if d.local_id == selector]
        if len(by_local) == 1:
            return by_local[0]
        if len(by_local) > 1:
            raise AmbiguousSelector(selector, [d.identifier for d in by_local])

        prefix = selector.casefold()
        matches = [d for d in devices if prefix and d.name.casefold().startswith(prefix)]
        if len(matches) == 1:
            return matches[0]
        if matches:
            raise AmbiguousSelector(selector, [d.identifier for d in matches])
        raise NotFound(selector)

    # ---- Sessions -------------------------------------------------------

    def session(self, device: Device) -> TransportSession:
        """Return the device's session, opening it on first use."""
        with self._lock:
            session = self._sessions.get(device.identifier)
            if session is None or session.closed:
                session = TransportSession(device)
                self._sessions[device.identifier] = session
            return session

    def release(self, device: Device):
        with self._lock:
            session = self._sessions.pop(device.identifier, None)
        if session is not None:
            session.close()

    def close(self):
        with self._lock:
            sessions, self._sessions = list(self._sessions.values()), {}
        for session in sessions:
            session.close()
