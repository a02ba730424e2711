"""
lockdown_core.py - Apple device transport built on pymobiledevice3.

pymobiledevice3 speaks usbmuxd, lockdownd, AFC, installation_proxy and the
image mounter. Its API is asyncio based, so the transport keeps one private
event loop on a daemon thread and runs every coroutine there; the lockdown
clients it caches are bound to that loop.

Service streams (debugserver, forwarded ports) are plain usbmux sockets
switched back to blocking mode, so the gdb-remote code reads them like any
other ``Channel``.

Notes:
    - The device must be paired ("Trust This Computer") to start services.
    - Debugging needs the developer disk image; it is mounted on demand.
"""

import asyncio
import concurrent.futures
import logging
import socket
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from pymobiledevice3.exceptions import (
    AlreadyMountedError,
    ConnectionFailedToUsbmuxdError,
    NotPairedError,
    PasswordRequiredError,
    PyMobileDevice3Exception,
    StartServiceError,
)
from pymobiledevice3.lockdown import create_using_usbmux
from pymobiledevice3.services.afc import AfcService
from pymobiledevice3.services.installation_proxy import InstallationProxyService
from pymobiledevice3.services.mobile_image_mounter import (
    DeveloperDiskImageMounter,
    MobileImageMounterService,
    auto_mount,
    image_type_for_device,
)
from pymobiledevice3.usbmux import list_devices as list_mux_devices

from .device_interface import (
    Arch,
    Channel,
    DeviceDescriptor,
    LaunchTarget,
    Platform,
    RemoteProcess,
    Transport,
)
from .errors import InstallFailed, TransportProtocolError, TransportUnavailable
from .forwarder import TcpForwarder

log = logging.getLogger("deploy_toolkit.lockdown")

LABEL = "deploy-toolkit"
_DEFAULT_TIMEOUT = object()

DEBUGSERVER_SERVICES = (
    "com.apple.debugserver.DVTSecureSocketProxy",
    "com.apple.debugserver",
)


def mux_address(address: str) -> Optional[str]:
    """Config form (``UNIX:/path``, ``/path``, ``host:port``) to pymobiledevice3's."""
    address = address.strip()
    if not address:
        return None
    if address.upper().startswith("UNIX:"):
        return address[5:]
    return address


# Refusals that leave the lockdown stream usable
_SERVICE_ERRORS = (StartServiceError, NotPairedError, PasswordRequiredError, AlreadyMountedError)


@contextmanager
def _translated(what: str):
    """Re-raise pymobiledevice3 and socket errors as transport errors."""
    try:
        yield
    except ConnectionFailedToUsbmuxdError as exc:
        raise TransportUnavailable(f"usbmuxd not reachable: {what}") from exc
    except (NotPairedError, PasswordRequiredError) as exc:
        raise TransportProtocolError(f"{what}: device is locked or not paired") from exc
    except StartServiceError as exc:
        raise TransportProtocolError(f"{what}: {exc.message or exc.service_name}") from exc
    except PyMobileDevice3Exception as exc:
        raise TransportProtocolError(f"{what}: {exc!r}") from exc
    except (OSError, EOFError, asyncio.IncompleteReadError) as exc:
        raise TransportProtocolError(f"{what}: {exc}") from exc


# ---------------------------------------------------------------------------
# Event loop thread
# ---------------------------------------------------------------------------
class _LoopThread:
    """One asyncio loop on a daemon thread; blocking callers submit coroutines."""

    def __init__(self, name: str):
        self.loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self.loop.run_forever, name=name, daemon=True)
        self._thread.start()

    def run(self, coro, timeout: Optional[float] = None):
        future = asyncio.run_coroutine_threadsafe(coro, self.loop)
        try:
            return future.result(timeout)
        except concurrent.futures.TimeoutError:
            future.cancel()
            raise TransportProtocolError(f"no answer from the device within {timeout}s") from None


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------
class LockdownTransport(Transport):
    """iPhones / iPads reached through usbmuxd."""

    kind = "imd"

    def __init__(self, address: str = "", timeout: float = 10.0, image_dir: str = ""):
        self.address = address
        self.timeout = timeout
        self.image_dir = image_dir
        self._lock = threading.Lock()
        self._loop: Optional[_LoopThread] = None
        self._lockdown_cache: Dict[str, object] = {}
        self._forwards: Dict[Tuple[str, int], TcpForwarder] = {}
        self._ssl_ports: Dict[Tuple[str, int], bool] = {}
        self._mounted: Dict[str, bool] = {}

    # ---- Loop & lockdown ------------------------------------------------

    def _run(self, coro, timeout=_DEFAULT_TIMEOUT):
        """Run *coro* on the transport loop; ``None`` waits without limit."""
        with self._lock:
            if self._loop is None:
                self._loop = _LoopThread(f"lockdown-{id(self):x}")
            loop = self._loop
        return loop.run(coro, self.timeout if timeout is _DEFAULT_TIMEOUT else timeout)

    def _lockdown(self, udid: str):
        """Return the cached lockdown client, creating it on first use."""
        with self._lock:
            client = self._lockdown_cache.get(udid)
        if client is not None:
            return client
        with _translated(f"lockdown {udid}"):
            client = self._run(create_using_usbmux(
                serial=udid,
                label=LABEL,
                autopair=False,
                usbmux_address=mux_address(self.address),
            ))
        with self._lock:
            self._lockdown_cache[udid] = client
        return client

    def _call(self, udid: str, what: str, make_coro, timeout=_DEFAULT_TIMEOUT):
        """Run ``make_coro(lockdown)``; a lockdown stream that broke is dropped."""
        lockdown = self._lockdown(udid)
        try:
            with _translated(what):
                return self._run(make_coro(lockdown), timeout)
        except TransportProtocolError as exc:
            if not isinstance(exc.__cause__, _SERVICE_ERRORS):
                self._drop_lockdown(udid)
            raise

    def _drop_lockdown(self, udid: str):
        with self._lock:
            client = self._lockdown_cache.pop(udid, None)
            loop = self._loop
        if client is not None and loop is not None:
            try:
                loop.run(client.close(), self.timeout)
            except (OSError, TransportProtocolError, PyMobileDevice3Exception) as exc:
                log.debug("Closing lockdown for %s: %s", udid, exc)

    def _service_socket(self, udid: str, port: int, use_ssl: bool) -> socket.socket:
        """A blocking socket to a device port, TLS-wrapped when the service asks."""
        lockdown = self._lockdown(udid)
        with _translated(f"connect {udid}:{port}"):
            conn = self._run(lockdown.create_service_connection(port))
            conn.setblocking(True)
            if use_ssl:
                with lockdown.ssl_file() as certfile:
                    conn.ssl_start_sync(certfile)
        return conn.socket

    # ---- Discovery ------------------------------------------------------

    def list_devices(self) -> List[DeviceDescriptor]:
        with _translated("list devices"):
            mux_devices = self._run(list_mux_devices(usbmux_address=mux_address(self.address)))

        # The same phone can show up over USB and Wi-Fi; keep the USB entry.
        by_serial = {}
        for dev in mux_devices:
            known = by_serial.get(dev.serial)
            if known is None or (not known.is_usb and dev.is_usb):
                by_serial[dev.serial] = dev

        descriptors = []
        for udid in by_serial:
            try:
                values = self._call(udid, "GetValue", lambda ld: ld.get_value()) or {}
            except (TransportProtocolError, OSError) as exc:
                log.warning("Lockdown query failed for %s: %s", udid, exc)
                values = {}
            try:
                arch = Arch.parse(values.get("CPUArchitecture", "arm64"))
            except ValueError:
                arch = Arch.ARM64
            version = values.get("ProductVersion", "")
            descriptors.append(DeviceDescriptor(
                local_id=udid,
                name=values.get("DeviceName", udid),
                platform=Platform.IOS,
                arch=arch,
                os_version=f"iOS {version}".strip(),
                properties={k: str(v) for k, v in values.items()
                            if isinstance(v, (str, int, float, bool))},
            ))
        return descriptors

    # ---- Streams --------------------------------------------------------

    def _start_service(self, device_id: str, service: str) -> Tuple[int, bool]:
        attrs = self._call(device_id, f"StartService {service}",
                           lambda ld: ld.get_service_connection_attributes(service))
        return int(attrs["Port"]), bool(attrs.get("EnableServiceSSL"))

    def open_channel(self, device_id: str, service: str) -> Channel:
        port, use_ssl = self._start_service(device_id, service)
        sock = self._service_socket(device_id, port, use_ssl)
        log.debug("Opened %s on %s (port %d)", service, device_id, port)
        return Channel(sock, name=f"{device_id}/{service}")

    def forward_port(self, device_id: str, remote_port: int) -> int:
        use_ssl = self._ssl_ports.get((device_id, remote_port), False)

        def connect_upstream():
            return self._service_socket(device_id, remote_port, use_ssl)

        forwarder = TcpForwarder(connect_upstream, name=f"{device_id}:{remote_port}")
        with self._lock:
            self._forwards[(device_id, forwarder.local_port)] = forwarder
        log.info("Forwarded localhost:%d → %s:%d", forwarder.local_port, device_id, remote_port)
        return forwarder.local_port

    def remove_forward(self, device_id: str, local_port: int):
        with self._lock:
            forwarder = self._forwards.pop((device_id, local_port), None)
        if forwarder is not None:
            forwarder.close()

    # ---- Files & processes ----------------------------------------------

    def push_file(self, device_id: str, local_path: Path, remote_path: str):
        data = Path(local_path).read_bytes()

        async def push(lockdown):
            async with AfcService(lockdown=lockdown) as afc:
                await afc.set_file_contents(remote_path, data)

        self._call(device_id, f"AFC push {remote_path}", push, timeout=None)
        log.debug("AFC push %s → %s:%s", local_path, device_id, remote_path)

    def spawn_remote_process(self, device_id: str, argv: Sequence[str]) -> RemoteProcess:
        from .gdb_remote import DARWIN_PASS_SIGNALS, GdbRemoteProcess

        self.mount_developer_image(device_id)
        port, use_ssl = self._start_debugserver(device_id)
        channel = Channel(self._service_socket(device_id, port, use_ssl),
                          name=f"{device_id}/debugserver")
        return GdbRemoteProcess(argv, channel, DARWIN_PASS_SIGNALS)

    def read_property(self, device_id: str, key: str) -> str:
        value = self._call(device_id, f"GetValue {key}", lambda ld: ld.get_value(key=key))
        return "" if value is None else str(value)

    # ---- Deployment -----------------------------------------------------

    def install(self, device_id: str, package_path: Path):
        package_path = Path(package_path)

        async def install(lockdown):
            async with InstallationProxyService(lockdown=lockdown) as installer:
                try:
                    await installer.install_from_local(package_path)
                except PyMobileDevice3Exception as exc:
                    # installer rejections arrive as AppInstallError and friends
                    raise InstallFailed(f"{package_path.name}: {exc!r}") from exc

        self._call(device_id, f"install {package_path.name}", install, timeout=None)
        log.info("Installed %s on %s", package_path.name, device_id)

    def launch_target(self, device_id: str, executable: Path, app_id: str) -> LaunchTarget:
        async def lookup(lockdown):
            async with InstallationProxyService(lockdown=lockdown) as installer:
                return await installer.get_apps(bundle_identifiers=[app_id])

        info = self._call(device_id, f"lookup {app_id}", lookup).get(app_id)
        if not info or "Path" not in info:
            raise InstallFailed(f"{app_id} is not installed on {device_id}")
        binary = info.get("CFBundleExecutable") or Path(executable).name
        return LaunchTarget(path=f"{info['Path']}/{binary}")

    def mount_developer_image(self, device_id: str) -> bool:
        """Mount the developer disk image unless one is already mounted.

        With ``image_dir`` set, ``<image_dir>/<major.minor>/DeveloperDiskImage.dmg``
        (and its ``.signature``) is used; otherwise pymobiledevice3 picks and
        downloads the right image. Returns True when an image was mounted.
        """
        with self._lock:
            if self._mounted.get(device_id):
                return False

        async def mount(lockdown):
            image_type = image_type_for_device(lockdown)
            async with MobileImageMounterService(lockdown=lockdown) as mounter:
                if await mounter.is_image_mounted(image_type):
                    return False
            try:
                if self.image_dir:
                    version = ".".join(lockdown.product_version.split(".")[:2])
                    image = Path(self.image_dir) / version / "DeveloperDiskImage.dmg"
                    async with DeveloperDiskImageMounter(lockdown=lockdown) as mounter:
                        await mounter.mount(image, image.with_name(image.name + ".signature"))
                else:
                    await auto_mount(lockdown)
            except AlreadyMountedError:
                return False
            return True

        mounted = self._call(device_id, "mount developer image", mount, timeout=None)
        with self._lock:
            self._mounted[device_id] = True
        if mounted:
            log.info("Mounted developer disk image on %s", device_id)
        return mounted

    def _start_debugserver(self, device_id: str) -> Tuple[int, bool]:
        last: Optional[TransportProtocolError] = None
        for service in DEBUGSERVER_SERVICES:
            try:
                port, use_ssl = self._start_service(device_id, service)
            except TransportProtocolError as exc:
                cause = exc.__cause__
                if not (isinstance(cause, StartServiceError) and "InvalidService" in (cause.message or "")):
                    raise
                last = exc
                continue
            log.info("%s started on %s port %d", service, device_id, port)
            return port, use_ssl
        raise last

    def start_debug_server(self, device_id: str) -> int:
        self.mount_developer_image(device_id)
        port, use_ssl = self._start_debugserver(device_id)
        with self._lock:
            self._ssl_ports[(device_id, port)] = use_ssl
        return port

    def close_device(self, device_id: str):
        self._drop_lockdown(device_id)
        with self._lock:
            self._mounted.pop(device_id, None)
            forwards = [k for k in self._forwards if k[0] == device_id]
            closing = [self._forwards.pop(k) for k in forwards]
            for key in [k for k in self._ssl_ports if k[0] == device_id]:
                del self._ssl_ports[key]
        for forwarder in closing:
            forwarder.close()
