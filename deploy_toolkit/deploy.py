"""
deploy.py - Build / install / run driver tying the subsystems together.

    registry -> profile -> pipeline -> packager -> install -> debug script

Nothing here branches on the transport kind: the transport decides how an
install happens and where the debug server and entry point live.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Sequence

from .adb_core import BridgeTransport
from .build_pipeline import BuildPipeline, BuildProgress, BuildReport
from .build_profile import BuildProfile, Opt
from .config import Config
from .debug_bridge import DebugBridge, DebugScript, DebugSession, DebugStatus
from .device_interface import Device
from .device_registry import DeviceRegistry
from .errors import BuildError
from .host_core import HostTransport
from .lockdown_core import LockdownTransport
from .packager import Package, Packager, executable_artifact, signer_for
from .project import ProjectConfig, plan_tasks

log = logging.getLogger("deploy_toolkit.deploy")


def make_registry(config: Config) -> DeviceRegistry:
    """Host, adb and usbmux transports, in that order."""
    return DeviceRegistry([
        HostTransport(
            install_dir=config.get("host.install_dir") or None,
            debug_server=config.get("host.debug_server", ""),
        ),
        BridgeTransport(
            host=config.get("adb.server_host", "127.0.0.1"),
            port=int(config.get("adb.server_port", 5037)),
            adb_path=config.get("adb.adb_path", ""),
            timeout=float(config.get("adb.timeout_seconds", 30)),
            lldb_server=config.get("debug.lldb_server", ""),
            debug_port=int(config.get("debug.remote_port", 0) or 0),
        ),
        LockdownTransport(
            address=config.get("usbmux.address", ""),
            timeout=float(config.get("usbmux.timeout_seconds", 10)),
            image_dir=config.get("usbmux.developer_image_dir", ""),
        ),
    ])


@dataclass
class BuildResult:
    profile: BuildProfile
    report: BuildReport
    package: Package
    executable: Path


class Deployer:
    def __init__(self, registry: DeviceRegistry, config: Config, project: ProjectConfig,
                 bridge: Optional[DebugBridge] = None):
        self.registry = registry
        self.config = config
        self.project = project
        self.bridge = bridge or DebugBridge.from_config(config)
        self._progress_cb: Optional[Callable[[BuildProgress], None]] = None

    def set_progress_callback(self, cb: Callable[[BuildProgress], None]):
        self._progress_cb = cb

    def profile_for(self, device: Device, release: bool = False) -> BuildProfile:
        toolchain = self.project.platform_section(device.platform).get("toolchain") or {}
        return BuildProfile.for_device(
            device,
            Opt.RELEASE if release else Opt.DEBUG,
            {k: Path(v) for k, v in toolchain.items()},
        )

    # ---- Steps ----------------------------------------------------------

    def build(self, device: Device, release: bool = False) -> BuildResult:
        profile = self.profile_for(device, release)
        tasks = plan_tasks(self.project, profile)
        if not tasks:
            raise BuildError(f"nothing to build for {profile}: no Cargo.toml and no tasks")

        pipeline = BuildPipeline(profile, tasks, int(self.config.get("build.parallelism", 0) or 0) or None)
        if self._progress_cb:
            pipeline.set_progress_callback(self._progress_cb)
        report = pipeline.run()

        packager = Packager(self.project, signer_for(self.project, profile.platform))
        package = packager.package(profile, report.artifacts, self.project.profile_dir(profile))
        return BuildResult(
            profile=profile,
            report=report,
            package=package,
            executable=executable_artifact(self.project, profile, report.artifacts),
        )

    def install(self, device: Device, package: Package):
        log.info("Installing %s on %s", package.path.name, device.identifier)
        self.registry.session(device).install(package.path)

    def run(
        self,
        device: Device,
        release: bool = False,
        script: Optional[DebugScript] = None,
        autoexit: bool = True,
        args: Sequence[str] = (),
        sink: Optional[Callable[[str], None]] = None,
    ) -> DebugStatus:
        """Build, install and run under the debug server.

        With ``safequit`` scripts the process runs until it exits or the
        user interrupts it, then the session detaches.
        """
        result = self.build(device, release)
        self.install(device, result.package)

        session = self.registry.session(device)
        remote_port = session.start_debug_server()
        forward = session.forward_port(remote_port)
        target = None
        try:
            target = session.launch_target(result.executable, result.package.app_id)
            debug = self.bridge.session(device)
            if sink is not None:
                debug.add_sink(sink)
            script = script or DebugScript.default(autoexit)
            log.info("Running %s on %s", target, device.identifier)
            status = script.execute(debug, forward, target, list(args), before_quit=_hold)
        finally:
            if target is not None:
                target.close()
            forward.close()
        if status.error is not None:
            log.error("Debug session ended with error: %s", status.error)
        return status


def _hold(session: DebugSession):
    """Wait for the process to finish; Ctrl-C detaches early."""
    try:
        session.wait()
    except KeyboardInterrupt:
        log.info("Interrupted; detaching from %s", session.device.identifier)
