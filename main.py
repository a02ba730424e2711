#!/usr/bin/env python3
"""
Deploy Toolkit - Build, Package, Install & Debug
Main entry point.
"""

import sys
import argparse
import logging
from pathlib import Path

from deploy_toolkit.config import Config
from deploy_toolkit.debug_bridge import DebugScript
from deploy_toolkit.deploy import Deployer, make_registry
from deploy_toolkit.errors import DeployError
from deploy_toolkit.log_setup import setup_logging
from deploy_toolkit.project import ProjectConfig
from deploy_toolkit.utils import format_duration


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Deploy Toolkit - build, package, install and debug native apps on any device",
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true",
        help="Detailed logs",
    )
    parser.add_argument(
        "--config", metavar="FILE",
        help="Tool configuration file (default: ~/.deploy_toolkit/config.json)",
    )
    parser.add_argument(
        "--project", metavar="DIR", default=".",
        help="Project root containing deploy.json (default: current directory)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("devices", help="List reachable devices")

    build = sub.add_parser("build", help="Build, package and install for a device")
    build.add_argument("--device", required=True, help="Device id, serial/udid or name prefix")
    build.add_argument("--release", action="store_true", help="Optimized build")
    build.add_argument("--no-install", action="store_true", help="Only build and package")

    run = sub.add_parser("run", help="Build, install and run under the debugger")
    run.add_argument("--device", required=True, help="Device id, serial/udid or name prefix")
    run.add_argument("--release", action="store_true", help="Optimized build")
    run.add_argument("--script", metavar="FILE", help="Debug script (connect/run/autoexit|safequit)")
    run.add_argument(
        "--no-autoexit", action="store_true",
        help="Keep the session until Ctrl-C instead of ending with the process",
    )
    run.add_argument("args", nargs="*", help="Arguments passed to the program")
    return parser


def _print_devices(devices):
    if not devices:
        print("No devices found.")
        return
    print(f"\n{'Identifier':<40} {'Name':<25} {'Platform':<10} {'OS':<12}")
    print("-" * 90)
    for d in devices:
        print(f"{d.identifier:<40} {d.name:<25} {d.platform.value:<10} {d.os_version:<12}")


def _progress(p):
    if p.status == "running":
        print(f"  [{p.index}/{p.total}] {p.task} ...", flush=True)
    elif p.status == "skipped":
        print(f"  [{p.index}/{p.total}] {p.task} [SKIPPED]", flush=True)
    else:
        print(f"  [{p.index}/{p.total}] {p.task} [{format_duration(p.duration)}]", flush=True)


def main():
    args = _build_parser().parse_args()

    config = Config(Path(args.config) if args.config else None)
    level = logging.DEBUG if args.verbose else config.get("logging.level", "INFO")
    setup_logging(log_dir=Path(config.get("logging.dir", "logs")), level=level)
    log = logging.getLogger("deploy_toolkit")

    registry = make_registry(config)
    deployer = None
    try:
        if args.command == "devices":
            _print_devices(registry.refresh())
            return 0

        project = ProjectConfig.load(Path(args.project), build_dir=config.get("build.build_dir"))
        deployer = Deployer(registry, config, project)
        deployer.set_progress_callback(_progress)
        device = registry.resolve(args.device)

        if args.command == "build":
            print(f"Building {project.name} for {device.identifier}...")
            result = deployer.build(device, release=args.release)
            print(f"  Package: {result.package.path}")
            if not args.no_install:
                deployer.install(device, result.package)
                print(f"  Installed on {device.name}")
            return 0

        if args.command == "run":
            script = None
            if args.script:
                try:
                    text = Path(args.script).read_text(encoding="utf-8")
                except OSError as exc:
                    raise DeployError(f"cannot read debug script: {exc}") from exc
                script = DebugScript.parse(text)
            status = deployer.run(
                device,
                release=args.release,
                script=script,
                autoexit=not args.no_autoexit,
                args=args.args,
                sink=print,
            )
            return status.returncode
    except DeployError as exc:
        log.error("%s", exc)
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nInterrupted.")
        return 130
    finally:
        if deployer is not None:
            deployer.bridge.close()
        registry.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
