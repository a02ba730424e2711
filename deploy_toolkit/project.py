"""
project.py - Project manifest (``deploy.json``) and per-profile task planning.

Example manifest::

    {
      "name": "hello",
      "version": "0.1.0",
      "app_id": "com.example.hello",
      "android": {"min_sdk": 26, "signing": {"key": "key.pem", "cert": "cert.pem"}},
      "tasks": [
        {"name": "shaders", "inputs": ["shaders/main.wgsl"],
         "outputs": ["{build_dir}/main.spv"],
         "command": ["naga", "shaders/main.wgsl", "{build_dir}/main.spv"]}
      ]
    }
"""

import copy
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from .build_pipeline import BuildTask
from .build_profile import BuildProfile
from .config import deep_merge, lookup
from .device_interface import Platform
from .errors import DeployError

log = logging.getLogger("deploy_toolkit.project")

MANIFEST_NAME = "deploy.json"

DEFAULT_PROJECT = {
    "version": "0.1.0",
    "build_dir": "target/deploy",
    "cargo": {"manifest": "Cargo.toml", "sources": ["src"]},
    "assets": "",
    "tasks": [],
    "android": {"min_sdk": 26, "target_sdk": 34, "version_code": 1},
    "ios": {"minimum_os_version": "13.0"},
    "macos": {"minimum_system_version": "11.0"},
    "linux": {},
    "windows": {"min_version": "10.0.17763.0", "max_version_tested": "10.0.22621.0"},
}


@dataclass
class ProjectConfig:
    root: Path
    name: str
    version: str = "0.1.0"
    app_id: str = ""
    data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def load(cls, root: Path, build_dir: Optional[str] = None) -> "ProjectConfig":
        """Read ``deploy.json`` from *root*; a missing file means defaults.

        *build_dir* replaces the default build directory; the manifest
        still has the last word.
        """
        root = Path(root).resolve()
        path = root / MANIFEST_NAME
        data = copy.deepcopy(DEFAULT_PROJECT)
        if build_dir:
            data["build_dir"] = build_dir
        if path.exists():
            try:
                loaded = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, ValueError) as exc:
                raise DeployError(f"cannot read {path}: {exc}") from exc
            if not isinstance(loaded, dict):
                raise DeployError(f"{path}: top level must be an object")
            data = deep_merge(data, loaded)
            log.info("Project loaded from %s", path)
        else:
            log.info("No %s in %s, using defaults", MANIFEST_NAME, root)
        name = data.get("name") or root.name
        return cls(
            root=root,
            name=name,
            version=str(data.get("version", "0.1.0")),
            app_id=data.get("app_id") or f"com.example.{_identifier(name)}",
            data=data,
        )

    def get(self, key: str, default: Any = None) -> Any:
        """Dot-notation lookup (e.g. ``android.min_sdk``)."""
        return lookup(self.data, key, default)

    def platform_section(self, platform: Platform) -> Dict[str, Any]:
        return dict(self.data.get(platform.value) or {})

    @property
    def build_dir(self) -> Path:
        return self.root / self.data.get("build_dir", "target/deploy")

    def profile_dir(self, profile: BuildProfile) -> Path:
        return self.build_dir / profile.platform.value / profile.arch.value / profile.opt.value

    @property
    def crate_name(self) -> str:
        return self.get("cargo.package") or self.name

    def executable_name(self, profile: BuildProfile) -> str:
        crate = self.crate_name
        if profile.platform == Platform.ANDROID:
            return f"lib{crate.replace('-', '_')}.so"
        if profile.platform == Platform.WINDOWS:
            return f"{crate}.exe"
        return crate

    @property
    def assets_dir(self) -> Optional[Path]:
        assets = self.data.get("assets")
        if not assets:
            return None
        path = self.root / assets
        return path if path.is_dir() else None


def _identifier(name: str) -> str:
    return "".join(c if c.isalnum() else "_" for c in name).lower()


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------
def _placeholders(project: ProjectConfig, profile: BuildProfile) -> Dict[str, str]:
    return {
        "name": project.name,
        "triple": profile.target_triple,
        "arch": profile.arch.value,
        "platform": profile.platform.value,
        "opt": profile.opt.value,
        "build_dir": str(project.profile_dir(profile)),
        "root": str(project.root),
    }


def _resolve(project: ProjectConfig, value: str, subst: Dict[str, str]) -> Path:
    path = Path(value.format(**subst))
    return path if path.is_absolute() else project.root / path


def cargo_task(project: ProjectConfig, profile: BuildProfile) -> Optional[BuildTask]:
    """The ``cargo build`` task for *profile*, or None if there is no crate."""
    cargo = project.data.get("cargo")
    if not cargo:
        return None
    manifest = project.root / cargo.get("manifest", "Cargo.toml")
    if not manifest.exists():
        return None

    inputs: List[Path] = [manifest]
    lock = manifest.parent / "Cargo.lock"
    if lock.exists():
        inputs.append(lock)
    for src in cargo.get("sources", ["src"]):
        src_dir = manifest.parent / src
        if src_dir.is_dir():
            inputs.extend(sorted(p for p in src_dir.rglob("*") if p.is_file()))

    target_dir = project.build_dir / "cargo"
    out_dir = target_dir / profile.target_triple / profile.opt.value
    artifact = out_dir / project.executable_name(profile)

    command = [
        profile.tool("cargo"), "build",
        "--manifest-path", str(manifest),
        "--target", profile.target_triple,
        "--target-dir", str(target_dir),
    ]
    if profile.is_release:
        command.append("--release")
    if profile.platform == Platform.ANDROID:
        command.append("--lib")

    env = {}
    linker = profile.toolchain.get("linker")
    if linker:
        triple_env = profile.target_triple.upper().replace("-", "_")
        env[f"CARGO_TARGET_{triple_env}_LINKER"] = str(linker)

    return BuildTask(
        name="Build rust",
        inputs=tuple(inputs),
        outputs=(artifact,),
        command=tuple(command),
        cwd=manifest.parent,
        env=env or None,
        depfile=out_dir / f"{Path(artifact.name).stem}.d",
    )


def plan_tasks(project: ProjectConfig, profile: BuildProfile) -> List[BuildTask]:
    """Task list for one profile; same shape for every target triple."""
    subst = _placeholders(project, profile)
    tasks: List[BuildTask] = []

    cargo = cargo_task(project, profile)
    if cargo is not None:
        tasks.append(cargo)

    for entry in project.data.get("tasks", []):
        try:
            name = entry["name"]
            command = entry["command"]
        except KeyError as exc:
            raise DeployError(f"task entry is missing {exc.args[0]!r}: {entry}") from None
        tasks.append(BuildTask(
            name=name.format(**subst),
            inputs=tuple(_resolve(project, p, subst) for p in entry.get("inputs", [])),
            outputs=tuple(_resolve(project, p, subst) for p in entry.get("outputs", [])),
            command=tuple(str(c).format(**subst) for c in command),
            cwd=_resolve(project, entry["cwd"], subst) if entry.get("cwd") else project.root,
            env={k: str(v).format(**subst) for k, v in entry.get("env", {}).items()} or None,
            depfile=_resolve(project, entry["depfile"], subst) if entry.get("depfile") else None,
        ))
    return tasks
