"""
appbundle.py - Apple ``.app`` bundles (iOS and macOS) and Linux AppDirs.

iOS bundles are flat (``Name.app/{Info.plist,<exe>}``); macOS bundles nest
everything under ``Contents/``. Signing is delegated to ``rcodesign``; the
result is checked against the hashes in ``_CodeSignature/CodeResources``.
"""

import base64
import hashlib
import logging
import os
import plistlib
import shutil
import stat
import subprocess
import zipfile
from pathlib import Path
from typing import Any, Dict, Optional

from .device_interface import Platform
from .errors import PackageInvalid
from .signer import Signer
from .utils import find_tool

log = logging.getLogger("deploy_toolkit.appbundle")

INFO_PLIST_REQUIRED = (
    "CFBundleIdentifier",
    "CFBundleName",
    "CFBundleExecutable",
    "CFBundleVersion",
)
DESKTOP_REQUIRED = ("Type", "Name", "Exec")


def _copy_tree(src: Path, dest: Path):
    dest.mkdir(parents=True, exist_ok=True)
    shutil.copytree(src, dest, dirs_exist_ok=True)


def _copy_executable(src: Path, dest: Path):
    dest.parent.mkdir(parents=True, exist_ok=True)
    shutil.copyfile(src, dest)
    dest.chmod(dest.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)


# ---------------------------------------------------------------------------
# Apple bundles
# ---------------------------------------------------------------------------
def info_plist(
    platform: Platform,
    app_id: str,
    name: str,
    executable: str,
    version: str,
    build_number: str = "1",
    section: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    section = section or {}
    info: Dict[str, Any] = {
        "CFBundleDevelopmentRegion": "en",
        "CFBundleIdentifier": app_id,
        "CFBundleName": name,
        "CFBundleDisplayName": section.get("display_name", name),
        "CFBundleExecutable": executable,
        "CFBundleInfoDictionaryVersion": "6.0",
        "CFBundlePackageType": "APPL",
        "CFBundleShortVersionString": version,
        "CFBundleVersion": str(section.get("build_number", build_number)),
    }
    if platform == Platform.IOS:
        info["LSRequiresIPhoneOS"] = True
        info["MinimumOSVersion"] = section.get("minimum_os_version", "13.0")
        info["CFBundleSupportedPlatforms"] = ["iPhoneOS"]
        info["UIDeviceFamily"] = [1, 2]
        info["UILaunchStoryboardName"] = ""
    else:
        info["LSMinimumSystemVersion"] = section.get("minimum_system_version", "11.0")
        info["CFBundleSupportedPlatforms"] = ["MacOSX"]
        info["NSHighResolutionCapable"] = True
    info.update(section.get("info", {}))
    return info


def content_dir(app_dir: Path, platform: Platform) -> Path:
    return app_dir if platform == Platform.IOS else app_dir / "Contents"


def executable_path(app_dir: Path, platform: Platform, executable: str) -> Path:
    if platform == Platform.IOS:
        return app_dir / executable
    return app_dir / "Contents" / "MacOS" / executable


def build_app_bundle(
    app_dir: Path,
    platform: Platform,
    info: Dict[str, Any],
    binary: Path,
    assets_dir: Optional[Path] = None,
    provisioning_profile: Optional[Path] = None,
):
    contents = content_dir(app_dir, platform)
    contents.mkdir(parents=True, exist_ok=True)
    with open(contents / "Info.plist", "wb") as f:
        plistlib.dump(info, f, fmt=plistlib.FMT_XML)
    _copy_executable(binary, executable_path(app_dir, platform, info["CFBundleExecutable"]))
    if assets_dir is not None:
        resources = contents if platform == Platform.IOS else contents / "Resources"
        _copy_tree(assets_dir, resources / "assets")
    if provisioning_profile is not None:
        shutil.copyfile(provisioning_profile, contents / "embedded.mobileprovision")


def read_info_plist(app_dir: Path, platform: Platform) -> Dict[str, Any]:
    path = content_dir(app_dir, platform) / "Info.plist"
    try:
        with open(path, "rb") as f:
            return plistlib.load(f)
    except (OSError, plistlib.InvalidFileException) as exc:
        raise PackageInvalid(f"unreadable Info.plist: {exc}") from exc


def codesign(app_dir: Path, signer: Signer, rcodesign: str = ""):
    """Sign *app_dir* in place with ``rcodesign``."""
    tool = find_tool("rcodesign", rcodesign)
    if not tool:
        raise PackageInvalid("rcodesign not found; cannot sign Apple bundle")
    cmd = [tool, "sign", "--pem-file", str(signer.key_path)]
    if signer.cert_path and signer.cert_path != signer.key_path:
        cmd += ["--pem-file", str(signer.cert_path)]
    cmd.append(str(app_dir))
    log.debug("Running: %s", " ".join(cmd))
    try:
        r = subprocess.run(cmd, capture_output=True, text=True, encoding="utf-8", errors="replace")
    except OSError as exc:
        raise PackageInvalid(f"rcodesign failed to start: {exc}") from exc
    if r.returncode != 0:
        raise PackageInvalid(f"rcodesign exited with {r.returncode}: {r.stderr.strip()}")


def verify_code_resources(app_dir: Path, platform: Platform) -> bool:
    """Check ``files2`` hashes. False when the bundle carries no signature."""
    contents = content_dir(app_dir, platform)
    resources = contents / "_CodeSignature" / "CodeResources"
    if not resources.exists():
        return False
    try:
        with open(resources, "rb") as f:
            data = plistlib.load(f)
    except (OSError, plistlib.InvalidFileException) as exc:
        raise PackageInvalid(f"unreadable CodeResources: {exc}") from exc

    for rel, entry in data.get("files2", {}).items():
        if isinstance(entry, dict):
            if "symlink" in entry:
                continue
            expected = entry.get("hash2")
            optional = entry.get("optional", False)
        else:
            expected, optional = entry, False
        path = contents / rel
        if not path.exists():
            if optional:
                continue
            raise PackageInvalid(f"signed file missing from bundle: {rel}")
        if expected is None:
            continue
        actual = hashlib.sha256(path.read_bytes()).digest()
        if isinstance(expected, str):
            expected = base64.b64decode(expected)
        if actual != expected:
            raise PackageInvalid(f"signature does not match contents of {rel}")
    return True


def zip_ipa(app_dir: Path, ipa_path: Path):
    """Zip a flat iOS bundle into ``Payload/<Name>.app``."""
    prefix = f"Payload/{app_dir.name}"
    with zipfile.ZipFile(ipa_path, "w", zipfile.ZIP_DEFLATED) as zf:
        for path in sorted(app_dir.rglob("*")):
            rel = path.relative_to(app_dir).as_posix()
            if path.is_dir():
                continue
            info = zipfile.ZipInfo(f"{prefix}/{rel}", date_time=(1980, 1, 1, 0, 0, 0))
            info.compress_type = zipfile.ZIP_DEFLATED
            info.external_attr = (path.stat().st_mode & 0o777) << 16
            zf.writestr(info, path.read_bytes())


# ---------------------------------------------------------------------------
# Linux AppDir
# ---------------------------------------------------------------------------
def desktop_entry(name: str, executable: str, section: Optional[Dict[str, Any]] = None) -> str:
    section = section or {}
    lines = [
        "[Desktop Entry]",
        "Version=1.0",
        "Type=Application",
        "Terminal=false",
        f"Name={section.get('display_name', name)}",
        f"Exec={executable} %u",
        f"Categories={section.get('categories', 'Utility;')}",
    ]
    if section.get("icon"):
        lines.append(f"Icon={section['icon']}")
    return "\n".join(lines) + "\n"


def parse_desktop_entry(text: str) -> Dict[str, str]:
    entry: Dict[str, str] = {}
    in_section = False
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("["):
            in_section = line == "[Desktop Entry]"
            continue
        if in_section and "=" in line:
            key, _, value = line.partition("=")
            entry[key.strip()] = value.strip()
    return entry


def build_appdir(
    appdir: Path,
    name: str,
    binary: Path,
    executable: str,
    assets_dir: Optional[Path] = None,
    section: Optional[Dict[str, Any]] = None,
):
    appdir.mkdir(parents=True, exist_ok=True)
    _copy_executable(binary, appdir / "usr" / "bin" / executable)
    (appdir / f"{name}.desktop").write_text(desktop_entry(name, executable, section), encoding="utf-8")
    apprun = appdir / "AppRun"
    apprun.write_text(
        "#!/bin/sh\n"
        'HERE="$(dirname "$(readlink -f "$0")")"\n'
        'export LD_LIBRARY_PATH="$HERE/usr/lib${LD_LIBRARY_PATH:+:$LD_LIBRARY_PATH}"\n'
        f'exec "$HERE/usr/bin/{executable}" "$@"\n',
        encoding="utf-8",
    )
    os.chmod(apprun, 0o755)
    if assets_dir is not None:
        _copy_tree(assets_dir, appdir / "usr" / "share" / name / "assets")
