"""
packager.py - Turns build artifacts into the platform's native container.

    android  apk     zip + binary AndroidManifest, APK Signature Scheme v2
    ios      ipa     zip of Payload/<Name>.app, signed with rcodesign
    macos    app     <Name>.app/Contents bundle, signed with rcodesign
    linux    appdir  <Name>.AppDir (unsigned)
    windows  msix    zip + AppxManifest/AppxBlockMap, AppxSignature.p7x

Containers are assembled in a staging directory inside the destination and
only moved into place once they validate; a failed package never leaves a
partial file behind.
"""

import logging
import os
import shutil
import tempfile
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from . import apk, appbundle, axml, msix
from .build_pipeline import Artifact
from .build_profile import BuildProfile
from .device_interface import Arch, Platform
from .errors import PackageInvalid, UnsupportedPackageFormat
from .project import ProjectConfig
from .signer import Signer

log = logging.getLogger("deploy_toolkit.packager")

DEFAULT_FORMATS = {
    Platform.ANDROID: "apk",
    Platform.IOS: "ipa",
    Platform.MACOS: "app",
    Platform.LINUX: "appdir",
    Platform.WINDOWS: "msix",
}

_MSIX_ARCH = {Arch.ARM: "arm", Arch.ARM64: "arm64", Arch.X86: "x86", Arch.X64: "x64"}


@dataclass
class Package:
    path: Path
    platform: Platform
    format: str
    app_id: str
    executable: str
    manifest: Dict[str, Any] = field(default_factory=dict)
    signed: bool = False


def signer_for(project: ProjectConfig, platform: Platform) -> Optional[Signer]:
    """Signing identity from the ``<platform>.signing`` section, if any."""
    signing = project.platform_section(platform).get("signing") or {}
    key = signing.get("key")
    if not key:
        return None
    cert = signing.get("cert")
    return Signer.from_pem(project.root / key, project.root / cert if cert else None)


def executable_artifact(project: ProjectConfig, profile: BuildProfile,
                        artifacts: Sequence[Artifact]) -> Path:
    """The built executable among *artifacts*."""
    wanted = project.executable_name(profile)
    for artifact in artifacts:
        if Path(artifact.path).name == wanted:
            if not Path(artifact.path).is_file():
                raise PackageInvalid(f"artifact {artifact.path} does not exist")
            return Path(artifact.path)
    raise PackageInvalid(f"no build artifact named {wanted}")


def _require(manifest: Dict[str, Any], fields: Sequence[str], what: str):
    missing = [f for f in fields if manifest.get(f) in (None, "")]
    if missing:
        raise PackageInvalid(f"{what} is missing required field(s): {', '.join(missing)}")


def _msix_version(version: str) -> str:
    parts = [p for p in version.split(".") if p.isdigit()][:4]
    if not parts:
        return ""
    return ".".join(parts + ["0"] * (4 - len(parts)))


class Packager:
    def __init__(self, project: ProjectConfig, signer: Optional[Signer] = None,
                 rcodesign: str = ""):
        self.project = project
        self.signer = signer
        self.rcodesign = rcodesign

    def format_for(self, platform: Platform) -> str:
        return self.project.platform_section(platform).get("format") or DEFAULT_FORMATS[platform]

    def _builders(self) -> Dict[str, Callable]:
        return {
            "apk": self._build_apk,
            "ipa": self._build_ipa,
            "app": self._build_app,
            "appdir": self._build_appdir,
            "msix": self._build_msix,
        }

    # -- entry point ------------------------------------------------------------
    def package(self, profile: BuildProfile, artifacts: Sequence[Artifact], dest_dir: Path) -> Package:
        platform = profile.platform
        fmt = self.format_for(platform)
        builder = self._builders().get(fmt)
        if builder is None or DEFAULT_FORMATS.get(platform) != fmt:
            raise UnsupportedPackageFormat(platform.value, f"format {fmt!r}")
        if self.signer is not None and fmt == "appdir":
            raise UnsupportedPackageFormat(platform.value, f"signing {fmt} packages")

        binary = executable_artifact(self.project, profile, artifacts)
        dest_dir = Path(dest_dir)
        dest_dir.mkdir(parents=True, exist_ok=True)
        staging = Path(tempfile.mkdtemp(prefix=".staging-", dir=dest_dir))
        try:
            staged, manifest, signed = builder(profile, binary, staging)
            final = dest_dir / staged.name
            if final.is_dir():
                shutil.rmtree(final)
            os.replace(staged, final)
        finally:
            shutil.rmtree(staging, ignore_errors=True)

        pkg = Package(
            path=final,
            platform=platform,
            format=fmt,
            app_id=self.project.app_id,
            executable=self.project.executable_name(profile),
            manifest=manifest,
            signed=signed,
        )
        log.info("Packaged %s (%s%s)", final, fmt, ", signed" if signed else "")
        return pkg

    def _assets(self) -> List[Tuple[Path, str]]:
        assets_dir = self.project.assets_dir
        if assets_dir is None:
            return []
        return [(p, p.relative_to(assets_dir).as_posix())
                for p in sorted(assets_dir.rglob("*")) if p.is_file()]

    # -- android ------------------------------------------------------------------
    def _build_apk(self, profile: BuildProfile, binary: Path, staging: Path):
        section = self.project.platform_section(Platform.ANDROID)
        lib_name = binary.name[3:-3] if binary.name.startswith("lib") else binary.stem
        manifest = {
            "package": self.project.app_id,
            "version_code": section.get("version_code", 1),
            "version_name": self.project.version,
            "min_sdk": section.get("min_sdk"),
            "target_sdk": section.get("target_sdk"),
            "label": section.get("label", self.project.name),
            "lib_name": lib_name,
        }
        _require(manifest, list(manifest), "AndroidManifest")
        tree = axml.android_manifest(
            manifest["package"], int(manifest["version_code"]), manifest["version_name"],
            int(manifest["min_sdk"]), int(manifest["target_sdk"]), manifest["label"],
            lib_name, debuggable=not profile.is_release,
        )
        lib_entry = f"lib/{profile.android_abi}/{binary.name}"
        path = staging / f"{self.project.name}.apk"
        dex = section.get("dex")
        apk.build_apk(
            path, axml.encode(tree), {lib_entry: binary}, self._assets(),
            dex=self.project.root / dex if dex else None,
        )

        signed = False
        if self.signer is not None:
            apk.sign_apk(path, self.signer)
            signed = True
        else:
            log.warning("No signing key configured for android; %s is unsigned", path.name)

        with zipfile.ZipFile(path) as zf:
            names = set(zf.namelist())
            if "AndroidManifest.xml" not in names:
                raise PackageInvalid("AndroidManifest.xml missing from apk")
            if lib_entry not in names:
                raise PackageInvalid(f"{lib_entry} missing from apk")
        if apk.verify_apk(path) != signed:
            raise PackageInvalid("apk signature state does not match signing request")
        return path, manifest, signed

    # -- apple --------------------------------------------------------------------
    def _apple_bundle(self, profile: BuildProfile, binary: Path, staging: Path) -> Tuple[Path, Dict, bool]:
        platform = profile.platform
        section = self.project.platform_section(platform)
        info = appbundle.info_plist(
            platform, self.project.app_id, self.project.name, binary.name,
            self.project.version, section=section,
        )
        provisioning = (section.get("signing") or {}).get("provisioning_profile")
        app_dir = staging / f"{self.project.name}.app"
        appbundle.build_app_bundle(
            app_dir, platform, info, binary, self.project.assets_dir,
            self.project.root / provisioning if provisioning else None,
        )

        written = appbundle.read_info_plist(app_dir, platform)
        _require(written, appbundle.INFO_PLIST_REQUIRED + ("CFBundleShortVersionString",), "Info.plist")
        exe = appbundle.executable_path(app_dir, platform, written["CFBundleExecutable"])
        if not exe.is_file():
            raise PackageInvalid(f"executable {written['CFBundleExecutable']} missing from bundle")

        signed = False
        if self.signer is not None:
            appbundle.codesign(app_dir, self.signer, self.rcodesign)
            if not appbundle.verify_code_resources(app_dir, platform):
                raise PackageInvalid("bundle was signed but carries no CodeResources")
            signed = True
        return app_dir, written, signed

    def _build_app(self, profile: BuildProfile, binary: Path, staging: Path):
        return self._apple_bundle(profile, binary, staging)

    def _build_ipa(self, profile: BuildProfile, binary: Path, staging: Path):
        app_dir, manifest, signed = self._apple_bundle(profile, binary, staging)
        ipa = staging / f"{self.project.name}.ipa"
        appbundle.zip_ipa(app_dir, ipa)
        with zipfile.ZipFile(ipa) as zf:
            exe = f"Payload/{app_dir.name}/{manifest['CFBundleExecutable']}"
            if exe not in zf.namelist():
                raise PackageInvalid(f"{exe} missing from ipa")
        return ipa, manifest, signed

    # -- linux --------------------------------------------------------------------
    def _build_appdir(self, profile: BuildProfile, binary: Path, staging: Path):
        name = self.project.name
        section = self.project.platform_section(Platform.LINUX)
        appdir = staging / f"{name}.AppDir"
        appbundle.build_appdir(appdir, name, binary, binary.name, self.project.assets_dir, section)

        entry = appbundle.parse_desktop_entry((appdir / f"{name}.desktop").read_text(encoding="utf-8"))
        _require(entry, appbundle.DESKTOP_REQUIRED, "desktop entry")
        if not (appdir / "usr" / "bin" / binary.name).is_file():
            raise PackageInvalid(f"usr/bin/{binary.name} missing from AppDir")
        if not os.access(appdir / "AppRun", os.X_OK):
            raise PackageInvalid("AppRun is not executable")
        return appdir, entry, False

    # -- windows ------------------------------------------------------------------
    def _build_msix(self, profile: BuildProfile, binary: Path, staging: Path):
        section = self.project.platform_section(Platform.WINDOWS)
        identity = {
            "Name": section.get("identity_name", self.project.app_id),
            "Version": _msix_version(self.project.version),
            "Publisher": section.get("publisher", f"CN={self.project.name}"),
            "ProcessorArchitecture": _MSIX_ARCH[profile.arch],
        }
        _require(identity, msix.IDENTITY_REQUIRED, "AppxManifest identity")
        manifest = msix.appx_manifest(
            identity["Name"], identity["Version"], identity["Publisher"],
            identity["ProcessorArchitecture"],
            display_name=section.get("display_name", self.project.name),
            publisher_display_name=section.get("publisher_display_name", self.project.name),
            executable=binary.name,
            min_version=section.get("min_version", "10.0.17763.0"),
            max_version_tested=section.get("max_version_tested", "10.0.22621.0"),
            logo=section.get("logo", ""),
        )
        payload = [(binary.name, binary.read_bytes())]
        payload.extend((f"assets/{rel}", src.read_bytes()) for src, rel in self._assets())
        path = staging / f"{self.project.name}.msix"
        msix.build_msix(path, manifest, payload, self.signer)

        with zipfile.ZipFile(path) as zf:
            written = msix.read_identity(zf.read(msix.MANIFEST_NAME))
            _require(written, msix.IDENTITY_REQUIRED, "AppxManifest identity")
            if binary.name not in zf.namelist():
                raise PackageInvalid(f"{binary.name} missing from msix")
            msix.verify_block_map(zf)
        signed = self.signer is not None
        if msix.verify_signature(path) != signed:
            raise PackageInvalid("msix signature state does not match signing request")
        return path, written, signed
