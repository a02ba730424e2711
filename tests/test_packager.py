from __future__ import annotations

import json
import os
import plistlib
import zipfile
from pathlib import Path

import pytest

from deploy_toolkit import apk, msix
from deploy_toolkit.build_pipeline import Artifact
from deploy_toolkit.build_profile import BuildProfile, Opt
from deploy_toolkit.device_interface import Arch, Platform
from deploy_toolkit.errors import PackageInvalid, UnsupportedPackageFormat
from deploy_toolkit.packager import Packager, signer_for
from deploy_toolkit.project import ProjectConfig


def make_project(root: Path, **manifest) -> ProjectConfig:
    data = {"name": "hello", "version": "1.2.0", "app_id": "com.example.hello"}
    data.update(manifest)
    root.mkdir(parents=True, exist_ok=True)
    (root / "deploy.json").write_text(json.dumps(data), encoding="utf-8")
    (root / "assets").mkdir(exist_ok=True)
    (root / "assets" / "config.txt").write_text("level=1\n", encoding="utf-8")
    return ProjectConfig.load(root)


def artifact(root: Path, name: str) -> list:
    path = root / "target" / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"\x7fELF" + os.urandom(4096))
    return [Artifact(path, "Build rust")]


# ---------------------------------------------------------------------------
# Android
# ---------------------------------------------------------------------------
def test_signed_apk_verifies(tmp_path, signer) -> None:
    project = make_project(tmp_path / "proj", assets="assets")
    profile = BuildProfile(Platform.ANDROID, Arch.ARM64, Opt.DEBUG)
    dest = tmp_path / "out"

    pkg = Packager(project, signer).package(profile, artifact(project.root, "libhello.so"), dest)

    assert pkg.path == dest / "hello.apk"
    assert pkg.signed
    assert pkg.format == "apk"
    assert pkg.manifest["package"] == "com.example.hello"
    assert apk.verify_apk(pkg.path)
    with zipfile.ZipFile(pkg.path) as zf:
        names = zf.namelist()
        assert zf.getinfo("assets/config.txt").compress_type == zipfile.ZIP_STORED
    assert {"AndroidManifest.xml", "lib/arm64-v8a/libhello.so", "assets/config.txt"} <= set(names)
    assert sorted(p.name for p in dest.iterdir()) == ["hello.apk"]


def test_tampered_apk_fails_verification(tmp_path, signer) -> None:
    project = make_project(tmp_path / "proj")
    profile = BuildProfile(Platform.ANDROID, Arch.ARM64)
    pkg = Packager(project, signer).package(profile, artifact(project.root, "libhello.so"), tmp_path / "out")

    data = bytearray(pkg.path.read_bytes())
    data[40] ^= 0xFF
    pkg.path.write_bytes(bytes(data))

    with pytest.raises(PackageInvalid):
        apk.verify_apk(pkg.path)


def test_resigning_replaces_signature_block(tmp_path, signer) -> None:
    project = make_project(tmp_path / "proj")
    profile = BuildProfile(Platform.ANDROID, Arch.ARM64)
    pkg = Packager(project, signer).package(profile, artifact(project.root, "libhello.so"), tmp_path / "out")
    size = pkg.path.stat().st_size

    apk.sign_apk(pkg.path, signer)

    assert apk.verify_apk(pkg.path)
    assert pkg.path.read_bytes().count(apk.APK_SIG_BLOCK_MAGIC) == 1
    assert abs(pkg.path.stat().st_size - size) < 16


def test_unsigned_apk(tmp_path) -> None:
    project = make_project(tmp_path / "proj")
    profile = BuildProfile(Platform.ANDROID, Arch.X64)

    pkg = Packager(project).package(profile, artifact(project.root, "libhello.so"), tmp_path / "out")

    assert not pkg.signed
    assert not apk.verify_apk(pkg.path)
    with zipfile.ZipFile(pkg.path) as zf:
        assert "lib/x86_64/libhello.so" in zf.namelist()


def test_apk_stored_entries_are_aligned(tmp_path) -> None:
    project = make_project(tmp_path / "proj", assets="assets")
    profile = BuildProfile(Platform.ANDROID, Arch.ARM64)

    pkg = Packager(project).package(profile, artifact(project.root, "libhello.so"), tmp_path / "out")

    def data_offset(info: zipfile.ZipInfo) -> int:
        return info.header_offset + 30 + len(info.filename.encode("utf-8")) + len(info.extra)

    with zipfile.ZipFile(pkg.path) as zf:
        lib = zf.getinfo("lib/arm64-v8a/libhello.so")
        asset = zf.getinfo("assets/config.txt")
        assert lib.compress_type == zipfile.ZIP_STORED
        assert data_offset(lib) % apk.PAGE_ALIGNMENT == 0
        assert data_offset(asset) % apk.STORED_ALIGNMENT == 0
        assert zf.read(lib.filename) == (project.root / "target" / "libhello.so").read_bytes()


def test_signer_for_reads_platform_signing_section(tmp_path, signing_pem) -> None:
    key_path, cert_path = signing_pem
    project = make_project(tmp_path / "proj", android={
        "signing": {"key": str(key_path), "cert": str(cert_path)},
    })

    assert signer_for(project, Platform.ANDROID) is not None
    assert signer_for(project, Platform.IOS) is None


# ---------------------------------------------------------------------------
# Apple
# ---------------------------------------------------------------------------
def test_macos_app_bundle(tmp_path) -> None:
    project = make_project(tmp_path / "proj", assets="assets")
    profile = BuildProfile(Platform.MACOS, Arch.ARM64)

    pkg = Packager(project).package(profile, artifact(project.root, "hello"), tmp_path / "out")

    app = tmp_path / "out" / "hello.app"
    assert pkg.path == app
    exe = app / "Contents" / "MacOS" / "hello"
    assert os.access(exe, os.X_OK)
    with open(app / "Contents" / "Info.plist", "rb") as f:
        info = plistlib.load(f)
    assert info["CFBundleIdentifier"] == "com.example.hello"
    assert info["CFBundleShortVersionString"] == "1.2.0"
    assert info["CFBundleSupportedPlatforms"] == ["MacOSX"]
    assert (app / "Contents" / "Resources" / "assets" / "config.txt").exists()


def test_missing_bundle_version_leaves_nothing_behind(tmp_path) -> None:
    project = make_project(tmp_path / "proj", version="")
    profile = BuildProfile(Platform.MACOS, Arch.ARM64)
    dest = tmp_path / "out"

    with pytest.raises(PackageInvalid, match="CFBundleShortVersionString"):
        Packager(project).package(profile, artifact(project.root, "hello"), dest)

    assert list(dest.iterdir()) == []


def test_ipa_layout(tmp_path) -> None:
    project = make_project(tmp_path / "proj", ios={"info": {"UIRequiresFullScreen": True}})
    profile = BuildProfile(Platform.IOS, Arch.ARM64)

    pkg = Packager(project).package(profile, artifact(project.root, "hello"), tmp_path / "out")

    assert pkg.path.name == "hello.ipa"
    with zipfile.ZipFile(pkg.path) as zf:
        info = plistlib.loads(zf.read("Payload/hello.app/Info.plist"))
        exe = zf.getinfo("Payload/hello.app/hello")
    assert info["MinimumOSVersion"] == "13.0"
    assert info["UIRequiresFullScreen"] is True
    assert (exe.external_attr >> 16) & 0o111


def test_apple_signing_without_rcodesign(tmp_path, signer) -> None:
    project = make_project(tmp_path / "proj")
    profile = BuildProfile(Platform.MACOS, Arch.X64)
    dest = tmp_path / "out"

    with pytest.raises(PackageInvalid, match="rcodesign"):
        Packager(project, signer, rcodesign=str(tmp_path / "no-rcodesign")).package(
            profile, artifact(project.root, "hello"), dest,
        )
    assert list(dest.iterdir()) == []


# ---------------------------------------------------------------------------
# Linux and Windows
# ---------------------------------------------------------------------------
def test_appdir_layout(tmp_path) -> None:
    project = make_project(tmp_path / "proj", linux={"categories": "Game;"})
    profile = BuildProfile(Platform.LINUX, Arch.X64)

    pkg = Packager(project).package(profile, artifact(project.root, "hello"), tmp_path / "out")

    appdir = tmp_path / "out" / "hello.AppDir"
    assert pkg.path == appdir
    assert not pkg.signed
    assert os.access(appdir / "AppRun", os.X_OK)
    assert os.access(appdir / "usr" / "bin" / "hello", os.X_OK)
    assert pkg.manifest["Exec"].startswith("hello")
    assert pkg.manifest["Categories"] == "Game;"


def test_repackaging_replaces_previous_appdir(tmp_path) -> None:
    project = make_project(tmp_path / "proj")
    profile = BuildProfile(Platform.LINUX, Arch.X64)
    dest = tmp_path / "out"
    Packager(project).package(profile, artifact(project.root, "hello"), dest)
    (dest / "hello.AppDir" / "stale.txt").write_text("old")

    Packager(project).package(profile, artifact(project.root, "hello"), dest)

    assert not (dest / "hello.AppDir" / "stale.txt").exists()
    assert sorted(p.name for p in dest.iterdir()) == ["hello.AppDir"]


def test_msix_block_map_matches_parts(tmp_path) -> None:
    project = make_project(tmp_path / "proj", assets="assets",
                           windows={"publisher": "CN=Example Corp"})
    profile = BuildProfile(Platform.WINDOWS, Arch.X64)

    pkg = Packager(project).package(profile, artifact(project.root, "hello.exe"), tmp_path / "out")

    assert pkg.manifest == {
        "Name": "com.example.hello",
        "Version": "1.2.0.0",
        "Publisher": "CN=Example Corp",
        "ProcessorArchitecture": "x64",
    }
    with zipfile.ZipFile(pkg.path) as zf:
        names = zf.namelist()
        msix.verify_block_map(zf)
    assert names[-2:] == [msix.BLOCKMAP_NAME, msix.CONTENT_TYPES_NAME]
    assert {"hello.exe", "assets/config.txt", msix.MANIFEST_NAME} <= set(names)


def test_msix_block_map_detects_modified_part(tmp_path) -> None:
    path = tmp_path / "app.msix"
    manifest = msix.appx_manifest(
        "com.example.hello", "1.0.0.0", "CN=Example", "x64",
        display_name="Hello", publisher_display_name="Example", executable="hello.exe",
        min_version="10.0.17763.0", max_version_tested="10.0.22621.0",
    )
    msix.build_msix(path, manifest, [("hello.exe", b"MZ" * 70000)])

    with zipfile.ZipFile(path) as zf:
        entries = [(i, zf.read(i.filename)) for i in zf.infolist()]
    with zipfile.ZipFile(path, "w") as zf:
        for info, data in entries:
            zf.writestr(info, b"MZ" * 69999 + b"XX" if info.filename == "hello.exe" else data)

    with zipfile.ZipFile(path) as zf:
        with pytest.raises(PackageInvalid):
            msix.verify_block_map(zf)


def test_signed_msix_verifies(tmp_path, signer) -> None:
    project = make_project(tmp_path / "proj", assets="assets",
                           windows={"publisher": "CN=Example Corp"})
    profile = BuildProfile(Platform.WINDOWS, Arch.X64)

    pkg = Packager(project, signer).package(profile, artifact(project.root, "hello.exe"), tmp_path / "out")

    assert pkg.signed
    assert msix.verify_signature(pkg.path)
    with zipfile.ZipFile(pkg.path) as zf:
        names = zf.namelist()
        p7x = zf.read(msix.SIGNATURE_NAME)
        types = zf.read(msix.CONTENT_TYPES_NAME).decode("utf-8")
        msix.verify_block_map(zf)
    assert names[-1] == msix.SIGNATURE_NAME
    assert p7x.startswith(msix.P7X_MAGIC)
    assert "application/vnd.ms-appx.signature" in types


def test_unsigned_msix_has_no_signature(tmp_path) -> None:
    project = make_project(tmp_path / "proj", windows={"publisher": "CN=Example Corp"})
    profile = BuildProfile(Platform.WINDOWS, Arch.X64)

    pkg = Packager(project).package(profile, artifact(project.root, "hello.exe"), tmp_path / "out")

    assert not pkg.signed
    assert msix.verify_signature(pkg.path) is False


def test_tampered_msix_fails_signature(tmp_path, signer) -> None:
    project = make_project(tmp_path / "proj", windows={"publisher": "CN=Example Corp"})
    profile = BuildProfile(Platform.WINDOWS, Arch.X64)
    pkg = Packager(project, signer).package(profile, artifact(project.root, "hello.exe"), tmp_path / "out")

    data = bytearray(pkg.path.read_bytes())
    data[40] ^= 0xFF
    pkg.path.write_bytes(bytes(data))

    with pytest.raises(PackageInvalid):
        msix.verify_signature(pkg.path)


# ---------------------------------------------------------------------------
# Formats
# ---------------------------------------------------------------------------
def test_unknown_format_is_unsupported(tmp_path) -> None:
    project = make_project(tmp_path / "proj", linux={"format": "appimage"})
    profile = BuildProfile(Platform.LINUX, Arch.X64)

    with pytest.raises(UnsupportedPackageFormat) as excinfo:
        Packager(project).package(profile, artifact(project.root, "hello"), tmp_path / "out")
    assert excinfo.value.platform == "linux"


def test_signing_appdir_is_unsupported(tmp_path, signer) -> None:
    project = make_project(tmp_path / "proj")
    profile = BuildProfile(Platform.LINUX, Arch.X64)

    with pytest.raises(UnsupportedPackageFormat, match="signing"):
        Packager(project, signer).package(profile, artifact(project.root, "hello"), tmp_path / "out")


def test_missing_executable_artifact(tmp_path) -> None:
    project = make_project(tmp_path / "proj")
    profile = BuildProfile(Platform.LINUX, Arch.X64)

    with pytest.raises(PackageInvalid, match="no build artifact named hello"):
        Packager(project).package(profile, artifact(project.root, "other"), tmp_path / "out")
