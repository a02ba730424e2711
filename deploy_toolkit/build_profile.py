"""
build_profile.py - (platform, architecture, optimization) build targets.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, Mapping, Optional

from .device_interface import Arch, Device, Platform
from .errors import BuildError


class Opt(Enum):
    DEBUG = "debug"
    RELEASE = "release"


_TRIPLES = {
    (Platform.ANDROID, Arch.ARM): "armv7-linux-androideabi",
    (Platform.ANDROID, Arch.ARM64): "aarch64-linux-android",
    (Platform.ANDROID, Arch.X86): "i686-linux-android",
    (Platform.ANDROID, Arch.X64): "x86_64-linux-android",
    (Platform.IOS, Arch.ARM64): "aarch64-apple-ios",
    (Platform.IOS, Arch.X64): "x86_64-apple-ios",
    (Platform.MACOS, Arch.ARM64): "aarch64-apple-darwin",
    (Platform.MACOS, Arch.X64): "x86_64-apple-darwin",
    (Platform.LINUX, Arch.ARM): "armv7-unknown-linux-gnueabihf",
    (Platform.LINUX, Arch.ARM64): "aarch64-unknown-linux-gnu",
    (Platform.LINUX, Arch.X86): "i686-unknown-linux-gnu",
    (Platform.LINUX, Arch.X64): "x86_64-unknown-linux-gnu",
    (Platform.WINDOWS, Arch.ARM64): "aarch64-pc-windows-msvc",
    (Platform.WINDOWS, Arch.X86): "i686-pc-windows-msvc",
    (Platform.WINDOWS, Arch.X64): "x86_64-pc-windows-msvc",
}

_ANDROID_ABIS = {
    Arch.ARM: "armeabi-v7a",
    Arch.ARM64: "arm64-v8a",
    Arch.X86: "x86",
    Arch.X64: "x86_64",
}


@dataclass(frozen=True)
class BuildProfile:
    """One build target. Immutable; shared by every task of a pipeline."""
    platform: Platform
    arch: Arch
    opt: Opt = Opt.DEBUG
    toolchain: Mapping[str, Path] = field(default_factory=dict, compare=False, hash=False)

    def __post_init__(self):
        if (self.platform, self.arch) not in _TRIPLES:
            raise BuildError(
                f"no target for {self.platform.value}/{self.arch.value}"
            )

    @classmethod
    def for_device(
        cls,
        device: Device,
        opt: Opt = Opt.DEBUG,
        toolchain: Optional[Dict[str, Path]] = None,
    ) -> "BuildProfile":
        return cls(device.platform, device.arch, opt, dict(toolchain or {}))

    @property
    def target_triple(self) -> str:
        return _TRIPLES[(self.platform, self.arch)]

    @property
    def android_abi(self) -> str:
        if self.platform != Platform.ANDROID:
            raise BuildError(f"{self.platform.value} has no Android ABI")
        return _ANDROID_ABIS[self.arch]

    @property
    def is_release(self) -> bool:
        return self.opt == Opt.RELEASE

    def tool(self, name: str, default: str = "") -> str:
        path = self.toolchain.get(name)
        return str(path) if path else (default or name)

    def __str__(self):
        return f"{self.platform.value}-{self.arch.value}-{self.opt.value}"
