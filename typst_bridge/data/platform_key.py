"""Platform identification for selecting a precompiled native module."""

from __future__ import annotations

import os
import platform
import sys
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field

from .utils import FrozenModel, NonEmptyString

ABI_VERSION = 1
"""The native ABI version this bridge speaks."""

OsName = Literal["linux", "macos", "windows", "freebsd"]
LibcVariant = Literal["gnu", "musl"]

_ARCH_ALIASES = {
    "x86_64": "x86_64",
    "amd64": "x86_64",
    "x64": "x86_64",
    "aarch64": "aarch64",
    "arm64": "aarch64",
    "armv8l": "aarch64",
    "armv7l": "arm",
    "i386": "x86",
    "i686": "x86",
    "x86": "x86",
    "riscv64": "riscv64gc",
    "ppc64le": "powerpc64le",
    "s390x": "s390x",
}

_LIBRARY_SUFFIXES = {"linux": ".so", "freebsd": ".so", "macos": ".dylib", "windows": ".dll"}


class PlatformKey(FrozenModel):
    """Identifies exactly one precompiled binary: OS, CPU, libc variant and ABI version."""

    os: OsName
    arch: NonEmptyString
    """Normalized CPU architecture, e.g. ``x86_64`` or ``aarch64``."""
    libc: Optional[LibcVariant] = None
    """C library variant. Only meaningful on Linux; None elsewhere."""
    abi_version: int = Field(default=ABI_VERSION, ge=1)

    @property
    def target_triple(self) -> str:
        """Rust-style target triple, e.g. ``x86_64-unknown-linux-gnu``."""
        if self.os == "linux":
            return f"{self.arch}-unknown-linux-{self.libc or 'gnu'}"
        if self.os == "macos":
            return f"{self.arch}-apple-darwin"
        if self.os == "windows":
            return f"{self.arch}-pc-windows-msvc"
        return f"{self.arch}-unknown-{self.os}"

    @property
    def library_suffix(self) -> str:
        return _LIBRARY_SUFFIXES[self.os]

    def default_library_name(self) -> str:
        """File name following the release naming convention."""
        prefix = "" if self.os == "windows" else "lib"
        return (
            f"{prefix}typst_bridge-abi{self.abi_version}-{self.target_triple}"
            f"{self.library_suffix}"
        )

    def __str__(self) -> str:
        return f"{self.target_triple} (abi {self.abi_version})"


def normalize_arch(machine: str) -> str:
    """Map ``platform.machine()`` spellings onto one name per architecture."""
    machine = machine.strip().lower()
    return _ARCH_ALIASES.get(machine, machine)


def detect_os() -> Optional[str]:
    if sys.platform.startswith("linux"):
        return "linux"
    if sys.platform == "darwin":
        return "macos"
    if sys.platform in ("win32", "cygwin"):
        return "windows"
    if sys.platform.startswith("freebsd"):
        return "freebsd"
    return None


def detect_libc() -> LibcVariant:
    """Detect the C library on Linux. Falls back to ``gnu`` when nothing identifies musl."""
    name, _ = platform.libc_ver()
    if name == "glibc":
        return "gnu"
    if name == "musl":
        return "musl"
    lib_dir = Path("/lib")
    if lib_dir.is_dir() and any(lib_dir.glob("ld-musl-*")):
        return "musl"
    return "gnu"


def current_platform_key(abi_version: int = ABI_VERSION) -> Optional[PlatformKey]:
    """Build the key of the running platform.

    Returns
    -------
    Optional[PlatformKey]
        The key, or None if the operating system is not one the bridge knows about.
    """
    os_name = detect_os()
    if os_name is None:
        return None
    machine = platform.machine() or os.environ.get("PROCESSOR_ARCHITECTURE", "")
    libc = detect_libc() if os_name == "linux" else None
    return PlatformKey(
        os=os_name, arch=normalize_arch(machine) or "unknown", libc=libc, abi_version=abi_version
    )
