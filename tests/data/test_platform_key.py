"""Tests for platform key detection and naming."""

import sys

import pytest
from pydantic import ValidationError

from typst_bridge.data import ABI_VERSION, PlatformKey, current_platform_key
from typst_bridge.data import platform_key as platform_key_module
from typst_bridge.data.platform_key import normalize_arch


@pytest.mark.parametrize(
    "machine, expected",
    [("AMD64", "x86_64"), ("x86_64", "x86_64"), ("arm64", "aarch64"), ("sparc", "sparc")],
)
def test_normalize_arch(machine, expected):
    assert normalize_arch(machine) == expected


def test_target_triples_and_names():
    linux = PlatformKey(os="linux", arch="x86_64", libc="musl")
    assert linux.target_triple == "x86_64-unknown-linux-musl"
    assert linux.default_library_name() == "libtypst_bridge-abi1-x86_64-unknown-linux-musl.so"

    mac = PlatformKey(os="macos", arch="aarch64")
    assert mac.target_triple == "aarch64-apple-darwin"
    assert mac.library_suffix == ".dylib"

    win = PlatformKey(os="windows", arch="x86_64", abi_version=2)
    assert win.default_library_name() == "typst_bridge-abi2-x86_64-pc-windows-msvc.dll"
    assert str(win) == "x86_64-pc-windows-msvc (abi 2)"


def test_platform_key_validation():
    with pytest.raises(ValidationError):
        PlatformKey(os="plan9", arch="x86_64")
    with pytest.raises(ValidationError):
        PlatformKey(os="linux", arch="")
    with pytest.raises(ValidationError):
        PlatformKey(os="linux", arch="x86_64", libc="uclibc")


def test_platform_key_is_hashable():
    a = PlatformKey(os="linux", arch="x86_64", libc="gnu")
    b = PlatformKey(os="linux", arch="x86_64", libc="gnu")
    assert a == b
    assert len({a, b}) == 1


def test_current_platform_key(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(platform_key_module, "detect_os", lambda: "linux")
    monkeypatch.setattr(platform_key_module, "detect_libc", lambda: "musl")
    monkeypatch.setattr(platform_key_module.platform, "machine", lambda: "aarch64")

    key = current_platform_key()
    assert key == PlatformKey(os="linux", arch="aarch64", libc="musl", abi_version=ABI_VERSION)


def test_current_platform_key_unknown_os(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(platform_key_module, "detect_os", lambda: None)
    assert current_platform_key() is None


def test_current_platform_key_non_linux_has_no_libc(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(platform_key_module, "detect_os", lambda: "macos")
    monkeypatch.setattr(platform_key_module.platform, "machine", lambda: "arm64")
    key = current_platform_key(abi_version=3)
    assert key.libc is None
    assert key.arch == "aarch64"
    assert key.abi_version == 3


if __name__ == "__main__":
    pytest.main(sys.argv)
