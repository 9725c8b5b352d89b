"""Tests for BinaryResolver."""

import hashlib
import sys
import threading
from pathlib import Path

import pytest

from typst_bridge.data import BinaryManifest, ManifestEntry, PlatformKey
from typst_bridge.errors import (
    BinaryNotFoundError,
    ChecksumMismatchError,
    UnsupportedPlatformError,
)
from typst_bridge.native import BinaryResolver, file_sha256
from typst_bridge.native import resolver as resolver_module

BINARY = b"\x7fELF fake engine module" * 100
KEY = PlatformKey(os="linux", arch="x86_64", libc="gnu")


@pytest.fixture(autouse=True)
def _use_tmp_cache_dir(tmp_cache_dir: Path) -> None:
    """Automatically use tmp_cache_dir for all tests in this module."""


def _manifest(data: bytes = BINARY, url: str = None) -> BinaryManifest:
    return BinaryManifest(
        binaries=[
            ManifestEntry(
                os="linux",
                arch="x86_64",
                libc="gnu",
                file="libtypst_bridge.so",
                sha256=hashlib.sha256(data).hexdigest(),
                url=url,
            )
        ]
    )


@pytest.fixture
def bundle_dir(tmp_path: Path) -> Path:
    path = tmp_path / "bundle"
    path.mkdir()
    return path


def test_file_sha256(tmp_path: Path):
    path = tmp_path / "blob"
    path.write_bytes(BINARY)
    assert file_sha256(path) == hashlib.sha256(BINARY).hexdigest()


def test_resolve_from_bundle_writes_through(bundle_dir: Path, tmp_cache_dir: Path):
    (bundle_dir / "libtypst_bridge.so").write_bytes(BINARY)
    resolver = BinaryResolver(_manifest(), bundle_dir, tmp_cache_dir)

    path = resolver.resolve(KEY)
    expected = tmp_cache_dir / "abi1" / "x86_64-unknown-linux-gnu" / "libtypst_bridge.so"
    assert path == expected
    assert path.read_bytes() == BINARY
    # No temporary files are left behind
    assert sorted(p.name for p in expected.parent.iterdir() if p.suffix == ".tmp") == []


def test_resolve_prefers_verified_cache(bundle_dir: Path, tmp_cache_dir: Path):
    resolver = BinaryResolver(_manifest(), bundle_dir, tmp_cache_dir)
    cached = resolver.cache_path_for(KEY, resolver.manifest.lookup(KEY))
    cached.parent.mkdir(parents=True)
    cached.write_bytes(BINARY)

    assert resolver.resolve(KEY) == cached


def test_resolve_is_cached_per_key(bundle_dir: Path, tmp_cache_dir: Path):
    (bundle_dir / "libtypst_bridge.so").write_bytes(BINARY)
    resolver = BinaryResolver(_manifest(), bundle_dir, tmp_cache_dir)
    first = resolver.resolve(KEY)

    # Deleting the binary does not affect an already resolved key
    first.unlink()
    assert resolver.resolve(KEY) == first

    resolver.clear()
    assert resolver.resolve(KEY) == first
    assert first.is_file()


def test_corrupted_bundle_is_rejected(bundle_dir: Path, tmp_cache_dir: Path):
    (bundle_dir / "libtypst_bridge.so").write_bytes(BINARY[:-1] + b"!")
    resolver = BinaryResolver(_manifest(), bundle_dir, tmp_cache_dir)

    with pytest.raises(ChecksumMismatchError, match="expected"):
        resolver.resolve(KEY)
    # Nothing unverified is written to the cache
    assert not tmp_cache_dir.exists() or not any(tmp_cache_dir.rglob("libtypst_bridge.so"))


def test_corrupted_cache_falls_back_to_bundle(bundle_dir: Path, tmp_cache_dir: Path):
    (bundle_dir / "libtypst_bridge.so").write_bytes(BINARY)
    resolver = BinaryResolver(_manifest(), bundle_dir, tmp_cache_dir)
    cached = resolver.cache_path_for(KEY, resolver.manifest.lookup(KEY))
    cached.parent.mkdir(parents=True)
    cached.write_bytes(b"truncated")

    path = resolver.resolve(KEY)
    assert path == cached
    assert cached.read_bytes() == BINARY


def test_unsupported_platform(bundle_dir: Path, tmp_cache_dir: Path):
    resolver = BinaryResolver(_manifest(), bundle_dir, tmp_cache_dir)
    key = PlatformKey(os="freebsd", arch="riscv64gc")
    with pytest.raises(UnsupportedPlatformError, match="x86_64-unknown-linux-gnu"):
        resolver.resolve(key)


def test_unknown_os_is_unsupported(
    bundle_dir: Path, tmp_cache_dir: Path, monkeypatch: pytest.MonkeyPatch
):
    monkeypatch.setattr(resolver_module, "current_platform_key", lambda abi: None)
    resolver = BinaryResolver(_manifest(), bundle_dir, tmp_cache_dir)
    with pytest.raises(UnsupportedPlatformError, match="Unsupported operating system"):
        resolver.resolve()


def test_binary_not_found(bundle_dir: Path, tmp_cache_dir: Path):
    resolver = BinaryResolver(
        _manifest(url="https://example.invalid/lib.so"), bundle_dir, tmp_cache_dir
    )
    with pytest.raises(BinaryNotFoundError, match="Download it from https://example.invalid"):
        resolver.resolve(KEY)


def test_unwritable_cache_returns_bundle(bundle_dir: Path, tmp_path: Path):
    (bundle_dir / "libtypst_bridge.so").write_bytes(BINARY)
    blocker = tmp_path / "not_a_dir"
    blocker.write_text("file where the cache directory should be")
    resolver = BinaryResolver(_manifest(), bundle_dir, blocker)

    assert resolver.resolve(KEY) == bundle_dir / "libtypst_bridge.so"


def test_library_override(bundle_dir: Path, tmp_cache_dir: Path, tmp_path: Path):
    override = tmp_path / "custom.so"
    override.write_bytes(b"any bytes, not in the manifest")
    resolver = BinaryResolver(
        BinaryManifest(), bundle_dir, tmp_cache_dir, library_override=override
    )
    assert resolver.resolve(KEY) == override

    missing = BinaryResolver(
        BinaryManifest(), bundle_dir, tmp_cache_dir, library_override=tmp_path / "nope.so"
    )
    with pytest.raises(BinaryNotFoundError, match="missing file"):
        missing.resolve(KEY)


def test_from_paths_reads_override_from_env(
    bundle_dir: Path, tmp_cache_dir: Path, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
):
    manifest_path = tmp_path / "manifest.json"
    manifest_path.write_text(_manifest().model_dump_json())
    override = tmp_path / "custom.so"
    override.write_bytes(b"x")
    monkeypatch.setenv("TYPST_BRIDGE_LIBRARY_PATH", str(override))

    resolver = BinaryResolver.from_paths(manifest_path, bundle_dir, tmp_cache_dir)
    assert resolver.resolve(KEY) == override


def test_concurrent_resolution(bundle_dir: Path, tmp_cache_dir: Path):
    (bundle_dir / "libtypst_bridge.so").write_bytes(BINARY)
    resolver = BinaryResolver(_manifest(), bundle_dir, tmp_cache_dir)
    barrier = threading.Barrier(8)
    results = []

    def worker():
        barrier.wait()
        results.append(resolver.resolve(KEY))

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(set(results)) == 1
    assert results[0].read_bytes() == BINARY


if __name__ == "__main__":
    pytest.main(sys.argv)
