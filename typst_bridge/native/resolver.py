"""Binary resolver: picks and verifies the precompiled engine module for a platform."""

from __future__ import annotations

import hashlib
import os
import shutil
import sys
import threading
import uuid
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from tvm_ffi.utils import FileLock

from typst_bridge.data import BinaryManifest, ManifestEntry, PlatformKey, current_platform_key
from typst_bridge.env import get_library_override
from typst_bridge.errors import (
    BinaryNotFoundError,
    ChecksumMismatchError,
    UnsupportedPlatformError,
)
from typst_bridge.logging import get_logger

logger = get_logger("Resolver")

_CHUNK_SIZE = 1 << 20


def file_sha256(path: Path) -> str:
    """Compute the lowercase hex SHA-256 of a file, streaming it in 1 MiB chunks."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


class BinaryResolver:
    """Resolve a :class:`PlatformKey` to a verified native module on disk.

    Resolution looks at two candidates in order:

    1. ``cache_dir / abi<N> / <target triple> / <file>``, a binary verified earlier.
    2. ``bundle_dir / <file>``, the binary shipped with the distribution. When it verifies, it is
       copied into the cache (write-through) and the cached copy is returned.

    A candidate is only accepted if its SHA-256 matches the manifest. The result is remembered
    per key, so repeated resolutions do no I/O.
    """

    _LOCK_FILE_NAME = "typst_bridge_resolve_lock"
    """File lock name for multi-process synchronization during cache population"""

    def __init__(
        self,
        manifest: BinaryManifest,
        bundle_dir: Path,
        cache_dir: Path,
        library_override: Optional[Path] = None,
    ) -> None:
        """Initialize the resolver.

        Parameters
        ----------
        manifest : BinaryManifest
            Expected binaries and checksums per platform.
        bundle_dir : Path
            Directory containing the binaries shipped with the distribution.
        cache_dir : Path
            Root of the local binary cache.
        library_override : Optional[Path]
            Explicit binary that bypasses the manifest, for locally built engines.
        """
        self._manifest = manifest
        self._bundle_dir = Path(bundle_dir)
        self._cache_dir = Path(cache_dir)
        self._library_override = library_override
        self._resolved: Dict[PlatformKey, Path] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_paths(
        cls, manifest_path: Path, bundle_dir: Path, cache_dir: Path
    ) -> "BinaryResolver":
        return cls(
            BinaryManifest.load(manifest_path),
            bundle_dir,
            cache_dir,
            library_override=get_library_override(),
        )

    @property
    def manifest(self) -> BinaryManifest:
        return self._manifest

    def cache_path_for(self, key: PlatformKey, entry: ManifestEntry) -> Path:
        return self._cache_dir / f"abi{key.abi_version}" / key.target_triple / entry.file

    def resolve(self, key: Optional[PlatformKey] = None) -> Path:
        """Resolve the native module for ``key`` (the running platform by default).

        Parameters
        ----------
        key : Optional[PlatformKey]
            Platform to resolve for. Defaults to :func:`current_platform_key`.

        Returns
        -------
        Path
            Path to a binary whose checksum matches the manifest.

        Raises
        ------
        UnsupportedPlatformError
            If the manifest has no binary for the key.
        BinaryNotFoundError
            If neither the cache nor the bundle contains the binary.
        ChecksumMismatchError
            If binaries were found but none matches the expected checksum.
        """
        if self._library_override is not None:
            return self._resolve_override(self._library_override)

        if key is None:
            key = current_platform_key(self._manifest.abi_version)
            if key is None:
                raise UnsupportedPlatformError(
                    f"Unsupported operating system '{sys.platform}' for typst-bridge"
                )

        with self._lock:
            cached = self._resolved.get(key)
            if cached is not None:
                return cached
            path = self._resolve_uncached(key)
            self._resolved[key] = path
            return path

    def _resolve_override(self, path: Path) -> Path:
        if not path.is_file():
            raise BinaryNotFoundError(
                f"TYPST_BRIDGE_LIBRARY_PATH points to a missing file: {path}"
            )
        logger.warning(f"Using native library override {path}; checksum verification skipped")
        return path

    def _resolve_uncached(self, key: PlatformKey) -> Path:
        entry = self._manifest.lookup(key)
        if entry is None:
            supported = ", ".join(str(k) for k in self._manifest.supported_keys()) or "none"
            raise UnsupportedPlatformError(
                f"No precompiled typst-bridge binary for {key}. Supported platforms: {supported}"
            )

        cache_path = self.cache_path_for(key, entry)
        bundle_path = self._bundle_dir / entry.file
        mismatches: List[Tuple[Path, str]] = []

        if cache_path.is_file():
            digest = file_sha256(cache_path)
            if digest == entry.sha256:
                logger.debug(f"Resolved {key} from cache: {cache_path}")
                return cache_path
            logger.warning(f"Cached binary {cache_path} has checksum {digest}, ignoring it")
            mismatches.append((cache_path, digest))

        if bundle_path.is_file():
            digest = file_sha256(bundle_path)
            if digest == entry.sha256:
                logger.debug(f"Resolved {key} from bundle: {bundle_path}")
                return self._write_through(bundle_path, cache_path, entry)
            mismatches.append((bundle_path, digest))

        if mismatches:
            details = "; ".join(f"{path} has {digest}" for path, digest in mismatches)
            raise ChecksumMismatchError(
                f"Checksum mismatch for {entry.file}: expected {entry.sha256}, {details}"
            )

        hint = f" Download it from {entry.url} into {cache_path.parent}." if entry.url else ""
        raise BinaryNotFoundError(
            f"Binary {entry.file} for {key} not found in {cache_path.parent} or "
            f"{self._bundle_dir}.{hint}"
        )

    def _write_through(self, source: Path, target: Path, entry: ManifestEntry) -> Path:
        """Copy a verified binary into the cache. Falls back to ``source`` if the cache is not
        writable."""
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with FileLock(target.parent / self._LOCK_FILE_NAME):
                # Double-check after acquiring lock (another process may have populated it)
                if target.is_file() and file_sha256(target) == entry.sha256:
                    return target
                tmp = target.with_name(f".{target.name}.{uuid.uuid4().hex}.tmp")
                try:
                    shutil.copyfile(source, tmp)
                    if file_sha256(tmp) != entry.sha256:
                        raise OSError(f"Copy of {source} was corrupted while writing {tmp}")
                    os.replace(tmp, target)
                finally:
                    if tmp.exists():
                        tmp.unlink()
        except OSError as e:
            logger.warning(f"Cannot populate binary cache at {target}: {e}; using {source}")
            return source
        logger.info(f"Cached native binary {entry.file} at {target}")
        return target

    def clear(self) -> None:
        """Forget resolved paths so the next call resolves again."""
        with self._lock:
            self._resolved.clear()
