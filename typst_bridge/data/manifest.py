"""Binary manifest: which precompiled module serves which platform, and its checksum."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

from pydantic import Field, ValidationError, field_validator, model_validator

from typst_bridge.errors import BinaryNotFoundError

from .platform_key import ABI_VERSION, LibcVariant, OsName, PlatformKey
from .utils import FrozenModel, NonEmptyString

_SHA256_RE = re.compile(r"^[0-9a-f]{64}$")


class ManifestEntry(FrozenModel):
    """One precompiled binary."""

    os: OsName
    arch: NonEmptyString
    libc: Optional[LibcVariant] = None
    file: NonEmptyString
    """File name of the binary, relative to the bundle and cache directories."""
    sha256: NonEmptyString
    """Expected SHA-256 of the file, lowercase hex."""
    url: Optional[str] = None
    """Where the release artifact can be downloaded from, if published."""

    @field_validator("sha256", mode="before")
    @classmethod
    def _normalize_sha256(cls, value: object) -> object:
        if isinstance(value, str):
            value = value.strip().lower()
            if not _SHA256_RE.match(value):
                raise ValueError(f"Invalid sha256 digest: {value!r}")
        return value

    @field_validator("file")
    @classmethod
    def _validate_file(cls, value: str) -> str:
        path = Path(value)
        if path.is_absolute() or ".." in path.parts or len(path.parts) != 1:
            raise ValueError(f"Manifest file must be a bare file name, got {value!r}")
        return value

    def key(self, abi_version: int) -> PlatformKey:
        return PlatformKey(os=self.os, arch=self.arch, libc=self.libc, abi_version=abi_version)


class BinaryManifest(FrozenModel):
    """Mapping from :class:`PlatformKey` to the binary that serves it."""

    abi_version: int = Field(default=ABI_VERSION, ge=1)
    """ABI version every binary in this manifest implements."""
    binaries: List[ManifestEntry] = Field(default_factory=list)

    @model_validator(mode="after")
    def _validate_unique_keys(self) -> "BinaryManifest":
        seen: Dict[Tuple[str, str, Optional[str]], str] = {}
        for entry in self.binaries:
            ident = (entry.os, entry.arch, entry.libc)
            if ident in seen:
                raise ValueError(
                    f"Duplicate manifest entry for {entry.os}/{entry.arch}/{entry.libc}: "
                    f"'{seen[ident]}' and '{entry.file}'"
                )
            seen[ident] = entry.file
        return self

    def lookup(self, key: PlatformKey) -> Optional[ManifestEntry]:
        """Find the entry serving ``key``, or None if the platform is unsupported."""
        if key.abi_version != self.abi_version:
            return None
        for entry in self.binaries:
            if (entry.os, entry.arch, entry.libc) == (key.os, key.arch, key.libc):
                return entry
        return None

    def supported_keys(self) -> List[PlatformKey]:
        return [entry.key(self.abi_version) for entry in self.binaries]

    @classmethod
    def load(cls, path: Union[str, Path]) -> "BinaryManifest":
        """Load a manifest from a JSON file.

        Raises
        ------
        BinaryNotFoundError
            If the file does not exist or is not a valid manifest.
        """
        path = Path(path)
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as e:
            raise BinaryNotFoundError(f"Cannot read binary manifest {path}: {e}") from e
        try:
            return cls.model_validate_json(text)
        except ValidationError as e:
            raise BinaryNotFoundError(f"Invalid binary manifest {path}: {e}") from e
