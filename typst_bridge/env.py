"""Environment variable accessors for typst-bridge.

All runtime locations can be overridden through environment variables. Each getter reads the
variable on every call so tests can redirect them with ``monkeypatch.setenv``.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Literal, Optional

_PACKAGE_ROOT = Path(__file__).resolve().parent


def get_cache_path() -> Path:
    """Directory where verified native binaries are cached.

    Returns
    -------
    Path
        ``TYPST_BRIDGE_CACHE_PATH`` if set, otherwise ``~/.cache/typst_bridge``.
    """
    value = os.environ.get("TYPST_BRIDGE_CACHE_PATH")
    if value:
        return Path(value).expanduser()
    return Path.home() / ".cache" / "typst_bridge"


def get_manifest_path() -> Path:
    """Path of the binary manifest, ``TYPST_BRIDGE_MANIFEST_PATH`` or the packaged one."""
    value = os.environ.get("TYPST_BRIDGE_MANIFEST_PATH")
    if value:
        return Path(value).expanduser()
    return _PACKAGE_ROOT / "native" / "manifest.json"


def get_bundle_path() -> Path:
    """Directory holding the binaries shipped with the distribution."""
    value = os.environ.get("TYPST_BRIDGE_BUNDLE_PATH")
    if value:
        return Path(value).expanduser()
    return _PACKAGE_ROOT / "native" / "lib"


def get_resource_path() -> Path:
    """Root of the bundled resources (fonts), ``TYPST_BRIDGE_RESOURCE_PATH`` or the packaged one."""
    value = os.environ.get("TYPST_BRIDGE_RESOURCE_PATH")
    if value:
        return Path(value).expanduser()
    return _PACKAGE_ROOT / "resources"


def get_library_override() -> Optional[Path]:
    """Explicit native library path that bypasses manifest resolution.

    Returns
    -------
    Optional[Path]
        The value of ``TYPST_BRIDGE_LIBRARY_PATH``, or None when unset.
    """
    value = os.environ.get("TYPST_BRIDGE_LIBRARY_PATH")
    return Path(value).expanduser() if value else None


def get_isolation_mode() -> Literal["inprocess", "subprocess"]:
    """Isolation mode for native calls taken from ``TYPST_BRIDGE_ISOLATION``.

    Raises
    ------
    ValueError
        If the variable holds an unknown mode.
    """
    value = os.environ.get("TYPST_BRIDGE_ISOLATION", "inprocess").strip().lower()
    if value not in ("inprocess", "subprocess"):
        raise ValueError(
            f"Invalid TYPST_BRIDGE_ISOLATION '{value}'. Expected 'inprocess' or 'subprocess'."
        )
    return value  # type: ignore[return-value]


def get_log_level() -> str:
    return os.environ.get("TYPST_BRIDGE_LOG_LEVEL", "WARNING").upper()
