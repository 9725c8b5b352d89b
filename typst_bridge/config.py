"""Configuration of the process-wide compiler."""

from __future__ import annotations

from pathlib import Path
from typing import Literal, Optional

from pydantic import BaseModel, Field

from typst_bridge.env import (
    get_bundle_path,
    get_cache_path,
    get_isolation_mode,
    get_manifest_path,
    get_resource_path,
)


class BridgeConfig(BaseModel):
    """Configuration for locating the engine and running native calls.

    Defaults come from the ``TYPST_BRIDGE_*`` environment variables, read when the config is
    created.
    """

    manifest_path: Path = Field(default_factory=get_manifest_path)
    """JSON manifest mapping platforms to binaries and checksums."""
    bundle_dir: Path = Field(default_factory=get_bundle_path)
    """Directory with the binaries shipped in the distribution."""
    cache_dir: Path = Field(default_factory=get_cache_path)
    """Root of the verified binary cache."""
    resource_root: Path = Field(default_factory=get_resource_path)
    """Root of the bundled resources; fonts live in ``resource_root / "fonts"``."""
    include_optional_resources: bool = True
    """Whether optional fonts under ``fonts/extra`` are indexed."""
    isolation: Literal["inprocess", "subprocess"] = Field(default_factory=get_isolation_mode)
    """Run native calls in the host process, or in a spawned worker process per call."""
    fault_policy: Literal["invalidate", "continue"] = "invalidate"
    """What a native fault does to the shared handle. ``invalidate`` fails every later call until
    ``Compiler.reset()``; ``continue`` keeps using the handle."""
    default_timeout: Optional[float] = Field(default=None, gt=0)
    """Advisory timeout in seconds applied when a request sets none."""
