"""C declarations and constants of the native engine ABI, loaded with cffi in ABI mode."""

from __future__ import annotations

from enum import IntEnum
from pathlib import Path
from typing import Tuple

from cffi import FFI

from typst_bridge.data.platform_key import ABI_VERSION

__all__ = ["ffi", "ABI_VERSION", "NativeStatus", "REQUIRED_SYMBOLS", "OPTIONAL_SYMBOLS"]

_CDEF_PATH = Path(__file__).with_name("typst_bridge_cdef.h")

REQUIRED_SYMBOLS: Tuple[str, ...] = (
    "typst_bridge_abi_version",
    "typst_bridge_compile",
    "typst_bridge_free_buffer",
)
"""Entry points every engine module must export."""

OPTIONAL_SYMBOLS: Tuple[str, ...] = ("typst_bridge_engine_version", "typst_bridge_is_reentrant")


class NativeStatus(IntEnum):
    """Status codes returned by ``typst_bridge_compile``."""

    OK = 0
    """``out`` holds the artifact bytes."""
    COMPILE_ERROR = 1
    """``out`` holds a diagnostic payload."""
    INVALID_INPUT = 2
    """The input data could not be used by the markup; ``out`` holds a diagnostic payload."""
    UNSUPPORTED_FORMAT = 3
    """The engine build does not support the requested format."""
    PANIC = 4
    """The engine caught a panic; ``out`` holds a message. The module state is suspect."""


ffi = FFI()
ffi.cdef(_CDEF_PATH.read_text(encoding="utf-8"))
