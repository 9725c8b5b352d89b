"""Native module loader: loads the engine module exactly once per process."""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Any, Callable, Optional, Union

from typst_bridge.errors import (
    BridgeFatalError,
    LoadFailedError,
    NativeFaultError,
    SymbolMismatchError,
)
from typst_bridge.logging import get_logger

from .abi import ABI_VERSION, REQUIRED_SYMBOLS, ffi

logger = get_logger("Loader")

Opener = Callable[[str], Any]
"""Opens a shared library and returns an object exposing its functions as attributes."""


def dlopen(path: str) -> Any:
    """Open a shared library through cffi in ABI mode."""
    return ffi.dlopen(path)


class NativeHandle:
    """Opaque handle to the loaded engine module.

    Exactly one handle exists per process. It is created by :class:`NativeModuleLoader`, shared by
    reference and never unloaded; the library stays mapped until the process exits.
    """

    def __init__(
        self,
        lib: Any,
        path: Path,
        abi_version: int,
        engine_version: Optional[str],
        reentrant: bool,
    ) -> None:
        self._lib = lib
        self._path = path
        self._abi_version = abi_version
        self._engine_version = engine_version
        self._reentrant = reentrant

    @property
    def lib(self) -> Any:
        """The cffi library object. Only the call bridge touches it."""
        return self._lib

    @property
    def path(self) -> Path:
        return self._path

    @property
    def abi_version(self) -> int:
        return self._abi_version

    @property
    def engine_version(self) -> Optional[str]:
        return self._engine_version

    @property
    def reentrant(self) -> bool:
        """Whether the engine allows concurrent calls to ``typst_bridge_compile``."""
        return self._reentrant

    def __copy__(self) -> "NativeHandle":
        return self

    def __deepcopy__(self, memo: Any) -> "NativeHandle":
        return self

    def __repr__(self) -> str:
        return (
            f"NativeHandle(path={str(self._path)!r}, abi={self._abi_version}, "
            f"engine={self._engine_version!r}, reentrant={self._reentrant})"
        )


class NativeModuleLoader:
    """Loads the engine module at most once and hands out the shared :class:`NativeHandle`.

    Concurrent first callers race on a lock: exactly one load executes and every caller observes
    its outcome. A failed load is sticky, later calls re-raise the same error without touching
    the file system, until :meth:`reset` is called explicitly.
    """

    def __init__(self, opener: Opener = dlopen) -> None:
        """Initialize the loader.

        Parameters
        ----------
        opener : Opener
            Function opening a shared library. Defaults to cffi ``dlopen``.
        """
        self._opener = opener
        self._lock = threading.Lock()
        self._handle: Optional[NativeHandle] = None
        self._error: Optional[BridgeFatalError] = None
        self._fault: Optional[NativeFaultError] = None
        self._load_count = 0

    @property
    def load_count(self) -> int:
        """Number of underlying load attempts made so far."""
        return self._load_count

    @property
    def is_loaded(self) -> bool:
        return self._handle is not None

    @property
    def fault(self) -> Optional[NativeFaultError]:
        """The fault that invalidated the handle, if any."""
        return self._fault

    def load(self, path: Union[str, Path]) -> NativeHandle:
        """Load the module at ``path``, or return the already-loaded handle.

        Parameters
        ----------
        path : Union[str, Path]
            Resolved path of the native module.

        Returns
        -------
        NativeHandle
            The process-wide handle.

        Raises
        ------
        LoadFailedError
            If the operating system cannot load the library.
        SymbolMismatchError
            If a required entry point is missing or the ABI version does not match.
        NativeFaultError
            If the handle was invalidated by an earlier native fault.
        """
        handle = self._handle
        if handle is not None and self._fault is None:
            return handle

        with self._lock:
            if self._fault is not None:
                raise self._fault
            if self._handle is not None:
                if Path(path) != self._handle.path:
                    logger.warning(
                        f"Native module already loaded from {self._handle.path}, ignoring {path}"
                    )
                return self._handle
            if self._error is not None:
                raise self._error

            self._load_count += 1
            try:
                self._handle = self._load(Path(path))
            except BridgeFatalError as e:
                self._error = e
                raise
            return self._handle

    def get(self) -> NativeHandle:
        """Return the loaded handle.

        Raises
        ------
        NativeFaultError
            If the handle was invalidated.
        RuntimeError
            If nothing has been loaded yet.
        """
        with self._lock:
            if self._fault is not None:
                raise self._fault
            if self._error is not None:
                raise self._error
            if self._handle is None:
                raise RuntimeError("Native module is not loaded")
            return self._handle

    def invalidate(self, fault: NativeFaultError) -> None:
        """Mark the handle unusable after a native fault. Later calls raise until reset."""
        with self._lock:
            if self._fault is None:
                logger.error(f"Native handle invalidated: {fault.message}")
                self._fault = NativeFaultError(
                    f"Native module is unusable after an earlier fault: {fault.message}. "
                    "Call reset() to re-initialize."
                )

    def reset(self) -> None:
        """Forget the handle, sticky errors and faults so the next :meth:`load` loads again.

        The previous library is not unloaded; it stays mapped until the process exits.
        """
        with self._lock:
            self._handle = None
            self._error = None
            self._fault = None

    def _load(self, path: Path) -> NativeHandle:
        logger.info(f"Loading native module {path}")
        try:
            lib = self._opener(str(path))
        except OSError as e:
            raise LoadFailedError(f"Failed to load native module {path}: {e}") from e

        missing = [name for name in REQUIRED_SYMBOLS if not _has_symbol(lib, name)]
        if missing:
            raise SymbolMismatchError(
                f"Native module {path} does not export {', '.join(missing)}; it was built for a "
                f"different ABI than version {ABI_VERSION}"
            )

        abi_version = int(lib.typst_bridge_abi_version())
        if abi_version != ABI_VERSION:
            raise SymbolMismatchError(
                f"Native module {path} implements ABI version {abi_version}, expected {ABI_VERSION}"
            )

        engine_version = None
        if _has_symbol(lib, "typst_bridge_engine_version"):
            raw = lib.typst_bridge_engine_version()
            if raw != ffi.NULL:
                engine_version = ffi.string(raw).decode("utf-8", errors="replace")
        reentrant = False
        if _has_symbol(lib, "typst_bridge_is_reentrant"):
            reentrant = bool(lib.typst_bridge_is_reentrant())

        handle = NativeHandle(lib, path, abi_version, engine_version, reentrant)
        logger.info(f"Loaded {handle!r}")
        return handle


def _has_symbol(lib: Any, name: str) -> bool:
    # cffi resolves symbols lazily and raises AttributeError for missing ones
    try:
        getattr(lib, name)
    except AttributeError:
        return False
    return True
