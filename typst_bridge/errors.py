"""Typed errors raised by the bridge.

Every failure surfaces as a subclass of :class:`BridgeError` carrying an :class:`ErrorKind`.
Failures that leave the process unable to compile at all (resolution, loading, resource init,
native faults) derive from :class:`BridgeFatalError`; the others are local to a single call.
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, List, Optional, Sequence

if TYPE_CHECKING:
    from typst_bridge.data.result import CompileError, Diagnostic, SourceSpan


class ErrorKind(str, Enum):
    """Closed taxonomy of bridge failures."""

    UNSUPPORTED_PLATFORM = "unsupported_platform"
    BINARY_NOT_FOUND = "binary_not_found"
    CHECKSUM_MISMATCH = "checksum_mismatch"
    LOAD_FAILED = "load_failed"
    SYMBOL_MISMATCH = "symbol_mismatch"
    RESOURCE_INIT_FAILED = "resource_init_failed"
    UNSUPPORTED_FORMAT = "unsupported_format"
    INVALID_INPUT = "invalid_input"
    COMPILE_FAILED = "compile_failed"
    NATIVE_FAULT = "native_fault"
    TIMEOUT = "timeout"


class BridgeError(RuntimeError):
    """Base class of all bridge errors."""

    kind: ErrorKind

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_result(self) -> "CompileError":
        """Convert the exception to its ``CompileError`` value form."""
        from typst_bridge.data.result import CompileError

        return CompileError(kind=self.kind, message=self.message)


class BridgeFatalError(BridgeError):
    """The bridge cannot compile anything in this process until it is re-initialized."""


class UnsupportedPlatformError(BridgeFatalError):
    kind = ErrorKind.UNSUPPORTED_PLATFORM


class BinaryNotFoundError(BridgeFatalError):
    kind = ErrorKind.BINARY_NOT_FOUND


class ChecksumMismatchError(BridgeFatalError):
    kind = ErrorKind.CHECKSUM_MISMATCH


class LoadFailedError(BridgeFatalError):
    kind = ErrorKind.LOAD_FAILED


class SymbolMismatchError(BridgeFatalError):
    """Expected entry points are missing or the ABI version differs."""

    kind = ErrorKind.SYMBOL_MISMATCH


class ResourceInitError(BridgeFatalError):
    kind = ErrorKind.RESOURCE_INIT_FAILED


class NativeFaultError(BridgeFatalError):
    """The native side terminated abnormally instead of returning a documented status."""

    kind = ErrorKind.NATIVE_FAULT


class UnsupportedFormatError(BridgeError):
    kind = ErrorKind.UNSUPPORTED_FORMAT


class CompileTimeoutError(BridgeError):
    kind = ErrorKind.TIMEOUT


class _DiagnosticError(BridgeError):
    """Error reported by the engine together with structured diagnostics."""

    def __init__(self, message: str, diagnostics: Optional[Sequence["Diagnostic"]] = None) -> None:
        super().__init__(message)
        self.diagnostics: List["Diagnostic"] = list(diagnostics or [])

    @property
    def spans(self) -> List["SourceSpan"]:
        """Source spans of all diagnostics that carry one."""
        return [d.span for d in self.diagnostics if d.span is not None]

    def to_result(self) -> "CompileError":
        from typst_bridge.data.result import CompileError

        return CompileError(kind=self.kind, message=self.message, diagnostics=self.diagnostics)

    def __str__(self) -> str:
        if not self.diagnostics:
            return self.message
        lines = [self.message]
        lines.extend(f"  {d.format()}" for d in self.diagnostics)
        return "\n".join(lines)


class InvalidInputError(_DiagnosticError):
    kind = ErrorKind.INVALID_INPUT


class CompileFailedError(_DiagnosticError):
    kind = ErrorKind.COMPILE_FAILED


_ERROR_CLASSES = {
    cls.kind: cls
    for cls in (
        UnsupportedPlatformError,
        BinaryNotFoundError,
        ChecksumMismatchError,
        LoadFailedError,
        SymbolMismatchError,
        ResourceInitError,
        NativeFaultError,
        UnsupportedFormatError,
        CompileTimeoutError,
        InvalidInputError,
        CompileFailedError,
    )
}


def error_class_for(kind: ErrorKind) -> type:
    """Map an :class:`ErrorKind` to the exception class that raises it."""
    return _ERROR_CLASSES[kind]
