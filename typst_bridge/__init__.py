from typst_bridge.api import Compiler, compile, try_compile
from typst_bridge.config import BridgeConfig
from typst_bridge.data import (
    Artifact,
    BoolValue,
    CompileError,
    CompileOptions,
    CompileRequest,
    CompileResult,
    Diagnostic,
    InputDocument,
    InputValue,
    ListValue,
    MapValue,
    NullValue,
    NumberValue,
    OutputFormat,
    PlatformKey,
    SourceSpan,
    StringValue,
    TracePoint,
)
from typst_bridge.errors import (
    BinaryNotFoundError,
    BridgeError,
    BridgeFatalError,
    ChecksumMismatchError,
    CompileFailedError,
    CompileTimeoutError,
    ErrorKind,
    InvalidInputError,
    LoadFailedError,
    NativeFaultError,
    ResourceInitError,
    SymbolMismatchError,
    UnsupportedFormatError,
    UnsupportedPlatformError,
)
from typst_bridge.logging import configure_logging, get_logger

__version__ = "0.1.0"

__all__ = [
    # Compile API
    "compile",
    "try_compile",
    "Compiler",
    "BridgeConfig",
    # Request types
    "CompileRequest",
    "CompileOptions",
    "OutputFormat",
    "InputDocument",
    "InputValue",
    "StringValue",
    "NumberValue",
    "BoolValue",
    "NullValue",
    "ListValue",
    "MapValue",
    # Result types
    "Artifact",
    "CompileError",
    "CompileResult",
    "Diagnostic",
    "SourceSpan",
    "TracePoint",
    "PlatformKey",
    # Errors
    "ErrorKind",
    "BridgeError",
    "BridgeFatalError",
    "UnsupportedPlatformError",
    "BinaryNotFoundError",
    "ChecksumMismatchError",
    "LoadFailedError",
    "SymbolMismatchError",
    "ResourceInitError",
    "NativeFaultError",
    "UnsupportedFormatError",
    "InvalidInputError",
    "CompileFailedError",
    "CompileTimeoutError",
    # Logging
    "get_logger",
    "configure_logging",
]
