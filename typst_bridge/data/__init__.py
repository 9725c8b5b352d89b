"""Data layer with strongly-typed pydantic models for typst-bridge."""

from .manifest import BinaryManifest, ManifestEntry
from .platform_key import ABI_VERSION, PlatformKey, current_platform_key
from .request import CompileOptions, CompileRequest, OutputFormat
from .result import Artifact, CompileError, CompileResult, Diagnostic, SourceSpan, TracePoint
from .value import (
    BoolValue,
    InputDocument,
    InputValue,
    ListValue,
    MapValue,
    NullValue,
    NumberValue,
    StringValue,
    to_input_value,
)

__all__ = [
    # Input values
    "InputValue",
    "StringValue",
    "NumberValue",
    "BoolValue",
    "NullValue",
    "ListValue",
    "MapValue",
    "InputDocument",
    "to_input_value",
    # Request types
    "OutputFormat",
    "CompileOptions",
    "CompileRequest",
    # Result types
    "SourceSpan",
    "TracePoint",
    "Diagnostic",
    "Artifact",
    "CompileError",
    "CompileResult",
    # Platform
    "ABI_VERSION",
    "PlatformKey",
    "current_platform_key",
    "BinaryManifest",
    "ManifestEntry",
]
