"""Compile results: either an artifact or a typed error, never both."""

from __future__ import annotations

from typing import List, Literal, Optional, Union

from pydantic import ConfigDict, Field, NonNegativeInt, model_validator

from typst_bridge.errors import BridgeError, ErrorKind, error_class_for

from .request import OutputFormat
from .utils import FrozenModel


class _PayloadModel(FrozenModel):
    """Frozen model decoded from engine payloads; unknown fields are ignored."""

    model_config = ConfigDict(extra="ignore")


class SourceSpan(_PayloadModel):
    """A byte range in a source file."""

    file: str
    """Virtual path of the file the span points into (``main.typ`` for the markup)."""
    start: NonNegativeInt
    """Start byte offset, inclusive."""
    end: NonNegativeInt
    """End byte offset, exclusive."""
    line: Optional[NonNegativeInt] = None
    """Zero-based line of ``start`` when the engine reports it."""
    column: Optional[NonNegativeInt] = None
    """Zero-based column of ``start`` when the engine reports it."""

    @model_validator(mode="after")
    def _validate_range(self) -> "SourceSpan":
        if self.end < self.start:
            raise ValueError(f"Span end {self.end} is before start {self.start}")
        return self

    def excerpt(self, text: str) -> str:
        """The part of ``text`` covered by this span."""
        return text.encode("utf-8")[self.start : self.end].decode("utf-8", errors="replace")

    def __str__(self) -> str:
        if self.line is not None and self.column is not None:
            return f"{self.file}:{self.line + 1}:{self.column + 1}"
        return f"{self.file}:{self.start}-{self.end}"


class TracePoint(_PayloadModel):
    message: str
    span: Optional[SourceSpan] = None


class Diagnostic(_PayloadModel):
    """One message reported by the engine."""

    severity: Literal["error", "warning"] = "error"
    message: str
    span: Optional[SourceSpan] = None
    trace: List[TracePoint] = Field(default_factory=list)
    """Call stack leading to the error, innermost first."""
    hints: List[str] = Field(default_factory=list)

    def format(self) -> str:
        location = f"{self.span}: " if self.span is not None else ""
        lines = [f"{location}{self.severity}: {self.message}"]
        for point in self.trace:
            if point.span is not None:
                lines.append(f"    at {point.span}: {point.message}")
            else:
                lines.append(f"    {point.message}")
        lines.extend(f"    hint: {hint}" for hint in self.hints)
        return "\n".join(lines)


class Artifact(FrozenModel):
    """The rendered output of a successful compile."""

    kind: Literal["artifact"] = "artifact"
    data: bytes
    """Artifact bytes, owned by the host."""
    format: OutputFormat

    def __bytes__(self) -> bytes:
        return self.data

    def __len__(self) -> int:
        return len(self.data)


class CompileError(FrozenModel):
    """The value form of a failed compile."""

    kind: ErrorKind
    message: str
    diagnostics: List[Diagnostic] = Field(default_factory=list)

    @property
    def spans(self) -> List[SourceSpan]:
        return [d.span for d in self.diagnostics if d.span is not None]

    def to_exception(self) -> BridgeError:
        """Rebuild the exception that corresponds to this error."""
        cls = error_class_for(self.kind)
        if self.kind in (ErrorKind.COMPILE_FAILED, ErrorKind.INVALID_INPUT):
            return cls(self.message, self.diagnostics)
        return cls(self.message)


CompileResult = Union[Artifact, CompileError]
"""Exactly one of an artifact or an error."""
