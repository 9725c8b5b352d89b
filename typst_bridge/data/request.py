"""Strong-typed compile request definitions."""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Any, Mapping, Optional, Tuple, Union

from pydantic import Field, StrictStr, field_validator

from typst_bridge.errors import UnsupportedFormatError

from .utils import FrozenModel, NonEmptyString
from .value import InputDocument, MapValue


class OutputFormat(str, Enum):
    """Artifact formats the native engine can produce.

    The enumeration is closed: there is no fallback format, unknown names are rejected.
    """

    PDF = "pdf"
    """Portable Document Format, one file for the whole document."""
    SVG = "svg"
    """Scalable Vector Graphics of the first page."""
    PNG = "png"
    """Raster image of the first page, resolution controlled by ``CompileOptions.ppi``."""

    @property
    def native_code(self) -> int:
        """The value of the format in the native module's enumeration."""
        return _NATIVE_CODES[self]

    @property
    def is_raster(self) -> bool:
        return self is OutputFormat.PNG

    @classmethod
    def parse(cls, value: Union["OutputFormat", str]) -> "OutputFormat":
        """Parse a format selector case-insensitively.

        Parameters
        ----------
        value : Union[OutputFormat, str]
            An ``OutputFormat`` or its name/value, e.g. ``"PDF"`` or ``"pdf"``.

        Returns
        -------
        OutputFormat
            The matching format.

        Raises
        ------
        UnsupportedFormatError
            If the value names no supported format.
        """
        if isinstance(value, OutputFormat):
            return value
        if isinstance(value, str):
            normalized = value.strip().lower().lstrip(".")
            for fmt in cls:
                if fmt.value == normalized:
                    return fmt
        supported = ", ".join(fmt.value for fmt in cls)
        raise UnsupportedFormatError(
            f"Unsupported output format {value!r}. Supported formats: {supported}"
        )


_NATIVE_CODES = {OutputFormat.PDF: 0, OutputFormat.SVG: 1, OutputFormat.PNG: 2}


class CompileOptions(FrozenModel):
    """Recognized compile options."""

    root: Optional[Path] = None
    """Root directory for relative includes and file reads. Defaults to the working
    directory of the engine."""
    font_paths: Tuple[Path, ...] = ()
    """Extra directories searched recursively for fonts, on top of the bundled fonts."""
    ppi: Optional[float] = Field(default=None, gt=0)
    """Pixels per inch for raster formats. Ignored for PDF and SVG."""
    include_system_fonts: bool = True
    """Whether the engine also searches the operating system's font directories."""
    timeout: Optional[float] = Field(default=None, gt=0)
    """Advisory timeout in seconds. The native call is not interruptible; when the timeout
    elapses the caller gets an error while the call finishes in the background."""
    main_path: NonEmptyString = "main.typ"
    """Virtual file name of the markup, used in diagnostics."""


class CompileRequest(FrozenModel):
    """One compile attempt. Immutable once validated."""

    markup: StrictStr
    """Typst markup. May be empty; the engine decides what an empty document means."""
    input_data: InputDocument = Field(default_factory=InputDocument)
    """Bindings made available to the markup, in order."""
    output_format: OutputFormat = OutputFormat.PDF
    """The artifact format to produce."""
    options: CompileOptions = Field(default_factory=CompileOptions)
    """Compile options."""

    @field_validator("output_format", mode="before")
    @classmethod
    def _parse_output_format(cls, value: Any) -> OutputFormat:
        return OutputFormat.parse(value)

    @field_validator("input_data", mode="before")
    @classmethod
    def _convert_input_data(cls, value: Any) -> Any:
        if isinstance(value, InputDocument):
            return value
        if value is None or isinstance(value, (Mapping, MapValue)):
            return InputDocument.from_python(value)
        return value

    @property
    def markup_bytes(self) -> bytes:
        return self.markup.encode("utf-8")
