"""Wire codec between host values and the byte payloads of the native ABI."""

from __future__ import annotations

import json
import re
from typing import Any, Dict, List, Optional, Sequence, Tuple

from pydantic import ValidationError

from typst_bridge.data import CompileOptions, Diagnostic, InputDocument, SourceSpan, TracePoint
from typst_bridge.errors import InvalidInputError
from typst_bridge.logging import get_logger

logger = get_logger("Codec")

_LEGACY_HEADER = "compile error:"
_LEGACY_STACKTRACE = "stacktrace:"
_LEGACY_ITEM_RE = re.compile(r"(?<!\d)(\d+):(\d+) ")


def encode_input(document: InputDocument) -> bytes:
    """Serialize the input document to compact UTF-8 JSON.

    Map key order is kept, integers stay integers, booleans stay booleans and nested structure
    is kept as is.

    Raises
    ------
    InvalidInputError
        If the document cannot be represented as JSON.
    """
    try:
        text = json.dumps(
            document.to_python(), ensure_ascii=False, allow_nan=False, separators=(",", ":")
        )
    except (TypeError, ValueError) as e:
        raise InvalidInputError(f"Input data cannot be serialized: {e}") from e
    return text.encode("utf-8")


def encode_options(options: CompileOptions, font_files: Sequence[str] = ()) -> bytes:
    """Serialize compile options, adding the bundled font files the engine should index."""
    payload: Dict[str, Any] = {
        "main": options.main_path,
        "root": str(options.root) if options.root is not None else None,
        "font_paths": [str(p) for p in options.font_paths],
        "font_files": list(font_files),
        "include_system_fonts": options.include_system_fonts,
        "ppi": options.ppi,
    }
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":")).encode("utf-8")


def decode_diagnostics(
    payload: bytes, main_path: str = "main.typ"
) -> Tuple[str, List[Diagnostic]]:
    """Decode an error payload returned by the engine.

    Two forms are understood: the structured JSON form
    ``{"message": ..., "diagnostics": [{"severity", "message", "span", "trace", "hints"}]}``
    and the plain-text form ``compile error:\\n<start>:<end> <message>`` with optional
    ``stacktrace:`` sections. Anything else becomes a single diagnostic without a span.

    Parameters
    ----------
    payload : bytes
        The raw payload copied out of the native buffer.
    main_path : str
        File name used for spans of the plain-text form, which carries no file names.

    Returns
    -------
    Tuple[str, List[Diagnostic]]
        A summary message and the diagnostics.
    """
    text = payload.decode("utf-8", errors="replace")
    stripped = text.strip()

    if stripped.startswith("{"):
        decoded = _decode_json(stripped)
        if decoded is not None:
            return decoded

    if stripped.startswith(_LEGACY_HEADER):
        diagnostics = _decode_legacy(stripped[len(_LEGACY_HEADER) :], main_path)
        if diagnostics:
            return _summary(diagnostics), diagnostics

    message = stripped or "compile failed without a message"
    return message, [Diagnostic(message=message)]


def _decode_json(text: str) -> Optional[Tuple[str, List[Diagnostic]]]:
    try:
        data = json.loads(text)
    except ValueError:
        logger.debug("Error payload looks like JSON but does not parse")
        return None
    if not isinstance(data, dict):
        return None

    raw_diagnostics = data.get("diagnostics") or []
    diagnostics: List[Diagnostic] = []
    try:
        for item in raw_diagnostics:
            diagnostics.append(Diagnostic.model_validate(item))
    except ValidationError as e:
        logger.warning(f"Malformed diagnostic in engine payload: {e}")
        return None

    message = data.get("message")
    if not isinstance(message, str) or not message:
        if not diagnostics:
            return None
        message = _summary(diagnostics)
    if not diagnostics:
        diagnostics = [Diagnostic(message=message)]
    return message, diagnostics


def _decode_legacy(body: str, main_path: str) -> List[Diagnostic]:
    """Split the plain-text form on its ``<start>:<end> `` markers.

    Errors follow each other without a separator. An error message ending in ``stacktrace:``
    is followed by its trace points, each prefixed with two spaces.
    """
    body = body.lstrip()
    markers = [
        m for m in _LEGACY_ITEM_RE.finditer(body) if int(m.group(1)) <= int(m.group(2))
    ]
    if not markers or markers[0].start() != 0:
        return []

    entries: List[Tuple[int, int, str, List[TracePoint]]] = []
    in_trace = False
    for i, marker in enumerate(markers):
        text_end = markers[i + 1].start() if i + 1 < len(markers) else len(body)
        message = body[marker.end() : text_end].rstrip()
        start, end = int(marker.group(1)), int(marker.group(2))
        is_trace_point = in_trace and body[max(0, marker.start() - 2) : marker.start()] == "  "

        if is_trace_point:
            span = SourceSpan(file=main_path, start=start, end=end)
            entries[-1][3].append(TracePoint(message=message, span=span))
            continue

        in_trace = message.endswith(_LEGACY_STACKTRACE)
        if in_trace:
            message = message[: -len(_LEGACY_STACKTRACE)].rstrip()
        entries.append((start, end, message, []))

    return [
        Diagnostic(
            message=message,
            span=SourceSpan(file=main_path, start=start, end=end),
            trace=trace,
        )
        for start, end, message, trace in entries
    ]


def _summary(diagnostics: List[Diagnostic]) -> str:
    errors = [d for d in diagnostics if d.severity == "error"] or diagnostics
    if len(errors) == 1:
        return errors[0].message
    return f"{errors[0].message} (and {len(errors) - 1} more errors)"
