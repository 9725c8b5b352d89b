"""Resource registry: a process-wide, read-only index of the bundled fonts."""

from __future__ import annotations

import threading
from pathlib import Path
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Tuple

from pydantic import Field, PrivateAttr

from typst_bridge.data.utils import FrozenModel, NonEmptyString
from typst_bridge.errors import ResourceInitError
from typst_bridge.logging import get_logger

logger = get_logger("ResourceRegistry")

FONT_EXTENSIONS = frozenset({".ttf", ".otf", ".ttc", ".otc"})
"""Font file extensions, matched case-insensitively."""

FONT_MAGICS: Tuple[bytes, ...] = (b"\x00\x01\x00\x00", b"OTTO", b"true", b"ttcf")
"""Leading bytes of TrueType, OpenType/CFF, Apple TrueType and font collection files."""

FONTS_DIR_NAME = "fonts"
OPTIONAL_FONTS_DIR_NAME = "extra"


class FontAsset(FrozenModel):
    """One font file of the bundle."""

    family: NonEmptyString
    style: NonEmptyString
    path: Path
    size: int = Field(ge=0)
    required: bool = True


class ResourceBundle(FrozenModel):
    """Immutable set of bundled fonts, shared by all compile calls."""

    root: Path
    fonts: Tuple[FontAsset, ...] = ()
    warnings: Tuple[str, ...] = ()
    """Problems with optional resources that were skipped."""

    _index: Mapping[Tuple[str, str], FontAsset] = PrivateAttr()

    def model_post_init(self, __context: object) -> None:
        index: Dict[Tuple[str, str], FontAsset] = {}
        for font in self.fonts:
            index.setdefault((font.family.lower(), font.style.lower()), font)
        self._index = MappingProxyType(index)

    @property
    def font_files(self) -> List[str]:
        """Paths of all font files, in discovery order, for the engine."""
        return [str(font.path) for font in self.fonts]

    @property
    def families(self) -> List[str]:
        seen: Dict[str, None] = {}
        for font in self.fonts:
            seen.setdefault(font.family, None)
        return list(seen)

    def find(self, family: str, style: str = "Regular") -> Optional[FontAsset]:
        """Look up a font by family and style, case-insensitively."""
        return self._index.get((family.lower(), style.lower()))

    def __len__(self) -> int:
        return len(self.fonts)


def parse_font_name(path: Path) -> Tuple[str, str]:
    """Split a ``Family-Style.ext`` file name into family and style.

    A name without a dash is the ``Regular`` style of its family.
    """
    stem = path.stem
    family, sep, style = stem.rpartition("-")
    if not sep or not family:
        return stem, "Regular"
    return family, style or "Regular"


def is_font_file(path: Path) -> bool:
    return path.suffix.lower() in FONT_EXTENSIONS


def validate_font_file(path: Path) -> int:
    """Check that ``path`` is a readable font file and return its size.

    Raises
    ------
    OSError
        If the file cannot be read.
    ValueError
        If the file does not start with a known font signature.
    """
    with open(path, "rb") as f:
        magic = f.read(4)
    if magic not in FONT_MAGICS:
        raise ValueError(f"{path} is not a TrueType/OpenType font (header {magic!r})")
    return path.stat().st_size


class ResourceRegistry:
    """Builds the :class:`ResourceBundle` once, lazily, and shares it read-only.

    Layout under ``root``::

        fonts/                 required fonts, each must be a valid font file
        fonts/extra/**         optional fonts, invalid ones are skipped with a warning

    Initialization is idempotent and thread-safe. A failure is sticky until :meth:`reset`.
    """

    def __init__(self, root: Path, include_optional: bool = True) -> None:
        self._root = Path(root)
        self._include_optional = include_optional
        self._lock = threading.Lock()
        self._bundle: Optional[ResourceBundle] = None
        self._error: Optional[ResourceInitError] = None

    @property
    def root(self) -> Path:
        return self._root

    def init(self) -> ResourceBundle:
        """Return the bundle, building it on first use.

        Raises
        ------
        ResourceInitError
            If the fonts directory is missing or a required font is unreadable or invalid.
        """
        bundle = self._bundle
        if bundle is not None:
            return bundle
        with self._lock:
            if self._bundle is not None:
                return self._bundle
            if self._error is not None:
                raise self._error
            try:
                self._bundle = self._scan()
            except ResourceInitError as e:
                self._error = e
                raise
            return self._bundle

    def reset(self) -> None:
        with self._lock:
            self._bundle = None
            self._error = None

    def _scan(self) -> ResourceBundle:
        fonts_dir = self._root / FONTS_DIR_NAME
        if not fonts_dir.is_dir():
            raise ResourceInitError(f"Font directory {fonts_dir} does not exist")

        fonts: List[FontAsset] = []
        warnings: List[str] = []

        for path in sorted(p for p in fonts_dir.iterdir() if p.is_file() and is_font_file(p)):
            try:
                size = validate_font_file(path)
            except (OSError, ValueError) as e:
                raise ResourceInitError(f"Cannot use required font {path}: {e}") from e
            family, style = parse_font_name(path)
            fonts.append(FontAsset(family=family, style=style, path=path, size=size))

        optional_dir = fonts_dir / OPTIONAL_FONTS_DIR_NAME
        if self._include_optional and optional_dir.is_dir():
            candidates = (p for p in optional_dir.rglob("*") if p.is_file() and is_font_file(p))
            for path in sorted(candidates):
                try:
                    size = validate_font_file(path)
                except (OSError, ValueError) as e:
                    message = f"Skipping optional font {path}: {e}"
                    logger.warning(message)
                    warnings.append(message)
                    continue
                family, style = parse_font_name(path)
                fonts.append(
                    FontAsset(family=family, style=style, path=path, size=size, required=False)
                )

        logger.info(f"Indexed {len(fonts)} bundled fonts under {fonts_dir}")
        return ResourceBundle(root=self._root, fonts=tuple(fonts), warnings=tuple(warnings))
