import json
import os
import re
import threading
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import pytest

from typst_bridge.native.abi import ffi
from typst_bridge.native.loader import NativeHandle


def _native_library_available() -> bool:
    """Check if a real engine binary was provided.

    Returns
    -------
    bool
        True if ``TYPST_BRIDGE_LIBRARY_PATH`` points to an existing file, False otherwise.
    """
    value = os.environ.get("TYPST_BRIDGE_LIBRARY_PATH")
    return bool(value) and Path(value).is_file()


def pytest_collection_modifyitems(config: pytest.Config, items: List[pytest.Item]) -> None:
    """Skip tests that need a real engine when no binary is configured."""
    if _native_library_available():
        return

    skip_native = pytest.mark.skip(reason="TYPST_BRIDGE_LIBRARY_PATH not set, skip test")
    for item in items:
        if any(item.iter_markers(name="requires_native")):
            item.add_marker(skip_native)


@pytest.fixture
def tmp_cache_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Use isolated temporary directory for the binary cache.

    This fixture sets TYPST_BRIDGE_CACHE_PATH to a unique temporary directory for each test and
    clears TYPST_BRIDGE_LIBRARY_PATH so resolution goes through the manifest.
    """
    cache_dir = tmp_path / "cache"
    monkeypatch.setenv("TYPST_BRIDGE_CACHE_PATH", str(cache_dir))
    monkeypatch.delenv("TYPST_BRIDGE_LIBRARY_PATH", raising=False)
    return cache_dir


_BINDING_RE = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")


class FakeEngine:
    """In-memory engine module speaking the native ABI through real cffi objects.

    ``{{name}}`` placeholders in the markup are replaced with the input binding of that name.
    A missing binding is a compile error with a span over the placeholder. Output is a minimal
    but well-formed-looking document of the requested format.
    """

    def __init__(self, abi_version: int = 1, reentrant: bool = True) -> None:
        self.abi_version = abi_version
        self.reentrant = reentrant
        self.forced: Optional[Tuple[int, bytes]] = None
        self.delay = 0.0
        self.calls: List[Dict[str, Any]] = []
        self.freed = 0
        self._live: Dict[int, Any] = {}
        self._lock = threading.Lock()
        self._version = ffi.new("char[]", b"fake-typst 0.13.0")

    # Entry points

    def typst_bridge_abi_version(self) -> int:
        return self.abi_version

    def typst_bridge_engine_version(self) -> Any:
        return ffi.cast("char *", self._version)

    def typst_bridge_is_reentrant(self) -> int:
        return 1 if self.reentrant else 0

    def typst_bridge_compile(
        self,
        markup: Any,
        markup_len: int,
        input_data: Any,
        input_len: int,
        format_code: int,
        options: Any,
        options_len: int,
        out: Any,
    ) -> int:
        markup_bytes = ffi.buffer(markup, markup_len)[:]
        input_bytes = ffi.buffer(input_data, input_len)[:]
        options_dict = json.loads(ffi.buffer(options, options_len)[:].decode("utf-8"))
        with self._lock:
            self.calls.append(
                {
                    "markup": markup_bytes,
                    "input": input_bytes,
                    "format": format_code,
                    "options": options_dict,
                }
            )
        if self.delay:
            time.sleep(self.delay)
        if self.forced is not None:
            status, payload = self.forced
        else:
            status, payload = self._render(markup_bytes, input_bytes, format_code, options_dict)
        self._emit(out, payload)
        return status

    def typst_bridge_free_buffer(self, buf: Any) -> None:
        key = _address(buf.data)
        with self._lock:
            self._live.pop(key)
            self.freed += 1
        buf.data = ffi.NULL
        buf.len = 0

    # Helpers

    @property
    def live_buffers(self) -> int:
        return len(self._live)

    def _emit(self, out: Any, payload: bytes) -> None:
        if not payload:
            out.data = ffi.NULL
            out.len = 0
            return
        buf = ffi.new("uint8_t[]", payload)
        with self._lock:
            self._live[_address(buf)] = buf
        out.data = buf
        out.len = len(payload)

    def _render(
        self, markup: bytes, input_bytes: bytes, format_code: int, options: Dict[str, Any]
    ) -> Tuple[int, bytes]:
        data = json.loads(input_bytes.decode("utf-8"))
        text = markup.decode("utf-8")
        for match in _BINDING_RE.finditer(text):
            if match.group(1) not in data:
                start = len(text[: match.start()].encode("utf-8"))
                end = len(text[: match.end()].encode("utf-8"))
                error = {
                    "message": f"unknown variable: {match.group(1)}",
                    "diagnostics": [
                        {
                            "severity": "error",
                            "message": f"unknown variable: {match.group(1)}",
                            "span": {"file": options["main"], "start": start, "end": end},
                            "hints": ["bind it in the input data"],
                        }
                    ],
                }
                return 1, json.dumps(error).encode("utf-8")

        body = _BINDING_RE.sub(lambda m: _display(data[m.group(1)]), text).encode("utf-8")
        if format_code == 0:
            return 0, b"%PDF-1.7\n" + body + b"\n%%EOF\n"
        if format_code == 1:
            return 0, b'<svg xmlns="http://www.w3.org/2000/svg"><text>' + body + b"</text></svg>"
        if format_code == 2:
            return 0, b"\x89PNG\r\n\x1a\n" + body
        return 3, b""


def _address(ptr: Any) -> int:
    return int(ffi.cast("uintptr_t", ffi.cast("uint8_t *", ptr)))


def _display(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, separators=(",", ":"))


@pytest.fixture
def fake_engine_cls() -> type:
    """The fake engine class, for tests that subclass it."""
    return FakeEngine


@pytest.fixture
def fake_engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def fake_handle(fake_engine: FakeEngine) -> NativeHandle:
    return NativeHandle(
        fake_engine,
        Path("/opt/typst_bridge/libtypst_bridge-fake.so"),
        fake_engine.abi_version,
        "fake-typst 0.13.0",
        fake_engine.reentrant,
    )


@pytest.fixture
def font_root(tmp_path: Path) -> Path:
    """Resource root with two valid required fonts."""
    root = tmp_path / "resources"
    fonts = root / "fonts"
    fonts.mkdir(parents=True)
    (fonts / "Inter-Regular.ttf").write_bytes(b"\x00\x01\x00\x00" + b"\x00" * 60)
    (fonts / "Inter-Bold.otf").write_bytes(b"OTTO" + b"\x00" * 60)
    return root
