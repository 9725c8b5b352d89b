"""Call bridge: marshals a compile request across the native boundary and back."""

from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Callable, Optional, Tuple

from typst_bridge.data import Artifact, CompileRequest, CompileResult
from typst_bridge.errors import (
    BridgeError,
    CompileFailedError,
    CompileTimeoutError,
    InvalidInputError,
    NativeFaultError,
    UnsupportedFormatError,
)
from typst_bridge.logging import get_logger
from typst_bridge.resources import ResourceBundle

from .abi import NativeStatus, ffi
from .codec import decode_diagnostics, encode_input, encode_options
from .loader import NativeHandle

logger = get_logger("CallBridge")

_NATIVE_CALL_LOCK = threading.Lock()
"""Serializes calls into engines that are not reentrant. Process-wide, like the handle."""

FaultHandler = Callable[[NativeFaultError], None]


def invoke_native(
    lib: Any, markup: bytes, input_data: bytes, format_code: int, options: bytes
) -> Tuple[int, bytes]:
    """Call ``typst_bridge_compile`` and take ownership of the returned buffer.

    All inputs are passed as pointer + length, so embedded NUL bytes survive. The returned
    buffer is copied into a Python ``bytes`` object and handed back to the engine's free
    function before this function returns; no reference into native memory escapes.

    Parameters
    ----------
    lib : Any
        The cffi library object.
    markup : bytes
        UTF-8 markup.
    input_data : bytes
        Encoded input document.
    format_code : int
        Native output format code.
    options : bytes
        Encoded compile options.

    Returns
    -------
    Tuple[int, bytes]
        The raw status code and a host-owned copy of the payload.

    Raises
    ------
    NativeFaultError
        If the engine returned a NULL buffer with a non-zero length.
    """
    out = ffi.new("tb_buffer *")
    markup_buf = ffi.from_buffer("uint8_t[]", markup)
    input_buf = ffi.from_buffer("uint8_t[]", input_data)
    options_buf = ffi.from_buffer("uint8_t[]", options)

    status = int(
        lib.typst_bridge_compile(
            markup_buf,
            len(markup),
            input_buf,
            len(input_data),
            format_code,
            options_buf,
            len(options),
            out,
        )
    )
    try:
        if out.data == ffi.NULL:
            if out.len != 0:
                raise NativeFaultError(
                    f"Engine returned a NULL buffer of length {out.len} (status {status})"
                )
            payload = b""
        else:
            payload = ffi.buffer(out.data, out.len)[:]
    finally:
        if out.data != ffi.NULL:
            lib.typst_bridge_free_buffer(out)
    return status, payload


class CallBridge:
    """Invokes the engine for one request at a time per caller.

    The bridge holds no per-call state. If the engine reports that it is not reentrant, every
    native call goes through one process-wide lock; otherwise calls run in parallel.

    When a call ends in a native fault, ``on_fault`` is notified before the error is raised so
    the owner can invalidate the shared handle.
    """

    def __init__(self, handle: NativeHandle, on_fault: Optional[FaultHandler] = None) -> None:
        """Initialize the bridge.

        Parameters
        ----------
        handle : NativeHandle
            The loaded engine module.
        on_fault : Optional[FaultHandler]
            Called with the fault when a native call terminates abnormally.
        """
        self._handle = handle
        self._on_fault = on_fault
        self._serial_lock: Optional[threading.Lock] = (
            None if handle.reentrant else _NATIVE_CALL_LOCK
        )

    @property
    def handle(self) -> NativeHandle:
        return self._handle

    def invoke(self, request: CompileRequest, bundle: Optional[ResourceBundle] = None) -> Artifact:
        """Compile ``request`` and return the artifact.

        Parameters
        ----------
        request : CompileRequest
            The validated request.
        bundle : Optional[ResourceBundle]
            Bundled fonts to pass to the engine.

        Returns
        -------
        Artifact
            The host-owned artifact.

        Raises
        ------
        CompileFailedError
            If the engine reports compile errors.
        InvalidInputError
            If the input data cannot be used.
        UnsupportedFormatError
            If the engine build cannot produce the requested format.
        CompileTimeoutError
            If the advisory timeout elapsed.
        NativeFaultError
            If the engine terminated abnormally or broke the ABI contract.
        """
        output_format = request.output_format
        markup = request.markup_bytes
        input_data = encode_input(request.input_data)
        font_files = bundle.font_files if bundle is not None else []
        options = encode_options(request.options, font_files)

        try:
            status, payload = self._call_with_timeout(
                request, markup, input_data, output_format.native_code, options
            )
            return self._interpret(status, payload, request)
        except NativeFaultError as fault:
            self._report_fault(fault)
            raise

    def invoke_result(
        self, request: CompileRequest, bundle: Optional[ResourceBundle] = None
    ) -> CompileResult:
        """Like :meth:`invoke` but returns errors as ``CompileError`` values."""
        try:
            return self.invoke(request, bundle)
        except BridgeError as e:
            return e.to_result()

    def _call_with_timeout(
        self,
        request: CompileRequest,
        markup: bytes,
        input_data: bytes,
        format_code: int,
        options: bytes,
    ) -> Tuple[int, bytes]:
        timeout = request.options.timeout
        if timeout is None:
            return self._call(markup, input_data, format_code, options, None)

        # The native call cannot be interrupted; it keeps running in the worker thread.
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="typst-bridge-call")
        try:
            future = executor.submit(
                self._call, markup, input_data, format_code, options, timeout
            )
            try:
                return future.result(timeout=timeout)
            except FutureTimeoutError as e:
                future.add_done_callback(lambda done: self._settle_abandoned(done, request))
                raise CompileTimeoutError(
                    f"Compile did not finish within {timeout:g}s; the native call continues in "
                    "the background"
                ) from e
        finally:
            executor.shutdown(wait=False)

    def _settle_abandoned(
        self, future: "Future[Tuple[int, bytes]]", request: CompileRequest
    ) -> None:
        """Interpret the outcome of a call whose caller already timed out.

        Faults still reach ``on_fault``; any other outcome has no caller left and is dropped.
        """
        try:
            status, payload = future.result()
            self._interpret(status, payload, request)
        except NativeFaultError as fault:
            self._report_fault(fault)
        except BridgeError as e:
            logger.debug(f"Dropping result of timed-out call: {e.message}")

    def _call(
        self,
        markup: bytes,
        input_data: bytes,
        format_code: int,
        options: bytes,
        timeout: Optional[float],
    ) -> Tuple[int, bytes]:
        if self._serial_lock is None:
            return invoke_native(self._handle.lib, markup, input_data, format_code, options)
        with self._serial_lock:
            return invoke_native(self._handle.lib, markup, input_data, format_code, options)

    def _interpret(self, status: int, payload: bytes, request: CompileRequest) -> Artifact:
        output_format = request.output_format
        main_path = request.options.main_path

        if status == NativeStatus.OK:
            if not payload:
                raise CompileFailedError(f"Engine returned an empty {output_format.value} artifact")
            return Artifact(data=payload, format=output_format)
        if status == NativeStatus.COMPILE_ERROR:
            message, diagnostics = decode_diagnostics(payload, main_path)
            raise CompileFailedError(message, diagnostics)
        if status == NativeStatus.INVALID_INPUT:
            message, diagnostics = decode_diagnostics(payload, main_path)
            raise InvalidInputError(message, diagnostics)
        if status == NativeStatus.UNSUPPORTED_FORMAT:
            raise UnsupportedFormatError(
                f"Engine {self._handle.engine_version or '(unknown version)'} cannot produce "
                f"{output_format.value} output"
            )
        if status == NativeStatus.PANIC:
            message = payload.decode("utf-8", errors="replace").strip() or "engine panicked"
            raise NativeFaultError(f"Engine panicked: {message}")
        raise NativeFaultError(f"Engine returned undocumented status {status}")

    def _report_fault(self, fault: NativeFaultError) -> None:
        logger.error(f"Native fault: {fault.message}")
        if self._on_fault is not None:
            self._on_fault(fault)
