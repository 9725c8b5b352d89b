"""Process-isolated call bridge.

Each native call runs in a freshly spawned worker process. A crash of the engine (segfault,
abort) only kills the worker and is reported to the caller as a native fault; the parent's
handle and every concurrent call stay intact.
"""

from __future__ import annotations

import multiprocessing as mp
import signal
from typing import Any, Callable, Dict, Optional, Tuple

from typst_bridge.data import CompileRequest
from typst_bridge.errors import (
    BridgeError,
    CompileTimeoutError,
    ErrorKind,
    NativeFaultError,
    error_class_for,
)
from typst_bridge.logging import get_logger

from .bridge import CallBridge, invoke_native
from .loader import NativeHandle, NativeModuleLoader

LOGGER = get_logger("IsolatedCallBridge")

WorkerTarget = Callable[[Any, Dict[str, Any]], None]

_JOIN_TIMEOUT_S = 2.0


def _native_worker_main(conn: Any, job: Dict[str, Any]) -> None:
    """Worker process: load the engine, run one compile, send the raw result back.

    Parameters
    ----------
    conn : multiprocessing.connection.Connection
        Write end of the pipe to the parent.
    job : Dict[str, Any]
        ``library_path``, ``markup``, ``input``, ``format`` and ``options``.
    """
    try:
        handle = NativeModuleLoader().load(job["library_path"])
        status, payload = invoke_native(
            handle.lib, job["markup"], job["input"], job["format"], job["options"]
        )
        conn.send({"cmd": "RESULT", "status": status, "payload": payload})
    except BridgeError as e:
        conn.send({"cmd": "ERROR", "kind": e.kind.value, "msg": e.message})
    except Exception as e:
        conn.send({"cmd": "ERROR", "kind": ErrorKind.NATIVE_FAULT.value, "msg": repr(e)})
    finally:
        conn.close()


class IsolatedCallBridge(CallBridge):
    """Call bridge running every native call in its own ``spawn`` worker process.

    Faults never invalidate the parent's handle because the faulting engine state dies with the
    worker. Timeouts terminate the worker, so unlike the in-process bridge they do stop the
    native work.
    """

    def __init__(self, handle: NativeHandle, worker_target: Optional[WorkerTarget] = None) -> None:
        """Initialize the isolated bridge.

        Parameters
        ----------
        handle : NativeHandle
            The loaded engine module; the worker loads the same file.
        worker_target : Optional[WorkerTarget]
            Worker entry point. Must be importable by a spawned interpreter.
        """
        super().__init__(handle, on_fault=None)
        self._worker_target = worker_target or _native_worker_main
        self._ctx = mp.get_context("spawn")

    def _call_with_timeout(
        self,
        request: CompileRequest,
        markup: bytes,
        input_data: bytes,
        format_code: int,
        options: bytes,
    ) -> Tuple[int, bytes]:
        # The worker enforces the timeout itself by being terminated
        return self._call(markup, input_data, format_code, options, request.options.timeout)

    def _call(
        self,
        markup: bytes,
        input_data: bytes,
        format_code: int,
        options: bytes,
        timeout: Optional[float],
    ) -> Tuple[int, bytes]:
        job = {
            "library_path": str(self.handle.path),
            "markup": markup,
            "input": input_data,
            "format": format_code,
            "options": options,
        }
        parent_conn, child_conn = self._ctx.Pipe(duplex=False)
        proc = self._ctx.Process(target=self._worker_target, args=(child_conn, job), daemon=True)
        proc.start()
        child_conn.close()

        msg: Optional[Dict[str, Any]] = None
        timed_out = False
        try:
            if parent_conn.poll(timeout):
                msg = parent_conn.recv()
            else:
                timed_out = True
        except EOFError:
            LOGGER.error("Native worker exited without a result")
        finally:
            parent_conn.close()
            if timed_out:
                proc.terminate()
            proc.join(timeout=_JOIN_TIMEOUT_S)
            if proc.is_alive():
                proc.kill()
                proc.join()

        if timed_out:
            raise CompileTimeoutError(
                f"Compile did not finish within {timeout:g}s; the worker process was terminated"
            )
        if msg is None:
            raise NativeFaultError(_describe_exit(proc.exitcode))

        cmd = msg.get("cmd")
        if cmd == "RESULT":
            return int(msg["status"]), bytes(msg["payload"])
        if cmd == "ERROR":
            kind = ErrorKind(msg.get("kind", ErrorKind.NATIVE_FAULT.value))
            raise error_class_for(kind)(msg.get("msg", "Unknown worker error"))
        raise NativeFaultError(f"Unknown worker message: {cmd!r}")

    def _report_fault(self, fault: NativeFaultError) -> None:
        LOGGER.error(f"Native fault in isolated worker: {fault.message}")


def _describe_exit(exitcode: Optional[int]) -> str:
    if exitcode is None:
        return "Native worker did not exit"
    if exitcode < 0:
        try:
            name = signal.Signals(-exitcode).name
        except ValueError:
            name = f"signal {-exitcode}"
        return f"Native worker terminated by {name}"
    return f"Native worker exited with code {exitcode} without a result"
