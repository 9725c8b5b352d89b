"""Tests for IsolatedCallBridge.

Worker targets live at module level so spawned interpreters can import them.
"""

import multiprocessing as mp
import os
import signal
import sys
import time
from pathlib import Path

import pytest

from typst_bridge.data import Artifact, CompileRequest
from typst_bridge.errors import (
    CompileFailedError,
    CompileTimeoutError,
    ErrorKind,
    LoadFailedError,
    NativeFaultError,
)
from typst_bridge.native import IsolatedCallBridge, NativeHandle, NativeModuleLoader
from typst_bridge.native import isolated as isolated_module

HANDLE = NativeHandle(None, Path("/opt/typst_bridge/libtypst_bridge.so"), 1, "0.13.0", False)


def _echo_worker(conn, job):
    conn.send({"cmd": "RESULT", "status": 0, "payload": b"%PDF-" + job["markup"]})
    conn.close()


def _compile_error_worker(conn, job):
    conn.send({"cmd": "ERROR", "kind": "compile_failed", "msg": "unknown variable: name"})
    conn.close()


def _killed_worker(conn, job):
    os.kill(os.getpid(), signal.SIGKILL)


def _exiting_worker(conn, job):
    os._exit(3)


def _hanging_worker(conn, job):
    time.sleep(30)


def _request(markup: str = "doc", **options) -> CompileRequest:
    return CompileRequest(markup=markup, options=options)


def test_result_from_worker():
    bridge = IsolatedCallBridge(HANDLE, worker_target=_echo_worker)
    artifact = bridge.invoke(_request("hello\x00world"))
    assert isinstance(artifact, Artifact)
    assert artifact.data == b"%PDF-hello\x00world"


def test_error_from_worker():
    bridge = IsolatedCallBridge(HANDLE, worker_target=_compile_error_worker)
    with pytest.raises(CompileFailedError, match="unknown variable"):
        bridge.invoke(_request())


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals only")
def test_crash_is_a_native_fault():
    bridge = IsolatedCallBridge(HANDLE, worker_target=_killed_worker)
    with pytest.raises(NativeFaultError, match="SIGKILL"):
        bridge.invoke(_request())

    # The parent is unaffected and the next call works
    ok = IsolatedCallBridge(HANDLE, worker_target=_echo_worker).invoke(_request("again"))
    assert ok.data == b"%PDF-again"


def test_exit_without_result_is_a_native_fault():
    bridge = IsolatedCallBridge(HANDLE, worker_target=_exiting_worker)
    with pytest.raises(NativeFaultError, match="exited with code 3"):
        bridge.invoke(_request())


def test_timeout_terminates_worker():
    bridge = IsolatedCallBridge(HANDLE, worker_target=_hanging_worker)
    start = time.monotonic()
    with pytest.raises(CompileTimeoutError, match="terminated"):
        bridge.invoke(_request(timeout=0.5))
    assert time.monotonic() - start < 15


def test_result_form():
    result = IsolatedCallBridge(HANDLE, worker_target=_compile_error_worker).invoke_result(
        _request()
    )
    assert result.kind is ErrorKind.COMPILE_FAILED


def test_worker_main_runs_engine(fake_engine, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(
        isolated_module,
        "NativeModuleLoader",
        lambda: NativeModuleLoader(opener=lambda p: fake_engine),
    )
    parent_conn, child_conn = mp.Pipe(duplex=False)
    job = {
        "library_path": "/opt/libfake.so",
        "markup": b"Hello {{name}}",
        "input": b'{"name":"World"}',
        "format": 0,
        "options": b'{"main":"main.typ"}',
    }
    isolated_module._native_worker_main(child_conn, job)

    msg = parent_conn.recv()
    assert msg["cmd"] == "RESULT"
    assert msg["status"] == 0
    assert b"Hello World" in msg["payload"]
    assert fake_engine.live_buffers == 0


def test_worker_main_reports_load_failure(tmp_path: Path):
    parent_conn, child_conn = mp.Pipe(duplex=False)
    job = {
        "library_path": str(tmp_path / "missing.so"),
        "markup": b"",
        "input": b"{}",
        "format": 0,
        "options": b"{}",
    }
    isolated_module._native_worker_main(child_conn, job)

    msg = parent_conn.recv()
    assert msg["cmd"] == "ERROR"
    assert msg["kind"] == LoadFailedError.kind.value


if __name__ == "__main__":
    pytest.main(sys.argv)
