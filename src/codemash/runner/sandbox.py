from __future__ import annotations

import importlib.util
import json
import marshal
import os
import signal
import subprocess
import sys
import tempfile
import threading
import time
from pathlib import Path
from typing import Any, Dict, Optional

import structlog

from ..core.models import ExecutionRequest, Limits, RunOutcome, RunStatus
from .output import StreamCollector

log = structlog.get_logger(__name__)

# directory holding the codemash package, so the child can run it with -m
_SRC_ROOT = Path(__file__).resolve().parent.parent.parent

_RESULT_LIMIT = 1024 * 1024
_JOIN_TIMEOUT_S = 2.0


class Sandbox:
    """
    Runs one entry point per call in a fresh child interpreter.
    The interpreter is killed on deadline or cancellation and never reused.
    """

    def __init__(self, limits: Optional[Limits] = None, python_bin: str = sys.executable,
                 poll_interval_s: float = 0.02):
        self.limits = limits or Limits()
        self.python_bin = python_bin
        self.poll_interval_s = poll_interval_s

    def _env(self) -> Dict[str, str]:
        path = os.environ.get("PYTHONPATH")
        return {
            **os.environ,
            "PYTHONPATH": str(_SRC_ROOT) + (os.pathsep + path if path else ""),
            "PYTHONUNBUFFERED": "1",
            "PYTHONDONTWRITEBYTECODE": "1",
            "PYTHONIOENCODING": "utf-8",
        }

    def _payload(self, request: ExecutionRequest) -> bytes:
        limits = self.limits.as_payload()
        if request.memory_ceiling is not None:
            limits["memory_bytes"] = request.memory_ceiling
        body = {
            "namespace": request.compiled.namespace,
            "units": request.compiled.export(),
            "entry_unit": request.compiled.entry_unit,
            "entry_name": request.entry_point_name,
            "args": request.arguments,
            "limits": limits,
        }
        return importlib.util.MAGIC_NUMBER + marshal.dumps(body)

    def run(self, request: ExecutionRequest, cancel: Optional[threading.Event] = None) -> RunOutcome:
        """
        Execute the entry point under the request's deadline.
        Returns FINISHED, FAILED, TIMEOUT or CANCELLED; never raises for
        anything the submission does.
        """
        payload = self._payload(request)
        start = time.monotonic()

        with tempfile.TemporaryDirectory(prefix=f"codemash-{request.compiled.namespace}-",
                                         ignore_cleanup_errors=True) as workdir:
            r_fd, w_fd = os.pipe()
            try:
                proc = subprocess.Popen(
                    [self.python_bin, "-m", "codemash.runner.child", str(w_fd)],
                    stdin=subprocess.PIPE,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    pass_fds=(w_fd,),
                    cwd=workdir,
                    env=self._env(),
                    start_new_session=True,
                )
            except OSError as e:
                os.close(r_fd)
                os.close(w_fd)
                log.error("sandbox_spawn_failed", namespace=request.compiled.namespace, error=str(e))
                return RunOutcome(
                    status=RunStatus.FAILED, rc=-1, reason=f"runner_error: {e}",
                    stdout="", stderr="", duration_s=time.monotonic() - start,
                )
            os.close(w_fd)

            limit = self.limits.max_output_bytes
            out = StreamCollector(proc.stdout, limit, name=f"{request.compiled.namespace}-stdout")
            err = StreamCollector(proc.stderr, limit, name=f"{request.compiled.namespace}-stderr")
            res = StreamCollector(os.fdopen(r_fd, "rb"), _RESULT_LIMIT, name=f"{request.compiled.namespace}-result")
            for c in (out, err, res):
                c.start()

            feeder = threading.Thread(target=self._feed, args=(proc, payload), daemon=True)
            feeder.start()
            try:
                status = self._supervise(proc, request, cancel)
            finally:
                # reclaim the whole process group on every path
                self._kill(proc)
                proc.wait()
                for c in (feeder, out, err, res):
                    c.join(_JOIN_TIMEOUT_S)

        duration = time.monotonic() - start
        outcome = RunOutcome(
            status=status, rc=proc.returncode, reason=None,
            stdout=out.text, stderr=err.text, duration_s=duration,
            stdout_dropped=out.dropped, stderr_dropped=err.dropped,
        )
        if status is RunStatus.TIMEOUT:
            outcome.reason = f"timeout after {duration:.3f}s"
            log.info("sandbox_timeout", namespace=request.compiled.namespace, duration_s=round(duration, 3))
        elif status is RunStatus.CANCELLED:
            outcome.reason = "cancelled while running"
            log.info("sandbox_cancelled", namespace=request.compiled.namespace)
        else:
            self._apply_record(outcome, res.text)
        return outcome

    # ---- helpers ----

    @staticmethod
    def _feed(proc: subprocess.Popen, payload: bytes) -> None:
        try:
            proc.stdin.write(payload)
            proc.stdin.close()
        except (BrokenPipeError, OSError):
            # child died before reading; its exit status tells the story
            pass

    def _supervise(self, proc: subprocess.Popen, request: ExecutionRequest,
                   cancel: Optional[threading.Event]) -> RunStatus:
        while True:
            remaining = request.deadline - time.monotonic()
            if remaining <= 0:
                if proc.poll() is not None:
                    return RunStatus.FINISHED
                return RunStatus.TIMEOUT
            try:
                proc.wait(timeout=min(remaining, self.poll_interval_s))
                return RunStatus.FINISHED
            except subprocess.TimeoutExpired:
                pass
            if cancel is not None and cancel.is_set() and proc.poll() is None:
                return RunStatus.CANCELLED

    @staticmethod
    def _kill(proc: subprocess.Popen) -> None:
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            pass

    @staticmethod
    def _apply_record(outcome: RunOutcome, raw: str) -> None:
        try:
            record: Dict[str, Any] = json.loads(raw) if raw else {}
        except json.JSONDecodeError:
            record = {}

        if record.get("status") == "ok":
            outcome.status = RunStatus.FINISHED
            outcome.value = record.get("value")
            return

        outcome.status = RunStatus.FAILED
        if record.get("status") == "fault":
            message = record.get("message") or ""
            outcome.reason = f"{record.get('type')}: {message}" if message else str(record.get("type"))
            outcome.traceback = record.get("traceback") or ""
            return

        rc = outcome.rc
        if rc is not None and rc < 0:
            try:
                outcome.reason = f"terminated by signal {signal.Signals(-rc).name}"
            except ValueError:
                outcome.reason = f"terminated by signal {-rc}"
        elif rc:
            outcome.reason = f"exited with code {rc}"
        else:
            outcome.reason = "exited without reporting a result"
