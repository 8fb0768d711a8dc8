from __future__ import annotations

import threading
import time
from typing import Any, Dict, Optional, Sequence, Tuple

import structlog

from ..core.errors import CompilerUnavailable, InvariantViolation
from ..core.models import (
    Diagnostic,
    ExecutionRequest,
    RunOutcome,
    RunStatus,
    SessionState,
    SourceUnit,
    Verdict,
    terminal_state_for,
)
from ..runner.sandbox import Sandbox
from .collector import ResultCollector
from .compiler import CompilationFailure, CompiledUnit, Compiler

log = structlog.get_logger(__name__)

_TRANSITIONS = {
    SessionState.QUEUED: {SessionState.COMPILING, SessionState.CANCELLED, SessionState.REJECTED},
    SessionState.COMPILING: {SessionState.RUNNING, SessionState.COMPLETED,
                             SessionState.CANCELLED, SessionState.REJECTED},
    SessionState.RUNNING: {SessionState.COMPLETED, SessionState.CANCELLED, SessionState.REJECTED},
}


class Session:
    """
    One submission from admission to verdict. Owns its CompiledUnit and
    sandbox run exclusively; the verdict is set exactly once.
    """

    def __init__(self, session_id: str, units: Sequence[SourceUnit], deadline_ms: int,
                 arguments: Sequence[Any] = ()):
        self.id = session_id
        self.units: Tuple[SourceUnit, ...] = tuple(units)
        self.deadline_ms = deadline_ms
        self.arguments = tuple(arguments)
        self.state = SessionState.QUEUED
        self.verdict: Optional[Verdict] = None

        self.created_at = time.time()
        self.started_at: Optional[float] = None
        self.finished_at: Optional[float] = None
        self.admitted_at: Optional[float] = None    # monotonic
        self.deadline_at: Optional[float] = None    # monotonic

        # what each stage leaves behind for the collector
        self.compiled: Optional[CompiledUnit] = None
        self.diagnostics: Optional[Tuple[Diagnostic, ...]] = None
        self.outcome: Optional[RunOutcome] = None
        self.rejection: Optional[str] = None
        self.source: Optional[str] = None          # coalesced single-file source
        self.cancel_reason: Optional[str] = None

        self.cancel_event = threading.Event()
        self.lock = threading.RLock()
        self._done = threading.Event()

    def __repr__(self) -> str:
        return f"<Session {self.id} {self.state.value}>"

    @property
    def cancel_requested(self) -> bool:
        return self.cancel_event.is_set()

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def transition(self, new_state: SessionState) -> None:
        with self.lock:
            if new_state not in _TRANSITIONS.get(self.state, ()):
                raise InvariantViolation(f"session {self.id}: {self.state.value} -> {new_state.value}")
            self.state = new_state

    def admit(self) -> None:
        """QUEUED -> COMPILING; the deadline clock starts here."""
        with self.lock:
            self.transition(SessionState.COMPILING)
            self.started_at = time.time()
            self.admitted_at = time.monotonic()
            self.deadline_at = self.admitted_at + self.deadline_ms / 1000.0

    def request_cancel(self, reason: str) -> None:
        with self.lock:
            if self.cancel_reason is None:
                self.cancel_reason = reason
            self.cancel_event.set()

    def complete(self, verdict: Verdict) -> None:
        with self.lock:
            if self.verdict is not None:
                raise InvariantViolation(
                    f"session {self.id} completed twice ({self.verdict.kind}, then {verdict.kind})"
                )
            self.transition(terminal_state_for(verdict))
            self.verdict = verdict
            self.finished_at = time.time()
        self._done.set()

    def wait(self, timeout: Optional[float] = None) -> Verdict:
        if not self._done.wait(timeout):
            raise TimeoutError(f"session {self.id} still {self.state.value}")
        assert self.verdict is not None
        return self.verdict

    def describe(self) -> Dict[str, Any]:
        with self.lock:
            return {
                "id": self.id,
                "state": self.state.value,
                "units": [u.name for u in self.units],
                "deadline_ms": self.deadline_ms,
                "created_at": self.created_at,
                "started_at": self.started_at,
                "finished_at": self.finished_at,
                "verdict": self.verdict.to_dict() if self.verdict is not None else None,
            }


class SessionRunner:
    """Compile -> run -> collect for one admitted session, on the caller's thread."""

    def __init__(self, compiler: Compiler, sandbox: Sandbox, collector: ResultCollector,
                 memory_ceiling: Optional[int] = None):
        self.compiler = compiler
        self.sandbox = sandbox
        self.collector = collector
        self.memory_ceiling = memory_ceiling
        self.last_source: Optional[str] = None

    def __call__(self, session: Session) -> Verdict:
        return self.run(session)

    def run(self, session: Session) -> Verdict:
        try:
            result = self.compiler.compile(session.units, namespace=session.id)
        except CompilerUnavailable as e:
            session.rejection = f"compiler unavailable: {e}"
            return self.collector.finalize(session)

        if isinstance(result, CompilationFailure):
            session.diagnostics = result.diagnostics
            return self.collector.finalize(session)

        session.compiled = result
        try:
            self._coalesce(session, result)
            if session.cancel_requested:
                return self.collector.finalize(session)

            if time.monotonic() >= session.deadline_at:
                session.outcome = RunOutcome(
                    status=RunStatus.TIMEOUT, rc=None, reason="deadline expired while compiling",
                    stdout="", stderr="", duration_s=time.monotonic() - session.admitted_at,
                )
                return self.collector.finalize(session)

            session.transition(SessionState.RUNNING)
            log.debug("session_running", session_id=session.id, entry=result.entry_unit,
                      units=len(session.units))
            request = ExecutionRequest(
                compiled=result,
                entry_point_name=self.compiler.entry_point_name,
                arguments=session.arguments,
                deadline=session.deadline_at,
                memory_ceiling=self.memory_ceiling,
            )
            session.outcome = self.sandbox.run(request, cancel=session.cancel_event)
            return self.collector.finalize(session)
        finally:
            result.release()
            session.compiled = None

    def _coalesce(self, session: Session, compiled: CompiledUnit) -> None:
        try:
            session.source = compiled.coalesce()
        except ValueError as e:
            log.info("coalesce_skipped", session_id=session.id, reason=str(e))
            return
        self.last_source = session.source
