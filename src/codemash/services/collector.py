from __future__ import annotations

from typing import TYPE_CHECKING, Tuple

import structlog

from ..core.errors import InvariantViolation
from ..core.models import (
    Cancelled,
    CompileFailure,
    Rejected,
    RunStatus,
    RuntimeFault,
    Success,
    Timeout,
    Verdict,
)

if TYPE_CHECKING:
    from .session import Session

log = structlog.get_logger(__name__)


class ResultCollector:
    """
    Turns whatever a session recorded (rejection, cancellation, compile
    diagnostics or the sandbox outcome) into its one Verdict.
    """

    def __init__(self, max_output_bytes: int = 64 * 1024):
        self.max_output_bytes = max_output_bytes

    def clip(self, text: str, dropped: int = 0) -> str:
        data = text.encode("utf-8")
        extra = max(0, len(data) - self.max_output_bytes) + dropped
        if not extra:
            return text
        kept = data[: self.max_output_bytes].decode("utf-8", errors="ignore")
        return f"{kept}\n... [truncated {extra} bytes]"

    def _streams(self, outcome) -> Tuple[str, str]:
        return (
            self.clip(outcome.stdout, outcome.stdout_dropped),
            self.clip(outcome.stderr, outcome.stderr_dropped),
        )

    def build(self, session: "Session") -> Verdict:
        if session.rejection is not None:
            return Rejected(reason=session.rejection)

        if session.diagnostics is not None:
            return CompileFailure(diagnostics=tuple(session.diagnostics))

        outcome = session.outcome
        if outcome is None:
            if session.cancel_requested:
                return Cancelled(reason=session.cancel_reason or "cancelled")
            raise InvariantViolation(f"session {session.id} has nothing to finalize")

        stdout, stderr = self._streams(outcome)
        elapsed_ms = round(outcome.duration_s * 1000, 3)
        if outcome.status is RunStatus.FINISHED:
            return Success(value=outcome.value, stdout=stdout, stderr=stderr, elapsed_ms=elapsed_ms)
        if outcome.status is RunStatus.TIMEOUT:
            return Timeout(stdout=stdout, stderr=stderr, elapsed_ms=elapsed_ms)
        if outcome.status is RunStatus.CANCELLED:
            return Cancelled(reason=outcome.reason or "cancelled", stdout=stdout, stderr=stderr)
        return RuntimeFault(
            description=outcome.reason or "unknown fault",
            traceback=outcome.traceback,
            stdout=stdout,
            stderr=stderr,
            elapsed_ms=elapsed_ms,
        )

    def finalize(self, session: "Session") -> Verdict:
        """Idempotent: a session that already has a verdict gets it back unchanged."""
        with session.lock:
            if session.verdict is not None:
                return session.verdict
            verdict = self.build(session)
            session.complete(verdict)
        log.info("session_finished", session_id=session.id, kind=verdict.kind,
                 state=session.state.value)
        return verdict
