from __future__ import annotations

import threading
from collections import OrderedDict, deque
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Deque, Dict, Optional, Sequence

import structlog

from ..core.errors import InvariantViolation, UnknownSession
from ..core.models import Cancelled, SessionState, SourceUnit, Verdict
from ..core.utils import new_session_id
from .collector import ResultCollector
from .session import Session

log = structlog.get_logger(__name__)


class Scheduler:
    """
    Bounded pool of execution slots with a FIFO overflow queue.

    Only admission, queueing and slot accounting happen under ``_lock``;
    compiling and running happen on the worker threads outside it.
    """

    def __init__(self, run_session: Callable[[Session], Any], collector: ResultCollector,
                 max_concurrent: int = 4, max_queue: Optional[int] = 64, max_retained: int = 1024):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.run_session = run_session
        self.collector = collector
        self.max_concurrent = max_concurrent
        self.max_queue = max_queue
        self.max_retained = max_retained

        self._lock = threading.Lock()
        self._sessions: Dict[str, Session] = {}
        self._queue: Deque[Session] = deque()
        self._retired: "OrderedDict[str, None]" = OrderedDict()
        self._active = 0
        self._closed = False
        self._pool = ThreadPoolExecutor(max_workers=max_concurrent, thread_name_prefix="codemash-slot")

    # ---- introspection ----

    @property
    def active_count(self) -> int:
        with self._lock:
            return self._active

    @property
    def queued_count(self) -> int:
        with self._lock:
            return len(self._queue)

    def get(self, session_id: str) -> Session:
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise UnknownSession(session_id)
        return session

    def status(self, session_id: str) -> SessionState:
        return self.get(session_id).state

    def await_result(self, session_id: str, timeout: Optional[float] = None) -> Verdict:
        return self.get(session_id).wait(timeout)

    # ---- admission ----

    def submit(self, units: Sequence[SourceUnit], deadline_ms: int, arguments: Sequence[Any] = ()) -> Session:
        with self._lock:
            session_id = new_session_id()
            while session_id in self._sessions:
                session_id = new_session_id()
            session = Session(session_id, units, deadline_ms, arguments)
            self._sessions[session_id] = session

            if self._closed:
                rejection = "scheduler shut down"
            elif self._active < self.max_concurrent:
                rejection = None
                self._dispatch(session)
            elif self.max_queue is None or len(self._queue) < self.max_queue:
                rejection = None
                self._queue.append(session)
            else:
                rejection = "queue full"

        if rejection is not None:
            session.rejection = rejection
            self.collector.finalize(session)
            self._retire(session)
            log.warning("session_rejected", session_id=session.id, reason=rejection)
        else:
            log.info("session_submitted", session_id=session.id, state=session.state.value,
                     units=len(session.units), deadline_ms=deadline_ms)
        return session

    def _dispatch(self, session: Session) -> None:
        # caller holds _lock
        session.admit()
        self._active += 1
        self._pool.submit(self._execute, session)

    def _execute(self, session: Session) -> None:
        try:
            self.run_session(session)
        except InvariantViolation as e:
            log.error("invariant_violation", session_id=session.id, error=str(e))
            self._abort(session, f"internal error: {e}")
        except Exception as e:
            log.exception("session_crashed", session_id=session.id)
            self._abort(session, f"internal error: {type(e).__name__}: {e}")
        finally:
            if not session.done:
                log.error("session_unresolved", session_id=session.id, state=session.state.value)
                self._abort(session, "internal error: session left unresolved")
            self._release_slot()
            self._retire(session)

    def _abort(self, session: Session, reason: str) -> None:
        """Resolve a session the engine failed on, unless it already has its verdict."""
        with session.lock:
            if session.verdict is not None:
                return
            session.rejection = reason
            session.diagnostics = None
            session.outcome = None
            try:
                self.collector.finalize(session)
            except InvariantViolation as e:
                log.error("invariant_violation", session_id=session.id, error=str(e))

    def _release_slot(self) -> None:
        with self._lock:
            self._active -= 1
            while self._queue and self._active < self.max_concurrent and not self._closed:
                self._dispatch(self._queue.popleft())

    def _retire(self, session: Session) -> None:
        with self._lock:
            self._retired[session.id] = None
            while len(self._retired) > self.max_retained:
                old, _ = self._retired.popitem(last=False)
                self._sessions.pop(old, None)

    # ---- cancellation ----

    def cancel(self, session_id: str, reason: str = "cancelled by caller") -> bool:
        """
        True when the cancellation landed before natural completion.
        Queued sessions are dropped without compiling; in-flight ones are
        signalled and this call waits for their single verdict.
        """
        session = self.get(session_id)
        with self._lock:
            # a QUEUED session missing from the queue is being finalized by shutdown
            if session.state is SessionState.QUEUED and session in self._queue:
                self._queue.remove(session)
                dequeued = True
            elif session.done:
                return False
            else:
                dequeued = False
                session.request_cancel(reason)

        if dequeued:
            session.request_cancel(reason)
            self.collector.finalize(session)
            self._retire(session)
            log.info("session_cancelled", session_id=session.id, while_state="QUEUED")
            return True

        verdict = session.wait()
        return isinstance(verdict, Cancelled)

    # ---- lifecycle ----

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            self._closed = True
            pending = list(self._queue)
            self._queue.clear()
            running = [s for s in self._sessions.values() if s.state in
                       (SessionState.COMPILING, SessionState.RUNNING)]
        for session in pending:
            session.request_cancel("scheduler shut down")
            self.collector.finalize(session)
            self._retire(session)
        for session in running:
            session.request_cancel("scheduler shut down")
        self._pool.shutdown(wait=wait)
        log.info("scheduler_shutdown", cancelled=len(pending), interrupted=len(running))


__all__ = ["Scheduler"]
