from __future__ import annotations

from typing import Any, Dict, Iterable, Mapping, Optional, Sequence, Union

import structlog

from ..core.models import Limits, SessionState, SourceUnit, Verdict, plain_arguments
from ..core.settings import Settings, load_settings
from ..core.utils import clamp_deadline_ms
from ..logging import setup_logging
from ..runner.sandbox import Sandbox
from .collector import ResultCollector
from .compiler import Compiler
from .scheduler import Scheduler
from .session import SessionRunner

log = structlog.get_logger(__name__)

UnitLike = Union[SourceUnit, Mapping[str, Any]]


class Engine:
    """
    Wires Compiler + Sandbox + ResultCollector + Scheduler from Settings.
    This is the one object callers hold.
    """

    def __init__(self, settings: Optional[Settings] = None, configure_logging: bool = True):
        self.settings = settings or load_settings()
        if configure_logging:
            setup_logging(self.settings.log_level)

        s = self.settings
        self.compiler = Compiler(entry_point_name=s.entry_point_name, max_source_bytes=s.max_source_bytes)
        self.sandbox = Sandbox(
            limits=Limits(
                cpu_seconds=s.cpu_seconds,
                nofile=s.nofile,
                max_output_bytes=s.max_output_bytes,
            ),
            python_bin=s.python_bin,
            poll_interval_s=s.poll_interval_ms / 1000.0,
        )
        self.collector = ResultCollector(max_output_bytes=s.max_output_bytes)
        self.runner = SessionRunner(
            self.compiler, self.sandbox, self.collector, memory_ceiling=s.memory_ceiling_bytes,
        )
        self.scheduler = Scheduler(
            self.runner,
            self.collector,
            max_concurrent=s.max_concurrent,
            max_queue=s.max_queue,
            max_retained=s.max_retained,
        )
        log.info("engine_started", max_concurrent=s.max_concurrent, max_queue=s.max_queue,
                 python_bin=s.python_bin)

    def __enter__(self) -> "Engine":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    @staticmethod
    def _units(units: Iterable[UnitLike]) -> Sequence[SourceUnit]:
        out = []
        for u in units:
            if isinstance(u, SourceUnit):
                out.append(u)
            elif isinstance(u, Mapping):
                out.append(SourceUnit.from_dict(u))
            else:
                raise TypeError(f"expected SourceUnit or mapping, got {type(u).__name__}")
        return out

    def submit(self, units: Iterable[UnitLike], deadline_ms: Optional[int] = None,
               arguments: Sequence[Any] = ()) -> str:
        if deadline_ms is None:
            deadline_ms = self.settings.default_deadline_ms
        deadline_ms = clamp_deadline_ms(deadline_ms, self.settings.max_deadline_ms)
        session = self.scheduler.submit(self._units(units), deadline_ms, plain_arguments(arguments))
        return session.id

    def await_result(self, session_id: str, timeout: Optional[float] = None) -> Verdict:
        return self.scheduler.await_result(session_id, timeout)

    def poll(self, session_id: str) -> SessionState:
        return self.scheduler.status(session_id)

    def cancel(self, session_id: str) -> bool:
        return self.scheduler.cancel(session_id)

    def describe(self, session_id: str) -> Dict[str, Any]:
        return self.scheduler.get(session_id).describe()

    def source(self, session_id: str) -> Optional[str]:
        """Coalesced single-file source of a session that compiled, else None."""
        return self.scheduler.get(session_id).source

    @property
    def last_source(self) -> Optional[str]:
        return self.runner.last_source

    def stats(self) -> Dict[str, int]:
        return {
            "active": self.scheduler.active_count,
            "queued": self.scheduler.queued_count,
            "max_concurrent": self.settings.max_concurrent,
        }

    def close(self, wait: bool = True) -> None:
        self.scheduler.shutdown(wait=wait)
        log.info("engine_closed")
