from __future__ import annotations

import marshal
import time
from dataclasses import asdict, dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, ClassVar, Dict, Mapping, Optional, Tuple

if TYPE_CHECKING:
    from ..services.compiler import CompiledUnit


class SessionState(str, Enum):
    QUEUED = "QUEUED"
    COMPILING = "COMPILING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"

    @property
    def terminal(self) -> bool:
        return self in (SessionState.COMPLETED, SessionState.REJECTED, SessionState.CANCELLED)


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"


class RunStatus(str, Enum):
    FINISHED = "FINISHED"
    FAILED = "FAILED"
    TIMEOUT = "TIMEOUT"
    CANCELLED = "CANCELLED"


@dataclass(frozen=True)
class SourceUnit:
    name: str                     # logical name, imported by sibling units under this name
    text: str
    is_entry_point: bool = False

    def __post_init__(self):
        if not isinstance(self.name, str) or not isinstance(self.text, str):
            raise TypeError("SourceUnit name and text must be strings")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SourceUnit":
        entry = data.get("isEntryPoint", data.get("is_entry_point", False))
        return cls(name=data["name"], text=data["text"], is_entry_point=bool(entry))

    @classmethod
    def from_path(cls, path: Path, is_entry_point: bool = False) -> "SourceUnit":
        return cls(
            name=path.stem,
            text=path.read_text(encoding="utf-8"),
            is_entry_point=is_entry_point,
        )


@dataclass(frozen=True)
class Diagnostic:
    unit_name: str
    line: int
    column: int
    severity: Severity
    message: str

    @property
    def is_error(self) -> bool:
        return self.severity is Severity.ERROR

    def to_dict(self) -> Dict[str, Any]:
        return {
            "unit_name": self.unit_name,
            "line": self.line,
            "column": self.column,
            "severity": self.severity.value,
            "message": self.message,
        }


def plain_arguments(arguments: Any) -> Tuple[Any, ...]:
    """Entry point arguments cross into the child via marshal, so only plain data passes."""
    arguments = tuple(arguments)
    try:
        marshal.dumps(arguments)
    except ValueError as e:
        raise ValueError(f"arguments must be plain data: {e}") from e
    return arguments


@dataclass
class ExecutionRequest:
    compiled: "CompiledUnit"
    entry_point_name: str
    arguments: Tuple[Any, ...] = ()
    deadline: float = 0.0                      # time.monotonic() instant
    memory_ceiling: Optional[int] = None       # bytes of address space

    def __post_init__(self):
        self.arguments = plain_arguments(self.arguments)

    @classmethod
    def within(cls, compiled: "CompiledUnit", seconds: float, entry_point_name: str = "main",
               arguments: Tuple[Any, ...] = (), memory_ceiling: Optional[int] = None) -> "ExecutionRequest":
        return cls(
            compiled=compiled,
            entry_point_name=entry_point_name,
            arguments=arguments,
            deadline=time.monotonic() + seconds,
            memory_ceiling=memory_ceiling,
        )

    @property
    def remaining_s(self) -> float:
        return self.deadline - time.monotonic()


@dataclass
class RunOutcome:
    status: RunStatus
    rc: Optional[int]
    reason: Optional[str]
    stdout: str
    stderr: str
    duration_s: float
    value: Any = None
    traceback: str = ""
    stdout_dropped: int = 0
    stderr_dropped: int = 0


# ---- verdicts ----

@dataclass(frozen=True)
class Verdict:
    kind: ClassVar[str] = ""

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"kind": self.kind}
        data.update(asdict(self))
        return data


@dataclass(frozen=True)
class Success(Verdict):
    kind: ClassVar[str] = "success"
    value: Any = None
    stdout: str = ""
    stderr: str = ""
    elapsed_ms: float = 0.0


@dataclass(frozen=True)
class CompileFailure(Verdict):
    kind: ClassVar[str] = "compileFailure"
    diagnostics: Tuple[Diagnostic, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "diagnostics": [d.to_dict() for d in self.diagnostics]}


@dataclass(frozen=True)
class RuntimeFault(Verdict):
    kind: ClassVar[str] = "runtimeFault"
    description: str = ""
    traceback: str = ""
    stdout: str = ""
    stderr: str = ""
    elapsed_ms: float = 0.0


@dataclass(frozen=True)
class Timeout(Verdict):
    kind: ClassVar[str] = "timeout"
    stdout: str = ""
    stderr: str = ""
    elapsed_ms: float = 0.0


@dataclass(frozen=True)
class Rejected(Verdict):
    kind: ClassVar[str] = "rejected"
    reason: str = ""


@dataclass(frozen=True)
class Cancelled(Verdict):
    kind: ClassVar[str] = "cancelled"
    reason: str = ""
    stdout: str = ""
    stderr: str = ""


def terminal_state_for(verdict: Verdict) -> SessionState:
    if isinstance(verdict, Cancelled):
        return SessionState.CANCELLED
    if isinstance(verdict, Rejected):
        return SessionState.REJECTED
    return SessionState.COMPLETED


@dataclass
class Limits:
    memory_bytes: Optional[int] = None
    cpu_seconds: Optional[int] = None
    nofile: Optional[int] = None
    max_output_bytes: int = 64 * 1024

    def as_payload(self) -> Dict[str, Optional[int]]:
        return {
            "memory_bytes": self.memory_bytes,
            "cpu_seconds": self.cpu_seconds,
            "nofile": self.nofile,
        }
