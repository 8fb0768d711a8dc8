from __future__ import annotations


class EngineError(Exception):
    """Base class for errors raised by the engine itself (never by submissions)."""


class UnknownSession(EngineError, KeyError):
    def __init__(self, session_id: str):
        super().__init__(session_id)
        self.session_id = session_id

    def __str__(self) -> str:
        return f"session_not_found:{self.session_id}"


class InvariantViolation(EngineError):
    """An engine bug: a session was driven through an impossible state."""


class CompilerUnavailable(EngineError):
    """The compiler itself failed (resource exhaustion), not the submitted source."""
