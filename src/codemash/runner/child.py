"""
Child side of the sandbox: ``python -m codemash.runner.child <result-fd>``.

Reads the marshalled unit table from stdin, applies rlimits, builds the
submission's modules from their code objects, calls the entry point and
writes exactly one JSON record to the result pipe. Everything the
submission prints goes to the real stdout/stderr pipes, so the parent keeps
whatever was written even if this process gets killed.
"""
from __future__ import annotations

import importlib
import importlib.abc
import importlib.machinery
import importlib.util
import json
import linecache
import marshal
import os
import sys
import traceback
from typing import Any, Dict, Tuple

from .rlimits import apply_rlimits

MAX_VALUE_CHARS = 64 * 1024


class UnitFinder(importlib.abc.MetaPathFinder, importlib.abc.Loader):
    """Resolves imports of the submission's own units, and nothing else."""

    def __init__(self, units: Dict[str, Tuple[str, Any]]):
        self.units = units

    def find_spec(self, fullname, path=None, target=None):
        if fullname not in self.units:
            return None
        filename, _ = self.units[fullname]
        return importlib.machinery.ModuleSpec(fullname, self, origin=filename)

    def create_module(self, spec):
        return None

    def exec_module(self, module):
        filename, code = self.units[module.__name__]
        module.__file__ = filename
        exec(code, module.__dict__)


def _clip(text: str) -> str:
    if len(text) > MAX_VALUE_CHARS:
        return text[:MAX_VALUE_CHARS] + "..."
    return text


def _encode_value(value: Any) -> Dict[str, Any]:
    try:
        text = json.dumps(value, allow_nan=False)
    except (TypeError, ValueError, RecursionError):
        text = None
    if text is None or len(text) > MAX_VALUE_CHARS:
        try:
            return {"status": "ok", "value": _clip(repr(value)), "repr": True}
        except Exception as e:
            return {"status": "ok", "value": f"<unrepresentable {type(value).__name__}: {e}>", "repr": True}
    return {"status": "ok", "value": value}


def _fault(exc: BaseException, filenames) -> Dict[str, Any]:
    try:
        message = str(exc)
    except Exception:
        message = "<unprintable>"
    try:
        tbe = traceback.TracebackException.from_exception(exc)
        tbe.stack = traceback.StackSummary.from_list(
            [frame for frame in tbe.stack if frame.filename in filenames]
        )
        text = "".join(tbe.format())
    except Exception:
        # formatting can itself fail right after a MemoryError
        text = ""
    return {"status": "fault", "type": type(exc).__name__, "message": message, "traceback": text}


def run_entry(payload: Dict[str, Any]) -> Dict[str, Any]:
    units = {}
    filenames = set()
    for name, filename, code, text in payload["units"]:
        units[name] = (filename, code)
        filenames.add(filename)
        linecache.cache[filename] = (len(text), None, text.splitlines(True), filename)
        # site hooks may have preloaded a module of the same name
        sys.modules.pop(name, None)

    sys.meta_path.insert(0, UnitFinder(units))
    try:
        module = importlib.import_module(payload["entry_unit"])
        entry = getattr(module, payload["entry_name"])
        value = entry(*payload["args"])
    except BaseException as e:
        return _fault(e, filenames)
    return _encode_value(value)


def _finish(channel, record: Dict[str, Any]) -> None:
    for stream in (sys.stdout, sys.stderr):
        try:
            stream.flush()
        except (OSError, ValueError):
            pass
    channel.write(json.dumps(record))
    channel.close()
    # threads the submission left behind must not keep the process alive
    os._exit(0)


def main() -> None:
    if len(sys.argv) < 2:
        print("Usage: python -m codemash.runner.child <result-fd>", file=sys.stderr)
        sys.exit(2)

    channel = os.fdopen(int(sys.argv[1]), "w", encoding="utf-8")
    raw = sys.stdin.buffer.read()
    magic = importlib.util.MAGIC_NUMBER
    if raw[: len(magic)] != magic:
        _finish(channel, {
            "status": "fault",
            "type": "RuntimeError",
            "message": f"bytecode mismatch: child runs Python {sys.version.split()[0]}",
            "traceback": "",
        })
        return

    payload = marshal.loads(raw[len(magic):])
    limits = payload["limits"]
    apply_rlimits(limits["cpu_seconds"], limits["memory_bytes"], limits["nofile"])
    _finish(channel, run_entry(payload))


if __name__ == "__main__":
    main()
