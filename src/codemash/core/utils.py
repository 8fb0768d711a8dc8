from __future__ import annotations

import time
import uuid
from pathlib import Path
from typing import List

from .models import SourceUnit


def new_session_id() -> str:
    suf = uuid.uuid4().hex[:8]
    return f"{int(time.time())}-{suf}"


def clamp_deadline_ms(deadline_ms: int, maximum: int) -> int:
    if isinstance(deadline_ms, bool) or not isinstance(deadline_ms, int):
        raise ValueError(f"deadline must be an integer number of milliseconds, got {deadline_ms!r}")
    if deadline_ms <= 0:
        raise ValueError("deadline must be positive")
    return min(deadline_ms, maximum)


def load_units(directory: Path, entry_filename: str) -> List[SourceUnit]:
    """
    Gather every ``*.py`` file of *directory* as a SourceUnit, sorted by name.
    The file named *entry_filename* becomes the entry point.
    """
    directory = Path(directory)
    paths = sorted(
        p for p in directory.iterdir()
        if p.is_file() and p.suffix == ".py" and len(p.name) > 3
    )
    if not any(p.name == entry_filename for p in paths):
        raise ValueError(f"entry_not_found:{directory / entry_filename}")
    return [SourceUnit.from_path(p, is_entry_point=(p.name == entry_filename)) for p in paths]
