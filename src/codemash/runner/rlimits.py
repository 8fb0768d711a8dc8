from __future__ import annotations

import resource
from typing import Optional


def apply_rlimits(cpu_seconds: Optional[int], memory_bytes: Optional[int], nofile: Optional[int]) -> None:
    """
    Apply process-level limits: CPU time, virtual memory, open file descriptors.
    A limit left as None is not touched. Limits the OS refuses (e.g. above the
    hard limit) are left at their current value.
    """
    for which, value in (
        (resource.RLIMIT_CPU, cpu_seconds),
        (resource.RLIMIT_AS, memory_bytes),
        (resource.RLIMIT_NOFILE, nofile),
    ):
        if value is None:
            continue
        _, hard = resource.getrlimit(which)
        if hard != resource.RLIM_INFINITY:
            value = min(value, hard)
        try:
            resource.setrlimit(which, (value, hard))
        except (ValueError, OSError):
            continue
