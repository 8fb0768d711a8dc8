from __future__ import annotations

from pathlib import Path

import pytest

from codemash.core.models import Limits, SourceUnit
from codemash.core.settings import Settings
from codemash.runner.sandbox import Sandbox
from codemash.services.compiler import Compiler
from codemash.services.engine import Engine

SUBMISSIONS = Path(__file__).parent / "submissions"


def unit(text: str, name: str = "solution", entry: bool = True) -> SourceUnit:
    return SourceUnit(name=name, text=text, is_entry_point=entry)


@pytest.fixture
def submissions() -> Path:
    return SUBMISSIONS


@pytest.fixture
def compiler() -> Compiler:
    return Compiler()


@pytest.fixture
def sandbox() -> Sandbox:
    return Sandbox(limits=Limits(nofile=64, max_output_bytes=64 * 1024), poll_interval_s=0.01)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        max_concurrent=2,
        max_queue=8,
        default_deadline_ms=5000,
        poll_interval_ms=10,
        config_file=tmp_path / "missing.yaml",
    )


@pytest.fixture
def engine(settings):
    eng = Engine(settings, configure_logging=False)
    yield eng
    eng.close()
