from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # ---- scheduler ----
    max_concurrent: int = Field(default=4, ge=1)
    max_queue: Optional[int] = 64          # None = unbounded queue
    max_retained: int = 1024               # completed sessions kept for lookup

    # ---- deadlines ----
    default_deadline_ms: int = 5000
    max_deadline_ms: int = 60000
    poll_interval_ms: int = 20

    # ---- limits applied inside the child interpreter ----
    max_output_bytes: int = 64 * 1024
    max_source_bytes: Optional[int] = 1024 * 1024     # per unit, checked before parsing
    memory_ceiling_bytes: Optional[int] = 256 * 1024 * 1024
    cpu_seconds: Optional[int] = None
    nofile: Optional[int] = 64

    # ---- runtime ----
    entry_point_name: str = "main"
    python_bin: str = sys.executable
    log_level: str = "INFO"

    config_file: Path = Path("conf/codemash.yaml")

    # env prefix CODEMASH_*
    model_config = SettingsConfigDict(env_prefix="CODEMASH_", extra="ignore")


def _optional_int(value: Any, default: Optional[int]) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _section(data: Dict[str, Any], name: str) -> Dict[str, Any]:
    sec = data.get(name) or {}
    return sec if isinstance(sec, dict) else {}


def _read_yaml(path: Path) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        return {}
    except yaml.YAMLError:
        # a broken config file must not take the engine down; keep env/defaults
        return {}
    return data if isinstance(data, dict) else {}


def load_settings(path: Optional[Path] = None) -> Settings:
    # 0) base from env CODEMASH_*
    s = Settings()

    # 1) conf/codemash.yaml (or CODEMASH_CONF)
    conf = Path(path or os.environ.get("CODEMASH_CONF", s.config_file))
    data = _read_yaml(conf)
    engine = _section(data, "engine")
    limits = _section(data, "limits")

    # 2) merge into Settings, keeping the declared types
    update: Dict[str, Any] = {"config_file": conf}
    for key in ("max_concurrent", "max_retained", "default_deadline_ms", "max_deadline_ms", "poll_interval_ms"):
        if key in engine:
            update[key] = int(engine[key])
    if "max_queue" in engine:
        update["max_queue"] = _optional_int(engine["max_queue"], s.max_queue)
    for key in ("entry_point_name", "python_bin", "log_level"):
        if key in engine:
            update[key] = str(engine[key])

    if "max_output_bytes" in limits:
        update["max_output_bytes"] = int(limits["max_output_bytes"])
    for key in ("memory_ceiling_bytes", "cpu_seconds", "nofile", "max_source_bytes"):
        if key in limits:
            update[key] = _optional_int(limits[key], getattr(s, key))

    return s.model_copy(update=update)
