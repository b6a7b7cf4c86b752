"""Configuration loading for the triage core."""

import copy
import os
from pathlib import Path
from typing import Optional

import yaml

TRIAGE_ROOT = Path(__file__).resolve().parent.parent.parent
DEFAULT_CONFIG_PATH = TRIAGE_ROOT / "config.yaml"

DEFAULTS = {
    "generation": {
        "max_concurrent": 3,
    },
    "refinement": {
        "max_concurrent": 3,
        "max_turns": 10,
    },
    "sessions": {
        "path": "~/.triage/sessions/sessions.json",
    },
    "inbox": {
        "path": "mock-data/inbox.json",
    },
    "style": {
        "path": None,
    },
    "llm": {
        "model": "claude-sonnet-4-20250514",
        "max_tokens": 1024,
        "pricing": {
            "input_per_mtok": 3.0,
            "output_per_mtok": 15.0,
        },
    },
    "logging": {
        "level": "INFO",
        "dir": None,
    },
}


def _merge(base: dict, override: dict) -> dict:
    """Recursively merge override into a copy of base."""
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(config_path: Optional[Path] = None) -> dict:
    """
    Load configuration from config.yaml merged over the defaults.

    The path can also come from the TRIAGE_CONFIG environment variable.
    A missing file yields the defaults.
    """
    if config_path is None:
        env_path = os.environ.get("TRIAGE_CONFIG")
        config_path = Path(env_path) if env_path else DEFAULT_CONFIG_PATH

    config_path = Path(config_path)
    if config_path.exists():
        loaded = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
        return _merge(DEFAULTS, loaded)
    return copy.deepcopy(DEFAULTS)


def resolve_path(value: str, base: Path = TRIAGE_ROOT) -> Path:
    """Expand `~` and make relative paths relative to the repo root."""
    path = Path(value).expanduser()
    if not path.is_absolute():
        path = base / path
    return path
