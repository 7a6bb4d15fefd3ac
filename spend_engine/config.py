# spend_engine/config.py
from __future__ import annotations

import copy
import os
from pathlib import Path
from typing import Dict

import yaml

DEFAULT_CONFIG: Dict[str, object] = {
    "base_currency": "CZK",
    "db_path": "data/spending.db",
    "session_ttl_seconds": 900,
    "parse_workers": 4,
    "apply_chunk_size": 500,
    "exchange_rate": {
        "url": "https://open.er-api.com/v6/latest",
        "ttl_seconds": 3600,
        "timeout_seconds": 10,
    },
    "upload": {
        "max_file_bytes": 5 * 1024 * 1024,
        "max_files": 10,
    },
    "default_categories": [
        {"name": "Food", "color": "#22c55e"},
        {"name": "Transport", "color": "#3b82f6"},
        {"name": "Shopping", "color": "#f59e0b"},
        {"name": "Entertainment", "color": "#8b5cf6"},
        {"name": "Health", "color": "#ef4444"},
        {"name": "Utilities", "color": "#06b6d4"},
        {"name": "Finance", "color": "#64748b"},
        {"name": "Other", "color": "#9ca3af"},
    ],
}

CONFIG_PATH = Path(os.environ.get("SPENDBOARD_CONFIG", "config.yaml"))


def _merge_defaults(current: Dict[str, object], defaults: Dict[str, object]) -> Dict[str, object]:
    """Merge missing default keys into the current config recursively."""
    merged = dict(current)
    for key, value in defaults.items():
        if key not in merged:
            merged[key] = copy.deepcopy(value)
        elif isinstance(value, dict) and isinstance(merged[key], dict):
            merged[key] = _merge_defaults(merged[key], value)
    return merged


def load_config(path: Path | str | None = None) -> Dict[str, object]:
    target = Path(path) if path else CONFIG_PATH
    if not target.exists():
        return copy.deepcopy(DEFAULT_CONFIG)
    with target.open("r", encoding="utf-8") as fp:
        data = yaml.safe_load(fp) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {target} must contain a mapping")
    config = _merge_defaults(data, DEFAULT_CONFIG)
    config["base_currency"] = str(config["base_currency"]).upper()
    return config


def save_config(config: Dict[str, object], path: Path | str | None = None) -> None:
    target = Path(path) if path else CONFIG_PATH
    target.parent.mkdir(parents=True, exist_ok=True)
    with target.open("w", encoding="utf-8") as fp:
        yaml.safe_dump(config, fp, sort_keys=False)
