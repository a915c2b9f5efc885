"""Configuration loading utilities for the assistant server.

This module handles layered configuration:
1. Explicit path argument (highest precedence)
2. Environment variable CLOUD_ASSISTANT_CONFIG
3. Fallback to "config/default.yaml"

Built-in defaults sit underneath whatever the file provides, and optional
overrides come from environment variables with prefix ``CLOUD_ASSISTANT__``
(e.g., CLOUD_ASSISTANT__MODEL__MAX_ROUNDS=4).
"""

from __future__ import annotations

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict

import yaml

logger = logging.getLogger(__name__)

ENV_PREFIX = "CLOUD_ASSISTANT__"

DEFAULTS: Dict[str, Any] = {
    "server": {"cors_origins": ["*"]},
    "auth": {
        "user_header": "X-User-Id",
        "email_header": "X-User-Email",
        "name_header": "X-User-Name",
    },
    "gcp": {"project": None, "location": "us-east1"},
    "model": {
        "chat_model": None,
        "flash_model": None,
        "timeout": 60,
        "max_rounds": 8,
        "tools_enabled": True,
    },
    "memory": {"data_dir": "data", "title_chars": 50, "summary_limit": 30},
    "tools": {"timeout": 20},
    "logging": {"level": "INFO"},
}


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    out = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = _deep_merge(out[key], value)
        else:
            out[key] = value
    return out


def _apply_env_overrides(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Apply environment variable overrides with prefix CLOUD_ASSISTANT__."""
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        # e.g., CLOUD_ASSISTANT__MEMORY__DATA_DIR -> cfg["memory"]["data_dir"]
        parts = key[len(ENV_PREFIX):].lower().split("__")
        sub = cfg
        for p in parts[:-1]:
            if p not in sub or not isinstance(sub[p], dict):
                sub[p] = {}
            sub = sub[p]
        leaf = parts[-1]
        # Attempt to parse simple types (bool, int, float)
        if value.lower() in {"true", "false"}:
            sub[leaf] = value.lower() == "true"
        else:
            try:
                if "." in value:
                    sub[leaf] = float(value)
                else:
                    sub[leaf] = int(value)
            except ValueError:
                sub[leaf] = value
    return cfg


def load_config(path: str | None = None) -> Dict[str, Any]:
    """Load YAML configuration for the assistant.

    Parameters
    ----------
    path : str | None
        Optional path to a configuration file. If not provided, the
        environment variable ``CLOUD_ASSISTANT_CONFIG`` is consulted. As a
        last resort ``config/default.yaml`` is used.

    Returns
    -------
    Dict[str, Any]
        Defaults merged with the file, with environment overrides applied.
    """
    if path is None:
        path = os.environ.get("CLOUD_ASSISTANT_CONFIG", "config/default.yaml")

    path_obj = Path(path)
    if not path_obj.exists():
        logger.warning("Config file not found at %s; using defaults.", path_obj)
        return _apply_env_overrides(copy.deepcopy(DEFAULTS))

    with path_obj.open("r", encoding="utf-8") as f:
        try:
            cfg = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise RuntimeError(f"Failed to parse config file {path_obj}: {e}")

    if not isinstance(cfg, dict):
        raise RuntimeError(f"Invalid config format in {path_obj}, expected dict.")

    return _apply_env_overrides(_deep_merge(DEFAULTS, cfg))
