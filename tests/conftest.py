"""Pytest configuration and shared fixtures."""
from __future__ import annotations

import os
import sys
from pathlib import Path
import pytest

# Ensure src/ is on the import path (for local imports without installing as package)
SRC_PATH = Path(__file__).resolve().parent.parent / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))


@pytest.fixture(scope="session")
def project_root() -> Path:
    """Return the root directory of the project."""
    return Path(__file__).resolve().parent.parent


@pytest.fixture(scope="function")
def tmp_data_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for profiles and sessions during tests."""
    d = tmp_path / "data"
    d.mkdir(parents=True, exist_ok=True)
    return d


@pytest.fixture(scope="function")
def clean_env(monkeypatch: pytest.MonkeyPatch):
    """Ensure tests run with a clean environment (no leftover vars)."""
    for var in ["CLOUD_ASSISTANT_CONFIG", "GOOGLE_CLOUD_PROJECT", "GEMINI_MODEL", "GEMINI_FLASH_MODEL"]:
        monkeypatch.delenv(var, raising=False)
    for var in list(os.environ):
        if var.startswith("CLOUD_ASSISTANT__"):
            monkeypatch.delenv(var, raising=False)
    yield


@pytest.fixture(scope="function")
def missing_config(tmp_path: Path) -> str:
    """A config path that does not exist, so built-in defaults apply."""
    return str(tmp_path / "absent.yaml")
