from __future__ import annotations

import hashlib
import json
import os
import tempfile
from pathlib import Path
from typing import Any, Union
from urllib.parse import quote

PathLike = Union[str, Path]

MAX_STEM = 200


def encode_id(name: str) -> str:
    """Turn an opaque id into a file stem; distinct ids give distinct stems.

    Every character outside ``[A-Za-z0-9_-]`` is percent-encoded, so a stem
    never holds a path separator and is never ``.`` or ``..``. Stems longer
    than ``MAX_STEM`` become ``~`` plus the sha256 of the id; a literal ``~``
    is always escaped in the percent-encoded form.
    """
    if not name:
        raise ValueError("id must be a non-empty string")
    s = quote(name, safe="").replace(".", "%2E").replace("~", "%7E")
    if len(s) > MAX_STEM:
        s = "~" + hashlib.sha256(name.encode("utf-8")).hexdigest()
    return s


def ensure_dir(p: PathLike) -> Path:
    """Ensure that a directory exists, returning it as a Path."""
    p = Path(p)
    try:
        p.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise OSError(f"Failed to create directory {p}: {e}") from e
    return p


def read_json(path: PathLike) -> Any:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def atomic_write_json(path: PathLike, data: Any) -> None:
    """Safely write a JSON file atomically to avoid corruption."""
    p = Path(path)
    ensure_dir(p.parent)
    try:
        with tempfile.NamedTemporaryFile(
            "w", encoding="utf-8", delete=False, dir=str(p.parent), suffix=".tmp"
        ) as tmp:
            json.dump(data, tmp, ensure_ascii=False, indent=2)
            tmp.flush()
            os.fsync(tmp.fileno())
            tmp_name = tmp.name
        os.replace(tmp_name, p)
    except (OSError, TypeError, ValueError) as e:
        raise OSError(f"Atomic write failed for {p}: {e}") from e
