"""Cloud project assistant: Gemini with live GCP lookups and per-user memory.

This package provides a FastAPI application factory named ``create_app``
inside ``cloud_assistant/server.py`` (see :func:`create_app`).

Typical usage
-------------
from cloud_assistant import create_app
app = create_app()

or, from the provided launcher:

python scripts/run_server.py --host 127.0.0.1 --port 8000
"""

from __future__ import annotations

__all__ = ["create_app", "__version__", "get_version"]

# ---------------------------------------------------------------------
# Version handling
# ---------------------------------------------------------------------
__version__ = "0.1.0"


def get_version() -> str:
    """Return the package version."""
    return __version__


def create_app(*args, **kwargs):
    """Return a configured FastAPI application.

    This forwards to :func:`cloud_assistant.server.create_app`; the import is
    deferred so ``import cloud_assistant`` stays cheap for tooling that only
    needs metadata.
    """
    from .server import create_app as _create_app

    return _create_app(*args, **kwargs)
