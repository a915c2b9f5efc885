"""Caller identity taken from headers set by the authenticating proxy in front of us."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict

from fastapi import HTTPException, Request


@dataclass(frozen=True)
class Identity:
    user_id: str
    email: str = ""
    name: str = ""


def identity_dependency(cfg: Dict[str, Any]) -> Callable[[Request], Identity]:
    """Build a FastAPI dependency resolving the caller, or failing with 401."""
    auth_cfg = cfg.get("auth", {}) or {}
    user_header = auth_cfg.get("user_header", "X-User-Id")
    email_header = auth_cfg.get("email_header", "X-User-Email")
    name_header = auth_cfg.get("name_header", "X-User-Name")

    def current_identity(request: Request) -> Identity:
        user_id = (request.headers.get(user_header) or "").strip()
        if not user_id:
            raise HTTPException(status_code=401, detail="Unauthorized")
        return Identity(
            user_id=user_id,
            email=request.headers.get(email_header, ""),
            name=request.headers.get(name_header, ""),
        )

    return current_identity
