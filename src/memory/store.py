"""Disk-backed user profiles and chat transcripts (thread-safe, atomic)."""
from __future__ import annotations

import asyncio
import logging
import threading
import time
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from .typing import ChatSession, Message, Role, SessionSummary, UserProfile
from utils.io import atomic_write_json, encode_id, ensure_dir, read_json

logger = logging.getLogger(__name__)

USERS_DIR = "user_profiles"
SESSIONS_DIR = "chat_sessions"
INDEX_FILE = "index.json"


def now_ms() -> int:
    return int(time.time() * 1000)


def make_message(role: Role, content: str, timestamp: Optional[int] = None) -> Message:
    return Message(role=role, content=content, timestamp=now_ms() if timestamp is None else timestamp)


def derive_title(content: str, limit: int = 50) -> str:
    """First ``limit`` characters of the opening message, marked when cut."""
    title = content[:limit].strip()
    return title + ("…" if len(content) > limit else "")


# -----------------------------
# MemoryStore
# -----------------------------
class MemoryStore:
    """JSON-on-disk store for user profiles and per-session message logs.

    Layout:
        data_dir/
          user_profiles/<user>.json
          chat_sessions/<user>/index.json              # list[SessionSummary]
          chat_sessions/<user>/sessions/<session>.json # ChatSession

    Every public method is a coroutine wrapping one atomic read-modify-write.
    The file work runs in a worker thread while holding ``self._lock``; the
    lock is released before control returns to the event loop.
    """

    def __init__(self, data_dir: str, *, title_chars: int = 50, summary_limit: int = 30) -> None:
        self.root = ensure_dir(data_dir)
        self.title_chars = title_chars
        self.summary_limit = summary_limit
        self._lock = threading.RLock()

    # --------- paths ----------
    def _profile_path(self, user_id: str) -> Path:
        return self.root / USERS_DIR / f"{encode_id(user_id)}.json"

    def _user_dir(self, user_id: str) -> Path:
        return self.root / SESSIONS_DIR / encode_id(user_id)

    def _session_path(self, user_id: str, session_id: str) -> Path:
        return self._user_dir(user_id) / "sessions" / f"{encode_id(session_id)}.json"

    def _index_path(self, user_id: str) -> Path:
        return self._user_dir(user_id) / INDEX_FILE

    # --------- profiles ----------
    async def get_profile(self, user_id: str) -> Optional[UserProfile]:
        return await asyncio.to_thread(self._load, self._profile_path(user_id))

    async def create_profile_if_absent(self, user_id: str, seed: Mapping[str, Any]) -> None:
        """Create the profile from ``seed``; on an existing profile only fill missing fields."""
        await asyncio.to_thread(self._create_profile_sync, user_id, dict(seed))

    async def merge_facts(self, user_id: str, new_facts: Mapping[str, Any]) -> None:
        """Union ``new_facts`` into the stored facts, new keys overwriting old ones."""
        await asyncio.to_thread(self._merge_facts_sync, user_id, dict(new_facts))

    def _create_profile_sync(self, user_id: str, seed: Dict[str, Any]) -> None:
        path = self._profile_path(user_id)
        with self._lock:
            profile = self._load(path)
            if profile is None:
                ts = now_ms()
                profile = {
                    "userId": user_id,
                    "email": "",
                    "name": "",
                    "createdAt": ts,
                    "lastUpdated": ts,
                    "facts": {},
                }
                profile.update(seed)
                profile["userId"] = user_id
                logger.info("Creating profile for user %s", user_id)
            else:
                missing = {k: v for k, v in seed.items() if k not in profile}
                if not missing:
                    return
                profile.update(missing)
            atomic_write_json(path, profile)

    def _merge_facts_sync(self, user_id: str, new_facts: Dict[str, Any]) -> None:
        path = self._profile_path(user_id)
        with self._lock:
            profile = self._load(path)
            if profile is None:
                ts = now_ms()
                profile = {"userId": user_id, "email": "", "name": "", "createdAt": ts, "facts": {}}
            facts = dict(profile.get("facts") or {})
            facts.update(new_facts)
            profile["facts"] = facts
            profile["lastUpdated"] = now_ms()
            atomic_write_json(path, profile)
        logger.debug("Merged %d fact(s) for user %s", len(new_facts), user_id)

    # --------- sessions ----------
    async def get_session(self, user_id: str, session_id: str) -> Optional[ChatSession]:
        return await asyncio.to_thread(self._load, self._session_path(user_id, session_id))

    async def append_message(self, user_id: str, session_id: str, message: Message) -> None:
        """Append ``message``; the first call for a session id creates the session."""
        await asyncio.to_thread(self._append_sync, user_id, session_id, dict(message))

    async def list_session_summaries(
        self, user_id: str, limit: Optional[int] = None
    ) -> List[SessionSummary]:
        """Newest-first session summaries, read from the per-user index only."""
        limit = self.summary_limit if limit is None else limit
        return await asyncio.to_thread(self._list_sync, user_id, max(0, limit))

    def _append_sync(self, user_id: str, session_id: str, message: Dict[str, Any]) -> None:
        path = self._session_path(user_id, session_id)
        with self._lock:
            session = self._load(path)
            if session is None:
                session = {
                    "sessionId": session_id,
                    "title": derive_title(message.get("content", ""), self.title_chars),
                    "createdAt": now_ms(),
                    "messages": [message],
                }
                # Index entry first: a session file never exists unlisted.
                self._index_add(user_id, session)
                atomic_write_json(path, session)
                logger.info("Created session %s for user %s", session_id, user_id)
                return

            messages = session.setdefault("messages", [])
            if messages and message.get("timestamp", 0) < messages[-1].get("timestamp", 0):
                logger.warning(
                    "Out-of-order append to session %s (%s < %s)",
                    session_id, message.get("timestamp"), messages[-1].get("timestamp"),
                )
            messages.append(message)
            atomic_write_json(path, session)

    def _index_add(self, user_id: str, session: Dict[str, Any]) -> None:
        path = self._index_path(user_id)
        index = self._load(path) or []
        index = [s for s in index if s.get("sessionId") != session["sessionId"]]
        index.append({
            "sessionId": session["sessionId"],
            "title": session["title"],
            "createdAt": session["createdAt"],
        })
        atomic_write_json(path, index)

    def _list_sync(self, user_id: str, limit: int) -> List[SessionSummary]:
        index = self._load(self._index_path(user_id)) or []
        ordered = sorted(index, key=lambda s: s.get("createdAt", 0), reverse=True)
        return [
            SessionSummary(
                sessionId=s["sessionId"],
                title=s.get("title") or "Untitled",
                createdAt=s.get("createdAt", 0),
            )
            for s in ordered[:limit]
        ]

    # --------- internals ----------
    def _load(self, path: Path) -> Any:
        if not path.exists():
            return None
        try:
            return read_json(path)
        except (OSError, ValueError) as e:
            # Corruption fallback: keep a backup and treat the record as absent.
            logger.warning("Unreadable record %s (%s); moving it aside", path, e)
            with self._lock:
                try:
                    path.rename(path.with_suffix(".corrupt.json"))
                except OSError:
                    logger.debug("Could not move aside %s", path)
            return None
