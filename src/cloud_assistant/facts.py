"""Post-turn fact extraction, run detached from the request that triggered it."""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, Mapping, Optional, Set

from memory.store import MemoryStore

from .llm import ModelChannel, parse_json_reply

logger = logging.getLogger(__name__)

EXTRACTION_PROMPT = """You extract personal facts about the user from conversations to help a GCP assistant remember them.

Existing known facts (JSON):
{existing}

New conversation:
User: {user_message}
Assistant: {assistant_reply}

Extract any NEW facts about the user (their GCP projects, preferred services, tech stack, goals, preferences, etc.) that aren't already captured. Return ONLY a valid JSON object of new/updated facts, or {{}} if nothing new. Do not repeat existing facts unless they changed.

JSON only, no explanation:"""


def parse_facts(text: str) -> Dict[str, Any]:
    """Model output -> fact diff. Anything but a JSON object yields ``{}``."""
    try:
        data = parse_json_reply(text)
    except ValueError:
        logger.debug("Discarding unparsable fact output: %.200r", text)
        return {}
    return data if isinstance(data, dict) else {}


async def extract_facts(
    channel: ModelChannel,
    user_message: str,
    assistant_reply: str,
    existing: Optional[Mapping[str, Any]] = None,
    *,
    model: Optional[str] = None,
) -> Dict[str, Any]:
    prompt = EXTRACTION_PROMPT.format(
        existing=json.dumps(dict(existing or {}), indent=2, ensure_ascii=False),
        user_message=user_message,
        assistant_reply=assistant_reply,
    )
    text = await channel.generate(prompt, model=model)
    return parse_facts(text or "{}")


class FactUpdater:
    """Spawns fact extraction as fire-and-forget tasks.

    A task's only failure channel is :meth:`_on_done`, which logs. Nothing is
    ever raised back into the request that spawned it.
    """

    def __init__(self, channel: ModelChannel, store: MemoryStore, *, model: Optional[str] = None) -> None:
        self.channel = channel
        self.store = store
        self.model = model
        self._tasks: Set[asyncio.Task] = set()

    def spawn(
        self,
        user_id: str,
        user_message: str,
        assistant_reply: str,
        facts: Optional[Mapping[str, Any]] = None,
    ) -> asyncio.Task:
        task = asyncio.create_task(
            self._update(user_id, user_message, assistant_reply, dict(facts or {})),
            name=f"facts:{user_id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    async def _update(self, user_id: str, user_message: str, assistant_reply: str, facts: Dict[str, Any]) -> None:
        new_facts = await extract_facts(self.channel, user_message, assistant_reply, facts, model=self.model)
        if new_facts:
            await self.store.merge_facts(user_id, new_facts)
            logger.info("Stored %d new fact(s) for user %s", len(new_facts), user_id)

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning("Fact update %s cancelled", task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Fact update %s failed", task.get_name(), exc_info=exc)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for in-flight updates (shutdown, tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
