"""Gemini model channel with tool-call turns, plus prompt helpers."""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass, field
from typing import (
    Any,
    AsyncIterator,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Protocol,
    Sequence,
)

from memory.typing import Message

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are an expert Google Cloud Platform architect and engineer. You have deep "
    "knowledge of all GCP services, best practices, pricing, and architecture patterns. "
    "You remember facts about the user and their projects to give personalized advice. "
    "Be concise, practical, and direct."
)
FACTS_HEADER = "What you know about the user:"

DEFAULT_MODEL = "gemini-2.0-flash-001"

_FENCED = re.compile(r"^```[\w+-]*[ \t]*\n?(?P<body>.*?)\n?[ \t]*```$", re.DOTALL)


class ModelChannelError(RuntimeError):
    """The model could not be reached or returned an unusable response."""


# -----------------------------
# Turn types
# -----------------------------
@dataclass(frozen=True)
class ToolCall:
    name: str
    args: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolResult:
    name: str
    content: str


@dataclass
class Turn:
    """One content entry exchanged with the model channel.

    ``role`` is the model's own vocabulary: "user" or "model". Tool results
    travel back in a "user" turn.
    """

    role: str
    text: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)
    tool_results: List[ToolResult] = field(default_factory=list)


class ModelChannel(Protocol):
    async def generate(self, prompt: str, *, model: Optional[str] = None) -> str: ...

    async def send(
        self, turns: Sequence[Turn], *, system: str, tools: Optional[Sequence[Any]] = None
    ) -> Turn: ...

    def stream(
        self, turns: Sequence[Turn], *, system: str, tools: Optional[Sequence[Any]] = None
    ) -> AsyncIterator[Turn]: ...


# -----------------------------
# Prompt helpers
# -----------------------------
def build_system_context(facts: Optional[Mapping[str, Any]]) -> str:
    """Persona text, followed by one ``- key: JSON(value)`` line per known fact."""
    lines = [f"- {k}: {json.dumps(v, ensure_ascii=False)}" for k, v in (facts or {}).items()]
    if not lines:
        return SYSTEM_PROMPT
    return f"{SYSTEM_PROMPT}\n\n{FACTS_HEADER}\n" + "\n".join(lines)


def history_to_turns(messages: Iterable[Message]) -> List[Turn]:
    """Map stored messages to model turns.

    Error entries and messages with blank content are not sent to the model.
    """
    turns: List[Turn] = []
    for m in messages:
        role = m.get("role")
        if not (m.get("content") or "").strip():
            continue
        if role == "assistant":
            turns.append(Turn(role="model", text=m.get("content", "")))
        elif role == "user":
            turns.append(Turn(role="user", text=m.get("content", "")))
    return turns


def parse_json_reply(text: str) -> Any:
    """Parse model output as JSON, unwrapping one markdown code fence if present.

    Raises ``ValueError`` for an unclosed fence or invalid JSON.
    """
    cleaned = (text or "").strip()
    if cleaned.startswith("```"):
        m = _FENCED.match(cleaned)
        if m is None:
            raise ValueError("unterminated code fence")
        cleaned = m.group("body").strip()
    return json.loads(cleaned)


def merge_partials(partials: Iterable[Turn]) -> Turn:
    """Fold streamed partial model turns into one turn."""
    text: List[str] = []
    calls: List[ToolCall] = []
    for p in partials:
        if p.text:
            text.append(p.text)
        calls.extend(p.tool_calls)
    return Turn(role="model", text="".join(text), tool_calls=calls)


# -----------------------------
# Gemini channel
# -----------------------------
class GeminiChannel:
    """Thin async wrapper around :mod:`google.genai` speaking :class:`Turn`s."""

    def __init__(
        self,
        *,
        model: str = DEFAULT_MODEL,
        flash_model: Optional[str] = None,
        project: Optional[str] = None,
        location: str = "us-east1",
        api_key: Optional[str] = None,
        client: Any = None,
    ) -> None:
        # Lazy import so the package imports without the SDK configured.
        from google import genai
        from google.genai import types

        self._types = types
        self.model = model
        self.flash_model = flash_model or model
        if client is None:
            if api_key:
                client = genai.Client(api_key=api_key)
            else:
                client = genai.Client(vertexai=True, project=project, location=location)
        self._client = client

    async def generate(self, prompt: str, *, model: Optional[str] = None) -> str:
        """Single-shot text generation, used for fact extraction and quizzes."""
        try:
            resp = await self._client.aio.models.generate_content(
                model=model or self.flash_model, contents=prompt
            )
            return self._turn_from_response(resp).text
        except Exception as e:
            raise ModelChannelError(f"generate_content failed: {e}") from e

    async def send(
        self, turns: Sequence[Turn], *, system: str, tools: Optional[Sequence[Any]] = None
    ) -> Turn:
        try:
            resp = await self._client.aio.models.generate_content(
                model=self.model,
                contents=[self._to_content(t) for t in turns],
                config=self._config(system, tools),
            )
            return self._turn_from_response(resp)
        except Exception as e:
            raise ModelChannelError(f"generate_content failed: {e}") from e

    async def stream(
        self, turns: Sequence[Turn], *, system: str, tools: Optional[Sequence[Any]] = None
    ) -> AsyncIterator[Turn]:
        try:
            chunks = await self._client.aio.models.generate_content_stream(
                model=self.model,
                contents=[self._to_content(t) for t in turns],
                config=self._config(system, tools),
            )
            async for chunk in chunks:
                yield self._turn_from_response(chunk)
        except ModelChannelError:
            raise
        except Exception as e:
            raise ModelChannelError(f"generate_content_stream failed: {e}") from e

    # -------------------------
    # Internals
    # -------------------------
    def _config(self, system: str, tools: Optional[Sequence[Any]]) -> Any:
        types = self._types
        kwargs: Dict[str, Any] = {"system_instruction": system}
        if tools:
            decls = []
            for d in tools:
                fd: Dict[str, Any] = {"name": d.name, "description": d.description}
                # Gemini rejects OBJECT schemas without properties; omit them instead.
                if (d.parameters or {}).get("properties"):
                    fd["parameters"] = d.parameters
                decls.append(types.FunctionDeclaration(**fd))
            kwargs["tools"] = [types.Tool(function_declarations=decls)]
            kwargs["automatic_function_calling"] = types.AutomaticFunctionCallingConfig(disable=True)
        return types.GenerateContentConfig(**kwargs)

    def _to_content(self, turn: Turn) -> Any:
        types = self._types
        parts = []
        if turn.text:
            parts.append(types.Part(text=turn.text))
        for call in turn.tool_calls:
            parts.append(types.Part(function_call=types.FunctionCall(name=call.name, args=dict(call.args))))
        for res in turn.tool_results:
            parts.append(types.Part(function_response=types.FunctionResponse(
                name=res.name, response={"content": res.content},
            )))
        return types.Content(role=turn.role, parts=parts)

    @staticmethod
    def _turn_from_response(resp: Any) -> Turn:
        candidates = getattr(resp, "candidates", None) or []
        content = candidates[0].content if candidates else None
        text: List[str] = []
        calls: List[ToolCall] = []
        for part in getattr(content, "parts", None) or []:
            if getattr(part, "thought", False):
                continue
            fc = getattr(part, "function_call", None)
            if fc is not None:
                calls.append(ToolCall(name=fc.name, args=dict(fc.args or {})))
            elif getattr(part, "text", None):
                text.append(part.text)
        return Turn(role="model", text="".join(text), tool_calls=calls)


# -----------------------------
# Convenience factory
# -----------------------------
def create_from_config(cfg: Dict[str, Any]) -> GeminiChannel:
    """Create a GeminiChannel from a config dict (e.g., loaded YAML)."""
    model_cfg = (cfg or {}).get("model", {}) if isinstance(cfg, dict) else {}
    gcp_cfg = (cfg or {}).get("gcp", {}) if isinstance(cfg, dict) else {}
    chat_model = model_cfg.get("chat_model") or os.environ.get("GEMINI_MODEL") or DEFAULT_MODEL
    flash_model = model_cfg.get("flash_model") or os.environ.get("GEMINI_FLASH_MODEL") or chat_model
    return GeminiChannel(
        model=chat_model,
        flash_model=flash_model,
        project=gcp_cfg.get("project") or os.environ.get("GOOGLE_CLOUD_PROJECT"),
        location=gcp_cfg.get("location") or os.environ.get("VERTEX_AI_LOCATION", "us-east1"),
        api_key=model_cfg.get("api_key"),
    )
