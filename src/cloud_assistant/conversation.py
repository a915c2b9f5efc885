"""Tool-calling conversation loop over a model channel."""
from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, AsyncIterator, List, Mapping, Optional, Protocol, Sequence

from memory.typing import Message

from .llm import (
    ModelChannel,
    ModelChannelError,
    ToolCall,
    ToolResult,
    Turn,
    build_system_context,
    history_to_turns,
    merge_partials,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_ROUNDS = 8


class ConversationError(RuntimeError):
    """The request could not be answered (model failure or runaway tool loop)."""


class LoopState(str, Enum):
    AWAITING_MODEL = "awaiting-model"
    EXECUTING_TOOLS = "executing-tools"
    DONE = "done"
    FAILED = "failed"


class ToolExecutor(Protocol):
    def declarations(self) -> Sequence[Any]: ...

    async def execute(self, name: str, args: Mapping[str, Any]) -> str: ...


class Conversation:
    """Drives one user message to a final answer, resolving tool calls on the way.

    Each round sends the accumulated turns to the model. A response carrying
    tool calls has every call executed concurrently; the results go back as one
    combined turn (same count and order as the calls) and the next round
    starts. A response without tool calls is the answer.

    Tool use and streaming are independent: ``tools=None`` or
    ``tools_enabled=False`` sends no declarations, and :meth:`stream` yields
    text deltas where :meth:`reply` returns the final text.
    """

    def __init__(
        self,
        channel: ModelChannel,
        tools: Optional[ToolExecutor] = None,
        *,
        max_rounds: int = DEFAULT_MAX_ROUNDS,
        model_timeout: Optional[float] = None,
        tools_enabled: bool = True,
    ) -> None:
        self.channel = channel
        self.tools = tools if tools_enabled else None
        self.max_rounds = max_rounds
        self.model_timeout = model_timeout

    async def reply(
        self, history: Sequence[Message], message: str, facts: Optional[Mapping[str, Any]] = None
    ) -> str:
        """Buffered answer; raises :class:`ConversationError` on failure."""
        parts = [text async for text in self._drive(history, message, facts, stream=False)]
        return "".join(parts)

    def stream(
        self, history: Sequence[Message], message: str, facts: Optional[Mapping[str, Any]] = None
    ) -> AsyncIterator[str]:
        """Text deltas in production order; raises :class:`ConversationError` mid-stream on failure."""
        return self._drive(history, message, facts, stream=True)

    # -------------------------
    # Driver
    # -------------------------
    async def _drive(
        self,
        history: Sequence[Message],
        message: str,
        facts: Optional[Mapping[str, Any]],
        *,
        stream: bool,
    ) -> AsyncIterator[str]:
        system = build_system_context(facts)
        turns = history_to_turns(history)
        turns.append(Turn(role="user", text=message))
        declarations = list(self.tools.declarations()) if self.tools is not None else None

        state = LoopState.AWAITING_MODEL
        rounds = 0
        try:
            while state is LoopState.AWAITING_MODEL:
                rounds += 1
                if rounds > self.max_rounds:
                    raise ConversationError(f"no final answer after {self.max_rounds} rounds")

                if stream:
                    partials: List[Turn] = []
                    async for partial in self._stream_turn(turns, system, declarations):
                        partials.append(partial)
                        if partial.text:
                            yield partial.text
                    response = merge_partials(partials)
                else:
                    response = await self._send_turn(turns, system, declarations)

                if not response.tool_calls:
                    state = _transition(state, LoopState.DONE, rounds)
                    if not stream:
                        yield response.text
                    break

                state = _transition(state, LoopState.EXECUTING_TOOLS, rounds)
                results = await self._execute_all(response.tool_calls)
                turns.append(Turn(role="model", text=response.text, tool_calls=list(response.tool_calls)))
                turns.append(Turn(role="user", tool_results=results))
                state = _transition(state, LoopState.AWAITING_MODEL, rounds)
        except ModelChannelError as e:
            _transition(state, LoopState.FAILED, rounds)
            raise ConversationError(str(e)) from e
        except ConversationError:
            _transition(state, LoopState.FAILED, rounds)
            raise

    async def _send_turn(self, turns: List[Turn], system: str, declarations: Optional[list]) -> Turn:
        try:
            async with asyncio.timeout(self.model_timeout):
                return await self.channel.send(turns, system=system, tools=declarations)
        except TimeoutError as e:
            raise ModelChannelError(f"model call timed out after {self.model_timeout}s") from e

    async def _stream_turn(
        self, turns: List[Turn], system: str, declarations: Optional[list]
    ) -> AsyncIterator[Turn]:
        chunks = aiter(self.channel.stream(turns, system=system, tools=declarations))
        try:
            while True:
                try:
                    async with asyncio.timeout(self.model_timeout):
                        partial = await anext(chunks)
                except StopAsyncIteration:
                    return
                except TimeoutError as e:
                    raise ModelChannelError(f"model stream stalled for {self.model_timeout}s") from e
                yield partial
        finally:
            aclose = getattr(chunks, "aclose", None)
            if aclose is not None:
                await aclose()

    async def _execute_all(self, calls: Sequence[ToolCall]) -> List[ToolResult]:
        if self.tools is None:
            outputs: List[str] = [f"Unknown tool: {c.name}" for c in calls]
        else:
            outputs = list(await asyncio.gather(*(self.tools.execute(c.name, c.args) for c in calls)))
        if len(outputs) != len(calls):
            raise ConversationError(f"{len(calls)} tool call(s) but {len(outputs)} result(s)")
        return [ToolResult(name=c.name, content=out) for c, out in zip(calls, outputs)]


def _transition(old: LoopState, new: LoopState, rounds: int) -> LoopState:
    log = logger.error if new is LoopState.FAILED else logger.debug
    log("Conversation round %d: %s -> %s", rounds, old.value, new.value)
    return new
