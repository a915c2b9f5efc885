from __future__ import annotations

import asyncio
import json
from types import SimpleNamespace

import pytest

from cloud_assistant.llm import (
    FACTS_HEADER,
    SYSTEM_PROMPT,
    GeminiChannel,
    ModelChannelError,
    ToolCall,
    ToolResult,
    Turn,
    build_system_context,
    history_to_turns,
    parse_json_reply,
)
from tools.registry import DECLARATIONS


def test_system_context_without_facts_is_persona_only():
    ctx = build_system_context({})
    assert ctx == SYSTEM_PROMPT
    assert FACTS_HEADER not in ctx
    assert build_system_context(None) == SYSTEM_PROMPT


def test_system_context_lists_each_fact_as_json():
    facts = {"gcpProject": "my-project-123", "regions": ["us-east1"], "budget": 100}
    ctx = build_system_context(facts)
    assert ctx.startswith(SYSTEM_PROMPT)
    assert FACTS_HEADER in ctx
    for k, v in facts.items():
        assert f"- {k}: {json.dumps(v)}" in ctx


def test_history_maps_roles_and_skips_errors():
    history = [
        {"role": "user", "content": "hi", "timestamp": 1},
        {"role": "assistant", "content": "hello", "timestamp": 2},
        {"role": "error", "content": "boom", "timestamp": 3},
    ]
    turns = history_to_turns(history)
    assert [(t.role, t.text) for t in turns] == [("user", "hi"), ("model", "hello")]


def test_history_skips_blank_replies_so_no_turn_is_empty():
    history = [
        {"role": "user", "content": "hi", "timestamp": 1},
        {"role": "assistant", "content": "", "timestamp": 2},
        {"role": "user", "content": "still there?", "timestamp": 3},
        {"role": "assistant", "content": "  \n", "timestamp": 4},
    ]
    turns = history_to_turns(history)
    assert [(t.role, t.text) for t in turns] == [("user", "hi"), ("user", "still there?")]

    models = _Models(response=_response(_text("yes")))
    asyncio.run(_channel(models).send(turns + [Turn(role="user", text="ok")], system="sys"))
    assert all(c.parts for c in models.calls[0]["contents"])


@pytest.mark.parametrize(
    "text, expected",
    [
        ('{"k": "v"}', {"k": "v"}),
        ('```json\n{"k":"v"}\n```', {"k": "v"}),
        ('```\n{"k": 1}\n```', {"k": 1}),
        ('  ```JSON\n{"a": [1, 2]}\n```  ', {"a": [1, 2]}),
    ],
)
def test_parse_json_reply_unwraps_fences(text, expected):
    assert parse_json_reply(text) == expected


@pytest.mark.parametrize("text", ['```json\n{"k": "v"}', "not json", "```json\nnope\n```"])
def test_parse_json_reply_rejects_bad_input(text):
    with pytest.raises(ValueError):
        parse_json_reply(text)


# -----------------------------
# Gemini channel (no network)
# -----------------------------
class _Models:
    def __init__(self, response=None, chunks=None, error=None):
        self.response = response
        self.chunks = chunks or []
        self.error = error
        self.calls = []

    async def generate_content(self, **kwargs):
        self.calls.append(kwargs)
        if self.error:
            raise self.error
        return self.response

    async def generate_content_stream(self, **kwargs):
        self.calls.append(kwargs)
        if self.error:
            raise self.error

        async def gen():
            for c in self.chunks:
                yield c

        return gen()


def _response(*parts):
    return SimpleNamespace(candidates=[SimpleNamespace(content=SimpleNamespace(parts=list(parts)))])


def _text(t):
    return SimpleNamespace(text=t, function_call=None, thought=None)


def _call(name, args=None):
    return SimpleNamespace(text=None, function_call=SimpleNamespace(name=name, args=args or {}), thought=None)


def _channel(models):
    return GeminiChannel(model="chat-model", flash_model="flash-model", client=SimpleNamespace(aio=SimpleNamespace(models=models)))


def test_send_converts_turns_and_tool_calls():
    models = _Models(response=_response(_call("list_vms"), _call("list_gcs_buckets")))
    channel = _channel(models)
    turns = [
        Turn(role="user", text="what runs?"),
        Turn(role="model", tool_calls=[ToolCall("get_project_info")]),
        Turn(role="user", tool_results=[ToolResult("get_project_info", "• Project ID: p")]),
    ]

    reply = asyncio.run(channel.send(turns, system="sys", tools=DECLARATIONS))

    assert reply.tool_calls == [ToolCall("list_vms"), ToolCall("list_gcs_buckets")]
    kwargs = models.calls[0]
    assert kwargs["model"] == "chat-model"
    contents = kwargs["contents"]
    assert [c.role for c in contents] == ["user", "model", "user"]
    assert contents[1].parts[0].function_call.name == "get_project_info"
    assert contents[2].parts[0].function_response.response == {"content": "• Project ID: p"}
    config = kwargs["config"]
    assert config.system_instruction == "sys"
    names = [d.name for d in config.tools[0].function_declarations]
    assert names == [d.name for d in DECLARATIONS]


def test_send_without_tools_has_no_declarations():
    models = _Models(response=_response(_text("Hello "), _text("there")))
    reply = asyncio.run(_channel(models).send([Turn(role="user", text="hi")], system="sys"))
    assert reply.text == "Hello there"
    assert reply.tool_calls == []
    assert not models.calls[0]["config"].tools


def test_send_wraps_client_errors():
    models = _Models(error=RuntimeError("quota exceeded"))
    with pytest.raises(ModelChannelError, match="quota exceeded"):
        asyncio.run(_channel(models).send([Turn(role="user", text="hi")], system="sys"))


def test_stream_yields_partial_turns():
    models = _Models(chunks=[_response(_text("Hel")), _response(_text("lo")), _response(_call("list_vms"))])

    async def collect():
        return [t async for t in _channel(models).stream([Turn(role="user", text="hi")], system="sys")]

    partials = asyncio.run(collect())
    assert [p.text for p in partials] == ["Hel", "lo", ""]
    assert partials[-1].tool_calls == [ToolCall("list_vms")]


def test_generate_uses_flash_model_and_tolerates_empty_candidates():
    models = _Models(response=SimpleNamespace(candidates=[]))
    assert asyncio.run(_channel(models).generate("prompt")) == ""
    assert models.calls[0]["model"] == "flash-model"


def test_malformed_response_becomes_channel_error():
    models = _Models(response=SimpleNamespace(candidates=[object()]))
    channel = _channel(models)
    with pytest.raises(ModelChannelError):
        asyncio.run(channel.send([Turn(role="user", text="hi")], system="sys"))
    with pytest.raises(ModelChannelError):
        asyncio.run(channel.generate("prompt"))
