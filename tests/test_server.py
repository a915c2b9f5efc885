from __future__ import annotations

import asyncio
import json
from pathlib import Path

from fastapi.testclient import TestClient

from cloud_assistant.server import create_app
from cloud_assistant.llm import ModelChannelError
from memory.store import MemoryStore

from fakes import FakeChannel, FakeTools, call_turn, text_turn

USER = {"X-User-Id": "u1", "X-User-Email": "u1@example.com", "X-User-Name": "User One"}


def _app(tmp_path: Path, channel: FakeChannel, tools=None):
    store = MemoryStore(str(tmp_path / "data"))
    app = create_app(str(tmp_path / "absent.yaml"), channel=channel, tools=tools or FakeTools({}), store=store)
    return app, store


def _frames(body: str):
    return [line[len("data: "):] for line in body.split("\n\n") if line.startswith("data: ")]


def test_chat_requires_identity(tmp_path: Path):
    app, store = _app(tmp_path, FakeChannel())
    with TestClient(app) as client:
        r = client.post("/chat", json={"message": "hi", "sessionId": "s1"})
    assert r.status_code == 401
    assert asyncio.run(store.get_session("u1", "s1")) is None


def test_chat_requires_message_and_session(tmp_path: Path):
    app, store = _app(tmp_path, FakeChannel())
    with TestClient(app) as client:
        r1 = client.post("/chat", json={"sessionId": "s1"}, headers=USER)
        r2 = client.post("/chat", json={"message": "hi"}, headers=USER)
    assert r1.status_code == 400 and r2.status_code == 400
    assert r1.json()["detail"] == "message and sessionId required"
    assert asyncio.run(store.get_profile("u1")) is None


def test_chat_roundtrip_persists_and_learns_facts(tmp_path: Path):
    channel = FakeChannel(replies=[text_turn("Cloud Run fits.")], generated='{"prefers": "serverless"}')
    app, store = _app(tmp_path, channel)

    with TestClient(app) as client:
        r = client.post("/chat", json={"message": "Where to deploy?", "sessionId": "s1"}, headers=USER)
        assert r.status_code == 200
        assert r.json() == {"reply": "Cloud Run fits.", "sessionId": "s1"}
    # Leaving the client runs shutdown, which drains background fact updates.

    session = asyncio.run(store.get_session("u1", "s1"))
    assert [(m["role"], m["content"]) for m in session["messages"]] == [
        ("user", "Where to deploy?"),
        ("assistant", "Cloud Run fits."),
    ]
    profile = asyncio.run(store.get_profile("u1"))
    assert profile["email"] == "u1@example.com"
    assert profile["facts"] == {"prefers": "serverless"}


def test_second_turn_sends_history_and_facts(tmp_path: Path):
    channel = FakeChannel(replies=[text_turn("first"), text_turn("second")], generated=['{"project": "p1"}', "{}"])
    app, _ = _app(tmp_path, channel)

    with TestClient(app) as client:
        client.post("/chat", json={"message": "my project is p1", "sessionId": "s1"}, headers=USER)
        r = client.post("/chat", json={"message": "what is it?", "sessionId": "s1"}, headers=USER)
        assert r.json()["reply"] == "second"

    turns = channel.sent[1]
    assert [(t.role, t.text) for t in turns] == [
        ("user", "my project is p1"),
        ("model", "first"),
        ("user", "what is it?"),
    ]


def test_chat_with_tools(tmp_path: Path):
    channel = FakeChannel(replies=[call_turn("list_vms", "list_gcs_buckets"), text_turn("1 VM, 1 bucket.")])
    tools = FakeTools({"list_vms": "• vm", "list_gcs_buckets": "• bucket"})
    app, _ = _app(tmp_path, channel, tools)

    with TestClient(app) as client:
        r = client.post("/chat", json={"message": "inventory?", "sessionId": "s1"}, headers=USER)

    assert r.json()["reply"] == "1 VM, 1 bucket."
    assert [r.content for r in channel.sent[1][-1].tool_results] == ["• vm", "• bucket"]


def test_model_failure_is_generic_500(tmp_path: Path):
    channel = FakeChannel(replies=[ModelChannelError("quota exhausted")])
    app, store = _app(tmp_path, channel)

    with TestClient(app) as client:
        r = client.post("/chat", json={"message": "hi", "sessionId": "s1"}, headers=USER)

    assert r.status_code == 500
    assert r.json()["detail"] == "Failed to generate response"
    session = asyncio.run(store.get_session("u1", "s1"))
    assert [m["role"] for m in session["messages"]] == ["user"]


def test_streaming_chat(tmp_path: Path):
    channel = FakeChannel(stream_rounds=[[text_turn("Hel"), text_turn("lo")]], generated="{}")
    app, store = _app(tmp_path, channel)

    with TestClient(app) as client:
        r = client.post("/chat", json={"message": "hi", "sessionId": "s1", "stream": True}, headers=USER)
        assert r.status_code == 200
        assert r.headers["content-type"].startswith("text/event-stream")
        frames = _frames(r.text)

    assert frames == [json.dumps({"chunk": "Hel"}), json.dumps({"chunk": "lo"}), "[DONE]"]
    session = asyncio.run(store.get_session("u1", "s1"))
    assert session["messages"][-1]["role"] == "assistant"
    assert session["messages"][-1]["content"] == "Hello"


def test_streaming_error_frame_and_no_partial_persist(tmp_path: Path):
    channel = FakeChannel(stream_rounds=[[text_turn("par"), ModelChannelError("reset")]])
    app, store = _app(tmp_path, channel)

    with TestClient(app) as client:
        r = client.post("/chat", json={"message": "hi", "sessionId": "s1", "stream": True}, headers=USER)
        frames = _frames(r.text)

    assert frames == [json.dumps({"chunk": "par"}), json.dumps({"error": "Failed to generate response"})]
    session = asyncio.run(store.get_session("u1", "s1"))
    assert [m["role"] for m in session["messages"]] == ["user"]


def test_sessions_listing_and_lookup(tmp_path: Path):
    channel = FakeChannel(replies=[text_turn("a1"), text_turn("a2")])
    app, _ = _app(tmp_path, channel)

    with TestClient(app) as client:
        client.post("/chat", json={"message": "first question", "sessionId": "s1"}, headers=USER)
        client.post("/chat", json={"message": "second question", "sessionId": "s2"}, headers=USER)

        listing = client.get("/sessions", headers=USER)
        one = client.get("/sessions", params={"id": "s1"}, headers=USER)
        missing = client.get("/sessions", params={"id": "nope"}, headers=USER)
        other_user = client.get("/sessions", headers={"X-User-Id": "u2"})
        anonymous = client.get("/sessions")

    ids = [s["sessionId"] for s in listing.json()]
    assert set(ids) == {"s1", "s2"}
    assert all("messages" not in s for s in listing.json())
    assert one.json()["title"] == "first question"
    assert [m["content"] for m in one.json()["messages"]] == ["first question", "a1"]
    assert missing.status_code == 404
    assert other_user.json() == []
    assert anonymous.status_code == 401


def test_quiz(tmp_path: Path):
    question = {
        "q": "Which service grounds answers in enterprise data?",
        "options": ["Vertex AI Search", "Cloud DNS", "Cloud NAT", "Cloud Armor"],
        "correct": 0,
        "explanations": ["A is correct because...", "B is wrong", "C is wrong", "D is wrong"],
    }
    channel = FakeChannel(generated=["```json\n" + json.dumps(question) + "\n```", '{"q": "bad"}'])
    app, _ = _app(tmp_path, channel)

    with TestClient(app) as client:
        ok = client.post("/quiz", headers=USER)
        bad = client.post("/quiz", headers=USER)

    assert ok.status_code == 200
    assert ok.json() == question
    assert bad.status_code == 500
    assert bad.json()["detail"] == "Failed to generate question"


def test_health(tmp_path: Path):
    app, _ = _app(tmp_path, FakeChannel())
    with TestClient(app) as client:
        r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["ok"] is True
    assert r.json()["max_rounds"] == 8


def test_chat_malformed_input_is_400(tmp_path: Path):
    app, store = _app(tmp_path, FakeChannel())
    with TestClient(app) as client:
        wrong_type = client.post("/chat", json={"message": 5, "sessionId": "s1"}, headers=USER)
        wrong_id = client.post("/chat", json={"message": "hi", "sessionId": ["s1"]}, headers=USER)
        not_json = client.post(
            "/chat", content=b"not json", headers={**USER, "Content-Type": "application/json"}
        )
        anonymous = client.post("/chat", json={"message": 5, "sessionId": "s1"})

    for r in (wrong_type, wrong_id, not_json):
        assert r.status_code == 400
        assert r.json()["detail"] == "message and sessionId required"
    assert anonymous.status_code == 401
    assert asyncio.run(store.get_profile("u1")) is None


def test_empty_reply_does_not_break_the_session(tmp_path: Path):
    channel = FakeChannel(replies=[text_turn(""), text_turn("back again")])
    app, store = _app(tmp_path, channel)

    with TestClient(app) as client:
        first = client.post("/chat", json={"message": "hi", "sessionId": "s1"}, headers=USER)
        second = client.post("/chat", json={"message": "hello?", "sessionId": "s1"}, headers=USER)

    assert first.status_code == 200
    assert second.json()["reply"] == "back again"
    assert [(t.role, t.text) for t in channel.sent[1]] == [("user", "hi"), ("user", "hello?")]
