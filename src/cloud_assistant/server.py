"""FastAPI application: cloud-project assistant with tools and long-term memory."""
from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional, Union

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.exception_handlers import request_validation_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field

from memory.store import MemoryStore, make_message, now_ms
from memory.typing import ChatSession, SessionSummary
from tools.gcp import GcpClient
from tools.registry import ToolRegistry

from .auth import Identity, identity_dependency
from .config import load_config
from .conversation import Conversation, ConversationError, ToolExecutor
from .facts import FactUpdater
from .llm import ModelChannel, create_from_config
from .quiz import QuizError, QuizQuestion, generate_question
from .streaming import FAILURE_MESSAGE, StreamRelay, sse_response

logger = logging.getLogger(__name__)

CHAT_INPUT_ERROR = "message and sessionId required"


# -----------------------------
# Pydantic request/response
# -----------------------------
class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    # Optional here so a missing field is a 400, not a validation 422.
    message: Optional[str] = None
    session_id: Optional[str] = Field(default=None, alias="sessionId")
    stream: bool = Field(default=False)


class ChatResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    reply: str
    session_id: str = Field(alias="sessionId")


# -----------------------------
# Utilities
# -----------------------------
def _make_store(cfg: Dict[str, Any]) -> MemoryStore:
    mem_cfg = cfg.get("memory", {})
    return MemoryStore(
        mem_cfg.get("data_dir") or "data",
        title_chars=int(mem_cfg.get("title_chars", 50)),
        summary_limit=int(mem_cfg.get("summary_limit", 30)),
    )


def _make_tools(cfg: Dict[str, Any]) -> ToolRegistry:
    gcp_cfg = cfg.get("gcp", {})
    client = GcpClient(
        gcp_cfg.get("project") or os.environ.get("GOOGLE_CLOUD_PROJECT", ""),
        gcp_cfg.get("location") or os.environ.get("VERTEX_AI_LOCATION", "us-east1"),
    )
    return ToolRegistry(client, timeout=cfg.get("tools", {}).get("timeout"))


def _profile_seed(who: Identity, now: int) -> Dict[str, Any]:
    return {
        "userId": who.user_id,
        "email": who.email,
        "name": who.name,
        "createdAt": now,
        "lastUpdated": now,
        "facts": {},
    }


# -----------------------------
# App factory
# -----------------------------
def create_app(
    config_path: Optional[str] = None,
    *,
    channel: Optional[ModelChannel] = None,
    tools: Optional[ToolExecutor] = None,
    store: Optional[MemoryStore] = None,
) -> FastAPI:
    cfg = load_config(config_path)
    model_cfg = cfg.get("model", {})

    # Services
    channel = channel or create_from_config(cfg)
    tools = tools or _make_tools(cfg)
    store = store or _make_store(cfg)
    conversation = Conversation(
        channel,
        tools,
        max_rounds=int(model_cfg.get("max_rounds", 8)),
        model_timeout=model_cfg.get("timeout"),
        tools_enabled=bool(model_cfg.get("tools_enabled", True)),
    )
    facts = FactUpdater(channel, store, model=model_cfg.get("flash_model"))
    current_identity = identity_dependency(cfg)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        if facts.pending:
            logger.info("Waiting for %d pending fact update(s)", facts.pending)
        await facts.drain()
        aclose = getattr(tools, "aclose", None)
        if aclose is not None:
            await aclose()

    app = FastAPI(title="Cloud Assistant", version="0.1.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.get("server", {}).get("cors_origins") or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.facts = facts
    app.state.store = store

    @app.exception_handler(RequestValidationError)
    async def chat_input_error(request: Request, exc: RequestValidationError):
        # /chat answers malformed input (bad JSON, wrong types) like missing fields.
        if request.url.path == "/chat":
            return JSONResponse(status_code=400, content={"detail": CHAT_INPUT_ERROR})
        return await request_validation_exception_handler(request, exc)

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {
            "ok": True,
            "data_dir": str(store.root),
            "tools_enabled": conversation.tools is not None,
            "max_rounds": conversation.max_rounds,
        }

    @app.post("/chat", response_model=ChatResponse)
    async def chat(req: ChatRequest, who: Identity = Depends(current_identity)):
        msg = (req.message or "").strip()
        session_id = (req.session_id or "").strip()
        if not msg or not session_id:
            raise HTTPException(status_code=400, detail=CHAT_INPUT_ERROR)

        profile, session = await asyncio.gather(
            store.get_profile(who.user_id),
            store.get_session(who.user_id, session_id),
        )
        if profile is None:
            await store.create_profile_if_absent(who.user_id, _profile_seed(who, now_ms()))

        user_facts = (profile or {}).get("facts") or {}
        history = (session or {}).get("messages") or []

        await store.append_message(who.user_id, session_id, make_message("user", msg))

        async def finish(reply: str) -> None:
            await store.append_message(who.user_id, session_id, make_message("assistant", reply))
            facts.spawn(who.user_id, msg, reply, user_facts)

        if req.stream:
            relay = StreamRelay(conversation.stream(history, msg, user_facts), on_complete=finish)
            return sse_response(relay)

        try:
            reply = await conversation.reply(history, msg, user_facts)
        except ConversationError:
            logger.exception("Chat failed for user %s session %s", who.user_id, session_id)
            raise HTTPException(status_code=500, detail=FAILURE_MESSAGE)

        await finish(reply)
        return ChatResponse(reply=reply, session_id=session_id)

    @app.get("/sessions", response_model=None)
    async def sessions(
        session_id: Optional[str] = Query(default=None, alias="id"),
        who: Identity = Depends(current_identity),
    ) -> Union[ChatSession, List[SessionSummary]]:
        if session_id:
            session = await store.get_session(who.user_id, session_id)
            if session is None:
                raise HTTPException(status_code=404, detail="Not found")
            return session
        return await store.list_session_summaries(who.user_id)

    @app.post("/quiz", response_model=QuizQuestion)
    async def quiz(who: Identity = Depends(current_identity)):
        try:
            return await generate_question(channel, model=model_cfg.get("flash_model"))
        except QuizError:
            logger.exception("Quiz generation failed for user %s", who.user_id)
            raise HTTPException(status_code=500, detail="Failed to generate question")

    return app
