from __future__ import annotations

import secrets
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Request
from pydantic import BaseModel, Field

from .approval import parse_decision
from .bridge import TopicBridge
from .chat import ConsoleChatClient
from .config import BridgeSettings
from .errors import BridgeError, PathNotAllowedError, TopicNotBoundError
from .models import TopicKey
from .store import SQLiteStore
from .supervisor import CodexSupervisor


class TopicBindBody(BaseModel):
    chat_id: int
    thread_id: int
    project_dir: str = Field(min_length=1)
    name: str | None = None
    backend: str | None = None


class PromptBody(BaseModel):
    text: str = Field(min_length=1)


class InputBody(BaseModel):
    text: str


class DecisionBody(BaseModel):
    decision: str = Field(min_length=1)


def _make_auth_dependency(token: str):
    """Create a FastAPI dependency that validates the Authorization: Bearer token."""
    async def _verify_token(request: Request) -> None:
        if not token:
            return  # no token configured, auth disabled
        auth_header = request.headers.get("Authorization", "")
        if not auth_header.startswith("Bearer "):
            raise HTTPException(status_code=401, detail="Missing or invalid Authorization header")
        provided = auth_header[7:]
        if not secrets.compare_digest(provided, token):
            raise HTTPException(status_code=401, detail="Invalid API token")
    return _verify_token


def build_bridge(settings: BridgeSettings, store: Any | None = None) -> TopicBridge:
    active_store = store if store is not None else SQLiteStore(settings.resolved_db_path())
    active_store.bootstrap()
    return TopicBridge(CodexSupervisor(settings), active_store, ConsoleChatClient(), settings)


def build_app(
    store: Any | None = None,
    bridge: TopicBridge | None = None,
    settings: BridgeSettings | None = None,
) -> FastAPI:
    settings = settings or BridgeSettings()
    if bridge is None:
        bridge = build_bridge(settings, store)
    active_store = store if store is not None else bridge.store

    verify_token = _make_auth_dependency(settings.admin_api_token)

    app = FastAPI(title="Codex Bridge Admin API", version="0.1.0")
    app.state.store = active_store
    app.state.bridge = bridge

    @app.get("/health")
    def health() -> dict[str, Any]:
        return {"status": "ok", "active_runs": len(app.state.bridge.list_active_runs())}

    @app.get("/topics", dependencies=[Depends(verify_token)])
    def topics() -> list[dict[str, Any]]:
        return app.state.store.list_topics()

    @app.post("/topics", dependencies=[Depends(verify_token)])
    def bind_topic(body: TopicBindBody) -> dict[str, Any]:
        try:
            return app.state.bridge.bind_topic(
                body.chat_id, body.thread_id, body.project_dir, body.name, body.backend
            )
        except PathNotAllowedError as exc:
            raise HTTPException(status_code=403, detail=str(exc)) from exc
        except BridgeError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

    @app.post("/topics/{chat_id}/{thread_id}/prompt", dependencies=[Depends(verify_token)])
    def submit_prompt(chat_id: int, thread_id: int, body: PromptBody) -> dict[str, Any]:
        """Queue a prompt for the topic; progress goes to the chat."""
        if app.state.store.get_topic(chat_id, thread_id) is None:
            detail = str(TopicNotBoundError(TopicKey(chat_id, thread_id)))
            raise HTTPException(status_code=404, detail=detail)
        if app.state.bridge.supervisor.is_active(TopicKey(chat_id, thread_id)):
            raise HTTPException(status_code=409, detail="a run is already active for this topic")
        app.state.bridge.submit_prompt(chat_id, thread_id, body.text)
        return {"chat_id": chat_id, "thread_id": thread_id, "accepted": True}

    @app.get("/runs/active", dependencies=[Depends(verify_token)])
    def active_runs() -> list[dict[str, Any]]:
        return [
            {
                "chat_id": info.topic.chat_id,
                "thread_id": info.topic.thread_id,
                "started_at": info.started_at.isoformat(),
                "project_dir": info.project_dir,
                "prompt": info.prompt,
                "pid": info.pid,
            }
            for info in app.state.bridge.list_active_runs()
        ]

    @app.post("/runs/{chat_id}/{thread_id}/cancel", dependencies=[Depends(verify_token)])
    def cancel_run(chat_id: int, thread_id: int) -> dict[str, Any]:
        return {"cancelled": app.state.bridge.cancel(chat_id, thread_id)}

    @app.post("/runs/{chat_id}/{thread_id}/input", dependencies=[Depends(verify_token)])
    def send_input(chat_id: int, thread_id: int, body: InputBody) -> dict[str, Any]:
        if not app.state.bridge.send_input(chat_id, thread_id, body.text):
            raise HTTPException(status_code=404, detail="no active run accepts input")
        return {"sent": True}

    @app.get("/approvals/pending", dependencies=[Depends(verify_token)])
    def pending_approvals() -> list[dict[str, Any]]:
        return [
            {
                "chat_id": item.topic.chat_id,
                "thread_id": item.topic.thread_id,
                "command": item.command,
                "mode": item.mode.value,
                "session_id": item.session_id,
                "created_at": item.created_at.isoformat(),
            }
            for item in app.state.bridge.gate.list_pending()
        ]

    @app.post("/approvals/{chat_id}/{thread_id}", dependencies=[Depends(verify_token)])
    def decide(chat_id: int, thread_id: int, body: DecisionBody) -> dict[str, Any]:
        decision = parse_decision(body.decision)
        if decision is None:
            raise HTTPException(status_code=422, detail="decision must be yes, always or no")
        if app.state.bridge.gate.pending(TopicKey(chat_id, thread_id)) is None:
            raise HTTPException(status_code=404, detail="approval not found")
        app.state.bridge.submit_decision(chat_id, thread_id, decision)
        return {"chat_id": chat_id, "thread_id": thread_id, "decision": decision.value}

    @app.post("/approvals/{chat_id}/{thread_id}/reset", dependencies=[Depends(verify_token)])
    def reset_always(chat_id: int, thread_id: int) -> dict[str, Any]:
        return {"reset": app.state.bridge.reset_always(chat_id, thread_id)}

    @app.get("/audit/events", dependencies=[Depends(verify_token)])
    def audit_events(limit: int = 200) -> list[dict[str, Any]]:
        if not hasattr(app.state.store, "list_audit"):
            return []
        return app.state.store.list_audit(limit=limit)

    return app
