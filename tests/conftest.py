"""Shared test fixtures for Codex Bridge tests."""

from __future__ import annotations

import json
import sys
import textwrap
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from codex_bridge.config import BridgeSettings  # noqa: E402
from codex_bridge.errors import RunAlreadyActiveError  # noqa: E402
from codex_bridge.launch import LaunchSpec  # noqa: E402
from codex_bridge.models import (  # noqa: E402
    ActiveRunInfo,
    Completed,
    RunOutcome,
    RunRequest,
    RunUpdate,
    TopicKey,
    utc_now,
)

SESSION_ID = "0199a1b2-c3d4-7e8f-9a0b-1c2d3e4f5a6b"


def jsonl(*events: dict[str, Any]) -> list[str]:
    """Serialize events the way ``codex exec --json`` prints them."""
    return [json.dumps(event) for event in events]


def script_launcher(script: str):
    """Launch builder that runs a Python snippet instead of codex."""
    source = textwrap.dedent(script)

    def _build(request: RunRequest, settings: BridgeSettings) -> LaunchSpec:
        return LaunchSpec(argv=[sys.executable, "-u", "-c", source], cwd=None, backend=request.backend)

    return _build


def emitting_launcher(lines: list[str], exit_code: int = 0, stderr: list[str] | None = None):
    """Launch builder for a fake agent that prints ``lines`` and exits."""
    script = f"""
    import sys
    for line in {lines!r}:
        print(line, flush=True)
    for line in {stderr or []!r}:
        print(line, file=sys.stderr, flush=True)
    sys.exit({exit_code})
    """
    return script_launcher(script)


def make_settings(**overrides: Any) -> BridgeSettings:
    values: dict[str, Any] = {
        "cancel_soft_timeout_sec": 1,
        "cancel_kill_timeout_sec": 1,
        "title_debounce_seconds": 0.0,
        "require_command_approval": False,
        "max_concurrent_runs": 2,
    }
    values.update(overrides)
    return BridgeSettings(_env_file=None, **values)


class FakeChat:
    """Fake chat client recording everything the bridge sends."""

    def __init__(self) -> None:
        self.messages: list[tuple[int, int | None, str]] = []
        self.titles: list[tuple[int, int, str]] = []
        self.approval_prompts: list[tuple[int, int, str]] = []

    def send_text(self, chat_id: int, text: str, thread_id: int | None = None) -> None:
        self.messages.append((chat_id, thread_id, text))

    def update_topic_title(self, chat_id: int, thread_id: int, title: str) -> None:
        self.titles.append((chat_id, thread_id, title))

    def send_approval_prompt(self, chat_id: int, thread_id: int, command: str) -> None:
        self.approval_prompts.append((chat_id, thread_id, command))

    @property
    def texts(self) -> list[str]:
        return [text for _, _, text in self.messages]


class FakeStore:
    """In-memory stand-in for SQLiteStore."""

    def __init__(self) -> None:
        self.projects: dict[int, dict[str, Any]] = {}
        self.topics: dict[int, dict[str, Any]] = {}
        self.events: list[dict[str, Any]] = []

    def bootstrap(self) -> None:
        pass

    def close(self) -> None:
        pass

    def get_or_create_project(self, dir_path: str) -> dict[str, Any]:
        normalized = str(Path(dir_path).expanduser().resolve())
        for project in self.projects.values():
            if project["dir_path"] == normalized:
                return project
        project = {"id": len(self.projects) + 1, "dir_path": normalized, "created_at": "now"}
        self.projects[project["id"]] = project
        return project

    def get_project(self, project_id: int) -> dict[str, Any] | None:
        return self.projects.get(project_id)

    def create_topic(
        self,
        project_id: int,
        chat_id: int,
        thread_id: int,
        name: str,
        launch_backend: str = "docker",
    ) -> dict[str, Any]:
        existing = self.get_topic(chat_id, thread_id)
        if existing is not None:
            return existing
        topic = {
            "id": len(self.topics) + 1,
            "project_id": project_id,
            "chat_id": chat_id,
            "thread_id": thread_id,
            "session_id": None,
            "name": name,
            "busy": False,
            "status": "idle",
            "context_left_percent": None,
            "launch_backend": launch_backend,
        }
        self.topics[topic["id"]] = topic
        return topic

    def get_topic(self, chat_id: int, thread_id: int) -> dict[str, Any] | None:
        for topic in self.topics.values():
            if topic["chat_id"] == chat_id and topic["thread_id"] == thread_id:
                return dict(topic)
        return None

    def list_topics(self) -> list[dict[str, Any]]:
        return [dict(topic) for topic in self.topics.values()]

    def update_topic_status(self, topic_id: int, status: str) -> None:
        self.topics[topic_id]["status"] = status

    def update_topic_context_left(self, topic_id: int, percent: int | None) -> None:
        self.topics[topic_id]["context_left_percent"] = percent

    def update_topic_session_id(self, topic_id: int, session_id: str | None) -> None:
        self.topics[topic_id]["session_id"] = session_id

    def update_topic_launch_backend(self, topic_id: int, launch_backend: str) -> None:
        self.topics[topic_id]["launch_backend"] = launch_backend

    def start_topic_job(self, topic_id: int) -> None:
        self.topics[topic_id].update(busy=True, status="working")

    def finish_topic_job(self, topic_id: int, final_status: str) -> None:
        self.topics[topic_id].update(busy=False, status=final_status)

    def record_audit(self, event_type: str, payload: dict[str, Any]) -> None:
        self.events.append({"type": event_type, "payload": payload})

    def list_audit(self, limit: int = 200) -> list[dict[str, Any]]:
        return list(reversed(self.events))[:limit]

    def event_types(self) -> list[str]:
        return [event["type"] for event in self.events]


@dataclass
class FakeRun:
    """Scripted AgentRun: yields ``updates`` then reports ``outcome``."""

    request: RunRequest
    updates: list[RunUpdate] = field(default_factory=list)
    final_outcome: RunOutcome = field(default_factory=Completed)
    session_id: str | None = None
    pid: int = 4242
    outcome: RunOutcome | None = None

    @property
    def topic(self) -> TopicKey:
        return self.request.topic

    def __iter__(self):
        yield from self.updates
        self.outcome = self.final_outcome

    def __enter__(self) -> FakeRun:
        return self

    def __exit__(self, *exc_info: object) -> None:
        if self.outcome is None:
            self.outcome = self.final_outcome


class FakeSupervisor:
    """Supervisor double that hands out scripted runs in order."""

    def __init__(self, settings: BridgeSettings | None = None) -> None:
        self.settings = settings or make_settings()
        self.requests: list[RunRequest] = []
        self.scripts: list[tuple[list[RunUpdate], RunOutcome]] = []
        self.inputs: list[tuple[TopicKey, str]] = []
        self.accept_input = True
        self.busy: set[TopicKey] = set()
        self.cancelled: list[TopicKey] = []
        self.spawn_error: Exception | None = None

    def script(self, updates: list[RunUpdate], outcome: RunOutcome | None = None) -> None:
        self.scripts.append((updates, outcome or Completed()))

    def run(self, request: RunRequest, cancel_event: Any = None) -> FakeRun:
        if request.topic in self.busy:
            raise RunAlreadyActiveError(request.topic)
        if self.spawn_error is not None:
            raise self.spawn_error
        self.requests.append(request)
        updates, outcome = self.scripts.pop(0) if self.scripts else ([], Completed())
        return FakeRun(request=request, updates=updates, final_outcome=outcome)

    def cancel(self, topic: TopicKey) -> bool:
        self.cancelled.append(topic)
        return topic in self.busy

    def send_input(self, topic: TopicKey, text: str) -> bool:
        self.inputs.append((topic, text))
        return self.accept_input

    def is_active(self, topic: TopicKey) -> bool:
        return topic in self.busy

    def list_active(self) -> list[ActiveRunInfo]:
        return [ActiveRunInfo(topic=topic, started_at=utc_now(), project_dir="/tmp", prompt="p") for topic in self.busy]

    def shutdown(self) -> None:
        pass


@pytest.fixture
def settings() -> BridgeSettings:
    return make_settings()


@pytest.fixture
def fake_store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def fake_chat() -> FakeChat:
    return FakeChat()


@pytest.fixture
def fake_supervisor(settings: BridgeSettings) -> FakeSupervisor:
    return FakeSupervisor(settings)


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    path = tmp_path / "repos" / "demo"
    path.mkdir(parents=True)
    return path
