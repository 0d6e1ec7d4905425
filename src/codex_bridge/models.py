from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum


class UpdateKind(str, Enum):
    """Kinds of updates decoded from the agent event stream."""

    ANSWER = "answer"
    REASONING = "reasoning"
    COMMAND_START = "command_start"
    COMMAND = "command"
    STATUS = "status"
    META = "meta"


class TopicStatus(str, Enum):
    """Status values a topic moves through while runs start and finish."""

    IDLE = "idle"
    WORKING = "working"
    ERROR = "error"
    CANCELLED = "cancelled"
    WAITING_APPROVAL = "waiting_approval"


class LaunchBackend(str, Enum):
    """Environments the agent binary can be launched in."""

    DOCKER = "docker"
    WINDOWS = "windows"
    WSL = "wsl"

    @classmethod
    def is_supported(cls, value: str | None) -> bool:
        if not value or not value.strip():
            return False
        return value.strip().lower() in {member.value for member in cls}

    @classmethod
    def normalize(cls, value: str | None) -> LaunchBackend:
        """Map free-form input to a backend, falling back to docker."""
        if cls.is_supported(value):
            return cls(value.strip().lower())  # type: ignore[union-attr]
        return cls.DOCKER


@dataclass(frozen=True, slots=True)
class TopicKey:
    chat_id: int
    thread_id: int

    def __str__(self) -> str:
        return f"{self.chat_id}/{self.thread_id}"


@dataclass(frozen=True, slots=True)
class RunRequest:
    topic: TopicKey
    project_dir: str
    prompt: str
    resume_session_id: str | None = None
    backend: LaunchBackend = LaunchBackend.DOCKER
    sandbox_mode: str | None = None
    approval_mode: str | None = None
    stop_on_command_start: bool = False
    # Commands a human already approved; they pass the command-start stop.
    approved_commands: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class RunUpdate:
    text: str
    kind: UpdateKind = UpdateKind.ANSWER
    is_final: bool = False
    session_id: str | None = None
    context_left: int | None = None


@dataclass(frozen=True, slots=True)
class ActiveRunInfo:
    topic: TopicKey
    started_at: datetime
    project_dir: str
    prompt: str
    pid: int | None = None


# --- Run outcomes ---


@dataclass(frozen=True, slots=True)
class Completed:
    exit_code: int = 0


@dataclass(frozen=True, slots=True)
class Cancelled:
    reason: str = "cancelled"


@dataclass(frozen=True, slots=True)
class ApprovalRequired:
    command: str


@dataclass(frozen=True, slots=True)
class Failed:
    exit_code: int
    stderr_tail: tuple[str, ...] = field(default_factory=tuple)

    @property
    def message(self) -> str:
        base = f"Codex exited with error. Exit code: {self.exit_code}."
        if not self.stderr_tail:
            return base
        return base + " Stderr tail:\n" + "\n".join(self.stderr_tail)


RunOutcome = Completed | Cancelled | ApprovalRequired | Failed


def utc_now() -> datetime:
    return datetime.now(UTC)
