"""Protocol interfaces for the collaborators around the supervisor.

The chat transport and the state store live outside the core; these
protocols describe what the bridge needs from them so that fakes can be
used in tests.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class ChatClientProtocol(Protocol):
    """Protocol for the chat transport that topics live in."""

    def send_text(self, chat_id: int, text: str, thread_id: int | None = None) -> None:
        """Post a message into a topic."""
        ...

    def update_topic_title(self, chat_id: int, thread_id: int, title: str) -> None:
        """Rename a topic."""
        ...

    def send_approval_prompt(self, chat_id: int, thread_id: int, command: str) -> None:
        """Ask the humans in a topic to approve a command (yes / always / no)."""
        ...


@runtime_checkable
class StateStoreProtocol(Protocol):
    """Protocol for project/topic persistence."""

    def bootstrap(self) -> None:
        ...

    def get_or_create_project(self, dir_path: str) -> dict[str, Any]:
        ...

    def get_project(self, project_id: int) -> dict[str, Any] | None:
        ...

    def create_topic(
        self, project_id: int, chat_id: int, thread_id: int, name: str, launch_backend: str = "docker"
    ) -> dict[str, Any]:
        ...

    def get_topic(self, chat_id: int, thread_id: int) -> dict[str, Any] | None:
        ...

    def list_topics(self) -> list[dict[str, Any]]:
        ...

    def update_topic_status(self, topic_id: int, status: str) -> None:
        ...

    def update_topic_context_left(self, topic_id: int, percent: int | None) -> None:
        ...

    def update_topic_session_id(self, topic_id: int, session_id: str | None) -> None:
        ...

    def update_topic_launch_backend(self, topic_id: int, launch_backend: str) -> None:
        ...

    def start_topic_job(self, topic_id: int) -> None:
        """Mark the topic busy/working and stamp the job start."""
        ...

    def finish_topic_job(self, topic_id: int, final_status: str) -> None:
        """Mark the topic not busy with a final status and stamp the job end."""
        ...

    def record_audit(self, event_type: str, payload: dict[str, Any]) -> None:
        ...

    def close(self) -> None:
        ...
