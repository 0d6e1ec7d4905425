"""Exceptions raised by the supervisor and the bridge host.

Run results that are part of normal control flow (cancellation, approval
interception, nonzero exit) are returned as outcome values from
``codex_bridge.models`` instead of being raised.
"""

from __future__ import annotations

from .models import TopicKey


class BridgeError(Exception):
    """Base class for codex-bridge errors."""


class RunAlreadyActiveError(BridgeError):
    def __init__(self, topic: TopicKey) -> None:
        super().__init__(f"Run is already active for topic {topic}.")
        self.topic = topic


class AgentSpawnError(BridgeError):
    def __init__(self, command: str, cause: BaseException) -> None:
        super().__init__(f"Failed to start codex process ({command}): {cause}")
        self.command = command
        self.cause = cause


class TopicNotBoundError(BridgeError):
    def __init__(self, topic: TopicKey) -> None:
        super().__init__(f"Topic {topic} is not bound to a project directory.")
        self.topic = topic


class PathNotAllowedError(BridgeError):
    def __init__(self, path: str) -> None:
        super().__init__(f"Path is not allowed by the path policy: {path}")
        self.path = path
