from __future__ import annotations

import re
import threading
import time

from .models import TopicKey, TopicStatus

MAX_TITLE_LENGTH = 119

_BUSY = "\U0001F7E1"
_FAILED = "\U0001F534"
_IDLE = "\U0001F7E2"


def _path_tail(path: str) -> str:
    parts = [part for part in re.split(r"[\\/]+", path) if part]
    if not parts:
        return path
    return parts[-1] if len(parts) == 1 else f"{parts[-2]}/{parts[-1]}"


def format_topic_title(
    project_name: str,
    dir_path: str,
    busy: bool,
    context_left: int | None = None,
    status: str | None = None,
) -> str:
    """Build a topic title like ``"🟢 proj · 77% · repos/proj"``."""
    if busy:
        emoji = _BUSY
    elif status in (TopicStatus.ERROR.value, TopicStatus.CANCELLED.value):
        emoji = _FAILED
    else:
        emoji = _IDLE
    context = "n/a" if context_left is None else f"{max(0, min(100, context_left))}%"
    title = f"{emoji} {project_name} · {context} · {_path_tail(dir_path)}"
    return title if len(title) <= MAX_TITLE_LENGTH else title[:MAX_TITLE_LENGTH]


class TitleDebouncer:
    """Rate-limits topic renames per topic; forced updates always pass."""

    def __init__(self, interval_seconds: float) -> None:
        self.interval_seconds = max(0.0, interval_seconds)
        self._lock = threading.Lock()
        self._last: dict[TopicKey, float] = {}

    def should_update(self, topic: TopicKey, force: bool = False) -> bool:
        now = time.monotonic()
        with self._lock:
            last = self._last.get(topic)
            if not force and last is not None and (now - last) < self.interval_seconds:
                return False
            self._last[topic] = now
            return True

    def forget(self, topic: TopicKey) -> None:
        with self._lock:
            self._last.pop(topic, None)
