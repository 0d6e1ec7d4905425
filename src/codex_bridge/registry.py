from __future__ import annotations

import logging
import subprocess
import threading
from datetime import datetime

from .cancellation import cancel_process, write_stdin
from .models import ActiveRunInfo, TopicKey, utc_now

logger = logging.getLogger("codex_bridge.registry")


class ActiveRun:
    """One in-flight agent process owned by a topic.

    The process handle is attached after spawn. Spawn, cancel and
    send-input may race from different threads, so every access to the
    handle goes through ``_lock``.
    """

    def __init__(self, topic: TopicKey, project_dir: str, prompt: str) -> None:
        self.topic = topic
        self.project_dir = project_dir
        self.prompt = prompt
        self.started_at: datetime = utc_now()
        self.cancel_event = threading.Event()
        self._lock = threading.Lock()
        self._stdin_lock = threading.Lock()
        self._process: subprocess.Popen[str] | None = None

    def attach_process(self, proc: subprocess.Popen[str]) -> None:
        with self._lock:
            self._process = proc

    @property
    def process(self) -> subprocess.Popen[str] | None:
        with self._lock:
            return self._process

    def info(self) -> ActiveRunInfo:
        proc = self.process
        return ActiveRunInfo(
            topic=self.topic,
            started_at=self.started_at,
            project_dir=self.project_dir,
            prompt=self.prompt,
            pid=int(proc.pid) if proc is not None else None,
        )

    def send_input(self, text: str) -> bool:
        proc = self.process
        if proc is None:
            return False
        with self._stdin_lock:
            return write_stdin(proc, text)

    def cancel(self, soft_command: str, soft_timeout: float, kill_timeout: float) -> bool:
        """Run the soft-then-hard cancellation and flag the run as cancelled."""
        # Flag first so the consumer never mistakes the kill for a failure.
        self.cancel_event.set()
        proc = self.process
        if proc is None or proc.poll() is not None:
            return True
        return cancel_process(
            proc,
            soft_command=soft_command,
            soft_timeout=soft_timeout,
            kill_timeout=kill_timeout,
            send_input=self.send_input,
        )


class ActiveRunRegistry:
    """Maps a topic to its single in-flight run."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._runs: dict[TopicKey, ActiveRun] = {}

    def add_if_absent(self, run: ActiveRun) -> bool:
        with self._lock:
            if run.topic in self._runs:
                return False
            self._runs[run.topic] = run
            return True

    def remove(self, run: ActiveRun) -> None:
        """Remove ``run`` only if it is still the registered one for its topic."""
        with self._lock:
            if self._runs.get(run.topic) is run:
                del self._runs[run.topic]

    def get(self, topic: TopicKey) -> ActiveRun | None:
        with self._lock:
            return self._runs.get(topic)

    def __contains__(self, topic: object) -> bool:
        with self._lock:
            return topic in self._runs

    def __len__(self) -> int:
        with self._lock:
            return len(self._runs)

    def snapshot(self) -> list[ActiveRunInfo]:
        with self._lock:
            runs = list(self._runs.values())
        return sorted((run.info() for run in runs), key=lambda info: info.started_at)
