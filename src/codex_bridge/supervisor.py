"""Supervision of `codex exec` subprocesses, one per chat topic.

A run is admitted into the registry, spawned, and then consumed as a lazy
iterator of ``RunUpdate`` values. Two reader threads pump stdout and stderr
independently; stdout lines are decoded and published in read order into an
unbounded queue that the single consumer drains. When iteration ends the
run's ``outcome`` tells the caller how it finished.
"""

from __future__ import annotations

import collections
import logging
import os
import queue
import subprocess
import threading
import time
from collections.abc import Callable, Iterator
from dataclasses import replace
from typing import Any

from .config import BridgeSettings
from .errors import AgentSpawnError, RunAlreadyActiveError
from .events import decode, extract_session_id
from .launch import LaunchSpec, build_launch
from .models import (
    ActiveRunInfo,
    ApprovalRequired,
    Cancelled,
    Completed,
    Failed,
    RunOutcome,
    RunRequest,
    RunUpdate,
    TopicKey,
    UpdateKind,
)
from .registry import ActiveRun, ActiveRunRegistry

logger = logging.getLogger("codex_bridge.supervisor")

STDERR_TAIL_LINES = 20
_POLL_INTERVAL = 0.1
_READER_JOIN_SECONDS = 2.0

_CLOSED = object()

LaunchBuilder = Callable[[RunRequest, BridgeSettings], LaunchSpec]


class AgentRun:
    """A live run: iterate it for updates, then read ``outcome``.

    Only one consumer may iterate a run. Leaving a ``with`` block (or calling
    ``close``) before the stream is exhausted kills the process and frees
    the topic.
    """

    def __init__(
        self,
        supervisor: CodexSupervisor,
        request: RunRequest,
        active: ActiveRun,
        proc: subprocess.Popen[str],
        cancel_event: threading.Event | None = None,
    ) -> None:
        self.request = request
        self.outcome: RunOutcome | None = None
        self._supervisor = supervisor
        self._active = active
        self._proc = proc
        self._caller_cancel = cancel_event
        self._queue: queue.Queue[Any] = queue.Queue()
        self._stderr_tail: collections.deque[str] = collections.deque(maxlen=STDERR_TAIL_LINES)
        self._stderr_lock = threading.Lock()
        self._producers_lock = threading.Lock()
        self._producers_left = 2
        self._session_id: str | None = None
        self._started = False
        self._finished = False
        self._iterator: Iterator[RunUpdate] | None = None

        self._readers = [
            threading.Thread(
                target=self._pump_stdout, name=f"codex-stdout-{request.topic}", daemon=True
            ),
            threading.Thread(
                target=self._pump_stderr, name=f"codex-stderr-{request.topic}", daemon=True
            ),
        ]
        for reader in self._readers:
            reader.start()

    @property
    def topic(self) -> TopicKey:
        return self.request.topic

    @property
    def pid(self) -> int:
        return int(self._proc.pid)

    @property
    def session_id(self) -> str | None:
        return self._session_id

    @property
    def stderr_tail(self) -> tuple[str, ...]:
        with self._stderr_lock:
            return tuple(self._stderr_tail)

    def __iter__(self) -> Iterator[RunUpdate]:
        if self._iterator is None:
            self._iterator = self._iterate()
        return self._iterator

    def __enter__(self) -> AgentRun:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        if self._iterator is not None:
            self._iterator.close()  # type: ignore[attr-defined]
        if not self._finished:
            self._finish(Cancelled("closed"))

    # --- Producers ---

    def _publish(self, update: RunUpdate) -> None:
        self._queue.put(update)

    def _producer_done(self) -> None:
        with self._producers_lock:
            self._producers_left -= 1
            last = self._producers_left == 0
        if last:
            self._queue.put(_CLOSED)

    def _pump_stdout(self) -> None:
        settings = self._supervisor.settings
        stream = self._proc.stdout
        try:
            if stream is None:
                return
            for raw in stream:
                line = raw.rstrip("\r\n")
                if not line.strip():
                    continue
                if settings.log_json_events:
                    logger.info("Codex stdout event: %s", line)

                update = decode(line)
                session_id = extract_session_id(line)
                if session_id and session_id != self._session_id:
                    self._session_id = session_id
                    if update is None:
                        update = RunUpdate(
                            f"Session: {session_id}", kind=UpdateKind.META, session_id=session_id
                        )
                    else:
                        update = replace(update, session_id=session_id)

                if update is None or not update.text.strip():
                    continue
                logger.info("Codex parsed update: kind=%s size=%d", update.kind.value, len(update.text))
                self._publish(update)
        except (OSError, ValueError):
            # The pipe was closed under us by a kill.
            logger.debug("stdout reader stopped for topic=%s", self.topic, exc_info=True)
        finally:
            self._producer_done()

    def _pump_stderr(self) -> None:
        stream = self._proc.stderr
        try:
            if stream is None:
                return
            for raw in stream:
                line = raw.rstrip("\r\n")
                if not line.strip():
                    continue
                logger.warning("Codex stderr: %s", line)
                with self._stderr_lock:
                    self._stderr_tail.append(line)
        except (OSError, ValueError):
            logger.debug("stderr reader stopped for topic=%s", self.topic, exc_info=True)
        finally:
            self._producer_done()

    # --- Consumer ---

    def _cancel_requested(self) -> bool:
        if self._active.cancel_event.is_set():
            return True
        if self._caller_cancel is not None and self._caller_cancel.is_set():
            logger.info("Caller requested cancellation for topic=%s", self.topic)
            self._supervisor._cancel_run(self._active)
            return True
        return False

    def _iterate(self) -> Iterator[RunUpdate]:
        if self._started:
            return
        self._started = True
        request = self.request
        outcome: RunOutcome | None = None
        try:
            while True:
                if outcome is None and self._cancel_requested():
                    outcome = Cancelled()
                try:
                    item = self._queue.get(timeout=_POLL_INTERVAL)
                except queue.Empty:
                    # A dead process whose pipes stay open (an orphaned
                    # grandchild holding them) must not hang the run.
                    if self._proc.poll() is not None and not self._wait_for_readers():
                        logger.warning("Readers still open after exit: topic=%s", self.topic)
                        break
                    continue
                if item is _CLOSED:
                    break
                if outcome is not None:
                    continue  # drain without delivering

                update: RunUpdate = item
                if (
                    request.stop_on_command_start
                    and update.kind is UpdateKind.COMMAND_START
                    and update.text.strip()
                    and update.text.strip() not in request.approved_commands
                ):
                    command = update.text.strip()
                    logger.info("Intercepted command for approval: topic=%s cmd=%s", self.topic, command)
                    self._supervisor._cancel_run(self._active, immediate=True)
                    outcome = ApprovalRequired(command)
                    continue

                yield update

            returncode = self._proc.wait()
            if outcome is None and self._active.cancel_event.is_set():
                outcome = Cancelled()
            if outcome is None:
                if returncode != 0:
                    outcome = Failed(returncode, self.stderr_tail)
                    logger.error(
                        "Codex exited with error: topic=%s exit_code=%d", self.topic, returncode
                    )
                else:
                    logger.info(
                        "Codex completed successfully: topic=%s exit_code=%d", self.topic, returncode
                    )
                    outcome = Completed(returncode)
                    # Free the topic before handing out the final update.
                    self._finish(outcome)
                    yield RunUpdate(
                        "Completed", kind=UpdateKind.STATUS, is_final=True, session_id=self._session_id
                    )
        except GeneratorExit:
            outcome = outcome or Cancelled("closed")
            raise
        finally:
            self._finish(outcome or Cancelled("closed"))

    def _wait_for_readers(self) -> bool:
        """After the process died, give the readers a moment to hit EOF."""
        deadline = time.monotonic() + _READER_JOIN_SECONDS
        while time.monotonic() < deadline:
            if all(not reader.is_alive() for reader in self._readers):
                return True
            time.sleep(_POLL_INTERVAL / 2)
        return False

    def _finish(self, outcome: RunOutcome) -> None:
        if self._finished:
            return
        self._finished = True
        if self.outcome is None:
            self.outcome = outcome
        try:
            if self._proc.poll() is None:
                self._supervisor._cancel_run(self._active, immediate=True)
            for reader in self._readers:
                reader.join(timeout=_READER_JOIN_SECONDS)
            streams = [self._proc.stdin]
            # A stream still being read by a stuck reader is left to it.
            for reader, stream in zip(self._readers, (self._proc.stdout, self._proc.stderr)):
                if not reader.is_alive():
                    streams.append(stream)
            for stream in streams:
                if stream is not None:
                    try:
                        stream.close()
                    except OSError:
                        pass
        finally:
            self._supervisor.registry.remove(self._active)
            logger.info(
                "Run finished: topic=%s outcome=%s", self.topic, type(self.outcome).__name__
            )


class CodexSupervisor:
    """Owns the agent process lifecycle for every topic."""

    def __init__(
        self,
        settings: BridgeSettings | None = None,
        registry: ActiveRunRegistry | None = None,
        launch_builder: LaunchBuilder = build_launch,
    ) -> None:
        self.settings = settings or BridgeSettings()
        self.registry = registry if registry is not None else ActiveRunRegistry()
        self._launch_builder = launch_builder

    def run(self, request: RunRequest, cancel_event: threading.Event | None = None) -> AgentRun:
        """Admit, spawn and start streaming a run.

        Raises ``RunAlreadyActiveError`` when the topic already has a run
        (nothing is spawned) and ``AgentSpawnError`` when the OS refuses to
        start the process.
        """
        active = ActiveRun(request.topic, request.project_dir, request.prompt)
        if not self.registry.add_if_absent(active):
            raise RunAlreadyActiveError(request.topic)

        try:
            launch = self._launch_builder(request, self.settings)
            display = launch.display_command()
            logger.info(
                "Starting codex process: chat_id=%s thread_id=%s cwd=%s cmd=%s",
                request.topic.chat_id,
                request.topic.thread_id,
                launch.cwd or request.project_dir,
                display,
            )
            try:
                proc = subprocess.Popen(
                    launch.argv,
                    cwd=launch.cwd,
                    stdin=subprocess.PIPE,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    text=True,
                    encoding="utf-8",
                    errors="replace",
                    bufsize=1,
                    start_new_session=os.name != "nt",
                )
            except (OSError, ValueError) as exc:
                logger.error("Failed to start codex process: %s", exc)
                raise AgentSpawnError(display, exc) from exc
            active.attach_process(proc)
            if active.cancel_event.is_set():
                # Cancelled while launching: the canceller saw no process to kill.
                logger.info("Cancel arrived during launch: topic=%s", request.topic)
                self._cancel_run(active, immediate=True)
        except BaseException:
            self.registry.remove(active)
            raise

        return AgentRun(self, request, active, proc, cancel_event)

    def cancel(self, topic: TopicKey) -> bool:
        """Cancel the topic's run; returns False when nothing was running."""
        active = self.registry.get(topic)
        if active is None:
            return False
        logger.info("Cancelling run for topic=%s", topic)
        self._cancel_run(active)
        return True

    def send_input(self, topic: TopicKey, text: str) -> bool:
        active = self.registry.get(topic)
        if active is None:
            return False
        return active.send_input(text)

    def is_active(self, topic: TopicKey) -> bool:
        return topic in self.registry

    def list_active(self) -> list[ActiveRunInfo]:
        return self.registry.snapshot()

    def shutdown(self) -> None:
        for info in self.registry.snapshot():
            active = self.registry.get(info.topic)
            if active is not None:
                self._cancel_run(active, immediate=True)

    def _cancel_run(self, active: ActiveRun, immediate: bool = False) -> bool:
        if immediate:
            return active.cancel("", 0.0, float(self.settings.cancel_kill_timeout_sec))
        return active.cancel(
            self.settings.cancel_soft_command,
            float(self.settings.cancel_soft_timeout_sec),
            float(self.settings.cancel_kill_timeout_sec),
        )
