"""Host side of the bridge: chat topics in, supervised codex runs out.

``TopicBridge`` drives one run per topic through the supervisor, fans the
decoded updates out to the chat, keeps the state store in sync (status,
session id, context budget) and runs the caller half of the approval gate.
"""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .approval import ApprovalGate, ApprovalMode, Decision, detect_approval_prompt, parse_decision
from .config import BridgeSettings
from .errors import (
    AgentSpawnError,
    BridgeError,
    PathNotAllowedError,
    RunAlreadyActiveError,
    TopicNotBoundError,
)
from .models import (
    ActiveRunInfo,
    ApprovalRequired,
    Cancelled,
    Failed,
    LaunchBackend,
    RunOutcome,
    RunRequest,
    RunUpdate,
    TopicKey,
    TopicStatus,
    UpdateKind,
)
from .policy import PathPolicy
from .protocols import ChatClientProtocol, StateStoreProtocol
from .supervisor import CodexSupervisor
from .titles import TitleDebouncer, format_topic_title

logger = logging.getLogger("codex_bridge.bridge")

_CANCEL_WORDS = {"cancel", "/cancel", "stop", "/stop"}


@dataclass(slots=True)
class PromptResult:
    topic: TopicKey
    status: TopicStatus | None = None
    outcome: RunOutcome | None = None
    error: str | None = None


@dataclass(slots=True)
class _RunState:
    topic: dict[str, Any]
    project_dir: str
    request: RunRequest
    session_id: str | None = None
    context_left: int | None = None
    native_approval: bool = False


class TopicBridge:
    def __init__(
        self,
        supervisor: CodexSupervisor,
        store: StateStoreProtocol,
        chat: ChatClientProtocol,
        settings: BridgeSettings | None = None,
        gate: ApprovalGate | None = None,
        path_policy: PathPolicy | None = None,
    ) -> None:
        self.supervisor = supervisor
        self.store = store
        self.chat = chat
        self.settings = settings or supervisor.settings
        self.gate = gate if gate is not None else ApprovalGate()
        self.path_policy = path_policy or PathPolicy.from_settings(self.settings)
        self.titles = TitleDebouncer(self.settings.title_debounce_seconds)
        self._pool = ThreadPoolExecutor(
            max_workers=max(1, self.settings.max_concurrent_runs), thread_name_prefix="codex-run"
        )

    # --- Topic binding ---

    def bind_topic(
        self,
        chat_id: int,
        thread_id: int,
        project_dir: str,
        name: str | None = None,
        backend: str | None = None,
    ) -> dict[str, Any]:
        path = Path(project_dir).expanduser()
        if not self.path_policy.is_allowed(str(path)):
            raise PathNotAllowedError(str(path))
        if not path.is_dir():
            raise BridgeError(f"Project directory does not exist: {path}")

        project = self.store.get_or_create_project(str(path))
        topic = self.store.create_topic(
            project["id"],
            chat_id,
            thread_id,
            name or path.resolve().name or str(path),
            LaunchBackend.normalize(backend or self.settings.default_backend).value,
        )
        if backend:
            # An existing binding keeps its row; an explicit backend still applies.
            chosen = LaunchBackend.normalize(backend).value
            if topic.get("launch_backend") != chosen:
                self.store.update_topic_launch_backend(topic["id"], chosen)
                topic = {**topic, "launch_backend": chosen}
        self.gate.reset_always(TopicKey(chat_id, thread_id))
        self.store.record_audit(
            "topic_bound",
            {"chat_id": chat_id, "thread_id": thread_id, "project_dir": project["dir_path"]},
        )
        logger.info("Bound topic %s/%s to %s", chat_id, thread_id, project["dir_path"])
        self._refresh_title(TopicKey(chat_id, thread_id), force=True)
        return topic

    # --- Prompts ---

    def handle_message(self, chat_id: int, thread_id: int, text: str) -> PromptResult:
        """Entry point for a chat message: approval reply, cancel, or new prompt."""
        key = TopicKey(chat_id, thread_id)
        stripped = (text or "").strip()

        decision = parse_decision(stripped)
        if decision is not None and self.gate.pending(key) is not None:
            result = self.decide(chat_id, thread_id, decision)
            if result is not None:
                return result

        if stripped.lower() in _CANCEL_WORDS:
            cancelled = self.cancel(chat_id, thread_id)
            if not cancelled:
                self._safe_send(key, "Nothing is running in this topic.")
            return PromptResult(topic=key, status=TopicStatus.CANCELLED if cancelled else None)

        try:
            return self.handle_prompt(chat_id, thread_id, stripped)
        except BridgeError as exc:
            self._safe_send(key, f"⚠️ {exc}")
            return PromptResult(topic=key, error=str(exc))

    def handle_prompt(self, chat_id: int, thread_id: int, prompt: str) -> PromptResult:
        """Run a prompt in the topic's project and block until the run ends."""
        key = TopicKey(chat_id, thread_id)
        topic = self.store.get_topic(chat_id, thread_id)
        if topic is None:
            raise TopicNotBoundError(key)
        project = self.store.get_project(topic["project_id"])
        if project is None:
            raise TopicNotBoundError(key)

        stop = self.settings.require_command_approval and not self.gate.is_always_allowed(key)
        request = RunRequest(
            topic=key,
            project_dir=project["dir_path"],
            prompt=prompt,
            resume_session_id=topic.get("session_id") or None,
            backend=LaunchBackend.normalize(topic.get("launch_backend")),
            approval_mode=self.settings.approval_mode or None,
            stop_on_command_start=stop,
        )
        return self._execute(topic, project["dir_path"], request)

    def submit_prompt(self, chat_id: int, thread_id: int, prompt: str) -> Future[PromptResult]:
        """Run ``handle_message`` on the worker pool."""
        future = self._pool.submit(self.handle_message, chat_id, thread_id, prompt)
        future.add_done_callback(self._log_failure)
        return future

    @staticmethod
    def _log_failure(future: Future[PromptResult]) -> None:
        exc = future.exception()
        if exc is not None:
            logger.error("Background prompt failed: %s", exc, exc_info=exc)

    def _execute(self, topic: dict[str, Any], project_dir: str, request: RunRequest) -> PromptResult:
        key = request.topic
        state = _RunState(
            topic=topic,
            project_dir=project_dir,
            request=request,
            session_id=request.resume_session_id,
            context_left=topic.get("context_left_percent"),
        )

        try:
            run = self.supervisor.run(request)
        except RunAlreadyActiveError:
            self.store.record_audit("run_rejected", {"topic": str(key), "reason": "already_active"})
            raise
        except AgentSpawnError as exc:
            self.store.finish_topic_job(topic["id"], TopicStatus.ERROR.value)
            self.store.record_audit("run_failed", {"topic": str(key), "reason": str(exc)})
            self._refresh_title(key, force=True)
            raise

        self.store.start_topic_job(topic["id"])
        self.store.record_audit(
            "run_started",
            {"topic": str(key), "pid": run.pid, "resume": bool(request.resume_session_id)},
        )
        self._refresh_title(key, force=True)

        with run:
            for update in run:
                self._on_update(state, update)
        outcome = run.outcome or Cancelled("closed")
        status = self._finish(state, outcome)
        return PromptResult(topic=key, status=status, outcome=outcome)

    def _on_update(self, state: _RunState, update: RunUpdate) -> None:
        key = state.request.topic
        topic_id = state.topic["id"]

        if update.session_id and update.session_id != state.session_id:
            state.session_id = update.session_id
            self.store.update_topic_session_id(topic_id, update.session_id)
            logger.info("Stored session id for topic=%s", key)

        if update.context_left is not None and update.context_left != state.context_left:
            state.context_left = update.context_left
            self.store.update_topic_context_left(topic_id, update.context_left)
            self._refresh_title(key)

        if update.kind is UpdateKind.META or update.is_final:
            return
        if update.kind is UpdateKind.REASONING and not self.settings.show_reasoning:
            return

        if update.kind in (UpdateKind.ANSWER, UpdateKind.STATUS):
            command = detect_approval_prompt(update.text)
            if command:
                self.gate.request(state.request, command, ApprovalMode.NATIVE, state.session_id)
                state.native_approval = True
                self.store.update_topic_status(topic_id, TopicStatus.WAITING_APPROVAL.value)
                self._safe_send(key, update.text)
                self._safe_prompt(key, command)
                return
            if update.kind is UpdateKind.STATUS:
                return  # context budget lands in the title

        if update.kind is UpdateKind.COMMAND_START:
            self._safe_send(key, f"▶️ {update.text}")
        else:
            self._safe_send(key, update.text)

    def _finish(self, state: _RunState, outcome: RunOutcome) -> TopicStatus:
        key = state.request.topic
        if isinstance(outcome, ApprovalRequired):
            self.gate.request(state.request, outcome.command, ApprovalMode.RERUN, state.session_id)
            status = TopicStatus.WAITING_APPROVAL
            self._safe_prompt(key, outcome.command)
        elif isinstance(outcome, Failed):
            status = TopicStatus.ERROR
            self._safe_send(key, f"❌ {outcome.message}")
        elif isinstance(outcome, Cancelled):
            status = TopicStatus.CANCELLED
            self._safe_send(key, "⏹ Run cancelled.")
        elif state.native_approval and self.gate.pending(key) is not None:
            status = TopicStatus.WAITING_APPROVAL
        else:
            status = TopicStatus.IDLE
            self._safe_send(key, "✅ Completed")

        self.store.finish_topic_job(state.topic["id"], status.value)
        self.store.record_audit(
            "run_finished",
            {"topic": str(key), "status": status.value, "outcome": type(outcome).__name__},
        )
        self._refresh_title(key, force=True)
        logger.info("Topic %s finished with status=%s", key, status.value)
        return status

    # --- Approval gate ---

    def decide(self, chat_id: int, thread_id: int, decision: Decision) -> PromptResult | None:
        """Apply a yes/always/no decision to the topic's pending approval."""
        key = TopicKey(chat_id, thread_id)
        resolution = self.gate.resolve(
            key, decision, send_input=lambda text: self.supervisor.send_input(key, text)
        )
        if resolution is None:
            return None

        topic = self.store.get_topic(chat_id, thread_id)
        self.store.record_audit(
            "approval_resolved",
            {
                "topic": str(key),
                "decision": decision.value,
                "mode": resolution.pending.mode.value,
                "command": resolution.pending.command,
            },
        )
        if topic is None:
            return PromptResult(topic=key)

        if resolution.input_sent:
            self.store.update_topic_status(topic["id"], TopicStatus.WORKING.value)
            verb = "Denied" if decision is Decision.DENY else "Approved"
            self._safe_send(key, f"{verb}: {resolution.pending.command}")
            return PromptResult(topic=key, status=TopicStatus.WORKING)

        if resolution.follow_up is None:
            self.store.update_topic_status(topic["id"], TopicStatus.IDLE.value)
            self._safe_send(key, f"🚫 Denied: {resolution.pending.command}")
            self._refresh_title(key, force=True)
            return PromptResult(topic=key, status=TopicStatus.IDLE)

        self._safe_send(key, f"✅ Approved: {resolution.pending.command}. Resuming…")
        return self._execute(topic, resolution.follow_up.project_dir, resolution.follow_up)

    def submit_decision(
        self, chat_id: int, thread_id: int, decision: Decision
    ) -> Future[PromptResult | None]:
        """Run ``decide`` on the worker pool; an approved rerun can take a while."""
        future = self._pool.submit(self.decide, chat_id, thread_id, decision)
        future.add_done_callback(self._log_failure)
        return future

    # --- Control ---

    def cancel(self, chat_id: int, thread_id: int) -> bool:
        key = TopicKey(chat_id, thread_id)
        pending = self.gate.discard(key)
        cancelled = self.supervisor.cancel(key)
        if pending is not None and not cancelled:
            topic = self.store.get_topic(chat_id, thread_id)
            if topic is not None:
                self.store.update_topic_status(topic["id"], TopicStatus.CANCELLED.value)
            self._safe_send(key, "⏹ Pending approval dropped.")
            return True
        return cancelled

    def reset_always(self, chat_id: int, thread_id: int) -> bool:
        """Revoke an ``always`` decision so commands stop for approval again."""
        key = TopicKey(chat_id, thread_id)
        if not self.gate.reset_always(key):
            return False
        self.store.record_audit("approval_always_reset", {"chat_id": chat_id, "thread_id": thread_id})
        self._safe_send(key, "🔒 Commands in this topic need approval again.")
        return True

    def send_input(self, chat_id: int, thread_id: int, text: str) -> bool:
        return self.supervisor.send_input(TopicKey(chat_id, thread_id), text)

    def list_active_runs(self) -> list[ActiveRunInfo]:
        return self.supervisor.list_active()

    def shutdown(self) -> None:
        self.supervisor.shutdown()
        self._pool.shutdown(wait=False, cancel_futures=True)

    # --- Chat helpers ---

    def _refresh_title(self, key: TopicKey, force: bool = False) -> None:
        if not self.titles.should_update(key, force=force):
            return
        topic = self.store.get_topic(key.chat_id, key.thread_id)
        if topic is None:
            return
        project = self.store.get_project(topic["project_id"])
        title = format_topic_title(
            topic["name"],
            project["dir_path"] if project else topic["name"],
            bool(topic.get("busy")),
            topic.get("context_left_percent"),
            topic.get("status"),
        )
        try:
            self.chat.update_topic_title(key.chat_id, key.thread_id, title)
        except Exception as exc:  # pragma: no cover - runtime safety
            logger.error("Failed to update title for topic=%s: %s", key, exc)

    def _safe_send(self, key: TopicKey, text: str) -> bool:
        try:
            self.chat.send_text(key.chat_id, text, key.thread_id)
            return True
        except Exception as exc:  # pragma: no cover - runtime safety
            logger.error("Failed to send message to topic=%s: %s", key, exc)
            return False

    def _safe_prompt(self, key: TopicKey, command: str) -> bool:
        try:
            self.chat.send_approval_prompt(key.chat_id, key.thread_id, command)
            return True
        except Exception as exc:  # pragma: no cover - runtime safety
            logger.error("Failed to send approval prompt to topic=%s: %s", key, exc)
            return False
