"""Human approval of agent shell commands, one pending request per topic."""

from __future__ import annotations

import logging
import re
import threading
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum

from .models import RunRequest, TopicKey, utc_now

logger = logging.getLogger("codex_bridge.approval")


class ApprovalMode(str, Enum):
    # The agent process is alive and waits for y/n on stdin.
    NATIVE = "native"
    # The run was killed at command start; approval launches a follow-up run.
    RERUN = "rerun"


class Decision(str, Enum):
    APPROVE = "approve"
    ALWAYS = "always"
    DENY = "deny"


_DECISION_WORDS = {
    "y": Decision.APPROVE,
    "yes": Decision.APPROVE,
    "approve": Decision.APPROVE,
    "approved": Decision.APPROVE,
    "ok": Decision.APPROVE,
    "a": Decision.ALWAYS,
    "always": Decision.ALWAYS,
    "n": Decision.DENY,
    "no": Decision.DENY,
    "deny": Decision.DENY,
    "denied": Decision.DENY,
    "reject": Decision.DENY,
}

_APPROVAL_MARKER_RE = re.compile(
    r"would you like (?:me )?to run the following command"
    r"|do you want (?:me )?to run (?:the following|this) command"
    r"|approve (?:the following|this) command"
    r"|allow (?:the following|this) command",
    re.IGNORECASE,
)
_FENCED_BLOCK_RE = re.compile(r"```[\w+-]*[ \t]*\n(.*?)```", re.DOTALL)
_DOLLAR_LINE_RE = re.compile(r"^\s*\$\s+(.+?)\s*$", re.MULTILINE)


def parse_decision(text: str) -> Decision | None:
    """Map a chat reply such as "yes", "always" or "no" to a decision."""
    word = (text or "").strip().lower().rstrip(".!")
    return _DECISION_WORDS.get(word)


def detect_approval_prompt(text: str) -> str | None:
    """Return the command from an agent's "would you like to run ..." message."""
    if not text:
        return None
    marker = _APPROVAL_MARKER_RE.search(text)
    if marker is None:
        return None
    tail = text[marker.end() :]

    fenced = _FENCED_BLOCK_RE.search(tail)
    if fenced:
        lines = [line.strip() for line in fenced.group(1).splitlines() if line.strip()]
        if lines:
            first = lines[0]
            return first[1:].strip() if first.startswith("$") else "\n".join(lines)

    dollar = _DOLLAR_LINE_RE.search(tail)
    if dollar:
        return dollar.group(1)
    return None


@dataclass(slots=True)
class PendingApproval:
    topic: TopicKey
    command: str
    request: RunRequest
    mode: ApprovalMode
    session_id: str | None = None
    created_at: datetime = field(default_factory=utc_now)

    @property
    def prompt(self) -> str:
        return self.request.prompt


@dataclass(frozen=True, slots=True)
class ApprovalResolution:
    decision: Decision
    pending: PendingApproval
    input_sent: bool = False
    follow_up: RunRequest | None = None


class ApprovalGate:
    """Tracks pending approvals and topics that approved "always"."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._pending: dict[TopicKey, PendingApproval] = {}
        self._always: set[TopicKey] = set()

    def request(
        self,
        request: RunRequest,
        command: str,
        mode: ApprovalMode,
        session_id: str | None = None,
    ) -> PendingApproval:
        """Record a pending approval, replacing any older one for the topic."""
        pending = PendingApproval(
            topic=request.topic,
            command=command.strip(),
            request=request,
            mode=mode,
            session_id=session_id or request.resume_session_id,
        )
        with self._lock:
            previous = self._pending.get(request.topic)
            self._pending[request.topic] = pending
        if previous is not None:
            logger.info("Superseded pending approval for topic=%s", request.topic)
        logger.info(
            "Approval requested: topic=%s mode=%s cmd=%s", request.topic, mode.value, pending.command
        )
        return pending

    def pending(self, topic: TopicKey) -> PendingApproval | None:
        with self._lock:
            return self._pending.get(topic)

    def list_pending(self) -> list[PendingApproval]:
        with self._lock:
            items = list(self._pending.values())
        return sorted(items, key=lambda item: item.created_at)

    def discard(self, topic: TopicKey) -> PendingApproval | None:
        with self._lock:
            return self._pending.pop(topic, None)

    def is_always_allowed(self, topic: TopicKey) -> bool:
        with self._lock:
            return topic in self._always

    def reset_always(self, topic: TopicKey) -> bool:
        """Make the topic stop on command start again; True if it was auto-approved."""
        with self._lock:
            if topic not in self._always:
                return False
            self._always.discard(topic)
            return True

    def resolve(
        self,
        topic: TopicKey,
        decision: Decision,
        send_input: Callable[[str], bool],
    ) -> ApprovalResolution | None:
        """Apply a human decision to the topic's pending approval.

        Native approvals answer the live process on stdin. Rerun approvals
        (or native ones whose process is already gone) yield a follow-up
        request that resumes the stored session.
        """
        pending = self.discard(topic)
        if pending is None:
            return None

        if decision is Decision.ALWAYS:
            with self._lock:
                self._always.add(topic)

        approved = decision is not Decision.DENY
        input_sent = False
        if pending.mode is ApprovalMode.NATIVE:
            input_sent = send_input("y\n" if approved else "n\n")
            if not input_sent:
                logger.warning("Agent for topic=%s no longer accepts input, falling back to rerun", topic)

        follow_up = None
        if approved and not input_sent:
            follow_up = self.follow_up_request(pending, decision)

        logger.info(
            "Approval resolved: topic=%s decision=%s mode=%s input_sent=%s follow_up=%s",
            topic,
            decision.value,
            pending.mode.value,
            input_sent,
            follow_up is not None,
        )
        return ApprovalResolution(
            decision=decision, pending=pending, input_sent=input_sent, follow_up=follow_up
        )

    @staticmethod
    def follow_up_request(pending: PendingApproval, decision: Decision) -> RunRequest:
        """Resume the intercepted session, or rerun the prompt when there is none.

        The approved command passes the command-start stop; any other
        command still needs approval unless the decision was "always".
        """
        base = pending.request
        stop = base.stop_on_command_start and decision is not Decision.ALWAYS
        approved = tuple(dict.fromkeys((*base.approved_commands, pending.command)))
        if pending.session_id:
            prompt = (
                f"The command `{pending.command}` has been approved. "
                "Run it now and continue with the task."
            )
            return replace(
                base,
                prompt=prompt,
                resume_session_id=pending.session_id,
                stop_on_command_start=stop,
                approved_commands=approved,
            )
        return replace(base, stop_on_command_start=stop, approved_commands=approved)
