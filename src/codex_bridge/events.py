"""Decoding of `codex exec --json` output lines into typed run updates.

Everything in this module is pure: no I/O, no logging, no exceptions for
malformed input. A line that cannot be understood simply produces ``None``.
The agent's event schema is loosely specified and drifts between releases,
so session ids and context-budget signals are found by scanning the whole
JSON structure for known key synonyms, with regex fallbacks on the raw text.
"""

from __future__ import annotations

import json
import re
from typing import Any

from .models import RunUpdate, UpdateKind

SESSION_ID_MIN_LENGTH = 12
_SESSION_ID_SEPARATORS = ("-", "_")

_SESSION_ID_KEYS = frozenset(
    {
        "chat_id",
        "chatId",
        "session_id",
        "sessionId",
        "conversation_id",
        "conversationId",
        "thread_id",
        "threadId",
    }
)

_SESSION_ID_TEXT_RE = re.compile(
    r"\b(?:session|thread|conversation|chat)[ _-]?id\s*[:=]\s*[\"']?([A-Za-z0-9][A-Za-z0-9_-]{11,})",
    re.IGNORECASE,
)

_PERCENT_VALUE_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(%?)\s*$")

# Ordered: the more specific phrasings first.
_CONTEXT_TEXT_RES = (
    re.compile(
        r"(\d+(?:\.\d+)?)\s*(%)\s*(?:of\s+)?(?:the\s+)?context(?:\s+window)?\s+(?:left|remaining)",
        re.IGNORECASE,
    ),
    re.compile(
        r"context(?:\s+window)?\s+(?:left|remaining)\s*[:=]?\s*(\d+(?:\.\d+)?)\s*(%?)",
        re.IGNORECASE,
    ),
    re.compile(r"(\d+(?:\.\d+)?)\s*(%)\s*(?:left|remaining)\b", re.IGNORECASE),
)


def _parse_event(line: str) -> Any:
    stripped = line.strip() if line else ""
    if not stripped or stripped[0] not in "{[":
        return None
    try:
        return json.loads(stripped)
    except ValueError:
        return None


def is_plausible_session_id(value: Any) -> bool:
    """Guard against ids picked up from loosely-typed fields.

    A session id must be at least 12 characters long, contain a ``-`` or
    ``_`` separator and must not consist of digits alone.
    """
    if not isinstance(value, str):
        return False
    candidate = value.strip()
    if len(candidate) < SESSION_ID_MIN_LENGTH:
        return False
    if not any(sep in candidate for sep in _SESSION_ID_SEPARATORS):
        return False
    digits_only = candidate
    for sep in _SESSION_ID_SEPARATORS:
        digits_only = digits_only.replace(sep, "")
    return not digits_only.isdigit()


def decode(line: str) -> RunUpdate | None:
    """Turn one stdout line into at most one display update."""
    event = _parse_event(line)
    if not isinstance(event, dict):
        return None

    event_type = event.get("type")
    if not isinstance(event_type, str):
        return None
    event_type = event_type.lower()

    if event_type == "turn.completed":
        percent = extract_context_budget(line)
        if percent is None:
            return None
        return RunUpdate(f"Context left: {percent}%", kind=UpdateKind.STATUS, context_left=percent)

    if event_type not in {"item.started", "item.completed"}:
        return None

    item = event.get("item")
    if not isinstance(item, dict):
        return None
    item_type = item.get("type")
    item_type = item_type.lower() if isinstance(item_type, str) else ""

    if item_type == "command_execution":
        return _decode_command(event_type, item)

    if event_type != "item.completed":
        return None

    text = _extract_item_text(item)
    if not text:
        return None
    kind = UpdateKind.REASONING if item_type == "reasoning" else UpdateKind.ANSWER
    return RunUpdate(text, kind=kind)


def _decode_command(event_type: str, item: dict[str, Any]) -> RunUpdate | None:
    command = item.get("command")
    if not isinstance(command, str) or not command.strip():
        return None

    if event_type == "item.started":
        return RunUpdate(command, kind=UpdateKind.COMMAND_START)

    output = item.get("aggregated_output")
    output = output.rstrip() if isinstance(output, str) else ""
    exit_code = item.get("exit_code")
    exit_text = "?" if exit_code is None else str(exit_code)

    if output.strip():
        text = f"$ {command}\n{output}\n(exit: {exit_text})"
    else:
        text = f"$ {command}\n(exit: {exit_text})"
    return RunUpdate(text, kind=UpdateKind.COMMAND)


def _extract_item_text(item: dict[str, Any]) -> str:
    text = item.get("text")
    if isinstance(text, str):
        return text.strip()

    content = item.get("content")
    if not isinstance(content, list):
        return ""

    parts: list[str] = []
    for part in content:
        if not isinstance(part, dict):
            continue
        part_text = part.get("text")
        if isinstance(part_text, str) and part_text.strip():
            parts.append(part_text.rstrip())
    return "\n\n".join(parts).strip()


# --- Session ids ---


def extract_session_id(line: str) -> str | None:
    """Find the agent's resumable session id in a stdout line, if any."""
    event = _parse_event(line)
    if event is None:
        match = _SESSION_ID_TEXT_RE.search(line or "")
        if match and is_plausible_session_id(match.group(1)):
            return match.group(1)
        return None

    if isinstance(event, dict) and event.get("type") == "thread.started":
        thread_id = event.get("thread_id")
        if is_plausible_session_id(thread_id):
            return thread_id.strip()

    return _scan_session_id(event)


def _scan_session_id(node: Any) -> str | None:
    if isinstance(node, dict):
        for key, value in node.items():
            if key in _SESSION_ID_KEYS and is_plausible_session_id(value):
                return value.strip()
            if isinstance(value, (dict, list)):
                found = _scan_session_id(value)
                if found:
                    return found
    elif isinstance(node, list):
        for value in node:
            found = _scan_session_id(value)
            if found:
                return found
    return None


# --- Context budget ---


def extract_context_budget(line: str) -> int | None:
    """Return the remaining context window as a 0..100 percentage."""
    event = _parse_event(line)
    if isinstance(event, (dict, list)):
        found = _scan_context_budget(event)
        if found is not None:
            return _clamp(found)

    for pattern in _CONTEXT_TEXT_RES:
        for match in pattern.finditer(line or ""):
            value = _normalize_text_percent(match.group(1), match.group(2) == "%")
            if value is not None:
                return _clamp(value)
    return None


def _is_context_percent_key(key: str) -> bool:
    name = re.sub(r"[^a-z0-9]", "", key.lower())
    if "context" not in name:
        return False
    if "percent" not in name and "pct" not in name:
        return False
    return any(word in name for word in ("left", "remaining", "window"))


def _scan_context_budget(node: Any) -> int | None:
    if isinstance(node, dict):
        for key, value in node.items():
            if isinstance(key, str) and _is_context_percent_key(key):
                found = _normalize_value(value)
                if found is not None:
                    return found
            if isinstance(value, (dict, list)):
                found = _scan_context_budget(value)
                if found is not None:
                    return found
    elif isinstance(node, list):
        for value in node:
            found = _scan_context_budget(value)
            if found is not None:
                return found
    return None


def _normalize_value(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if 0 <= value <= 100 else None
    if isinstance(value, float):
        return _normalize_number(value)
    if isinstance(value, str):
        match = _PERCENT_VALUE_RE.match(value)
        if match:
            return _normalize_text_percent(match.group(1), bool(match.group(2)))
    return None


def _normalize_number(value: float) -> int | None:
    if value != value:  # NaN
        return None
    if 0.0 <= value <= 1.0:
        return round(value * 100)
    if 1.0 < value <= 100.0:
        return round(value)
    return None


def _normalize_text_percent(raw: str, has_percent_sign: bool) -> int | None:
    try:
        number = float(raw)
    except ValueError:
        return None
    if has_percent_sign:
        return round(number) if 0.0 <= number <= 100.0 else None
    # Bare integers are percentages already; only fractions are ratios.
    if "." not in raw:
        whole = int(number)
        return whole if 0 <= whole <= 100 else None
    return _normalize_number(number)


def _clamp(value: int) -> int:
    return max(0, min(100, int(value)))
