from __future__ import annotations

import logging

logger = logging.getLogger("codex_bridge.chat")


class ConsoleChatClient:
    """Chat client that only logs, for running the bridge without a transport."""

    def __init__(self, echo: bool = False) -> None:
        self.echo = echo

    def send_text(self, chat_id: int, text: str, thread_id: int | None = None) -> None:
        logger.info("Chat message => chat_id=%s thread_id=%s text=%s", chat_id, thread_id, text)
        if self.echo:
            print(text, flush=True)

    def update_topic_title(self, chat_id: int, thread_id: int, title: str) -> None:
        logger.info("Chat topic title => chat_id=%s thread_id=%s title=%s", chat_id, thread_id, title)

    def send_approval_prompt(self, chat_id: int, thread_id: int, command: str) -> None:
        self.send_text(
            chat_id,
            f"⚠️ Codex wants to run:\n$ {command}\nReply `yes`, `always` or `no`.",
            thread_id,
        )
