"""Admin API client for a running Codex Bridge."""

from __future__ import annotations

from typing import Any

import httpx


class AdminClient:
    """Client for interacting with the Codex Bridge admin API."""

    def __init__(
        self,
        base_url: str = "http://127.0.0.1:8788",
        token: str = "",
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self.transport = transport

    def _client(self) -> httpx.Client:
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        return httpx.Client(timeout=self.timeout, headers=headers, transport=self.transport)

    def _get(self, path: str, **params: Any) -> Any:
        with self._client() as client:
            response = client.get(f"{self.base_url}{path}", params=params or None)
            response.raise_for_status()
            return response.json()

    def _post(self, path: str, body: dict[str, Any] | None = None) -> Any:
        with self._client() as client:
            response = client.post(f"{self.base_url}{path}", json=body or {})
            response.raise_for_status()
            return response.json()

    def health(self) -> dict[str, Any]:
        """Check API health."""
        return self._get("/health")

    def list_topics(self) -> list[dict[str, Any]]:
        return self._get("/topics")

    def active_runs(self) -> list[dict[str, Any]]:
        """Get the runs that currently own a topic."""
        return self._get("/runs/active")

    def cancel(self, chat_id: int, thread_id: int) -> bool:
        return bool(self._post(f"/runs/{chat_id}/{thread_id}/cancel").get("cancelled"))

    def pending_approvals(self) -> list[dict[str, Any]]:
        """Get list of pending approval requests."""
        return self._get("/approvals/pending")

    def decide(self, chat_id: int, thread_id: int, decision: str) -> dict[str, Any]:
        """Answer a pending approval with ``yes``, ``always`` or ``no``."""
        return self._post(f"/approvals/{chat_id}/{thread_id}", {"decision": decision})

    def reset_always(self, chat_id: int, thread_id: int) -> bool:
        """Make commands in the topic stop for approval again."""
        return bool(self._post(f"/approvals/{chat_id}/{thread_id}/reset").get("reset"))

    def audit_events(self, limit: int = 200) -> list[dict[str, Any]]:
        """Get recent audit events."""
        return self._get("/audit/events", limit=limit)
