from __future__ import annotations

import json
import logging
import sqlite3
import threading
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from .models import LaunchBackend, TopicStatus

logger = logging.getLogger("codex_bridge.store")

_SQLITE_HEADER = b"SQLite format 3\x00"
SCHEMA_VERSION = 1


def _now() -> str:
    return datetime.now(UTC).isoformat()


class SQLiteStore:
    """Thread-safe SQLite storage for projects, topics and the audit log."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()

    def _connect(self) -> sqlite3.Connection:
        """Get or create a cached database connection (thread-safe)."""
        with self._lock:
            if self._conn is not None:
                return self._conn
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._move_aside_if_corrupt()
            conn = sqlite3.connect(self.db_path, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            self._conn = conn
            return conn

    def _move_aside_if_corrupt(self) -> None:
        if not self.db_path.exists() or self.db_path.stat().st_size == 0:
            return
        with self.db_path.open("rb") as fh:
            header = fh.read(len(_SQLITE_HEADER))
        if header == _SQLITE_HEADER:
            return
        corrupt_path = self.db_path.with_name(
            f"{self.db_path.name}.corrupt.{datetime.now(UTC).strftime('%Y%m%d%H%M%S')}"
        )
        logger.warning("State database %s is not SQLite, moving it to %s", self.db_path, corrupt_path)
        self.db_path.replace(corrupt_path)

    def close(self) -> None:
        """Close the cached database connection."""
        with self._lock:
            if self._conn is not None:
                try:
                    self._conn.close()
                except sqlite3.Error:
                    logger.debug("Error closing state database", exc_info=True)
                self._conn = None

    def bootstrap(self) -> None:
        conn = self._connect()
        with self._lock:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER NOT NULL
                );

                CREATE TABLE IF NOT EXISTS projects (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    dir_path TEXT NOT NULL UNIQUE,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS topics (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    project_id INTEGER NOT NULL,
                    chat_id INTEGER NOT NULL,
                    thread_id INTEGER NOT NULL,
                    session_id TEXT DEFAULT NULL,
                    name TEXT NOT NULL,
                    busy INTEGER NOT NULL DEFAULT 0,
                    status TEXT NOT NULL DEFAULT 'idle',
                    context_left_percent INTEGER DEFAULT NULL,
                    launch_backend TEXT NOT NULL DEFAULT 'docker',
                    last_job_started_at TEXT DEFAULT NULL,
                    last_job_finished_at TEXT DEFAULT NULL,
                    UNIQUE (chat_id, thread_id),
                    FOREIGN KEY (project_id) REFERENCES projects (id)
                );

                CREATE TABLE IF NOT EXISTS audit_log (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    ts TEXT NOT NULL,
                    type TEXT NOT NULL,
                    payload_json TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_topics_project_id ON topics(project_id);
                CREATE INDEX IF NOT EXISTS idx_audit_log_type ON audit_log(type);
                """
            )
            row = conn.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
            if row is None:
                conn.execute("INSERT INTO schema_version(version) VALUES(?)", (SCHEMA_VERSION,))
            conn.commit()

    @staticmethod
    def _row_to_dict(row: sqlite3.Row | None) -> dict[str, Any] | None:
        if row is None:
            return None
        return {k: row[k] for k in row.keys()}

    @classmethod
    def _topic_from_row(cls, row: sqlite3.Row | None) -> dict[str, Any] | None:
        topic = cls._row_to_dict(row)
        if topic is not None:
            topic["busy"] = bool(topic["busy"])
        return topic

    # --- Projects ---

    def get_or_create_project(self, dir_path: str) -> dict[str, Any]:
        normalized = str(Path(dir_path).expanduser().resolve())
        conn = self._connect()
        with self._lock:
            conn.execute(
                "INSERT OR IGNORE INTO projects(dir_path, created_at) VALUES(?, ?)",
                (normalized, _now()),
            )
            conn.commit()
            row = conn.execute("SELECT * FROM projects WHERE dir_path = ?", (normalized,)).fetchone()
        project = self._row_to_dict(row)
        if project is None:
            raise RuntimeError("Project record was not found after insert.")
        return project

    def get_project(self, project_id: int) -> dict[str, Any] | None:
        conn = self._connect()
        with self._lock:
            row = conn.execute("SELECT * FROM projects WHERE id = ?", (project_id,)).fetchone()
            return self._row_to_dict(row)

    # --- Topics ---

    def create_topic(
        self,
        project_id: int,
        chat_id: int,
        thread_id: int,
        name: str,
        launch_backend: str = LaunchBackend.DOCKER.value,
    ) -> dict[str, Any]:
        """Bind a chat topic to a project; an existing binding is returned as is."""
        conn = self._connect()
        with self._lock:
            conn.execute(
                """
                INSERT OR IGNORE INTO topics(project_id, chat_id, thread_id, name, launch_backend)
                VALUES(?, ?, ?, ?, ?)
                """,
                (project_id, chat_id, thread_id, name, LaunchBackend.normalize(launch_backend).value),
            )
            conn.commit()
            row = conn.execute(
                "SELECT * FROM topics WHERE chat_id = ? AND thread_id = ?", (chat_id, thread_id)
            ).fetchone()
        topic = self._topic_from_row(row)
        if topic is None:
            raise RuntimeError("Topic record was not found after insert.")
        return topic

    def get_topic(self, chat_id: int, thread_id: int) -> dict[str, Any] | None:
        conn = self._connect()
        with self._lock:
            row = conn.execute(
                "SELECT * FROM topics WHERE chat_id = ? AND thread_id = ?", (chat_id, thread_id)
            ).fetchone()
            return self._topic_from_row(row)

    def get_topic_by_id(self, topic_id: int) -> dict[str, Any] | None:
        conn = self._connect()
        with self._lock:
            row = conn.execute("SELECT * FROM topics WHERE id = ?", (topic_id,)).fetchone()
            return self._topic_from_row(row)

    def list_topics(self) -> list[dict[str, Any]]:
        conn = self._connect()
        with self._lock:
            rows = conn.execute("SELECT * FROM topics ORDER BY id").fetchall()
        return [topic for topic in (self._topic_from_row(row) for row in rows) if topic is not None]

    def _update_topic(self, topic_id: int, assignments: str, params: tuple[Any, ...]) -> None:
        conn = self._connect()
        with self._lock:
            conn.execute(f"UPDATE topics SET {assignments} WHERE id = ?", (*params, topic_id))
            conn.commit()

    def update_topic_status(self, topic_id: int, status: str) -> None:
        self._update_topic(topic_id, "status = ?", (TopicStatus(status).value,))

    def update_topic_context_left(self, topic_id: int, percent: int | None) -> None:
        value = None if percent is None else max(0, min(100, int(percent)))
        self._update_topic(topic_id, "context_left_percent = ?", (value,))

    def update_topic_session_id(self, topic_id: int, session_id: str | None) -> None:
        self._update_topic(topic_id, "session_id = ?", (session_id,))

    def update_topic_launch_backend(self, topic_id: int, launch_backend: str) -> None:
        self._update_topic(
            topic_id, "launch_backend = ?", (LaunchBackend.normalize(launch_backend).value,)
        )

    def start_topic_job(self, topic_id: int) -> None:
        self._update_topic(
            topic_id,
            "busy = 1, status = ?, last_job_started_at = ?, last_job_finished_at = NULL",
            (TopicStatus.WORKING.value, _now()),
        )

    def finish_topic_job(self, topic_id: int, final_status: str) -> None:
        self._update_topic(
            topic_id,
            "busy = 0, status = ?, last_job_finished_at = ?",
            (TopicStatus(final_status).value, _now()),
        )

    def delete_topic(self, topic_id: int) -> bool:
        conn = self._connect()
        with self._lock:
            cursor = conn.execute("DELETE FROM topics WHERE id = ?", (topic_id,))
            conn.commit()
            return cursor.rowcount == 1

    # --- Audit log ---

    def record_audit(self, event_type: str, payload: dict[str, Any]) -> None:
        conn = self._connect()
        with self._lock:
            conn.execute(
                "INSERT INTO audit_log(ts, type, payload_json) VALUES(?, ?, ?)",
                (_now(), event_type, json.dumps(payload, ensure_ascii=False, default=str)),
            )
            conn.commit()

    def list_audit(self, limit: int = 200) -> list[dict[str, Any]]:
        conn = self._connect()
        with self._lock:
            rows = conn.execute(
                "SELECT * FROM audit_log ORDER BY id DESC LIMIT ?", (limit,)
            ).fetchall()
        events: list[dict[str, Any]] = []
        for row in rows:
            event = self._row_to_dict(row) or {}
            event["payload"] = json.loads(event.pop("payload_json", "{}") or "{}")
            events.append(event)
        return events
