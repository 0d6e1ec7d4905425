from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from pydantic import Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import LaunchBackend

DEFAULT_SOFT_TIMEOUT_SEC = 10
DEFAULT_KILL_TIMEOUT_SEC = 5


class BridgeSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="codex_bridge_",
        extra="ignore",
        env_file=".env",
        enable_decoding=False,
    )

    # Agent binaries per launch backend
    codex_bin: str = "codex"
    windows_codex_bin: str = "codex.exe"
    wsl_bin: str = "wsl.exe"
    wsl_codex_bin: str = "codex"
    wsl_distro: str = ""  # empty = wsl default distro
    default_backend: str = LaunchBackend.DOCKER.value

    # Agent launch flags
    sandbox_mode: str = "workspace-write"
    approval_mode: str = ""  # e.g. "on-request"; empty = codex default
    enable_web_search: bool = False

    # Cancellation
    cancel_soft_command: str = ""  # written to stdin first, supports \n \r \t \\ \xHH
    cancel_soft_timeout_sec: int = DEFAULT_SOFT_TIMEOUT_SEC
    cancel_kill_timeout_sec: int = DEFAULT_KILL_TIMEOUT_SEC

    # Log every raw stdout event line (noisy)
    log_json_events: bool = False

    # Approval gate: stop a run at the first command execution until approved
    require_command_approval: bool = True
    show_reasoning: bool = False

    state_dir: Path = Path("data")
    db_path: Path | None = None

    # "all" allows any directory, "allowlist" restricts to allowed_roots
    path_policy_mode: str = "all"
    allowed_roots: list[str] = Field(default_factory=list)

    title_debounce_seconds: float = 5.0
    max_concurrent_runs: int = 8

    admin_host: str = "127.0.0.1"
    admin_port: int = 8788
    admin_api_token: str = ""

    @field_validator("allowed_roots", mode="before")
    @classmethod
    def _parse_csv_or_json_list(cls, value: Any) -> Any:
        if isinstance(value, list):
            return value
        if value is None:
            return []
        if isinstance(value, str):
            stripped = value.strip()
            if not stripped:
                return []
            if stripped.startswith("["):
                return json.loads(stripped)
            return [part.strip() for part in stripped.split(",") if part.strip()]
        return value

    @field_validator("cancel_soft_timeout_sec", "cancel_kill_timeout_sec", mode="before")
    @classmethod
    def _positive_timeout_or_default(cls, value: Any, info: ValidationInfo) -> int:
        fallback = (
            DEFAULT_SOFT_TIMEOUT_SEC
            if info.field_name == "cancel_soft_timeout_sec"
            else DEFAULT_KILL_TIMEOUT_SEC
        )
        try:
            parsed = int(str(value).strip())
        except (TypeError, ValueError):
            return fallback
        return parsed if parsed > 0 else fallback

    @field_validator("default_backend", mode="after")
    @classmethod
    def _normalize_backend(cls, value: str) -> str:
        return LaunchBackend.normalize(value).value

    @field_validator("path_policy_mode", mode="after")
    @classmethod
    def _normalize_policy_mode(cls, value: str) -> str:
        mode = value.strip().lower()
        if mode not in {"all", "allowlist"}:
            raise ValueError("path_policy_mode must be 'all' or 'allowlist'")
        return mode

    def resolved_db_path(self) -> Path:
        """Return db_path, defaulting to ``state_dir/state.db``."""
        if self.db_path is not None:
            return Path(self.db_path)
        return Path(self.state_dir) / "state.db"
