from __future__ import annotations

from pathlib import Path

from .config import BridgeSettings


class PathPolicy:
    """Decides which directories a topic may be bound to."""

    def __init__(self, mode: str = "all", allowed_roots: list[str] | None = None):
        self.mode = mode.strip().lower()
        self.allowed_roots = [Path(root).expanduser().resolve() for root in (allowed_roots or [])]

    @classmethod
    def from_settings(cls, settings: BridgeSettings) -> PathPolicy:
        return cls(settings.path_policy_mode, settings.allowed_roots)

    def is_allowed(self, path: str) -> bool:
        if self.mode == "all":
            return True
        if not self.allowed_roots:
            return False
        candidate = Path(path).expanduser().resolve()
        for root in self.allowed_roots:
            if candidate == root or root in candidate.parents:
                return True
        return False
