"""Command-line construction for `codex exec` across launch backends."""

from __future__ import annotations

import shlex
from dataclasses import dataclass

from .config import BridgeSettings
from .models import LaunchBackend, RunRequest


@dataclass(frozen=True, slots=True)
class LaunchSpec:
    argv: list[str]
    cwd: str | None
    backend: LaunchBackend

    def display_command(self) -> str:
        """Human-readable command for logs; quotes args with spaces or quotes."""
        return shlex.join(self.argv)


def build_codex_args(request: RunRequest, settings: BridgeSettings) -> list[str]:
    """Arguments following the codex binary name."""
    sandbox = (request.sandbox_mode or "").strip() or settings.sandbox_mode
    args = ["exec", "--json", "--skip-git-repo-check", "--sandbox", sandbox]

    if settings.enable_web_search:
        args.append("--search")

    approval_mode = (request.approval_mode or "").strip() or settings.approval_mode.strip()
    if approval_mode:
        args.extend(["-c", f"approval_policy={approval_mode}"])

    resume_id = (request.resume_session_id or "").strip()
    if resume_id:
        args.extend(["resume", resume_id, request.prompt])
    else:
        args.append(request.prompt)
    return args


def build_launch(request: RunRequest, settings: BridgeSettings) -> LaunchSpec:
    backend = LaunchBackend.normalize(request.backend)
    codex_args = build_codex_args(request, settings)

    if backend is LaunchBackend.WSL:
        argv = [settings.wsl_bin]
        if settings.wsl_distro.strip():
            argv.extend(["-d", settings.wsl_distro.strip()])
        # wsl.exe translates the working directory itself.
        argv.extend(["--cd", request.project_dir, "--", settings.wsl_codex_bin])
        return LaunchSpec(argv=argv + codex_args, cwd=None, backend=backend)

    if backend is LaunchBackend.WINDOWS:
        binary = settings.windows_codex_bin
    else:
        binary = settings.codex_bin
    return LaunchSpec(argv=[binary, *codex_args], cwd=request.project_dir, backend=backend)
