from __future__ import annotations

import argparse
import importlib.metadata
import json
import logging
import sys
import time
from typing import Any

import httpx
import uvicorn

from .admin_client import AdminClient
from .approval import Decision, parse_decision
from .bridge import PromptResult, TopicBridge
from .chat import ConsoleChatClient
from .config import BridgeSettings
from .errors import BridgeError
from .models import TopicKey, TopicStatus
from .store import SQLiteStore
from .supervisor import CodexSupervisor

logger = logging.getLogger("codex_bridge")

_CLI_CHAT_ID = 0
_POLL_SECONDS = 0.2


def _get_version() -> str:
    """Get the version from package metadata."""
    try:
        return importlib.metadata.version("codex-bridge")
    except importlib.metadata.PackageNotFoundError:
        return "0.1.0 (dev)"


def _ask_decision(command: str) -> Decision:
    while True:
        try:
            answer = input(f"Run `{command}`? [yes/always/no] ")
        except EOFError:
            return Decision.DENY
        decision = parse_decision(answer)
        if decision is not None:
            return decision
        print("Please answer yes, always or no.", file=sys.stderr)


def _run_once(settings: BridgeSettings, args: argparse.Namespace) -> int:
    """Run one prompt in a project directory, answering approvals on the terminal."""
    store = SQLiteStore(settings.resolved_db_path())
    store.bootstrap()
    bridge = TopicBridge(CodexSupervisor(settings), store, ConsoleChatClient(echo=True), settings)
    thread_id = 0
    last: PromptResult | None = None
    try:
        project = store.get_or_create_project(args.project_dir)
        thread_id = int(project["id"])
        topic = bridge.bind_topic(_CLI_CHAT_ID, thread_id, args.project_dir, backend=args.backend)
        if args.new_session:
            store.update_topic_session_id(topic["id"], None)
        key = TopicKey(_CLI_CHAT_ID, thread_id)

        future = bridge.submit_prompt(_CLI_CHAT_ID, thread_id, args.prompt)
        while True:
            pending = bridge.gate.pending(key)
            if pending is not None:
                last = bridge.decide(_CLI_CHAT_ID, thread_id, _ask_decision(pending.command)) or last
                continue
            if future is not None and future.done():
                last = future.result()
                future = None
                continue
            if future is None:
                break
            time.sleep(_POLL_SECONDS)
    except BridgeError as exc:
        print(str(exc), file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        bridge.cancel(_CLI_CHAT_ID, thread_id)
        return 130
    finally:
        bridge.shutdown()
        store.close()

    if last is None or last.error:
        return 1
    return 0 if last.status is TopicStatus.IDLE else 1


def _print_config(settings: BridgeSettings) -> int:
    data = settings.model_dump(mode="json")
    if data.get("admin_api_token"):
        data["admin_api_token"] = "***"
    data["db_path"] = str(settings.resolved_db_path())
    print(json.dumps(data, indent=2, sort_keys=True))
    return 0


def _run_remote(settings: BridgeSettings, args: argparse.Namespace) -> int:
    """Talk to a bridge started with `serve`."""
    client = AdminClient(
        args.url or f"http://{settings.admin_host}:{settings.admin_port}",
        token=settings.admin_api_token,
    )
    try:
        if args.mode == "status":
            result: Any = {
                "health": client.health(),
                "active_runs": client.active_runs(),
                "pending_approvals": client.pending_approvals(),
            }
        elif args.mode == "cancel":
            result = {"cancelled": client.cancel(args.chat_id, args.thread_id)}
        else:
            result = client.decide(args.chat_id, args.thread_id, args.decision)
    except httpx.HTTPError as exc:
        print(f"Admin API request failed: {exc}", file=sys.stderr)
        return 1
    print(json.dumps(result, indent=2, ensure_ascii=False))
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Codex chat-topic bridge")
    parser.add_argument("--version", "-V", action="store_true", help="Show version and exit")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="mode")

    run_parser = sub.add_parser("run", help="Run one prompt in a project directory")
    run_parser.add_argument("project_dir", help="Directory the agent works in")
    run_parser.add_argument("prompt", help="Prompt text")
    run_parser.add_argument("--backend", choices=["docker", "windows", "wsl"], default=None)
    run_parser.add_argument(
        "--new-session",
        dest="new_session",
        action="store_true",
        help="Start a fresh codex session instead of resuming the stored one",
    )

    serve_parser = sub.add_parser("serve", help="Start the admin API")
    serve_parser.add_argument("--host", default=None)
    serve_parser.add_argument("--port", type=int, default=None)

    sub.add_parser("config", help="Print the effective settings as JSON")

    status_parser = sub.add_parser("status", help="Show active runs and pending approvals")
    cancel_parser = sub.add_parser("cancel", help="Cancel the active run of a topic")
    cancel_parser.add_argument("chat_id", type=int)
    cancel_parser.add_argument("thread_id", type=int)
    decide_parser = sub.add_parser("decide", help="Answer a pending approval")
    decide_parser.add_argument("chat_id", type=int)
    decide_parser.add_argument("thread_id", type=int)
    decide_parser.add_argument("decision", help="yes, always or no")
    for remote in (status_parser, cancel_parser, decide_parser):
        remote.add_argument("--url", default=None, help="Admin API base URL")

    args = parser.parse_args()

    if args.version:
        print(f"codex-bridge {_get_version()}")
        return

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
    )
    settings = BridgeSettings()

    if args.mode == "run":
        raise SystemExit(_run_once(settings, args))

    if args.mode == "config":
        raise SystemExit(_print_config(settings))

    if args.mode in {"status", "cancel", "decide"}:
        raise SystemExit(_run_remote(settings, args))

    if args.mode == "serve":
        from .main import build_app

        host = args.host or settings.admin_host
        port = args.port or settings.admin_port
        logger.info("Starting admin API on %s:%s", host, port)
        uvicorn.run(build_app(settings=settings), host=host, port=port, reload=False)
        return

    parser.print_help()
    raise SystemExit(2)


if __name__ == "__main__":
    main()
