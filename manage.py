#!/usr/bin/env python3
"""CLI entry point for agent sessions.

Usage:
    python manage.py <command> [options]

All output is JSON — easy to parse by scripts and the web dashboard.
Errors are printed as {"error": ..., "code": ...} with exit status 1.
"""

from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
import threading
from dataclasses import asdict
from pathlib import Path

# Add parent dir to path so `from orchestrator import ...` works
sys.path.insert(0, str(Path(__file__).parent))

from orchestrator.collaborators import default_collaborators
from orchestrator.config import load_config
from orchestrator.errors import OrchestratorError
from orchestrator.manager import DEFAULT_SEND_TIMEOUT, SessionManager
from orchestrator.notify import notify_transition
from orchestrator.poller import LifecyclePoller
from orchestrator.validation import validate_port

logger = logging.getLogger("manage")


def main() -> None:
    parser = argparse.ArgumentParser(description="Agent session orchestrator")
    parser.add_argument("--config", help="Path to agent-orchestrator.yaml")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging on stderr")
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("info", help="Show config, namespace and data directories")

    # --- Session commands ---
    p = sub.add_parser("spawn", help="Start a new agent session")
    p.add_argument("project", help="Project id (basename of its path)")
    p.add_argument("--issue", help="Issue reference (e.g. '#42')")

    p = sub.add_parser("list", help="List sessions")
    p.add_argument("--project", help="Filter by project id")
    p.add_argument("--archived", action="store_true", help="Include archived sessions")

    p = sub.add_parser("get", help="Get session details")
    p.add_argument("session_id")

    p = sub.add_parser("kill", help="Terminate a session's agent (keeps the worktree)")
    p.add_argument("session_id")

    p = sub.add_parser("restore", help="Restart a killed or exited session")
    p.add_argument("session_id")

    p = sub.add_parser("archive", help="Archive a merged or killed session")
    p.add_argument("session_id")

    p = sub.add_parser("send", help="Type a message into a session's agent")
    p.add_argument("session_id")
    p.add_argument("message", nargs="*")
    p.add_argument("-f", "--file", help="Send the contents of a file instead")
    p.add_argument(
        "--no-wait", dest="wait", action="store_false",
        help="Send right away instead of waiting for the agent to go idle",
    )
    p.add_argument(
        "--timeout", type=float, default=DEFAULT_SEND_TIMEOUT,
        help="Max seconds to wait for idle (default: %(default)s)",
    )

    p = sub.add_parser("attach", help="Print the command that attaches to a session")
    p.add_argument("session_id")

    # --- Lifecycle poller ---
    p = sub.add_parser("poll", help="Run the lifecycle poller")
    p.add_argument("--once", action="store_true", help="Run a single tick and exit")
    p.add_argument("--interval", type=float, help="Seconds between ticks")

    # --- Web server ---
    p = sub.add_parser("serve", help="Start web dashboard server")
    p.add_argument("--port", type=int)
    p.add_argument("--host", default="127.0.0.1")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    try:
        result = _dispatch(args)
    except OrchestratorError as e:
        print(json.dumps({"error": str(e), "code": e.code}, indent=2))
        sys.exit(1)
    except ValueError as e:
        print(json.dumps({"error": str(e), "code": "VALIDATION_ERROR"}, indent=2))
        sys.exit(1)
    print(json.dumps(result, indent=2, ensure_ascii=False))


def _build_manager(args: argparse.Namespace) -> SessionManager:
    config = load_config(getattr(args, "config", None))
    return SessionManager(config, default_collaborators())


def _dispatch(args: argparse.Namespace, manager: SessionManager | None = None) -> dict | list:
    cmd = args.command
    if manager is None:
        manager = _build_manager(args)

    if cmd == "info":
        return manager.info()

    if cmd == "spawn":
        session = manager.spawn(args.project, issue=args.issue)
        return asdict(session)

    if cmd == "list":
        sessions = manager.list(project_id=args.project, include_archived=args.archived)
        return [asdict(s) for s in sessions]

    if cmd == "get":
        return asdict(manager.get(args.session_id))

    if cmd == "kill":
        return asdict(manager.kill(args.session_id))

    if cmd == "restore":
        return asdict(manager.restore(args.session_id))

    if cmd == "archive":
        return asdict(manager.archive(args.session_id))

    if cmd == "send":
        message = _read_message(args.message, args.file)
        result = manager.send(args.session_id, message, wait=args.wait, timeout=args.timeout)
        return {"sent": True, **asdict(result)}

    if cmd == "attach":
        return {"command": manager.attach_command(args.session_id)}

    if cmd == "poll":
        return _poll(manager, args.once, args.interval)

    if cmd == "serve":
        _serve(manager, args.host, validate_port(args.port or manager.config.port))
        return {}  # uvicorn runs until interrupted

    return {"error": f"Unknown command: {cmd}"}


def _read_message(words: list[str], file: str | None) -> str:
    if file:
        if words:
            raise ValueError("Pass either a message or --file, not both")
        try:
            return Path(file).read_text(encoding="utf-8")
        except OSError as e:
            raise ValueError(f"Cannot read message file {file}: {e.strerror}") from e
    if not words:
        raise ValueError("No message provided")
    return " ".join(words)


def _poll(manager: SessionManager, once: bool, interval: float | None) -> dict:
    """Run one tick, or the poller in the foreground until SIGINT/SIGTERM."""
    on_transition = notify_transition if manager.config.notifications else None
    poller = LifecyclePoller.for_manager(manager, interval=interval, on_transition=on_transition)
    if once:
        report = poller.tick()
        return asdict(report) if report else {"skipped": True}

    done = threading.Event()

    def _shutdown(signum, frame):
        logger.info("Received signal %s, stopping poller", signum)
        done.set()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)
    poller.start()
    done.wait()
    poller.stop()
    return {"stopped": True}


def _serve(manager: SessionManager, host: str, port: int) -> None:
    """Start the web dashboard via uvicorn."""
    import uvicorn

    from web import app as web_app

    web_app.set_manager(manager)

    print(f"Dashboard: http://{host}:{port}", file=sys.stderr)
    uvicorn.run(
        web_app.app,
        host=host,
        port=port,
        log_level="warning",
    )


if __name__ == "__main__":
    main()
