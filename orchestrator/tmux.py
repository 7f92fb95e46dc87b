"""tmux-backed Terminal and Agent collaborators."""

from __future__ import annotations

import logging
import os
import tempfile
import time

from .collaborators import run_command
from .errors import CollaboratorError
from .models import AgentState
from .validation import strip_control_chars

logger = logging.getLogger(__name__)

# Messages longer than this (or multi-line) go through a paste buffer.
MAX_SEND_KEYS_LENGTH = 200

_MISSING_SESSION_MARKERS = (
    "can't find session",
    "can't find pane",
    "can't find window",
    "no server running",
    "session not found",
)


def _is_missing_session(stderr: str) -> bool:
    lowered = stderr.lower()
    return any(marker in lowered for marker in _MISSING_SESSION_MARKERS)


# "=" makes tmux match the session name exactly instead of by prefix,
# so h-be-1 never resolves to h-be-10.
def _session_target(name: str) -> str:
    return f"={name}"


def _pane_target(name: str) -> str:
    return f"={name}:"


class TmuxTerminal:
    def __init__(self, binary: str = "tmux") -> None:
        self.binary = binary

    def _tmux(self, *args: str, check: bool = True):
        return run_command([self.binary, *args], "terminal", check=check)

    def create(self, name: str, cwd: str, command: str) -> None:
        """Start ``command`` in a detached session that outlives the process.

        ``remain-on-exit`` keeps the dead pane around so the agent probe
        can tell a clean exit from a crash.
        """
        self._tmux(
            "new-session", "-d", "-s", name, "-c", cwd, command,
            ";", "set-option", "-t", _session_target(name), "remain-on-exit", "on",
        )
        logger.info("Started tmux session %s in %s", name, cwd)

    def exists(self, name: str) -> bool:
        result = self._tmux("has-session", "-t", _session_target(name), check=False)
        return result.returncode == 0

    def send(self, name: str, text: str) -> None:
        message = "\n".join(strip_control_chars(line) for line in text.splitlines())
        # Clear whatever is half-typed in the prompt first.
        self._tmux("send-keys", "-t", _pane_target(name), "C-u")
        if "\n" in message or len(message) > MAX_SEND_KEYS_LENGTH:
            self._paste(name, message)
        else:
            self._tmux("send-keys", "-t", _pane_target(name), "-l", message)
        time.sleep(0.3)
        self.press_enter(name)

    def press_enter(self, name: str) -> None:
        self._tmux("send-keys", "-t", _pane_target(name), "Enter")

    def _paste(self, name: str, message: str) -> None:
        fd, path = tempfile.mkstemp(prefix="ao-send-", suffix=".txt")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(message)
            buffer = f"ao-{name}"
            self._tmux("load-buffer", "-b", buffer, path)
            self._tmux("paste-buffer", "-d", "-b", buffer, "-t", _pane_target(name))
        finally:
            os.unlink(path)

    def capture(self, name: str, lines: int = 20) -> str:
        result = self._tmux(
            "capture-pane", "-p", "-t", _pane_target(name), "-S", f"-{max(1, lines)}"
        )
        return result.stdout

    def terminate(self, name: str) -> None:
        result = self._tmux("kill-session", "-t", _session_target(name), check=False)
        if result.returncode != 0 and not _is_missing_session(result.stderr):
            raise CollaboratorError("terminal", f"kill-session {name}: {result.stderr.strip()}")

    def attach_command(self, name: str) -> list[str]:
        return [self.binary, "attach-session", "-t", _session_target(name)]


class TmuxAgentProbe:
    """Reads the agent's fate from its tmux pane.

    A live pane is a running agent. A dead pane (kept by remain-on-exit)
    with status 0 is a clean exit, anything else a crash. A session that
    vanished entirely counts as a crash as well.
    """

    def __init__(self, binary: str = "tmux") -> None:
        self.binary = binary

    def state(self, terminal_name: str) -> AgentState:
        result = run_command(
            [
                self.binary, "list-panes", "-t", _pane_target(terminal_name),
                "-F", "#{pane_dead} #{pane_dead_status}",
            ],
            "agent",
            check=False,
        )
        if result.returncode != 0:
            if _is_missing_session(result.stderr):
                return AgentState.CRASHED
            raise CollaboratorError("agent", result.stderr.strip() or "tmux list-panes failed")

        first = (result.stdout.strip().splitlines() or [""])[0].split()
        if not first or first[0] != "1":
            return AgentState.LIVE
        status = first[1] if len(first) > 1 else ""
        return AgentState.EXITED if status == "0" else AgentState.CRASHED
