"""Desktop notifications for lifecycle transitions.

Uses macOS osascript for native notifications; falls back to logging
on other platforms. Wired into the poller as its transition callback
when ``notifications: true`` is set in the config.
"""

from __future__ import annotations

import logging
import platform
import subprocess

from .lifecycle import ATTENTION_STATUSES
from .models import Session, SessionStatus

logger = logging.getLogger(__name__)

_TITLES = {
    SessionStatus.WAITING_REVIEW: "Agent waiting for input",
    SessionStatus.PR_OPEN: "Pull request opened",
    SessionStatus.MERGED: "Pull request merged",
    SessionStatus.BLOCKED: "Agent crashed",
    SessionStatus.EXITED: "Agent exited",
}


# ---------------------------------------------------------------------------
# AppleScript helpers
# ---------------------------------------------------------------------------


def _escape_applescript(s: str) -> str:
    """Escape a string for use inside AppleScript double quotes."""
    return s.replace("\\", "\\\\").replace('"', '\\"')


def _send_notification(title: str, message: str) -> bool:
    """Send a desktop notification. Returns True if delivered."""
    if platform.system() == "Darwin":
        script = (
            f'display notification "{_escape_applescript(message)}" '
            f'with title "{_escape_applescript(title)}"'
        )
        try:
            subprocess.run(
                ["osascript", "-e", script],
                capture_output=True,
                timeout=5,
            )
            return True
        except subprocess.TimeoutExpired:
            logger.warning("osascript timed out sending notification")
            return False
        except FileNotFoundError:
            logger.warning("osascript not found")
            return False
    else:
        logger.info("Notification: [%s] %s", title, message)
        return False


# ---------------------------------------------------------------------------
# Poller callback
# ---------------------------------------------------------------------------


def format_transition(session: Session, old: SessionStatus, new: SessionStatus) -> tuple[str, str]:
    title = _TITLES.get(new, f"Session {new}")
    message = f"{session.id} ({session.project}): {old} -> {new}"
    if session.issue:
        message += f" [{session.issue}]"
    if new in (SessionStatus.PR_OPEN, SessionStatus.MERGED) and session.pr:
        message += f" {session.pr}"
    return title, message


def notify_transition(session: Session, old: SessionStatus, new: SessionStatus) -> bool:
    """Notify when a session enters a status that needs a human."""
    if new not in ATTENTION_STATUSES:
        return False
    title, message = format_transition(session, old, new)
    return _send_notification(title, message)
