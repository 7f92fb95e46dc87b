"""Session lifecycle state machine.

``next_status`` is the only signal-driven transition and is a pure
function of ``(current status, SignalBundle)``. Manual operations (kill,
restore, archive) have their own entry points so they never have to be
disguised as signals.

Signal-driven rules, first match wins:

1. terminal statuses (merged, killed, archived) never change;
2. if any collaborator signal is unavailable the status is left alone;
3. a merged PR means ``merged``, an open PR means ``pr_open``;
4. a crashed agent means ``blocked``, a cleanly exited one ``exited``;
5. a live agent moves ``spawning`` to ``working``; after that busy/idle
   terminal activity toggles ``working`` and ``waiting_review``.
"""

from __future__ import annotations

from .errors import InvalidStateError
from .models import (
    TERMINAL_STATUSES,
    Activity,
    AgentState,
    PRState,
    SessionStatus,
    SignalBundle,
)

RESTORABLE_STATUSES = frozenset({SessionStatus.KILLED, SessionStatus.EXITED})

# Statuses the user should hear about when a session enters them.
ATTENTION_STATUSES = frozenset(
    {
        SessionStatus.WAITING_REVIEW,
        SessionStatus.PR_OPEN,
        SessionStatus.MERGED,
        SessionStatus.BLOCKED,
        SessionStatus.EXITED,
    }
)


def next_status(current: SessionStatus, signals: SignalBundle) -> SessionStatus:
    if current in TERMINAL_STATUSES:
        return current
    if not signals.complete:
        return current

    pr_state = signals.pr.state
    if pr_state == PRState.MERGED:
        return SessionStatus.MERGED
    if pr_state == PRState.OPEN:
        return SessionStatus.PR_OPEN

    if signals.agent == AgentState.CRASHED:
        return SessionStatus.BLOCKED
    if signals.agent == AgentState.EXITED:
        return SessionStatus.EXITED

    if current == SessionStatus.SPAWNING:
        return SessionStatus.WORKING
    if signals.activity == Activity.BUSY:
        return SessionStatus.WORKING
    if signals.activity == Activity.IDLE:
        return SessionStatus.WAITING_REVIEW
    # Unknown activity: a live agent coming back from pr_open/blocked/exited
    # is working again, anything else keeps its status.
    if current in (SessionStatus.PR_OPEN, SessionStatus.BLOCKED, SessionStatus.EXITED):
        return SessionStatus.WORKING
    return current


def restore_status(current: SessionStatus) -> SessionStatus:
    """Manual override: bring a killed or exited session back to work."""
    if current not in RESTORABLE_STATUSES:
        raise InvalidStateError(
            f"Cannot restore a session in status '{current}' "
            "(only killed or exited sessions can be restored)"
        )
    return SessionStatus.WORKING


def kill_status(current: SessionStatus) -> SessionStatus:
    if current == SessionStatus.KILLED:
        return current
    if current in TERMINAL_STATUSES:
        raise InvalidStateError(f"Cannot kill a session in status '{current}'")
    return SessionStatus.KILLED


def ensure_archivable(current: SessionStatus) -> None:
    if current not in TERMINAL_STATUSES:
        raise InvalidStateError(
            f"Cannot archive a session in status '{current}' "
            "(kill it or wait for its PR to merge first)"
        )
