"""Session manager — the façade the CLI and the web dashboard call.

Every operation is synchronous and either returns the resulting Session or
raises one of the typed errors from ``errors.py``. Mutating operations run
the namespace's origin check first.
"""

from __future__ import annotations

import logging
import re
import time
from datetime import UTC, datetime
from pathlib import Path

from .activity import classify_activity
from .allocator import DEFAULT_RETRY_BUDGET, SessionIdAllocator
from .collaborators import Collaborators
from .errors import (
    CollaboratorError,
    CollisionError,
    InvalidStateError,
    NotFoundError,
    OrchestratorError,
)
from .lifecycle import ensure_archivable, kill_status, restore_status
from .models import (
    Activity,
    AgentState,
    OrchestratorConfig,
    Project,
    SendResult,
    Session,
    SessionStatus,
)
from .origin import OriginGuard
from .paths import (
    WORKTREES_SUBDIR,
    config_hash,
    data_root,
    namespace_dir,
    parse_session_id,
    session_id,
    tmux_name,
)
from .signals import CAPTURE_LINES
from .store import MetadataStore
from .validation import validate_git_branch, validate_issue_ref, validate_message

logger = logging.getLogger(__name__)

_BRANCH_UNSAFE_RE = re.compile(r"[^a-zA-Z0-9._-]+")

DEFAULT_SEND_TIMEOUT = 600.0  # seconds to wait for a busy agent before sending anyway
DELIVERY_CHECKS = 3
DELIVERY_CAPTURE_LINES = 10


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def branch_name(sid: str, issue: str | None) -> str:
    """``feat/{issue}`` for issue-backed sessions, ``session/{id}`` otherwise."""
    if issue:
        slug = _BRANCH_UNSAFE_RE.sub("-", issue.rstrip("/").rsplit("/", 1)[-1].lstrip("#"))
        slug = slug.strip("-.")
        if slug:
            try:
                return validate_git_branch(f"feat/{slug}")
            except ValueError:
                logger.debug("Issue %r does not make a valid branch name", issue)
    return f"session/{sid}"


class SessionManager:
    send_poll_interval = 5.0
    delivery_delay = 2.0

    def __init__(
        self,
        config: OrchestratorConfig,
        collaborators: Collaborators,
        retries: int = DEFAULT_RETRY_BUDGET,
    ) -> None:
        self.config = config
        self.collaborators = collaborators
        self.retries = retries
        self.namespace = config_hash(config.config_path)
        self.data_root = data_root(config.data_dir)

    # -- layout -------------------------------------------------------------

    def project(self, project_id: str) -> Project:
        try:
            return self.config.projects[project_id]
        except KeyError:
            raise NotFoundError(f"Unknown project '{project_id}'") from None

    def namespace_dir(self, project: Project) -> Path:
        return namespace_dir(self.data_root, self.namespace, project.id)

    def store(self, project: Project) -> MetadataStore:
        return MetadataStore(self.namespace_dir(project))

    def origin_guard(self, project: Project) -> OriginGuard:
        return OriginGuard(self.namespace_dir(project), self.namespace)

    def worktree_path(self, project: Project, sid: str) -> Path:
        return self.namespace_dir(project) / WORKTREES_SUBDIR / sid

    def _claimed_store(self, project: Project) -> MetadataStore:
        self.origin_guard(project).claim(self.config.config_path)
        return self.store(project)

    def _locate(self, sid: str) -> Project:
        prefix, _ = parse_session_id(sid)
        project = self.config.project_for_prefix(prefix)
        if project is None:
            raise NotFoundError(f"No project uses session prefix '{prefix}' ({sid})")
        return project

    def namespaces(self) -> list[tuple[Project, MetadataStore]]:
        """Claimed namespaces of this configuration, for the poller.

        Unclaimed namespaces are skipped (nothing to poll); colliding ones
        are logged and skipped so the other projects keep updating.
        """
        result = []
        for project in self.config.projects.values():
            try:
                if not self.origin_guard(project).check(self.config.config_path):
                    continue
            except CollisionError as exc:
                logger.error("Skipping namespace of %s: %s", project.id, exc)
                continue
            result.append((project, self.store(project)))
        return result

    def info(self) -> dict:
        return {
            "config": self.config.config_path,
            "namespace": self.namespace,
            "data_root": str(self.data_root),
            "projects": {
                p.id: {
                    "name": p.name,
                    "path": p.repo_path,
                    "session_prefix": p.session_prefix,
                    "namespace_dir": str(self.namespace_dir(p)),
                    "origin": self.origin_guard(p).read_marker(),
                }
                for p in self.config.projects.values()
            },
        }

    # -- reads --------------------------------------------------------------

    def list(self, project_id: str | None = None, include_archived: bool = False) -> list[Session]:
        projects = (
            [self.project(project_id)] if project_id else list(self.config.projects.values())
        )
        sessions: list[Session] = []
        for project in projects:
            sessions += self.store(project).list(project.id, include_archived=include_archived)
        return sessions

    def get(self, sid: str) -> Session:
        session = self.store(self._locate(sid)).get(sid)
        if session is None:
            raise NotFoundError(f"Session {sid} not found")
        return session

    def attach_command(self, sid: str) -> list[str]:
        return self.collaborators.terminal.attach_command(self.get(sid).tmux_name)

    # -- mutations ----------------------------------------------------------

    def spawn(self, project_id: str, issue: str | None = None) -> Session:
        """Allocate a session, then materialize its worktree and terminal.

        If a collaborator fails after the number was claimed, the record is
        kept (status blocked, ``error`` set) and the failure is raised as a
        CollaboratorError.
        """
        project = self.project(project_id)
        issue = validate_issue_ref(issue)
        store = self._claimed_store(project)

        def build(number: int) -> Session:
            sid = session_id(project.session_prefix, number)
            return Session(
                id=sid,
                project=project.id,
                number=number,
                tmux_name=tmux_name(self.namespace, sid),
                status=SessionStatus.SPAWNING,
                issue=issue,
                branch=branch_name(sid, issue),
                worktree=str(self.worktree_path(project, sid)),
            )

        session = SessionIdAllocator(store, self.retries).allocate(project.session_prefix, build)
        logger.info("Allocated session %s (%s)", session.id, session.tmux_name)

        stage = "worktree"
        try:
            self.collaborators.worktree.create(project, Path(session.worktree), session.branch)
            stage = "terminal"
            self.collaborators.terminal.create(
                session.tmux_name, session.worktree, project.agent_command
            )
        except Exception as exc:
            logger.error("Spawn of %s failed after allocation: %s", session.id, exc)

            def _mark_failed(s: Session) -> Session:
                s.status = SessionStatus.BLOCKED
                s.error = f"spawn failed: {exc}"
                s.last_activity_at = _now_iso()
                return s

            store.update(session.id, _mark_failed)
            if isinstance(exc, OrchestratorError):
                raise
            raise CollaboratorError(stage, str(exc)) from exc
        return session

    def kill(self, sid: str) -> Session:
        """Terminate the terminal session; the worktree is left in place."""
        project = self._locate(sid)
        store = self._claimed_store(project)
        session = self.get(sid)
        kill_status(session.status)

        self.collaborators.terminal.terminate(session.tmux_name)

        def _kill(s: Session) -> Session | None:
            new_status = kill_status(s.status)
            if new_status == s.status:
                return None
            s.status = new_status
            s.warning = None
            s.last_activity_at = _now_iso()
            return s

        killed = store.update(sid, _kill)
        logger.info("Killed session %s", sid)
        return killed

    def archive(self, sid: str) -> Session:
        project = self._locate(sid)
        store = self._claimed_store(project)
        self.get(sid)
        if not store.exists(sid):
            raise InvalidStateError(f"Session {sid} is already archived")
        return store.archive(sid, check=lambda s: ensure_archivable(s.status))

    def restore(self, sid: str) -> Session:
        """Bring a killed or exited session back to ``working``.

        The worktree and the terminal session are recreated when missing.
        """
        project = self._locate(sid)
        store = self._claimed_store(project)
        session = self.get(sid)
        restore_status(session.status)

        worktree = Path(session.worktree)
        if not self.collaborators.worktree.exists(worktree):
            self.collaborators.worktree.create(project, worktree, session.branch)
        if not self._agent_running(session):
            self.collaborators.terminal.terminate(session.tmux_name)
            self.collaborators.terminal.create(
                session.tmux_name, session.worktree, project.agent_command
            )

        def _restore(s: Session) -> Session:
            s.status = restore_status(s.status)
            s.warning = None
            s.error = None
            s.last_activity_at = _now_iso()
            return s

        restored = store.update(sid, _restore)
        logger.info("Restored session %s", sid)
        return restored

    def send(
        self,
        sid: str,
        message: str,
        wait: bool = True,
        timeout: float = DEFAULT_SEND_TIMEOUT,
    ) -> SendResult:
        """Type ``message`` into the session's agent and press Enter.

        With ``wait`` the message is held back while the agent looks busy,
        for at most ``timeout`` seconds, then sent anyway. Afterwards the
        pane is checked a few times; if the agent shows no sign of working
        on (or queueing) the message, Enter is pressed again.
        """
        message = validate_message(message)
        if timeout < 0:
            raise ValueError(f"timeout must not be negative (got {timeout})")
        session = self.get(sid)
        if session.is_terminal:
            raise InvalidStateError(f"Cannot send to a session in status '{session.status}'")
        terminal = self.collaborators.terminal
        if not terminal.exists(session.tmux_name):
            raise InvalidStateError(f"Terminal {session.tmux_name} is not running")

        result = SendResult(session_id=session.id)
        if wait:
            result.waited, result.timed_out = self._wait_for_idle(session.tmux_name, timeout)
        terminal.send(session.tmux_name, message)
        result.delivered = self._confirm_delivery(session.tmux_name)
        logger.info(
            "Sent %d chars to %s (delivered=%s)", len(message), session.id, result.delivered
        )
        return result

    def _activity(self, name: str, lines: int = CAPTURE_LINES) -> Activity:
        try:
            return classify_activity(self.collaborators.terminal.capture(name, lines))
        except CollaboratorError as exc:
            logger.warning("Could not read %s: %s", name, exc)
            return Activity.UNKNOWN

    def _wait_for_idle(self, name: str, timeout: float) -> tuple[float, bool]:
        start = time.monotonic()
        while self._activity(name) == Activity.BUSY:
            elapsed = time.monotonic() - start
            if elapsed >= timeout:
                logger.warning("%s still busy after %.0fs, sending anyway", name, elapsed)
                return elapsed, True
            logger.debug("Waiting for %s to become idle", name)
            time.sleep(self.send_poll_interval)
        return time.monotonic() - start, False

    def _confirm_delivery(self, name: str) -> bool:
        for attempt in range(1, DELIVERY_CHECKS + 1):
            time.sleep(self.delivery_delay)
            if self._activity(name, DELIVERY_CAPTURE_LINES) == Activity.BUSY:
                return True
            if attempt < DELIVERY_CHECKS:
                logger.debug("No reaction from %s yet, pressing Enter again", name)
                self.collaborators.terminal.press_enter(name)
        logger.warning("Could not confirm that %s received the message", name)
        return False

    def _agent_running(self, session: Session) -> bool:
        if not self.collaborators.terminal.exists(session.tmux_name):
            return False
        return self.collaborators.agent.state(session.tmux_name) == AgentState.LIVE
