"""Orchestrator data models — pure stdlib, no external dependencies."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum


class SessionStatus(StrEnum):
    SPAWNING = "spawning"
    WORKING = "working"
    WAITING_REVIEW = "waiting_review"
    PR_OPEN = "pr_open"
    MERGED = "merged"
    BLOCKED = "blocked"
    EXITED = "exited"
    KILLED = "killed"
    ARCHIVED = "archived"


TERMINAL_STATUSES = frozenset(
    {SessionStatus.MERGED, SessionStatus.KILLED, SessionStatus.ARCHIVED}
)


class AgentState(StrEnum):
    LIVE = "live"
    EXITED = "exited"  # clean exit (status 0)
    CRASHED = "crashed"  # non-zero exit or the terminal vanished


class Activity(StrEnum):
    BUSY = "busy"
    IDLE = "idle"
    UNKNOWN = "unknown"


class PRState(StrEnum):
    NONE = "none"
    OPEN = "open"
    MERGED = "merged"
    CLOSED = "closed"


@dataclass(frozen=True)
class PullRequestInfo:
    state: PRState = PRState.NONE
    url: str | None = None
    mergeable: bool | None = None
    ci: str | None = None  # passing | failing | pending | none


@dataclass(frozen=True)
class SignalBundle:
    """Observations gathered for one session during one poller tick.

    ``None`` in any field means the collaborator could not be asked; the
    matching message is in ``warnings``.
    """

    agent: AgentState | None = None
    activity: Activity | None = None
    issue_completed: bool | None = None
    pr: PullRequestInfo | None = None
    warnings: tuple[str, ...] = ()

    @property
    def complete(self) -> bool:
        return None not in (self.agent, self.activity, self.issue_completed, self.pr)

    def summary(self) -> dict[str, str]:
        """Flat string form stored in a record's ``lastSignals``."""

        def _fmt(value) -> str:
            if value is None:
                return "unavailable"
            return str(value).lower()

        pr = self.pr
        return {
            "agent": _fmt(self.agent),
            "activity": _fmt(self.activity),
            "issueCompleted": _fmt(self.issue_completed),
            "pr": _fmt(pr.state if pr else None),
            "mergeable": _fmt(pr.mergeable if pr else None),
            "ci": _fmt(pr.ci if pr else None),
        }


@dataclass
class Project:
    """One entry of the configuration's ``projects`` mapping."""

    id: str
    name: str
    repo_path: str
    session_prefix: str
    repo: str | None = None  # owner/name on the SCM host
    default_branch: str = "main"
    agent_command: str = "claude"


@dataclass
class OrchestratorConfig:
    config_path: str  # resolved absolute path of the YAML file
    data_dir: str | None = None
    port: int = 3000
    poll_interval: float = 10.0
    notifications: bool = False
    projects: dict[str, Project] = field(default_factory=dict)

    def project_for_prefix(self, prefix: str) -> Project | None:
        for project in self.projects.values():
            if project.session_prefix == prefix:
                return project
        return None


@dataclass
class Session:
    """One work session — stored as a key=value record in sessions/."""

    id: str
    project: str
    number: int
    tmux_name: str
    status: SessionStatus = SessionStatus.SPAWNING
    issue: str | None = None
    branch: str = ""
    worktree: str = ""
    created_at: str = ""
    last_activity_at: str = ""
    pr: str | None = None
    last_signals: dict[str, str] = field(default_factory=dict)
    warning: str | None = None
    error: str | None = None
    extra: dict[str, str] = field(default_factory=dict)  # unknown record keys

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass
class SendResult:
    session_id: str
    waited: float = 0.0  # seconds spent waiting for the agent to go idle
    timed_out: bool = False
    delivered: bool = False  # agent was seen working on or queueing the message
