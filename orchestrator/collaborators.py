"""Interfaces of the external tools the orchestrator drives.

The core never talks to tmux, git or the SCM host directly; it goes
through these protocols so tests (and other backends) can substitute
their own. Implementations raise CollaboratorError on failure.
"""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from .errors import CollaboratorError
from .models import AgentState, Project, PullRequestInfo

logger = logging.getLogger(__name__)

DEFAULT_COMMAND_TIMEOUT = 15


class Terminal(Protocol):
    def create(self, name: str, cwd: str, command: str) -> None: ...

    def exists(self, name: str) -> bool: ...

    def send(self, name: str, text: str) -> None: ...

    def press_enter(self, name: str) -> None: ...

    def capture(self, name: str, lines: int = 20) -> str: ...

    def terminate(self, name: str) -> None: ...

    def attach_command(self, name: str) -> list[str]: ...


class Worktree(Protocol):
    def create(self, project: Project, path: Path, branch: str) -> None: ...

    def exists(self, path: Path) -> bool: ...

    def remove(self, project: Project, path: Path) -> None: ...


class Tracker(Protocol):
    def is_completed(self, project: Project, issue: str) -> bool: ...


class SCM(Protocol):
    def pull_request(self, project: Project, branch: str) -> PullRequestInfo: ...


class Agent(Protocol):
    def state(self, terminal_name: str) -> AgentState: ...


@dataclass
class Collaborators:
    terminal: Terminal
    worktree: Worktree
    tracker: Tracker
    scm: SCM
    agent: Agent


def run_command(
    args: list[str],
    collaborator: str,
    cwd: str | Path | None = None,
    timeout: float = DEFAULT_COMMAND_TIMEOUT,
    check: bool = True,
) -> subprocess.CompletedProcess:
    """Run an external tool, turning launch failures into CollaboratorError.

    With ``check`` a non-zero exit status is an error too; without it the
    caller inspects ``returncode``/``stderr`` itself.
    """
    logger.debug("Running %s", " ".join(args))
    try:
        result = subprocess.run(
            args,
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as e:
        raise CollaboratorError(collaborator, f"{args[0]} timed out after {timeout}s") from e
    except (FileNotFoundError, PermissionError) as e:
        raise CollaboratorError(collaborator, f"{args[0]} could not be started: {e}") from e

    if check and result.returncode != 0:
        detail = (result.stderr or result.stdout).strip() or f"exit status {result.returncode}"
        raise CollaboratorError(collaborator, f"{' '.join(args[:3])} failed: {detail}")
    return result


def default_collaborators() -> Collaborators:
    """tmux + git + GitHub CLI, the stock setup."""
    from .git import GitWorktrees
    from .github import GitHubSCM, GitHubTracker
    from .tmux import TmuxAgentProbe, TmuxTerminal

    return Collaborators(
        terminal=TmuxTerminal(),
        worktree=GitWorktrees(),
        tracker=GitHubTracker(),
        scm=GitHubSCM(),
        agent=TmuxAgentProbe(),
    )
