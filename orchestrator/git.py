"""git-worktree-backed Worktree collaborator."""

from __future__ import annotations

import logging
from pathlib import Path

from .collaborators import run_command
from .errors import CollaboratorError
from .models import Project

logger = logging.getLogger(__name__)


class GitWorktrees:
    def __init__(self, binary: str = "git", fetch: bool = True) -> None:
        self.binary = binary
        self.fetch = fetch

    def _git(self, project: Project, *args: str, check: bool = True):
        return run_command(
            [self.binary, "-C", project.repo_path, *args], "worktree", timeout=60, check=check
        )

    def _branch_exists(self, project: Project, branch: str) -> bool:
        result = self._git(
            project, "rev-parse", "--verify", "--quiet", f"refs/heads/{branch}", check=False
        )
        return result.returncode == 0

    def _base_ref(self, project: Project) -> str:
        if self.fetch:
            result = self._git(project, "fetch", "origin", project.default_branch, check=False)
            if result.returncode != 0:
                logger.warning(
                    "git fetch failed for %s, branching from local %s: %s",
                    project.id, project.default_branch, result.stderr.strip(),
                )
        remote = f"origin/{project.default_branch}"
        result = self._git(project, "rev-parse", "--verify", "--quiet", remote, check=False)
        return remote if result.returncode == 0 else project.default_branch

    def create(self, project: Project, path: Path, branch: str) -> None:
        """Check out ``branch`` at ``path``, creating the branch if needed."""
        path = Path(path)
        if path.exists():
            raise CollaboratorError("worktree", f"{path} already exists")
        path.parent.mkdir(parents=True, exist_ok=True)
        if self._branch_exists(project, branch):
            self._git(project, "worktree", "add", str(path), branch)
        else:
            self._git(project, "worktree", "add", "-b", branch, str(path), self._base_ref(project))
        logger.info("Created worktree %s on %s", path, branch)

    def exists(self, path: Path) -> bool:
        return Path(path).is_dir()

    def remove(self, project: Project, path: Path) -> None:
        self._git(project, "worktree", "remove", "--force", str(path))
        logger.info("Removed worktree %s", path)
