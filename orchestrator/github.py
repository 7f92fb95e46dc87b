"""GitHub Tracker and SCM collaborators built on the ``gh`` CLI."""

from __future__ import annotations

import json
import logging

from .collaborators import run_command
from .errors import CollaboratorError
from .models import PRState, Project, PullRequestInfo

logger = logging.getLogger(__name__)

_PR_STATES = {"OPEN": PRState.OPEN, "MERGED": PRState.MERGED, "CLOSED": PRState.CLOSED}
_MERGEABLE = {"MERGEABLE": True, "CONFLICTING": False}
_FAILED_CONCLUSIONS = {"FAILURE", "CANCELLED", "TIMED_OUT", "ACTION_REQUIRED", "ERROR"}


def issue_number(issue: str) -> str:
    """``#12``, ``12`` or an issue URL -> ``12``."""
    return issue.rstrip("/").rsplit("/", 1)[-1].lstrip("#")


def _load_json(stdout: str, collaborator: str):
    try:
        return json.loads(stdout or "null")
    except json.JSONDecodeError as e:
        raise CollaboratorError(collaborator, f"unparseable gh output: {e}") from e


def summarize_checks(rollup: list[dict] | None) -> str:
    """Collapse a statusCheckRollup into passing/failing/pending/none."""
    if not rollup:
        return "none"
    pending = False
    for check in rollup:
        conclusion = (check.get("conclusion") or check.get("state") or "").upper()
        status = (check.get("status") or "").upper()
        if conclusion in _FAILED_CONCLUSIONS:
            return "failing"
        if status and status != "COMPLETED":
            pending = True
        elif conclusion in ("PENDING", "EXPECTED", ""):
            pending = True
    return "pending" if pending else "passing"


class GitHubTracker:
    def __init__(self, binary: str = "gh") -> None:
        self.binary = binary

    def is_completed(self, project: Project, issue: str) -> bool:
        if not project.repo:
            return False
        result = run_command(
            [self.binary, "issue", "view", issue_number(issue), "--repo", project.repo,
             "--json", "state"],
            "tracker",
        )
        data = _load_json(result.stdout, "tracker") or {}
        return str(data.get("state", "")).upper() == "CLOSED"


class GitHubSCM:
    def __init__(self, binary: str = "gh") -> None:
        self.binary = binary

    def pull_request(self, project: Project, branch: str) -> PullRequestInfo:
        if not project.repo or not branch:
            return PullRequestInfo()
        result = run_command(
            [self.binary, "pr", "list", "--repo", project.repo, "--head", branch,
             "--state", "all", "--limit", "1",
             "--json", "url,state,mergeable,statusCheckRollup"],
            "scm",
        )
        data = _load_json(result.stdout, "scm") or []
        if not data:
            return PullRequestInfo()
        pr = data[0]
        return PullRequestInfo(
            state=_PR_STATES.get(str(pr.get("state", "")).upper(), PRState.NONE),
            url=pr.get("url"),
            mergeable=_MERGEABLE.get(str(pr.get("mergeable", "")).upper()),
            ci=summarize_checks(pr.get("statusCheckRollup")),
        )
