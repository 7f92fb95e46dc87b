"""Gather one SignalBundle per session from the collaborators."""

from __future__ import annotations

import logging

from .activity import ActivityClassifier, classify_activity
from .collaborators import Collaborators
from .errors import CollaboratorError
from .models import Activity, AgentState, Project, PullRequestInfo, Session, SignalBundle

logger = logging.getLogger(__name__)

CAPTURE_LINES = 20


class SignalGatherer:
    """Asks every collaborator about one session.

    A failing collaborator does not abort the bundle: its field stays
    ``None`` and the error text is appended to ``warnings``.
    """

    def __init__(
        self,
        collaborators: Collaborators,
        classifier: ActivityClassifier = classify_activity,
        capture_lines: int = CAPTURE_LINES,
    ) -> None:
        self.collaborators = collaborators
        self.classifier = classifier
        self.capture_lines = capture_lines

    def gather(self, project: Project, session: Session) -> SignalBundle:
        warnings: list[str] = []

        agent: AgentState | None = None
        try:
            agent = self.collaborators.agent.state(session.tmux_name)
        except CollaboratorError as exc:
            warnings.append(str(exc))

        activity: Activity | None = Activity.UNKNOWN
        if agent == AgentState.LIVE:
            try:
                text = self.collaborators.terminal.capture(session.tmux_name, self.capture_lines)
                activity = self.classifier(text)
            except CollaboratorError as exc:
                warnings.append(str(exc))
                activity = None

        issue_completed: bool | None = False
        if session.issue:
            try:
                issue_completed = self.collaborators.tracker.is_completed(project, session.issue)
            except CollaboratorError as exc:
                warnings.append(str(exc))
                issue_completed = None

        pr: PullRequestInfo | None = None
        try:
            pr = self.collaborators.scm.pull_request(project, session.branch)
        except CollaboratorError as exc:
            warnings.append(str(exc))

        if warnings:
            logger.debug("Incomplete signals for %s: %s", session.id, "; ".join(warnings))
        return SignalBundle(
            agent=agent,
            activity=activity,
            issue_completed=issue_completed,
            pr=pr,
            warnings=tuple(warnings),
        )
