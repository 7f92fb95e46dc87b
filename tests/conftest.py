"""Shared fixtures for orchestrator tests.

Collaborators are in-memory fakes; everything else (config files,
namespace directories, session records) uses real file I/O under tmp_path.
"""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

# Ensure the project root is importable
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from orchestrator.collaborators import Collaborators
from orchestrator.config import load_config
from orchestrator.errors import CollaboratorError
from orchestrator.manager import SessionManager
from orchestrator.models import AgentState, PullRequestInfo

CONFIG_YAML = """\
port: 4567
pollInterval: 5
projects:
  backend:
    path: repos/backend
    repo: acme/backend
    sessionPrefix: be
  frontend:
    path: repos/web-frontend
    repo: acme/web-frontend
"""


# ---------------------------------------------------------------------------
# Fake collaborators
# ---------------------------------------------------------------------------


class FakeTerminal:
    def __init__(self):
        self.sessions: dict[str, dict] = {}
        self.output: dict[str, str] = {}
        self.sent: list[tuple[str, str]] = []
        self.enters: list[str] = []
        self.terminated: list[str] = []
        # Successive captures per session; the last screen repeats.
        self.screens: dict[str, list[str]] = {}
        self.captures = 0
        self.fail_create: str | None = None
        self.capture_errors: set[str] = set()

    def create(self, name, cwd, command):
        if self.fail_create:
            raise CollaboratorError("terminal", self.fail_create)
        self.sessions[name] = {"cwd": cwd, "command": command}

    def exists(self, name):
        return name in self.sessions

    def send(self, name, text):
        self.sent.append((name, text))

    def press_enter(self, name):
        self.enters.append(name)

    def capture(self, name, lines=20):
        if name in self.capture_errors:
            raise CollaboratorError("terminal", "capture-pane failed")
        self.captures += 1
        screens = self.screens.get(name)
        if screens:
            return screens.pop(0) if len(screens) > 1 else screens[0]
        return self.output.get(name, "")

    def terminate(self, name):
        self.sessions.pop(name, None)
        self.terminated.append(name)

    def attach_command(self, name):
        return ["tmux", "attach-session", "-t", name]


class FakeWorktree:
    def __init__(self):
        self.created: list[tuple[str, str]] = []
        self.removed: list[str] = []
        self.fail_create: str | None = None

    def create(self, project, path, branch):
        if self.fail_create:
            raise CollaboratorError("worktree", self.fail_create)
        Path(path).mkdir(parents=True)
        self.created.append((str(path), branch))

    def exists(self, path):
        return Path(path).is_dir()

    def remove(self, project, path):
        self.removed.append(str(path))


class FakeTracker:
    def __init__(self):
        self.completed: set[str] = set()
        self.unreachable: set[str] = set()

    def is_completed(self, project, issue):
        if issue in self.unreachable:
            raise CollaboratorError("tracker", "connection refused")
        return issue in self.completed


class FakeSCM:
    def __init__(self):
        self.prs: dict[str, PullRequestInfo] = {}
        self.unreachable = False

    def pull_request(self, project, branch):
        if self.unreachable:
            raise CollaboratorError("scm", "rate limited")
        return self.prs.get(branch, PullRequestInfo())


class FakeAgent:
    def __init__(self):
        self.states: dict[str, AgentState] = {}

    def state(self, terminal_name):
        return self.states.get(terminal_name, AgentState.LIVE)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


def fake_collaborators() -> Collaborators:
    return Collaborators(
        terminal=FakeTerminal(),
        worktree=FakeWorktree(),
        tracker=FakeTracker(),
        scm=FakeSCM(),
        agent=FakeAgent(),
    )


@pytest.fixture
def make_collaborators():
    """Factory for an independent set of fakes (one per simulated process)."""
    return fake_collaborators


@pytest.fixture
def collaborators():
    return fake_collaborators()


@pytest.fixture
def config_file(tmp_path, monkeypatch):
    """A config in tmp_path/proj with its data root redirected to tmp_path/data."""
    monkeypatch.setenv("AO_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.delenv("AO_CONFIG_PATH", raising=False)
    config_dir = tmp_path / "proj"
    (config_dir / "repos" / "backend").mkdir(parents=True)
    (config_dir / "repos" / "web-frontend").mkdir(parents=True)
    path = config_dir / "agent-orchestrator.yaml"
    path.write_text(CONFIG_YAML)
    return path


@pytest.fixture
def config(config_file):
    return load_config(config_file)


@pytest.fixture
def manager(config, collaborators):
    manager = SessionManager(config, collaborators)
    manager.send_poll_interval = 0
    manager.delivery_delay = 0
    return manager
