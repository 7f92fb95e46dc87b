"""Tests for manage.py CLI commands — JSON output, exit codes, error handling.

Tests call _dispatch() directly with argparse Namespace objects and a
manager built on fake collaborators, so the full command -> manager ->
store -> JSON pipeline runs without tmux, git or gh.
"""

from __future__ import annotations

import argparse
import json
import os
import subprocess
import sys
from pathlib import Path

import pytest

import manage
from manage import _dispatch
from orchestrator.errors import InvalidStateError, NotFoundError

ROOT = Path(__file__).resolve().parent.parent


def ns(**kwargs) -> argparse.Namespace:
    """Shorthand for creating argparse Namespace objects."""
    return argparse.Namespace(**kwargs)


def spawn(manager, issue=None) -> dict:
    return _dispatch(ns(command="spawn", project="backend", issue=issue), manager=manager)


# ---------------------------------------------------------------------------
# Session commands
# ---------------------------------------------------------------------------


class TestSessionCommands:
    def test_spawn(self, manager):
        result = spawn(manager, issue="#42")
        assert result["id"] == "be-1"
        assert result["status"] == "spawning"
        assert result["branch"] == "feat/42"
        json.dumps(result)

    def test_list(self, manager):
        spawn(manager)
        spawn(manager)
        result = _dispatch(ns(command="list", project=None, archived=False), manager=manager)
        assert [s["id"] for s in result] == ["be-1", "be-2"]

    def test_list_archived(self, manager):
        sid = spawn(manager)["id"]
        _dispatch(ns(command="kill", session_id=sid), manager=manager)
        _dispatch(ns(command="archive", session_id=sid), manager=manager)

        assert _dispatch(ns(command="list", project=None, archived=False), manager=manager) == []
        result = _dispatch(ns(command="list", project="backend", archived=True), manager=manager)
        assert result[0]["status"] == "archived"

    def test_get(self, manager):
        sid = spawn(manager)["id"]
        result = _dispatch(ns(command="get", session_id=sid), manager=manager)
        assert result["tmux_name"] == f"{manager.namespace}-{sid}"

    def test_get_missing(self, manager):
        with pytest.raises(NotFoundError):
            _dispatch(ns(command="get", session_id="be-9"), manager=manager)

    def test_kill_and_restore(self, manager):
        sid = spawn(manager)["id"]
        assert _dispatch(ns(command="kill", session_id=sid), manager=manager)["status"] == "killed"
        result = _dispatch(ns(command="restore", session_id=sid), manager=manager)
        assert result["status"] == "working"

    def test_archive_live_session_rejected(self, manager):
        sid = spawn(manager)["id"]
        with pytest.raises(InvalidStateError):
            _dispatch(ns(command="archive", session_id=sid), manager=manager)

    def test_send_joins_words(self, manager, collaborators):
        sid = spawn(manager)["id"]
        result = _dispatch(
            ns(command="send", session_id=sid, message=["please", "rebase"], file=None,
               wait=True, timeout=600.0),
            manager=manager,
        )
        assert result == {
            "sent": True,
            "session_id": sid,
            "waited": result["waited"],
            "timed_out": False,
            "delivered": False,
        }
        assert collaborators.terminal.sent[-1][1] == "please rebase"

    def test_send_file(self, manager, collaborators, tmp_path):
        sid = spawn(manager)["id"]
        prompt = tmp_path / "prompt.md"
        prompt.write_text("Review the diff.\nThen run the tests.\n")
        _dispatch(
            ns(command="send", session_id=sid, message=[], file=str(prompt),
               wait=False, timeout=600.0),
            manager=manager,
        )
        assert collaborators.terminal.sent[-1][1] == "Review the diff.\nThen run the tests."

    def test_send_file_and_words_rejected(self, manager, tmp_path):
        sid = spawn(manager)["id"]
        prompt = tmp_path / "prompt.md"
        prompt.write_text("hello")
        with pytest.raises(ValueError, match="not both"):
            _dispatch(
                ns(command="send", session_id=sid, message=["hi"], file=str(prompt),
                   wait=False, timeout=600.0),
                manager=manager,
            )

    def test_send_missing_file(self, manager, tmp_path):
        sid = spawn(manager)["id"]
        with pytest.raises(ValueError, match="Cannot read"):
            _dispatch(
                ns(command="send", session_id=sid, message=[], file=str(tmp_path / "nope.md"),
                   wait=False, timeout=600.0),
                manager=manager,
            )

    def test_send_without_message(self, manager):
        sid = spawn(manager)["id"]
        with pytest.raises(ValueError, match="No message"):
            _dispatch(
                ns(command="send", session_id=sid, message=[], file=None,
                   wait=False, timeout=600.0),
                manager=manager,
            )

    def test_attach(self, manager):
        sid = spawn(manager)["id"]
        result = _dispatch(ns(command="attach", session_id=sid), manager=manager)
        assert result["command"][:2] == ["tmux", "attach-session"]

    def test_info(self, manager):
        result = _dispatch(ns(command="info"), manager=manager)
        assert result["namespace"] == manager.namespace
        assert set(result["projects"]) == {"backend", "web-frontend"}


# ---------------------------------------------------------------------------
# Poll command
# ---------------------------------------------------------------------------


class TestPollCommand:
    def test_poll_once(self, manager):
        spawn(manager)
        result = _dispatch(ns(command="poll", once=True, interval=None), manager=manager)
        assert result["checked"] == 1
        assert result["transitions"] == [
            {"session": "be-1", "from": "spawning", "to": "working"}
        ]
        json.dumps(result)

    def test_poll_once_with_notifications(self, manager, monkeypatch):
        calls = []
        monkeypatch.setattr(manager.config, "notifications", True)
        monkeypatch.setattr(manage, "notify_transition", lambda *a: calls.append(a))
        spawn(manager)
        _dispatch(ns(command="poll", once=True, interval=None), manager=manager)
        assert len(calls) == 1


# ---------------------------------------------------------------------------
# main(): JSON errors and exit codes
# ---------------------------------------------------------------------------


class TestMain:
    def run(self, *args, env_extra=None, cwd=None):
        env = dict(os.environ)
        env.update(env_extra or {})
        return subprocess.run(
            [sys.executable, str(ROOT / "manage.py"), *args],
            capture_output=True,
            text=True,
            env=env,
            cwd=cwd,
            timeout=30,
        )

    def test_no_command_exits_1(self):
        assert self.run().returncode == 1

    def test_missing_config_is_json_error(self, tmp_path):
        result = self.run(
            "--config", str(tmp_path / "missing.yaml"), "list",
            env_extra={"AO_DATA_DIR": str(tmp_path / "data")},
        )
        assert result.returncode == 1
        assert json.loads(result.stdout)["code"] == "CONFIG_ERROR"

    def test_invalid_session_id_is_validation_error(self, config_file, tmp_path):
        result = self.run(
            "--config", str(config_file), "get", "../be-1",
            env_extra={"AO_DATA_DIR": str(tmp_path / "data")},
        )
        assert result.returncode == 1
        assert json.loads(result.stdout)["code"] == "VALIDATION_ERROR"

    def test_serve_rejects_invalid_port(self, config_file, tmp_path):
        result = self.run(
            "--config", str(config_file), "serve", "--port", "70000",
            env_extra={"AO_DATA_DIR": str(tmp_path / "data")},
        )
        assert result.returncode == 1
        assert json.loads(result.stdout)["code"] == "VALIDATION_ERROR"

    def test_list_empty(self, config_file, tmp_path):
        result = self.run(
            "--config", str(config_file), "list",
            env_extra={"AO_DATA_DIR": str(tmp_path / "data")},
        )
        assert result.returncode == 0
        assert json.loads(result.stdout) == []
