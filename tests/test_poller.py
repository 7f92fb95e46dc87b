"""Tests for orchestrator/poller.py — ticks, transitions, overlap protection."""

from __future__ import annotations

import threading

import pytest

from orchestrator.errors import CollaboratorError
from orchestrator.models import (
    AgentState,
    PRState,
    PullRequestInfo,
    SessionStatus,
    SignalBundle,
)
from orchestrator.poller import LifecyclePoller
from orchestrator.signals import SignalGatherer
from orchestrator.store import MetadataStore


@pytest.fixture
def poller(manager):
    return LifecyclePoller.for_manager(manager)


def status_of(manager, sid):
    return manager.get(sid).status


# ---------------------------------------------------------------------------
# Single ticks
# ---------------------------------------------------------------------------


class TestTick:
    def test_spawning_becomes_working(self, manager, poller):
        manager.spawn("backend")
        report = poller.tick()

        assert report.checked == 1
        assert report.transitions == [
            {"session": "be-1", "from": SessionStatus.SPAWNING, "to": SessionStatus.WORKING}
        ]
        assert status_of(manager, "be-1") == SessionStatus.WORKING

    def test_no_change_means_no_write(self, manager, poller):
        session = manager.spawn("backend")
        poller.tick()
        record = manager.store(manager.project("backend")).sessions_dir / session.id
        inode = record.stat().st_ino

        report = poller.tick()
        assert report.transitions == []
        assert record.stat().st_ino == inode

    def test_idle_then_busy(self, manager, poller, collaborators):
        s = manager.spawn("backend")
        poller.tick()
        collaborators.terminal.output[s.tmux_name] = "all done\n❯ "
        poller.tick()
        assert status_of(manager, s.id) == SessionStatus.WAITING_REVIEW

        collaborators.terminal.output[s.tmux_name] = "✻ Thinking… (esc to interrupt)"
        poller.tick()
        assert status_of(manager, s.id) == SessionStatus.WORKING

    def test_pr_url_and_signals_recorded(self, manager, poller, collaborators):
        s = manager.spawn("backend", issue="#42")
        collaborators.scm.prs[s.branch] = PullRequestInfo(
            state=PRState.OPEN, url="https://github.com/acme/backend/pull/9", ci="pending"
        )
        poller.tick()

        loaded = manager.get(s.id)
        assert loaded.status == SessionStatus.PR_OPEN
        assert loaded.pr == "https://github.com/acme/backend/pull/9"
        assert loaded.last_signals["ci"] == "pending"

    def test_terminal_sessions_skipped(self, manager, poller, collaborators):
        s = manager.spawn("backend")
        manager.kill(s.id)
        report = poller.tick()
        assert report.checked == 0
        assert status_of(manager, s.id) == SessionStatus.KILLED

    def test_merged_pr_is_final(self, manager, poller, collaborators):
        s = manager.spawn("backend")
        collaborators.scm.prs[s.branch] = PullRequestInfo(state=PRState.MERGED)
        poller.tick()
        assert status_of(manager, s.id) == SessionStatus.MERGED

        collaborators.scm.prs[s.branch] = PullRequestInfo(state=PRState.OPEN)
        assert poller.tick().checked == 0
        assert status_of(manager, s.id) == SessionStatus.MERGED

    def test_crashed_agent_blocks(self, manager, poller, collaborators):
        s = manager.spawn("backend")
        poller.tick()
        collaborators.agent.states[s.tmux_name] = AgentState.CRASHED
        poller.tick()
        assert status_of(manager, s.id) == SessionStatus.BLOCKED

    def test_sessions_in_other_projects_polled(self, manager, poller):
        manager.spawn("backend")
        manager.spawn("web-frontend")
        report = poller.tick()
        assert report.checked == 2
        assert {t["session"] for t in report.transitions} == {"be-1", "wf-1"}

    def test_no_claimed_namespaces(self, poller):
        report = poller.tick()
        assert report.checked == 0


# ---------------------------------------------------------------------------
# Unavailable collaborators
# ---------------------------------------------------------------------------


class TestUnavailableSignals:
    def test_tracker_unreachable_keeps_status_and_sets_warning(
        self, manager, poller, collaborators
    ):
        s = manager.spawn("backend", issue="#7")
        poller.tick()
        collaborators.tracker.unreachable.add("#7")
        collaborators.terminal.output[s.tmux_name] = "❯ "

        report = poller.tick()

        loaded = manager.get(s.id)
        assert loaded.status == SessionStatus.WORKING
        assert loaded.warning == "tracker: connection refused"
        assert loaded.last_signals["issueCompleted"] == "unavailable"
        assert report.transitions == []
        assert report.warnings == {s.id: "tracker: connection refused"}

    def test_recovery_clears_warning_and_transitions(self, manager, poller, collaborators):
        s = manager.spawn("backend", issue="#7")
        poller.tick()
        collaborators.tracker.unreachable.add("#7")
        collaborators.terminal.output[s.tmux_name] = "❯ "
        poller.tick()

        collaborators.tracker.unreachable.clear()
        report = poller.tick()

        loaded = manager.get(s.id)
        assert loaded.status == SessionStatus.WAITING_REVIEW
        assert loaded.warning is None
        assert report.transitions[0]["to"] == SessionStatus.WAITING_REVIEW

    def test_gatherer_exception_isolated_per_session(self, manager, collaborators):
        a = manager.spawn("backend")
        b = manager.spawn("backend")

        class Flaky(SignalGatherer):
            def gather(self, project, session):
                if session.id == a.id:
                    raise RuntimeError("boom")
                return super().gather(project, session)

        poller = LifecyclePoller(manager.namespaces, Flaky(collaborators))
        report = poller.tick()

        assert report.errors == {a.id: "boom"}
        assert status_of(manager, a.id) == SessionStatus.SPAWNING
        assert status_of(manager, b.id) == SessionStatus.WORKING

    def test_collaborator_error_from_gatherer_becomes_warning(self, manager, collaborators):
        s = manager.spawn("backend")

        class Down(SignalGatherer):
            def gather(self, project, session):
                raise CollaboratorError("agent", "tmux server not running")

        report = LifecyclePoller(manager.namespaces, Down(collaborators)).tick()
        assert report.errors == {}
        assert manager.get(s.id).warning == "agent: tmux server not running"
        assert status_of(manager, s.id) == SessionStatus.SPAWNING


# ---------------------------------------------------------------------------
# Callbacks
# ---------------------------------------------------------------------------


class TestTransitionCallback:
    def test_called_once_per_transition(self, manager, collaborators):
        calls = []
        poller = LifecyclePoller.for_manager(
            manager, on_transition=lambda s, old, new: calls.append((s.id, old, new))
        )
        s = manager.spawn("backend")
        poller.tick()
        poller.tick()
        assert calls == [(s.id, SessionStatus.SPAWNING, SessionStatus.WORKING)]

    def test_callback_failure_does_not_stop_tick(self, manager, collaborators):
        def explode(session, old, new):
            raise RuntimeError("notifier down")

        poller = LifecyclePoller.for_manager(manager, on_transition=explode)
        manager.spawn("backend")
        manager.spawn("backend")
        report = poller.tick()
        assert len(report.transitions) == 2
        assert report.errors == {}


# ---------------------------------------------------------------------------
# Scheduling
# ---------------------------------------------------------------------------


class TestScheduling:
    def test_interval_from_config(self, poller):
        assert poller.interval == 5

    def test_invalid_interval(self, manager):
        with pytest.raises(ValueError):
            LifecyclePoller(manager.namespaces, SignalGatherer(manager.collaborators), interval=0)

    def test_overlapping_tick_is_skipped(self, manager, collaborators):
        manager.spawn("backend")
        entered = threading.Event()
        release = threading.Event()

        class Slow(SignalGatherer):
            def gather(self, project, session):
                entered.set()
                release.wait(5)
                return super().gather(project, session)

        poller = LifecyclePoller(manager.namespaces, Slow(collaborators))
        results = []
        first = threading.Thread(target=lambda: results.append(poller.tick()))
        first.start()
        assert entered.wait(5)

        assert poller.tick() is None

        release.set()
        first.join(5)
        assert results[0].checked == 1

    def test_start_is_idempotent_and_stop_joins(self, manager):
        poller = LifecyclePoller.for_manager(manager, interval=0.05)
        poller.start()
        thread = poller._thread
        poller.start()
        assert poller._thread is thread
        assert poller.running

        poller.stop(timeout=5)
        assert not poller.running
        assert not thread.is_alive()

    def test_background_loop_updates_status(self, manager):
        s = manager.spawn("backend")
        done = threading.Event()
        poller = LifecyclePoller.for_manager(
            manager, interval=0.05, on_transition=lambda *_: done.set()
        )
        poller.start()
        try:
            assert done.wait(5)
        finally:
            poller.stop(timeout=5)
        assert status_of(manager, s.id) == SessionStatus.WORKING

    def test_restart_after_stop(self, manager):
        poller = LifecyclePoller.for_manager(manager, interval=0.05)
        poller.start()
        poller.stop(timeout=5)
        poller.start()
        assert poller.running
        poller.stop(timeout=5)


# ---------------------------------------------------------------------------
# Mutations by other processes during a tick
# ---------------------------------------------------------------------------


class KillingGatherer(SignalGatherer):
    """Kills the session while its signals are being gathered."""

    def __init__(self, manager):
        super().__init__(manager.collaborators)
        self.manager = manager

    def gather(self, project, session):
        self.manager.kill(session.id)
        return SignalBundle(warnings=("tracker: connection refused",))


class TestConcurrentMutations:
    def test_kill_during_tick_is_not_overwritten(self, manager):
        s = manager.spawn("backend")
        record = manager.store(manager.project("backend")).sessions_dir / s.id

        report = LifecyclePoller(manager.namespaces, KillingGatherer(manager)).tick()
        assert report.checked == 1
        assert report.transitions == []

        loaded = manager.get(s.id)
        assert loaded.status == SessionStatus.KILLED
        assert loaded.warning is None
        assert record.is_file()

    def test_kill_and_archive_during_tick_leave_one_copy(self, manager):
        s = manager.spawn("backend")
        project = manager.project("backend")

        class ArchiveBeforeWrite(MetadataStore):
            # The record is archived after the poller re-read it, before it writes.
            def update(self, sid, mutator):
                def racing(fresh):
                    manager.archive(sid)
                    return mutator(fresh)

                return super().update(sid, racing)

        store = ArchiveBeforeWrite(manager.namespace_dir(project))
        poller = LifecyclePoller(lambda: [(project, store)], KillingGatherer(manager))
        poller.tick()

        assert not store.exists(s.id)
        assert [x.status for x in store.list(include_archived=True)] == [SessionStatus.ARCHIVED]
        assert store.get(s.id).status == SessionStatus.ARCHIVED
