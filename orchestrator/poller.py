"""Lifecycle poller — keeps every session's status fresh.

One poller per process, owned by whoever constructs it (the ``poll`` CLI
command or the web app's lifespan). Each tick walks every claimed
namespace, gathers signals for each non-terminal session, runs the state
machine against the freshly read record and writes back only when the
status or the warning changed. Readers never wait on the poller: they
read the same atomic records directly.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime

from .errors import CollaboratorError, NotFoundError
from .lifecycle import next_status
from .models import Project, Session, SessionStatus, SignalBundle
from .signals import SignalGatherer
from .store import MetadataStore
from .validation import validate_positive_number

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 10.0

NamespaceLister = Callable[[], Iterable[tuple[Project, MetadataStore]]]
TransitionCallback = Callable[[Session, SessionStatus, SessionStatus], None]


@dataclass
class TickReport:
    checked: int = 0
    transitions: list[dict] = field(default_factory=list)
    warnings: dict[str, str] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)


class LifecyclePoller:
    def __init__(
        self,
        namespaces: NamespaceLister,
        gatherer: SignalGatherer,
        interval: float = DEFAULT_INTERVAL,
        on_transition: TransitionCallback | None = None,
    ) -> None:
        self.interval = validate_positive_number(interval, "poll interval")
        self._namespaces = namespaces
        self._gatherer = gatherer
        self._on_transition = on_transition
        self._tick_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @classmethod
    def for_manager(cls, manager, interval: float | None = None, on_transition=None):
        return cls(
            namespaces=manager.namespaces,
            gatherer=SignalGatherer(manager.collaborators),
            interval=interval or manager.config.poll_interval,
            on_transition=on_transition,
        )

    @property
    def running(self) -> bool:
        thread = self._thread
        return thread is not None and thread.is_alive()

    def start(self) -> None:
        """Start the background thread. A second call is a no-op."""
        with self._state_lock:
            if self.running:
                return
            self._stop_event = threading.Event()
            self._thread = threading.Thread(
                target=self._run,
                args=(self._stop_event,),
                name="lifecycle-poller",
                daemon=True,
            )
            self._thread.start()
        logger.info("Lifecycle poller started (every %ss)", self.interval)

    def stop(self, timeout: float | None = None) -> None:
        """Stop scheduling ticks; an in-flight tick is allowed to finish."""
        with self._state_lock:
            thread, self._thread = self._thread, None
            self._stop_event.set()
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
            logger.info("Lifecycle poller stopped")

    def _run(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            try:
                self.tick(stop_event)
            except Exception:
                logger.exception("Lifecycle tick failed")
            if stop_event.wait(self.interval):
                break

    def tick(self, stop_event: threading.Event | None = None) -> TickReport | None:
        """Poll every session once. Returns None if a tick is already running."""
        if not self._tick_lock.acquire(blocking=False):
            logger.debug("Previous tick still running, skipping")
            return None
        try:
            if stop_event is not None and stop_event.is_set():
                return None
            report = TickReport()
            for project, store in self._namespaces():
                for session in store.list(project.id):
                    if session.is_terminal:
                        continue
                    report.checked += 1
                    try:
                        self._poll_session(project, store, session, report)
                    except NotFoundError:
                        logger.debug("Session %s left the active set mid-tick", session.id)
                    except Exception as exc:
                        logger.warning("Failed to poll session %s: %s", session.id, exc)
                        report.errors[session.id] = str(exc)
            return report
        finally:
            self._tick_lock.release()

    def _poll_session(
        self, project: Project, store: MetadataStore, session: Session, report: TickReport
    ) -> None:
        try:
            bundle = self._gatherer.gather(project, session)
        except CollaboratorError as exc:
            bundle = SignalBundle(warnings=(str(exc),))
        warning = "; ".join(bundle.warnings) or None
        if warning:
            report.warnings[session.id] = warning

        seen: dict[str, SessionStatus] = {}

        def _apply(fresh: Session) -> Session | None:
            # Killed or archived since the tick started: leave it alone.
            if fresh.is_terminal:
                return None
            target = next_status(fresh.status, bundle)
            if target == fresh.status and fresh.warning == warning:
                return None
            seen["old"] = fresh.status
            if target != fresh.status:
                fresh.last_activity_at = datetime.now(UTC).isoformat()
            fresh.status = target
            fresh.warning = warning
            fresh.last_signals = bundle.summary()
            if bundle.pr is not None and bundle.pr.url:
                fresh.pr = bundle.pr.url
            return fresh

        updated = store.update(session.id, _apply)
        old = seen.get("old")
        if old is None or old == updated.status:
            return

        logger.info("Session %s: %s -> %s", updated.id, old, updated.status)
        report.transitions.append({"session": updated.id, "from": old, "to": updated.status})
        if self._on_transition is not None:
            try:
                self._on_transition(updated, old, updated.status)
            except Exception as exc:
                logger.warning("Transition callback failed for %s: %s", updated.id, exc)
