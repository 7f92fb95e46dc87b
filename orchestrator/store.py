"""Session metadata store — one key=value file per session.

All writes are atomic so the CLI, the lifecycle poller and the web
dashboard can read and write the same namespace from separate processes
without ever seeing a half-written record:

* ``create`` writes a temp file and hard-links it into place. ``os.link``
  fails if the target exists, which gives exclusive-create semantics with
  the full content already in place.
* ``update`` rewrites a temp file and ``os.replace``s it over the record.
* ``archive`` marks the record archived, then ``os.rename``s it into
  ``archive/`` under a timestamped name.

No lock files are used; concurrent updates to the same record resolve as
last-writer-wins.
"""

from __future__ import annotations

import errno
import json
import logging
import os
import re
import tempfile
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path

from .errors import NotFoundError
from .models import Session, SessionStatus
from .paths import ARCHIVE_SUBDIR, SESSIONS_SUBDIR
from .validation import sanitize_record_value, validate_session_id

logger = logging.getLogger(__name__)

MAX_RECORD_FILE_SIZE = 1024 * 1024  # 1 MB

_ARCHIVE_NAME_RE = re.compile(r"^(?P<sid>.+-\d+)_(?P<stamp>\d{8}T\d{12}Z)$")

# Record keys in the order they are written; anything else is kept in
# Session.extra and written after these.
_RECORD_KEYS = (
    "id",
    "project",
    "number",
    "issue",
    "branch",
    "status",
    "tmuxName",
    "worktree",
    "createdAt",
    "lastActivityAt",
    "pr",
    "lastSignals",
    "warning",
    "error",
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def _archive_stamp() -> str:
    return datetime.now(UTC).strftime("%Y%m%dT%H%M%S%fZ")


def _write_temp(directory: Path, text: str) -> str:
    tmp_fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".", suffix=".tmp")
    try:
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
    except Exception:
        os.unlink(tmp_path)
        raise
    return tmp_path


def _atomic_write(path: Path, text: str) -> None:
    """Write text atomically via temp file + rename."""
    tmp_path = _write_temp(path.parent, text)
    try:
        os.replace(tmp_path, path)
    except Exception:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


def _atomic_create(path: Path, text: str) -> None:
    """Write text to ``path`` only if it does not exist yet.

    Raises:
        FileExistsError: another writer created ``path`` first.
    """
    tmp_path = _write_temp(path.parent, text)
    try:
        os.link(tmp_path, path)
    finally:
        os.unlink(tmp_path)


def _safe_read_text(path: Path) -> str:
    """Read a small text file, refusing symlinks and oversized files.

    Raises:
        ValueError: if file is a symlink or exceeds size limit.
        FileNotFoundError: if the file is gone (e.g. archived meanwhile).
    """
    try:
        fd = os.open(path, os.O_RDONLY | os.O_NOFOLLOW)
    except OSError as e:
        if e.errno in (errno.ELOOP, errno.EMLINK):
            raise ValueError(f"Refusing to read symlink: {path.name}") from e
        raise
    size = os.fstat(fd).st_size
    if size > MAX_RECORD_FILE_SIZE:
        os.close(fd)
        raise ValueError(
            f"File too large: {path.name} ({size} bytes, max {MAX_RECORD_FILE_SIZE})"
        )
    with os.fdopen(fd, encoding="utf-8") as f:
        return f.read()


# ---------------------------------------------------------------------------
# Record format
# ---------------------------------------------------------------------------


def parse_record(text: str) -> dict[str, str]:
    fields: dict[str, str] = {}
    for line in text.splitlines():
        if not line.strip() or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        fields[key.strip()] = value
    return fields


def format_record(fields: dict[str, str | None]) -> str:
    lines = []
    for key, value in fields.items():
        if value is None or value == "":
            continue
        lines.append(f"{key}={sanitize_record_value(value)}")
    return "\n".join(lines) + "\n"


def session_to_fields(session: Session) -> dict[str, str | None]:
    fields: dict[str, str | None] = {
        "id": session.id,
        "project": session.project,
        "number": str(session.number),
        "issue": session.issue,
        "branch": session.branch,
        "status": str(session.status),
        "tmuxName": session.tmux_name,
        "worktree": session.worktree,
        "createdAt": session.created_at,
        "lastActivityAt": session.last_activity_at,
        "pr": session.pr,
        "lastSignals": (
            json.dumps(session.last_signals, separators=(",", ":"), sort_keys=True)
            if session.last_signals
            else None
        ),
        "warning": session.warning,
        "error": session.error,
    }
    for key, value in session.extra.items():
        fields.setdefault(key, value)
    return fields


def session_from_fields(fields: dict[str, str], sid: str) -> Session:
    record_id = fields.get("id") or sid
    _, number = validate_session_id(record_id)

    signals: dict[str, str] = {}
    raw_signals = fields.get("lastSignals")
    if raw_signals:
        try:
            loaded = json.loads(raw_signals)
        except json.JSONDecodeError:
            logger.warning("Ignoring unreadable lastSignals on %s", record_id)
        else:
            if isinstance(loaded, dict):
                signals = {str(k): str(v) for k, v in loaded.items()}

    return Session(
        id=record_id,
        project=fields.get("project", ""),
        number=number,
        tmux_name=fields.get("tmuxName", ""),
        status=SessionStatus(fields.get("status", SessionStatus.SPAWNING)),
        issue=fields.get("issue") or None,
        branch=fields.get("branch", ""),
        worktree=fields.get("worktree", ""),
        created_at=fields.get("createdAt", ""),
        last_activity_at=fields.get("lastActivityAt", ""),
        pr=fields.get("pr") or None,
        last_signals=signals,
        warning=fields.get("warning") or None,
        error=fields.get("error") or None,
        extra={k: v for k, v in fields.items() if k not in _RECORD_KEYS},
    )


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class MetadataStore:
    """Active and archived session records of one namespace directory."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self.sessions_dir = self.root / SESSIONS_SUBDIR
        self.archive_dir = self.root / ARCHIVE_SUBDIR

    def __repr__(self) -> str:
        return f"MetadataStore({str(self.root)!r})"

    def ensure_dirs(self) -> None:
        self.sessions_dir.mkdir(parents=True, exist_ok=True)
        self.archive_dir.mkdir(parents=True, exist_ok=True)

    def _active_path(self, sid: str) -> Path:
        validate_session_id(sid)
        return self.sessions_dir / sid

    def _read(self, path: Path, sid: str) -> Session:
        return session_from_fields(parse_record(_safe_read_text(path)), sid)

    # -- writes -------------------------------------------------------------

    def create(self, session: Session) -> Session:
        """Persist a brand-new record.

        Raises:
            FileExistsError: a record with this id already exists.
        """
        self.ensure_dirs()
        if not session.created_at:
            session.created_at = _now_iso()
        if not session.last_activity_at:
            session.last_activity_at = session.created_at
        path = self._active_path(session.id)
        _atomic_create(path, format_record(session_to_fields(session)))
        logger.debug("Created session record %s in %s", session.id, self.root)
        return session

    def update(
        self, sid: str, mutator: Callable[[Session], Session | None]
    ) -> Session:
        """Read-modify-write one record.

        ``mutator`` receives a freshly read copy and returns the record to
        write, or ``None`` to leave the file untouched.
        """
        path = self._active_path(sid)
        try:
            current = self._read(path, sid)
        except FileNotFoundError:
            raise NotFoundError(f"Session {sid} not found") from None
        updated = mutator(current)
        if updated is None:
            return current
        _atomic_write(path, format_record(session_to_fields(updated)))
        return updated

    def archive(
        self, sid: str, check: Callable[[Session], None] | None = None
    ) -> Session:
        """Move a record from the active set into the archive set.

        ``check`` runs against the fresh record and may raise to veto the
        move before anything is written.
        """
        self.ensure_dirs()

        def _mark(session: Session) -> Session:
            if check is not None:
                check(session)
            session.status = SessionStatus.ARCHIVED
            session.last_activity_at = _now_iso()
            return session

        session = self.update(sid, _mark)
        dst = self.archive_dir / f"{sid}_{_archive_stamp()}"
        try:
            os.rename(self._active_path(sid), dst)
        except FileNotFoundError:
            raise NotFoundError(f"Session {sid} was archived concurrently") from None
        logger.info("Archived session %s to %s", sid, dst.name)
        return session

    # -- reads --------------------------------------------------------------

    def exists(self, sid: str) -> bool:
        """True while the record is in the active set."""
        return self._active_path(sid).is_file()

    def get(self, sid: str) -> Session | None:
        """Active record, else the newest archived copy, else None."""
        try:
            return self._read(self._active_path(sid), sid)
        except FileNotFoundError:
            pass
        return self.get_archived(sid)

    def get_archived(self, sid: str) -> Session | None:
        validate_session_id(sid)
        candidates = sorted(
            name for name, parsed in self._archive_entries() if parsed == sid
        )
        for name in reversed(candidates):
            try:
                return self._read(self.archive_dir / name, sid)
            except FileNotFoundError:
                continue
        return None

    def list(
        self, project: str | None = None, include_archived: bool = False
    ) -> list[Session]:
        """All readable records, optionally filtered by project id.

        Records that disappear mid-scan or fail to parse are skipped.
        """
        sessions = self._scan(self.sessions_dir, self._active_entries())
        if include_archived:
            sessions += self._scan(self.archive_dir, self._archive_entries())
        if project:
            sessions = [s for s in sessions if s.project == project]
        sessions.sort(key=lambda s: (s.project, s.number, s.status == SessionStatus.ARCHIVED))
        return sessions

    def numbers(self, prefix: str) -> list[int]:
        """Every session number used by ``prefix``, active or archived."""
        result = []
        for _, sid in self._active_entries() + self._archive_entries():
            sid_prefix, number = validate_session_id(sid)
            if sid_prefix == prefix:
                result.append(number)
        return result

    def _scan(self, directory: Path, entries: list[tuple[str, str]]) -> list[Session]:
        sessions = []
        for name, sid in entries:
            try:
                sessions.append(self._read(directory / name, sid))
            except FileNotFoundError:
                continue
            except ValueError as exc:
                logger.warning("Skipping corrupt/invalid record %s: %s", name, exc)
        return sessions

    def _active_entries(self) -> list[tuple[str, str]]:
        entries = []
        for name in _listdir(self.sessions_dir):
            try:
                validate_session_id(name)
            except ValueError:
                continue
            entries.append((name, name))
        return entries

    def _archive_entries(self) -> list[tuple[str, str]]:
        entries = []
        for name in _listdir(self.archive_dir):
            match = _ARCHIVE_NAME_RE.match(name)
            if not match:
                continue
            try:
                validate_session_id(match.group("sid"))
            except ValueError:
                continue
            entries.append((name, match.group("sid")))
        return entries


def _listdir(directory: Path) -> list[str]:
    try:
        names = os.listdir(directory)
    except FileNotFoundError:
        return []
    return sorted(n for n in names if not n.startswith("."))
