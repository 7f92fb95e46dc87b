"""Origin markers — bind a namespace directory to the config that made it.

The first configuration to use ``{dataRoot}/{hash}-{project}/`` writes its
resolved path into ``.origin`` (exclusive create, so exactly one writer
wins). Every later use compares against the marker. A mismatch means two
configurations hashed to the same namespace, and is reported as a
CollisionError; the marker is never rewritten.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from .errors import CollisionError
from .paths import (
    ARCHIVE_SUBDIR,
    ORIGIN_FILENAME,
    SESSIONS_SUBDIR,
    WORKTREES_SUBDIR,
    canonical_config_path,
)
from .store import _atomic_create, _safe_read_text

logger = logging.getLogger(__name__)


class OriginGuard:
    def __init__(self, namespace_dir: Path, namespace: str) -> None:
        self.namespace_dir = Path(namespace_dir)
        self.namespace = namespace

    @property
    def marker_path(self) -> Path:
        return self.namespace_dir / ORIGIN_FILENAME

    def read_marker(self) -> str | None:
        try:
            return _safe_read_text(self.marker_path).strip()
        except FileNotFoundError:
            return None

    def claim(self, config_path: str | os.PathLike) -> None:
        """Create the namespace (if needed) and verify it belongs to us.

        Raises:
            CollisionError: the marker names a different configuration.
        """
        actual = str(canonical_config_path(config_path))
        if self.read_marker() is None:
            for sub in (SESSIONS_SUBDIR, WORKTREES_SUBDIR, ARCHIVE_SUBDIR):
                (self.namespace_dir / sub).mkdir(parents=True, exist_ok=True)
            try:
                _atomic_create(self.marker_path, actual + "\n")
            except FileExistsError:
                logger.debug("Lost origin race for %s, verifying winner", self.namespace_dir)
            else:
                logger.info("Claimed namespace %s for %s", self.namespace_dir.name, actual)
                return
        self._verify(actual)

    def check(self, config_path: str | os.PathLike) -> bool:
        """Verify without creating anything. Returns False if unclaimed.

        Raises:
            CollisionError: the marker names a different configuration.
        """
        actual = str(canonical_config_path(config_path))
        if self.read_marker() is None:
            return False
        self._verify(actual)
        return True

    def _verify(self, actual: str) -> None:
        expected = self.read_marker()
        if expected != actual:
            raise CollisionError(self.namespace, expected or "<unreadable>", actual)
