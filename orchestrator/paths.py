"""Namespace derivation and on-disk layout.

A configuration file's *directory* determines its namespace: the canonical
(symlink-free, absolute) directory path is hashed with SHA-256 and the first
12 hex characters become the namespace id. Everything a configuration owns
lives below ``{dataRoot}/{hash}-{projectId}/``, and every tmux session it
starts is named ``{hash}-{sessionId}`` so two checkouts of the same project
never fight over terminal names.

12 hex characters give 48 bits; collisions are detected by the origin
marker, not prevented here.
"""

from __future__ import annotations

import hashlib
import os
from pathlib import Path

from .validation import validate_session_id

DATA_DIR_ENV = "AO_DATA_DIR"
DEFAULT_DATA_DIR = Path.home() / ".agent-orchestrator"

NAMESPACE_HASH_LENGTH = 12

SESSIONS_SUBDIR = "sessions"
WORKTREES_SUBDIR = "worktrees"
ARCHIVE_SUBDIR = "archive"
ORIGIN_FILENAME = ".origin"


def canonical_dir(directory: str | os.PathLike) -> Path:
    """Absolute path with ``~``, ``.``/``..`` and symlinks resolved."""
    return Path(os.path.realpath(os.path.expanduser(os.fspath(directory))))


def canonical_config_path(config_path: str | os.PathLike) -> Path:
    """Config file path whose directory part is canonical.

    The file name itself is kept as given so two config files in the same
    directory stay distinguishable in origin markers.
    """
    path = Path(os.path.abspath(os.path.expanduser(os.fspath(config_path))))
    return canonical_dir(path.parent) / path.name


def config_dir_hash(directory: str | os.PathLike) -> str:
    digest = hashlib.sha256(str(canonical_dir(directory)).encode("utf-8")).hexdigest()
    return digest[:NAMESPACE_HASH_LENGTH]


def config_hash(config_path: str | os.PathLike) -> str:
    """Namespace id for the configuration file at ``config_path``."""
    return config_dir_hash(canonical_config_path(config_path).parent)


def data_root(configured: str | None = None) -> Path:
    """Root of all runtime data; ``AO_DATA_DIR`` wins over the config file."""
    env = os.environ.get(DATA_DIR_ENV)
    if env:
        return Path(os.path.expanduser(env))
    if configured:
        return Path(os.path.expanduser(configured))
    return DEFAULT_DATA_DIR


def namespace_dir(root: Path, namespace: str, project_id: str) -> Path:
    return root / f"{namespace}-{project_id}"


def session_id(prefix: str, number: int) -> str:
    return f"{prefix}-{number}"


def parse_session_id(value: str) -> tuple[str, int]:
    return validate_session_id(value)


def tmux_name(namespace: str, sid: str) -> str:
    return f"{namespace}-{sid}"
