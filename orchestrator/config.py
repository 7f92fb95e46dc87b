"""Loading ``agent-orchestrator.yaml``.

Example::

    dataDir: ~/.agent-orchestrator
    port: 3000
    pollInterval: 10
    notifications: true
    defaults:
      agent: claude --dangerously-skip-permissions
    projects:
      backend:
        path: ~/code/backend
        repo: acme/backend
        defaultBranch: main
        sessionPrefix: be
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

import yaml

from .errors import ConfigError
from .models import OrchestratorConfig, Project
from .paths import canonical_config_path
from .validation import validate_git_branch, validate_identifier, validate_session_prefix

logger = logging.getLogger(__name__)

CONFIG_PATH_ENV = "AO_CONFIG_PATH"
CONFIG_FILENAMES = ("agent-orchestrator.yaml", "agent-orchestrator.yml")
DEFAULT_AGENT_COMMAND = "claude"


def find_config_file(start: str | os.PathLike | None = None) -> Path | None:
    """``AO_CONFIG_PATH`` if set, else the nearest config file upward from ``start``."""
    env = os.environ.get(CONFIG_PATH_ENV)
    if env:
        return Path(os.path.expanduser(env))

    current = Path(start or os.getcwd()).resolve()
    for directory in (current, *current.parents):
        for name in CONFIG_FILENAMES:
            candidate = directory / name
            if candidate.is_file():
                return candidate
    return None


def derive_session_prefix(project_id: str) -> str:
    """Short prefix for session ids: ``agent-orchestrator`` -> ``ao``."""
    if len(project_id) <= 4:
        return project_id.lower()
    uppercase = [c for c in project_id if c.isupper()]
    if len(uppercase) > 1:
        return "".join(uppercase).lower()
    for separator in ("-", "_"):
        if separator in project_id:
            words = [w for w in project_id.split(separator) if w]
            return "".join(w[0] for w in words).lower()
    return project_id[:3].lower()


def load_config(path: str | os.PathLike | None = None) -> OrchestratorConfig:
    if path is None:
        path = find_config_file()
        if path is None:
            raise ConfigError(
                f"No {CONFIG_FILENAMES[0]} found in this directory or its parents "
                f"(set {CONFIG_PATH_ENV} to point at one)"
            )
    config_path = canonical_config_path(path)
    try:
        with open(config_path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError as e:
        raise ConfigError(f"Config file not found: {config_path}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"{config_path}: top level must be a mapping")
    return parse_config(data, config_path)


def parse_config(data: dict, config_path: str | os.PathLike) -> OrchestratorConfig:
    config_path = Path(config_path)
    defaults = data.get("defaults") or {}
    if not isinstance(defaults, dict):
        raise ConfigError("'defaults' must be a mapping")
    default_agent = str(defaults.get("agent") or DEFAULT_AGENT_COMMAND)

    raw_projects = data.get("projects") or {}
    if not isinstance(raw_projects, dict):
        raise ConfigError("'projects' must be a mapping of name -> settings")

    projects: dict[str, Project] = {}
    prefixes: dict[str, str] = {}
    for name, raw in raw_projects.items():
        project = _parse_project(str(name), raw, config_path.parent, default_agent)
        if project.id in projects:
            raise ConfigError(
                f"Projects '{projects[project.id].name}' and '{name}' both resolve to id "
                f"'{project.id}' (the basename of their path)"
            )
        if project.session_prefix in prefixes:
            raise ConfigError(
                f"Session prefix '{project.session_prefix}' is used by both "
                f"'{prefixes[project.session_prefix]}' and '{project.id}'; "
                "set sessionPrefix explicitly on one of them"
            )
        projects[project.id] = project
        prefixes[project.session_prefix] = project.id

    try:
        poll_interval = float(data.get("pollInterval", 10))
        port = int(data.get("port", 3000))
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid number in config: {e}") from e
    if poll_interval <= 0:
        raise ConfigError("pollInterval must be positive")

    return OrchestratorConfig(
        config_path=str(config_path),
        data_dir=data.get("dataDir"),
        port=port,
        poll_interval=poll_interval,
        notifications=bool(data.get("notifications", False)),
        projects=projects,
    )


def _parse_project(name: str, raw, base_dir: Path, default_agent: str) -> Project:
    if not isinstance(raw, dict):
        raise ConfigError(f"Project '{name}' must be a mapping")
    if not raw.get("path"):
        raise ConfigError(f"Project '{name}' is missing 'path'")

    repo_path = Path(os.path.expanduser(str(raw["path"])))
    if not repo_path.is_absolute():
        repo_path = base_dir / repo_path
    repo_path = Path(os.path.normpath(repo_path))
    project_id = repo_path.name

    try:
        validate_identifier(project_id, f"project id of '{name}'")
        prefix = raw.get("sessionPrefix") or derive_session_prefix(project_id)
        validate_session_prefix(str(prefix))
        default_branch = validate_git_branch(str(raw.get("defaultBranch") or "main"))
    except ValueError as e:
        raise ConfigError(str(e)) from e

    return Project(
        id=project_id,
        name=name,
        repo_path=str(repo_path),
        session_prefix=str(prefix),
        repo=raw.get("repo"),
        default_branch=default_branch,
        agent_command=str(raw.get("agent") or default_agent),
    )
