"""Typed errors raised by the orchestrator core.

Every error carries a short machine-readable ``code`` so the CLI and the
web dashboard can render the same ``{"error": ..., "code": ...}`` shape.
Plain input-format problems (bad ids, oversized strings) stay ``ValueError``
and live in ``validation.py``.
"""

from __future__ import annotations


class OrchestratorError(Exception):
    code = "ORCHESTRATOR_ERROR"


class ConfigError(OrchestratorError):
    """Configuration file missing, malformed, or violating uniqueness rules."""

    code = "CONFIG_ERROR"


class CollisionError(OrchestratorError):
    """A namespace directory belongs to a different configuration file."""

    code = "NAMESPACE_COLLISION"

    def __init__(self, namespace: str, expected: str, actual: str) -> None:
        self.namespace = namespace
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Namespace {namespace} was created by {expected}, "
            f"refusing to use it for {actual}. Move one of the configuration "
            "files or set AO_DATA_DIR to separate them."
        )


class AllocationError(OrchestratorError):
    code = "ALLOCATION_FAILED"


class NotFoundError(OrchestratorError):
    code = "NOT_FOUND"


class InvalidStateError(OrchestratorError):
    """Operation not allowed from the session's current status."""

    code = "INVALID_STATE"


class CollaboratorError(OrchestratorError):
    """An external tool (tmux, git, gh, ...) failed or could not be reached."""

    code = "COLLABORATOR_ERROR"

    def __init__(self, collaborator: str, message: str) -> None:
        self.collaborator = collaborator
        super().__init__(f"{collaborator}: {message}")
