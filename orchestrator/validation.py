"""Input validation for CLI arguments, web routes and configuration.

Centralised validation rules so the CLI, the web layer and the store
share the same constraints.
"""

from __future__ import annotations

import re

# ---------------------------------------------------------------------------
# String length limits
# ---------------------------------------------------------------------------

MAX_IDENTIFIER = 128
MAX_ISSUE_REF = 200
MAX_MESSAGE = 10_000
MAX_GIT_BRANCH = 200
MAX_RECORD_VALUE = 4000

# ---------------------------------------------------------------------------
# Regex patterns
# ---------------------------------------------------------------------------

_IDENTIFIER_RE = re.compile(r"^[a-zA-Z0-9_-]+$")
_SESSION_PREFIX_RE = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_-]*$")
_SESSION_ID_RE = re.compile(r"^([a-zA-Z0-9][a-zA-Z0-9_-]*)-(\d+)$")
_GIT_BRANCH_RE = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9._/\-]*$")
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x1f\x7f-\x9f]")


# ---------------------------------------------------------------------------
# Validators (all raise ValueError on failure)
# ---------------------------------------------------------------------------


def validate_string_length(value: str, field: str, max_len: int) -> str:
    """Validate string is non-empty and within length limit."""
    if not value or not value.strip():
        raise ValueError(f"{field} cannot be empty")
    stripped = value.strip()
    if len(stripped) > max_len:
        raise ValueError(f"{field} too long ({len(stripped)} chars, max {max_len})")
    return stripped


def validate_optional_string(value: str | None, field: str, max_len: int) -> str | None:
    """Validate optional string — None is allowed, but if set must be within limit."""
    if value is None:
        return None
    return validate_string_length(value, field, max_len)


def validate_identifier(value: str, field: str, max_len: int = MAX_IDENTIFIER) -> str:
    """Validate a safe identifier (alphanumeric, hyphens, underscores)."""
    value = validate_string_length(value, field, max_len)
    if not _IDENTIFIER_RE.match(value):
        raise ValueError(f"{field} must match [a-zA-Z0-9_-]+ (got '{value}')")
    return value


def validate_session_prefix(prefix: str) -> str:
    if not prefix or not _SESSION_PREFIX_RE.match(prefix):
        raise ValueError(
            f"Invalid session prefix: '{prefix}'. "
            "Must start with alphanumeric, contain only [a-zA-Z0-9_-]."
        )
    return prefix


def validate_session_id(session_id: str) -> tuple[str, int]:
    """Validate a ``{prefix}-{number}`` id and return its parts.

    Rejects anything that could escape the sessions directory.
    """
    match = _SESSION_ID_RE.fullmatch(session_id or "")
    if not match:
        raise ValueError(f"Invalid session ID format: {session_id!r}")
    return match.group(1), int(match.group(2))


def validate_issue_ref(issue: str | None) -> str | None:
    issue = validate_optional_string(issue, "issue", MAX_ISSUE_REF)
    if issue is not None and _CONTROL_CHARS_RE.search(issue):
        raise ValueError("issue must not contain control characters")
    return issue


def validate_git_branch(branch: str) -> str:
    """Validate git branch name."""
    if not branch:
        raise ValueError("Git branch cannot be empty")
    if len(branch) > MAX_GIT_BRANCH or not _GIT_BRANCH_RE.match(branch) or ".." in branch:
        raise ValueError(
            f"Invalid git branch name: '{branch}'. "
            "Must start with alphanumeric, contain only [a-zA-Z0-9._/-]."
        )
    return branch


def validate_positive_number(value: float, field: str) -> float:
    if value <= 0:
        raise ValueError(f"{field} must be positive (got {value})")
    return value


def validate_port(port: int) -> int:
    """Validate TCP port number."""
    if port < 1 or port > 65535:
        raise ValueError(f"Port must be 1-65535 (got {port})")
    return port


def strip_control_chars(value: str) -> str:
    """Remove C0/C1 control characters before text reaches tmux send-keys."""
    return _CONTROL_CHARS_RE.sub("", value)


def validate_message(message: str) -> str:
    message = validate_string_length(message, "message", MAX_MESSAGE)
    # Line breaks survive; multi-line text is pasted as a whole.
    cleaned = "\n".join(strip_control_chars(line) for line in message.splitlines())
    if not cleaned.strip():
        raise ValueError("message cannot be empty")
    return cleaned


def sanitize_record_value(value: str) -> str:
    """Flatten a value so it fits on a single ``key=value`` line."""
    flat = " ".join(str(value).splitlines()).replace("\r", " ")
    return _CONTROL_CHARS_RE.sub("", flat)[:MAX_RECORD_VALUE]
