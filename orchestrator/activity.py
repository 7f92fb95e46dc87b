"""Busy/idle classification of an agent's terminal output.

A classifier takes the recent text of a terminal pane and answers
``busy``, ``idle`` or ``unknown``. The state machine only consumes the
answer, so agents with different prompts can plug in their own
classifier.
"""

from __future__ import annotations

import re
from typing import Protocol

from .models import Activity


class ActivityClassifier(Protocol):
    def __call__(self, text: str) -> Activity: ...


class PromptActivityClassifier:
    """Classifier for prompt-style coding agents (Claude Code and similar).

    The last non-empty line showing an input prompt means idle; a spinner
    hint such as "esc to interrupt" in the recent lines means busy.
    """

    idle_pattern = re.compile(r"[❯$⏵]|bypass permissions")
    busy_pattern = re.compile(
        r"esc to interrupt|Thinking|Running|Press up to edit queued messages"
    )
    busy_window = 3

    def __call__(self, text: str) -> Activity:
        lines = [line for line in (text or "").splitlines() if line.strip()]
        if not lines:
            return Activity.UNKNOWN
        recent = "\n".join(lines[-self.busy_window:])
        if self.busy_pattern.search(recent):
            return Activity.BUSY
        if self.idle_pattern.search(lines[-1]):
            return Activity.IDLE
        return Activity.UNKNOWN


classify_activity = PromptActivityClassifier()
