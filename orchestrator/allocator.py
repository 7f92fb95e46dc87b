"""Session number allocation without lock files.

The next number for a prefix is ``max(active + archived) + 1``. The claim
itself is the exclusive creation of that number's metadata record, so two
processes racing for the same number cannot both succeed; the loser
re-scans and tries again. Archived numbers are part of the scan and are
therefore never handed out twice.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from .errors import AllocationError
from .models import Session
from .store import MetadataStore

logger = logging.getLogger(__name__)

DEFAULT_RETRY_BUDGET = 10


class SessionIdAllocator:
    def __init__(self, store: MetadataStore, retries: int = DEFAULT_RETRY_BUDGET) -> None:
        self.store = store
        self.retries = retries

    def next_candidate(self, prefix: str) -> int:
        return max(self.store.numbers(prefix), default=0) + 1

    def allocate(self, prefix: str, build: Callable[[int], Session]) -> Session:
        """Claim the next free number for ``prefix``.

        ``build`` turns a candidate number into the initial record; the
        record that wins the claim is returned.

        Raises:
            AllocationError: every attempt in the retry budget lost a race.
        """
        candidate = 0
        for attempt in range(1, self.retries + 1):
            candidate = max(candidate + 1, self.next_candidate(prefix))
            session = build(candidate)
            try:
                return self.store.create(session)
            except FileExistsError:
                logger.debug(
                    "Number %s-%d taken (attempt %d/%d), retrying",
                    prefix, candidate, attempt, self.retries,
                )
        raise AllocationError(
            f"Could not allocate a session number for prefix '{prefix}' "
            f"after {self.retries} attempts"
        )
