"""Recalculation trigger — the single call into the host's perception pipeline."""

import logging
from typing import Iterable, List, Protocol

logger = logging.getLogger(__name__)


class RecalculationTrigger(Protocol):
    """Protocol for the host's fire-and-forget visibility recalculation."""

    def recalculate_for_tokens(self, token_ids: Iterable[str]) -> None: ...

    def recalculate_all(self) -> None: ...


class RecordingRecalculationTrigger:
    """
    Default trigger for standalone use: records each request instead of
    driving a host pipeline.
    """

    def __init__(self):
        self.token_batches: List[List[str]] = []
        self.full_recalculations = 0

    def recalculate_for_tokens(self, token_ids: Iterable[str]) -> None:
        ids = sorted(set(token_ids))
        if not ids:
            return
        logger.info("Recalculation requested for %d token(s): %s", len(ids), ids)
        self.token_batches.append(ids)

    def recalculate_all(self) -> None:
        logger.info("Full recalculation requested")
        self.full_recalculations += 1

    @property
    def request_count(self) -> int:
        return len(self.token_batches) + self.full_recalculations
