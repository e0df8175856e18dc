"""Per-session correctness counters."""

import logging

from ..models.schemas import ScoreState, TurnVerdict

logger = logging.getLogger(__name__)


class ScoreTracker:
    """
    Running accuracy for one session.

    The counters here are the only source of the session score; any score the
    AI collaborator reports about itself is ignored. Fluency-only turns are
    counted in the total but never as incorrect.
    """

    def __init__(self):
        self._total = 0
        self._incorrect = 0

    def record_turn(self, verdict: TurnVerdict) -> bool:
        """
        Record one classified turn.

        Returns:
            True if the turn counted against the score
        """
        self._total += 1
        counted = verdict.counts_as_incorrect
        if counted:
            self._incorrect += 1
        elif verdict.has_errors:
            logger.info("Fluency suggestion, not counted as incorrect")
        logger.debug(f"Score counters: {self._incorrect} incorrect / {self._total} total")
        return counted

    def current_score(self) -> int:
        return self.snapshot().accuracy

    def snapshot(self) -> ScoreState:
        return ScoreState(total_turns=self._total, incorrect_turns=self._incorrect)

    def reset(self) -> None:
        self._total = 0
        self._incorrect = 0
