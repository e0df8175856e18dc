"""Final session report generation."""

import logging
from abc import ABC, abstractmethod
from collections import Counter
from typing import List, Optional, Sequence

from ..models.schemas import ScoreState, Session, SessionReport, Turn

logger = logging.getLogger(__name__)


class FluencyEstimator(ABC):
    """Produces a 0-100 fluency score from a session's turns."""

    @abstractmethod
    def estimate(self, turns: Sequence[Turn]) -> int:
        pass


class WordCountFluencyEstimator(FluencyEstimator):
    """
    Rough fluency proxy: the average number of words per utterance.

    Longer utterances suggest fewer hesitations. No audio is analysed.
    """

    LEVELS = ((8, 85), (4, 70))
    FLOOR = 55

    def estimate(self, turns: Sequence[Turn]) -> int:
        if not turns:
            return 100
        avg_words = sum(len(t.user_text.split()) for t in turns) / len(turns)
        for min_words, score in self.LEVELS:
            if avg_words >= min_words:
                return score
        return self.FLOOR


class ReportGenerator:
    """Builds the SessionReport from the final score snapshot and turn history."""

    def __init__(self, fluency_estimator: Optional[FluencyEstimator] = None):
        self.fluency_estimator = fluency_estimator or WordCountFluencyEstimator()

    def generate(self, session: Session, score_state: ScoreState, turn_history: Sequence[Turn]) -> SessionReport:
        """
        Generate the final report.

        Args:
            session: The session being ended
            score_state: Final counter snapshot; the grammar score is its accuracy
            turn_history: Turns in submission order

        Returns:
            SessionReport
        """
        grammar = score_state.accuracy
        fluency = max(0, min(100, int(self.fluency_estimator.estimate(turn_history))))
        overall = (grammar + fluency + 1) // 2  # equal weights, rounded half up

        mistakes = [m for t in turn_history for m in t.mistakes]
        breakdown = Counter(m.category.value for m in mistakes)

        report = SessionReport(
            session_id=session.session_id,
            user_id=session.user_id,
            topic_id=session.topic_id,
            target_language=session.target_language,
            overall_score=overall,
            grammar_score=grammar,
            fluency_score=fluency,
            total_turns=score_state.total_turns,
            correct_turns=score_state.correct_turns,
            incorrect_turns=score_state.incorrect_turns,
            duration_seconds=session.duration_seconds,
            feedback=self._feedback(grammar, fluency),
            suggestions=self._suggestions(grammar, fluency),
            category_breakdown=dict(breakdown),
            mistakes=mistakes,
        )
        logger.info(
            f"Report for session {session.session_id}: overall={overall} "
            f"grammar={grammar} fluency={fluency} turns={score_state.total_turns}"
        )
        return report

    @staticmethod
    def _feedback(grammar: int, fluency: int) -> List[str]:
        feedback = []
        if grammar >= 80:
            feedback.append("Excellent grammar usage!")
        elif grammar >= 60:
            feedback.append("Good grammar with some minor errors.")
        else:
            feedback.append("Pay more attention to grammar rules.")

        if fluency >= 80:
            feedback.append("You speak fluently and naturally!")
        elif fluency >= 60:
            feedback.append("Your fluency is developing well.")
        else:
            feedback.append("Try to reduce hesitations for better fluency.")
        return feedback

    @staticmethod
    def _suggestions(grammar: int, fluency: int) -> List[str]:
        suggestions = []
        if grammar < 80:
            suggestions.append("Review basic grammar rules")
            suggestions.append("Practice forming complete sentences")
        if fluency < 80:
            suggestions.append("Practice speaking without long pauses")
            suggestions.append("Read aloud daily to improve flow")
        if not suggestions:
            suggestions = ["Keep up the great work!", "Try more challenging topics"]
        return suggestions
