"""Pydantic models for sessions, turns, mistakes and reports."""

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# Mistake taxonomy
# ============================================================================

class MistakeCategory(str, Enum):
    """Closed set of mistake buckets shared by the classifier and the reports."""
    TENSE_VERB = "grammar_tense_verb"
    SENTENCE_STRUCTURE = "grammar_sentence_structure"
    WORD_CHOICE = "vocabulary_word_choice"
    ARTICLE_DETERMINER = "article_determiner"
    PREPOSITION = "preposition"
    FLUENCY_NATURALNESS = "fluency_naturalness"

    @property
    def display_name(self) -> str:
        return _CATEGORY_DISPLAY_NAMES[self]

    @property
    def default_feedback(self) -> str:
        return _CATEGORY_DEFAULT_FEEDBACK[self]

    @property
    def is_penalized(self) -> bool:
        """Whether a mistake in this bucket counts against the accuracy score."""
        return self is not MistakeCategory.FLUENCY_NATURALNESS


_CATEGORY_DISPLAY_NAMES: Dict[MistakeCategory, str] = {
    MistakeCategory.TENSE_VERB: "Grammar: Tense & Verb Forms",
    MistakeCategory.SENTENCE_STRUCTURE: "Grammar: Sentence Structure",
    MistakeCategory.WORD_CHOICE: "Vocabulary & Word Choice",
    MistakeCategory.ARTICLE_DETERMINER: "Articles & Determiners",
    MistakeCategory.PREPOSITION: "Prepositions",
    MistakeCategory.FLUENCY_NATURALNESS: "Fluency & Naturalness",
}

_CATEGORY_DEFAULT_FEEDBACK: Dict[MistakeCategory, str] = {
    MistakeCategory.TENSE_VERB: "Grammar error: Verb tense",
    MistakeCategory.SENTENCE_STRUCTURE: "Grammar correction suggested",
    MistakeCategory.WORD_CHOICE: "Vocabulary: Word choice",
    MistakeCategory.ARTICLE_DETERMINER: "Grammar error: Article usage",
    MistakeCategory.PREPOSITION: "Grammar error: Preposition",
    MistakeCategory.FLUENCY_NATURALNESS: "Suggestion: More natural phrasing",
}


class Verdict(str, Enum):
    CORRECT = "correct"
    HAS_ERRORS = "has_errors"


class FeedbackTone(str, Enum):
    SUCCESS = "success"
    WARNING = "warning"
    INFO = "info"


class SessionStatus(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"
    ENDED = "ended"


Severity = Literal["minor", "medium", "major"]


class Mistake(BaseModel):
    """A single normalized mistake attached to a turn."""
    category: MistakeCategory
    original_text: str
    corrected_text: str
    explanation: str = ""
    severity: Severity = "medium"

    @property
    def category_display(self) -> str:
        return self.category.display_name


class StructuredMistake(BaseModel):
    """Mistake entry as the AI collaborator returned it, before normalization."""
    original_text: Optional[str] = None
    corrected_text: Optional[str] = None
    category: Optional[str] = None
    explanation: Optional[str] = None
    severity: Optional[str] = None

    @property
    def is_complete(self) -> bool:
        return bool((self.original_text or "").strip() and (self.corrected_text or "").strip())


class AIFeedback(BaseModel):
    """What the AI text collaborator returns for one utterance."""
    feedback_text: str
    structured_mistakes: Optional[List[StructuredMistake]] = None
    structured_verdict: Optional[str] = None
    grammar_category: Optional[str] = None


class TurnVerdict(BaseModel):
    """Classification outcome for one turn."""
    verdict: Verdict
    mistakes: List[Mistake] = Field(default_factory=list)
    feedback: str
    tone: FeedbackTone
    category: Optional[MistakeCategory] = None
    source: Literal["structured", "pattern", "none", "fallback"] = "none"
    matched_pattern: Optional[str] = None
    extraction_rule: Optional[str] = None
    reason_code: Optional[str] = None

    @property
    def has_errors(self) -> bool:
        return self.verdict is Verdict.HAS_ERRORS

    @property
    def is_fluency_only(self) -> bool:
        """True when the turn's only issues are fluency suggestions."""
        if not self.has_errors or self.category is not MistakeCategory.FLUENCY_NATURALNESS:
            return False
        return all(not m.category.is_penalized for m in self.mistakes)

    @property
    def counts_as_incorrect(self) -> bool:
        return self.has_errors and not self.is_fluency_only


# ============================================================================
# Session data
# ============================================================================

class Turn(BaseModel):
    """One user-utterance / AI-response exchange. Never mutated once stored."""
    model_config = {"frozen": True}

    sequence: int = Field(..., ge=1)
    user_text: str
    ai_feedback_text: str
    verdict: Verdict
    mistakes: List[Mistake] = Field(default_factory=list)
    feedback: str
    tone: FeedbackTone
    category: Optional[MistakeCategory] = None
    reason_code: Optional[str] = None
    ai_fallback: bool = False
    created_at: datetime = Field(default_factory=utc_now)


class ScoreState(BaseModel):
    """Read-only snapshot of the per-session correctness counters."""
    total_turns: int = Field(0, ge=0)
    incorrect_turns: int = Field(0, ge=0)

    @property
    def correct_turns(self) -> int:
        return self.total_turns - self.incorrect_turns

    @property
    def accuracy(self) -> int:
        """Percentage of correct turns, rounded half up; 100 before any turn."""
        if self.total_turns == 0:
            return 100
        return (200 * self.correct_turns + self.total_turns) // (2 * self.total_turns)


class TopicInfo(BaseModel):
    """Conversation topic as the resolver supplies it."""
    topic_id: str
    name: str
    description: str = ""
    category: str = "general"
    difficulty: str = "intermediate"
    target_language: Optional[str] = None
    sample_questions: List[str] = Field(default_factory=list)
    is_active: bool = True

    @field_validator("topic_id", mode="before")
    @classmethod
    def coerce_topic_id(cls, v):
        return str(v) if v is not None else v


class LanguagePair(BaseModel):
    """Resolved target/native language pair for one session."""
    target_language: str
    native_language: str
    language_code: str = "en-US"


class ResolvedTopic(BaseModel):
    topic: TopicInfo
    language: LanguagePair
    proficiency_level: str = "intermediate"


class Session(BaseModel):
    """A practice session owned by one user."""
    session_id: str
    user_id: str
    topic_id: str
    target_language: str
    status: SessionStatus = SessionStatus.IDLE
    started_at: datetime = Field(default_factory=utc_now)
    ended_at: Optional[datetime] = None
    turns: List[Turn] = Field(default_factory=list)
    initial_greeting: str = ""

    @property
    def is_active(self) -> bool:
        return self.status is SessionStatus.ACTIVE

    @property
    def duration_seconds(self) -> int:
        end = self.ended_at or utc_now()
        return max(0, int((end - self.started_at).total_seconds()))


class ContextPayload(BaseModel):
    """Context handed to the AI collaborator on every turn."""
    session_id: str
    topic_id: str
    topic_name: str
    topic_description: str = ""
    topic_category: str = "general"
    target_language: str
    native_language: str
    proficiency_level: str = "intermediate"
    conversation_history: List[str] = Field(default_factory=list)
    current_turn: int = Field(0, ge=0)


class TurnResult(BaseModel):
    """Outcome of submit_turn returned to the caller."""
    session_id: str
    turn: Turn
    score: ScoreState
    counts_as_incorrect: bool
    matched_pattern: Optional[str] = None

    @property
    def current_score(self) -> int:
        return self.score.accuracy


class SessionReport(BaseModel):
    """Final report produced when a session ends."""
    session_id: str
    user_id: str
    topic_id: str
    target_language: str
    overall_score: int = Field(..., ge=0, le=100)
    grammar_score: int = Field(..., ge=0, le=100)
    fluency_score: int = Field(..., ge=0, le=100)
    total_turns: int
    correct_turns: int
    incorrect_turns: int
    duration_seconds: int = 0
    feedback: List[str] = Field(default_factory=list)
    suggestions: List[str] = Field(default_factory=list)
    category_breakdown: Dict[str, int] = Field(default_factory=dict)
    mistakes: List[Mistake] = Field(default_factory=list)
    generated_at: datetime = Field(default_factory=utc_now)

    @property
    def final_scores(self) -> Dict[str, int]:
        return {
            "overall": self.overall_score,
            "grammar": self.grammar_score,
            "fluency": self.fluency_score,
        }


class UserSessionStatus(BaseModel):
    """Whether a user currently has a session running."""
    user_id: str
    status: SessionStatus
    session_id: Optional[str] = None
    topic_id: Optional[str] = None
    target_language: Optional[str] = None
    turn_count: int = 0
    current_score: int = 100
