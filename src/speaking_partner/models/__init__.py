"""Models package initialization."""

from .schemas import (
    AIFeedback,
    ContextPayload,
    FeedbackTone,
    LanguagePair,
    Mistake,
    MistakeCategory,
    ResolvedTopic,
    ScoreState,
    Session,
    SessionReport,
    SessionStatus,
    StructuredMistake,
    TopicInfo,
    Turn,
    TurnResult,
    TurnVerdict,
    UserSessionStatus,
    Verdict,
)

__all__ = [
    "AIFeedback",
    "ContextPayload",
    "FeedbackTone",
    "LanguagePair",
    "Mistake",
    "MistakeCategory",
    "ResolvedTopic",
    "ScoreState",
    "Session",
    "SessionReport",
    "SessionStatus",
    "StructuredMistake",
    "TopicInfo",
    "Turn",
    "TurnResult",
    "TurnVerdict",
    "UserSessionStatus",
    "Verdict",
]
