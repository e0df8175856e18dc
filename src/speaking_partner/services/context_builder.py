"""Assemble the per-turn context handed to the AI collaborator."""

from typing import Optional, Sequence

from ..models.schemas import ContextPayload, LanguagePair, Session, TopicInfo


def build_conversation_context(
    session: Session,
    topic: TopicInfo,
    language: LanguagePair,
    history: Sequence[str],
    turn_index: int,
    proficiency_level: Optional[str] = None,
    max_history: Optional[int] = None,
) -> ContextPayload:
    """
    Build a fresh ContextPayload for one turn.

    Args:
        session: Active session
        topic: Resolved topic
        language: Resolved language pair
        history: Chat lines so far ("User: ..." / "AI: ..."), oldest first
        turn_index: Number of turns already recorded in the session
        proficiency_level: Learner level; falls back to the topic difficulty
        max_history: Keep only the most recent N history lines (None keeps all)

    Returns:
        ContextPayload; the inputs are not modified
    """
    lines = list(history)
    if max_history is not None and max_history >= 0:
        lines = lines[-max_history:] if max_history else []

    return ContextPayload(
        session_id=session.session_id,
        topic_id=topic.topic_id,
        topic_name=topic.name,
        topic_description=topic.description,
        topic_category=topic.category,
        target_language=language.target_language,
        native_language=language.native_language,
        proficiency_level=proficiency_level or topic.difficulty,
        conversation_history=lines,
        current_turn=turn_index,
    )
