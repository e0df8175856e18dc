import asyncio

import pytest

from speaking_partner.models.schemas import (
    AIFeedback,
    FeedbackTone,
    MistakeCategory,
    SessionStatus,
    StructuredMistake,
    Verdict,
)
from speaking_partner.services.conversation_partner import ConversationPartner
from speaking_partner.services.error_recovery import FALLBACK_REPLY, RETRY_LATER_REPLY
from speaking_partner.services.json_utils import parse_ai_feedback
from speaking_partner.services.session_lifecycle import (
    InvalidUtteranceError,
    NoActiveSessionError,
    SessionLifecycle,
    SessionNotFoundError,
)
from speaking_partner.services.storage import Storage, StorageError
from speaking_partner.services.topic_resolver import TopicResolver, UnknownTopicError


class ScriptedPartner(ConversationPartner):
    """Returns canned replies in order and records the contexts it was given."""

    def __init__(self, replies=None, delay=0.0):
        self.replies = list(replies or [])
        self.delay = delay
        self.calls = []

    async def send(self, utterance, context):
        self.calls.append((utterance, context))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.replies:
            reply = self.replies.pop(0)
        else:
            reply = "That sounds great! Tell me more."
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, AIFeedback):
            return reply
        return AIFeedback(feedback_text=reply)


class BrokenStorage:
    def create_session(self, session):
        raise StorageError("disk full")

    def save_turn(self, session_id, turn):
        raise StorageError("disk full")

    def save_mistake(self, session_id, mistake, turn_sequence=None):
        raise StorageError("disk full")

    def complete_session(self, session_id, final_scores, duration_seconds, report=None):
        raise StorageError("disk full")

    def load_report(self, session_id):
        raise StorageError("disk full")

    def load_session_record(self, session_id):
        raise StorageError("disk full")


def _lifecycle(tmp_path, partner=None, **kwargs):
    return SessionLifecycle(
        partner=partner or ScriptedPartner(),
        storage=kwargs.pop("storage", None) or Storage(base_dir=str(tmp_path / "sessions")),
        topic_resolver=kwargs.pop("topic_resolver", None) or TopicResolver(),
        **kwargs,
    )


def test_start_session_activates_and_greets(tmp_path):
    lifecycle = _lifecycle(tmp_path)

    session_id = asyncio.run(lifecycle.start_session("alice", "3"))
    session = lifecycle.get_session(session_id)

    assert session.status is SessionStatus.ACTIVE
    assert session.target_language == "English"
    assert "Travel and Tourism" in session.initial_greeting
    assert lifecycle.get_status("alice").status is SessionStatus.ACTIVE
    assert lifecycle.get_status("alice").session_id == session_id
    assert lifecycle.storage.session_exists(session_id)


def test_start_session_unknown_topic(tmp_path):
    lifecycle = _lifecycle(tmp_path)

    with pytest.raises(UnknownTopicError):
        asyncio.run(lifecycle.start_session("alice", "999"))
    assert lifecycle.get_status("alice").status is SessionStatus.IDLE


def test_correct_turn_keeps_score_at_100(tmp_path):
    lifecycle = _lifecycle(tmp_path, ScriptedPartner(["Hi there! How are you?"]))
    session_id = asyncio.run(lifecycle.start_session("alice", "1"))

    result = asyncio.run(lifecycle.submit_turn(session_id, "Hello"))

    assert result.turn.verdict is Verdict.CORRECT
    assert result.turn.sequence == 1
    assert result.current_score == 100
    assert result.score.total_turns == 1


def test_pattern_correction_counts_as_incorrect(tmp_path):
    partner = ScriptedPartner(["Great routine! It should be **o'clock** with an apostrophe."])
    lifecycle = _lifecycle(tmp_path, partner)
    session_id = asyncio.run(lifecycle.start_session("alice", "1"))

    result = asyncio.run(lifecycle.submit_turn(session_id, "I wake up at 7 oclock every day"))

    assert result.turn.verdict is Verdict.HAS_ERRORS
    assert result.turn.category is MistakeCategory.SENTENCE_STRUCTURE
    assert result.counts_as_incorrect
    assert result.matched_pattern == "should be"
    assert result.score.incorrect_turns == 1
    assert result.current_score == 0


def test_three_turns_two_errors_scores_33(tmp_path):
    partner = ScriptedPartner([
        'You could say "I went to the park yesterday."',
        "Wonderful! What did you eat?",
        'Almost! You could say "I made a mistake."',
    ])
    lifecycle = _lifecycle(tmp_path, partner)
    session_id = asyncio.run(lifecycle.start_session("alice", "1"))

    async def _run():
        await lifecycle.submit_turn(session_id, "Yesterday I go to the park")
        await lifecycle.submit_turn(session_id, "I ate pizza with my friends")
        return await lifecycle.submit_turn(session_id, "I did a mistake")

    result = asyncio.run(_run())

    assert result.score.total_turns == 3
    assert result.score.incorrect_turns == 2
    assert result.current_score == 33


def test_fluency_suggestion_does_not_lower_score(tmp_path):
    partner = ScriptedPartner(['It would be more natural to say "I\'m really into cooking."'])
    lifecycle = _lifecycle(tmp_path, partner)
    session_id = asyncio.run(lifecycle.start_session("alice", "5"))

    result = asyncio.run(lifecycle.submit_turn(session_id, "I like cooking very much"))

    assert result.turn.verdict is Verdict.HAS_ERRORS
    assert result.turn.tone is FeedbackTone.INFO
    assert not result.counts_as_incorrect
    assert result.current_score == 100


def test_structured_feedback_is_used(tmp_path):
    feedback = AIFeedback(
        feedback_text="Good try! Remember irregular verbs.",
        structured_verdict="has_errors",
        structured_mistakes=[
            StructuredMistake(original_text="I goed", corrected_text="I went", category="verb_tense"),
        ],
    )
    lifecycle = _lifecycle(tmp_path, ScriptedPartner([feedback]))
    session_id = asyncio.run(lifecycle.start_session("alice", "1"))

    result = asyncio.run(lifecycle.submit_turn(session_id, "I goed to school"))

    assert result.turn.category is MistakeCategory.TENSE_VERB
    assert result.turn.mistakes[0].corrected_text == "I went"
    assert lifecycle.storage.load_mistakes(session_id)[0]["turn_sequence"] == 1


def test_reply_category_reaches_uncategorized_mistake(tmp_path):
    feedback = parse_ai_feedback(
        '{"sentence_status": "has_errors", "feedback": "Good! See you then.", '
        '"grammar_category": "preposition", '
        '"mistakes": [{"original_text": "in Monday", "corrected_text": "on Monday"}]}'
    )
    lifecycle = _lifecycle(tmp_path, ScriptedPartner([feedback]))
    session_id = asyncio.run(lifecycle.start_session("alice", "1"))

    result = asyncio.run(lifecycle.submit_turn(session_id, "I see you in Monday"))

    assert result.turn.category is MistakeCategory.PREPOSITION
    assert result.turn.mistakes[0].category is MistakeCategory.PREPOSITION
    assert result.counts_as_incorrect


def test_ai_failure_falls_back_to_correct_turn(tmp_path):
    partner = ScriptedPartner([RuntimeError("HTTP error: 429 - rate limit exceeded")])
    lifecycle = _lifecycle(tmp_path, partner)
    session_id = asyncio.run(lifecycle.start_session("alice", "1"))

    result = asyncio.run(lifecycle.submit_turn(session_id, "I goed to school"))

    assert result.turn.verdict is Verdict.CORRECT
    assert result.turn.ai_fallback is True
    assert result.turn.ai_feedback_text == RETRY_LATER_REPLY
    assert result.score.total_turns == 1
    assert result.current_score == 100
    assert lifecycle.get_session(session_id).is_active


def test_ai_timeout_falls_back(tmp_path):
    lifecycle = _lifecycle(tmp_path, ScriptedPartner(delay=1.0), ai_timeout=0.01)
    session_id = asyncio.run(lifecycle.start_session("alice", "1"))

    result = asyncio.run(lifecycle.submit_turn(session_id, "Hello"))

    assert result.turn.ai_fallback is True
    assert result.turn.verdict is Verdict.CORRECT
    assert result.turn.ai_feedback_text == FALLBACK_REPLY


def test_context_carries_history_and_turn_index(tmp_path):
    partner = ScriptedPartner(["Nice!", "Great!"])
    lifecycle = _lifecycle(tmp_path, partner)
    session_id = asyncio.run(lifecycle.start_session("alice", "3"))

    async def _run():
        await lifecycle.submit_turn(session_id, "I love trains")
        await lifecycle.submit_turn(session_id, "They are fast")

    asyncio.run(_run())

    first_context = partner.calls[0][1]
    second_context = partner.calls[1][1]
    assert first_context.current_turn == 0
    assert first_context.conversation_history == []
    assert second_context.current_turn == 1
    assert second_context.conversation_history == ["User: I love trains", "AI: Nice!"]
    assert second_context.topic_name == "Travel and Tourism"
    assert second_context.native_language == "Turkish"


def test_concurrent_turns_are_serialized_in_arrival_order(tmp_path):
    partner = ScriptedPartner(["one", "two", "three"], delay=0.01)
    lifecycle = _lifecycle(tmp_path, partner)
    session_id = asyncio.run(lifecycle.start_session("alice", "1"))

    async def _run():
        return await asyncio.gather(
            lifecycle.submit_turn(session_id, "first"),
            lifecycle.submit_turn(session_id, "second"),
            lifecycle.submit_turn(session_id, "third"),
        )

    results = asyncio.run(_run())

    assert [r.turn.sequence for r in results] == [1, 2, 3]
    assert [r.turn.user_text for r in results] == ["first", "second", "third"]
    assert [r.turn.ai_feedback_text for r in results] == ["one", "two", "three"]
    assert results[-1].score.total_turns == 3


def test_different_users_are_independent(tmp_path):
    partner = ScriptedPartner(['You could say "I went home."', "Lovely!"])
    lifecycle = _lifecycle(tmp_path, partner)

    async def _run():
        a = await lifecycle.start_session("alice", "1")
        b = await lifecycle.start_session("bob", "1")
        await lifecycle.submit_turn(a, "I go home yesterday")
        await lifecycle.submit_turn(b, "I went home")
        return a, b

    a, b = asyncio.run(_run())

    assert lifecycle.get_score(a).incorrect_turns == 1
    assert lifecycle.get_score(b).incorrect_turns == 0


def test_invalid_utterances_rejected_without_mutation(tmp_path):
    lifecycle = _lifecycle(tmp_path)
    session_id = asyncio.run(lifecycle.start_session("alice", "1"))

    with pytest.raises(InvalidUtteranceError):
        asyncio.run(lifecycle.submit_turn(session_id, "   "))
    with pytest.raises(InvalidUtteranceError):
        asyncio.run(lifecycle.submit_turn(session_id, "a" * 5000))

    assert lifecycle.get_score(session_id).total_turns == 0


def test_submit_after_end_is_rejected(tmp_path):
    lifecycle = _lifecycle(tmp_path, ScriptedPartner(["Nice!"]))
    session_id = asyncio.run(lifecycle.start_session("alice", "1"))
    asyncio.run(lifecycle.submit_turn(session_id, "Hello"))
    report = asyncio.run(lifecycle.end_session(session_id))

    with pytest.raises(NoActiveSessionError):
        asyncio.run(lifecycle.submit_turn(session_id, "Hello again"))

    assert lifecycle.get_report(session_id).total_turns == report.total_turns == 1
    assert lifecycle.get_session(session_id).status is SessionStatus.ENDED


def test_submit_to_unknown_session_is_rejected(tmp_path):
    lifecycle = _lifecycle(tmp_path)

    with pytest.raises(NoActiveSessionError):
        asyncio.run(lifecycle.submit_turn("missing", "Hello"))
    with pytest.raises(SessionNotFoundError):
        lifecycle.get_session("missing")


def test_end_session_twice_returns_same_report(tmp_path):
    lifecycle = _lifecycle(tmp_path, ScriptedPartner(['You could say "I went."']))
    session_id = asyncio.run(lifecycle.start_session("alice", "1"))
    asyncio.run(lifecycle.submit_turn(session_id, "I goed"))

    first = asyncio.run(lifecycle.end_session(session_id))
    second = asyncio.run(lifecycle.end_session(session_id))

    assert second is first
    assert second.total_turns == 1
    assert second.incorrect_turns == 1
    assert lifecycle.get_status("alice").status is SessionStatus.IDLE


def test_end_session_persists_report_and_clears_memory(tmp_path):
    lifecycle = _lifecycle(tmp_path, ScriptedPartner(["Nice!"]))
    session_id = asyncio.run(lifecycle.start_session("alice", "1"))
    asyncio.run(lifecycle.submit_turn(session_id, "I like walking in the park"))

    report = asyncio.run(lifecycle.end_session(session_id))
    archived = lifecycle.get_session(session_id)

    assert archived.turns == []
    assert archived.ended_at >= archived.started_at
    assert lifecycle.storage.load_report(session_id) == report
    assert len(lifecycle.storage.load_turns(session_id)) == 1
    assert lifecycle.storage.load_session_record(session_id)["status"] == "ended"


def test_new_session_ends_previous_one(tmp_path):
    lifecycle = _lifecycle(tmp_path)

    async def _run():
        first = await lifecycle.start_session("alice", "1")
        second = await lifecycle.start_session("alice", "2")
        return first, second

    first, second = asyncio.run(_run())

    assert lifecycle.get_session(first).status is SessionStatus.ENDED
    assert lifecycle.get_report(first) is not None
    assert lifecycle.get_status("alice").session_id == second
    with pytest.raises(NoActiveSessionError):
        asyncio.run(lifecycle.submit_turn(first, "Hello"))


def test_persistence_failure_does_not_break_turns(tmp_path):
    lifecycle = _lifecycle(tmp_path, ScriptedPartner(['You could say "I went."']), storage=BrokenStorage())

    session_id = asyncio.run(lifecycle.start_session("alice", "1"))
    result = asyncio.run(lifecycle.submit_turn(session_id, "I goed"))
    report = asyncio.run(lifecycle.end_session(session_id))

    assert result.score.incorrect_turns == 1
    assert report.total_turns == 1


def test_topic_language_reaches_session(tmp_path):
    resolver = TopicResolver(user_languages={"carla": {"target_language": "Spanish"}})
    lifecycle = _lifecycle(tmp_path, topic_resolver=resolver)

    spanish = asyncio.run(lifecycle.start_session("carla", "1"))
    pinned = asyncio.run(lifecycle.start_session("carla", "2"))

    assert lifecycle.get_session(spanish).target_language == "Spanish"
    assert lifecycle.get_session(spanish).initial_greeting.startswith("¡Hola!")
    assert lifecycle.get_session(pinned).target_language == "English"


def test_evicted_sessions_are_read_back_from_storage(tmp_path):
    lifecycle = _lifecycle(tmp_path, ScriptedPartner(["Nice!"]), ended_cache_size=1)

    async def _run():
        first = await lifecycle.start_session("alice", "1")
        await lifecycle.submit_turn(first, "I like walking in the park")
        first_report = await lifecycle.end_session(first)
        second = await lifecycle.start_session("alice", "2")
        await lifecycle.end_session(second)
        return first, first_report

    first, first_report = asyncio.run(_run())

    assert len(lifecycle._ended) == 1
    assert len(lifecycle._reports) == 1
    assert lifecycle.get_report(first) == first_report
    assert lifecycle.get_report(first) is not first_report
    assert asyncio.run(lifecycle.end_session(first)) == first_report
    archived = lifecycle.get_session(first)
    assert archived.status is SessionStatus.ENDED
    assert archived.turns == []


def test_evicted_session_without_storage_is_gone(tmp_path):
    lifecycle = _lifecycle(tmp_path, storage=BrokenStorage(), ended_cache_size=0)
    session_id = asyncio.run(lifecycle.start_session("alice", "1"))
    asyncio.run(lifecycle.end_session(session_id))

    assert lifecycle.get_report(session_id) is None
    with pytest.raises(SessionNotFoundError):
        lifecycle.get_session(session_id)
    with pytest.raises(NoActiveSessionError):
        asyncio.run(lifecycle.end_session(session_id))
