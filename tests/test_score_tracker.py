from speaking_partner.models.schemas import (
    FeedbackTone,
    Mistake,
    MistakeCategory,
    ScoreState,
    TurnVerdict,
    Verdict,
)
from speaking_partner.services.score_tracker import ScoreTracker


def _correct():
    return TurnVerdict(verdict=Verdict.CORRECT, feedback="ok", tone=FeedbackTone.SUCCESS)


def _error(category=MistakeCategory.TENSE_VERB):
    return TurnVerdict(
        verdict=Verdict.HAS_ERRORS,
        mistakes=[Mistake(category=category, original_text="a", corrected_text="b")],
        feedback=category.default_feedback,
        tone=FeedbackTone.WARNING,
        category=category,
    )


def test_score_is_100_before_any_turn():
    tracker = ScoreTracker()

    assert tracker.current_score() == 100
    assert tracker.snapshot() == ScoreState(total_turns=0, incorrect_turns=0)


def test_two_errors_out_of_three_turns():
    tracker = ScoreTracker()
    tracker.record_turn(_error())
    tracker.record_turn(_correct())
    tracker.record_turn(_error(MistakeCategory.WORD_CHOICE))

    state = tracker.snapshot()
    assert state.total_turns == 3
    assert state.incorrect_turns == 2
    assert tracker.current_score() == 33


def test_fluency_only_turn_is_not_penalized():
    tracker = ScoreTracker()
    counted = tracker.record_turn(_error(MistakeCategory.FLUENCY_NATURALNESS))

    assert counted is False
    assert tracker.snapshot().total_turns == 1
    assert tracker.snapshot().incorrect_turns == 0
    assert tracker.current_score() == 100


def test_every_recorded_turn_counts_toward_total():
    tracker = ScoreTracker()
    verdicts = [_correct(), _error(), _error(MistakeCategory.FLUENCY_NATURALNESS), _correct()]
    for verdict in verdicts:
        tracker.record_turn(verdict)

    assert tracker.snapshot().total_turns == len(verdicts)
    assert 0 <= tracker.current_score() <= 100


def test_score_rounds_half_up():
    # 7 of 8 correct is 87.5
    assert ScoreState(total_turns=8, incorrect_turns=1).accuracy == 88
    assert ScoreState(total_turns=3, incorrect_turns=1).accuracy == 67


def test_snapshot_is_detached_from_tracker():
    tracker = ScoreTracker()
    tracker.record_turn(_error())
    snapshot = tracker.snapshot()
    tracker.record_turn(_correct())

    assert snapshot.total_turns == 1


def test_reset_clears_counters():
    tracker = ScoreTracker()
    tracker.record_turn(_error())
    tracker.reset()

    assert tracker.snapshot().total_turns == 0
    assert tracker.current_score() == 100
