"""Post-hoc grammar-correction classification of AI feedback.

The AI collaborator is asked for a structured mistake list, but it frequently
narrates a correction in prose and leaves the list empty. The classifier
therefore combines three ordered tables:

* ``CORRECTION_INDICATORS``: phrases whose presence means a correction happened.
* ``EXTRACTION_RULES``: regexes that pull the corrected fragment out of prose.
* ``CATEGORY_RULES``: predicates that map a correction onto the taxonomy.

Each table is evaluated by a single loop and the first hit wins, so the
priority order is exactly the order of the entries below.
"""

import logging
import re
from collections import Counter
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Tuple

from ..models.schemas import (
    FeedbackTone,
    Mistake,
    MistakeCategory,
    StructuredMistake,
    TurnVerdict,
    Verdict,
)

logger = logging.getLogger(__name__)

NO_MISTAKES_FEEDBACK = "Perfect! No grammar mistakes detected."
EXTRACTION_PLACEHOLDER = "See AI suggestion in the response"
REASON_FRAGMENT_UNRECOVERABLE = "fragment_unrecoverable"

# Order matters: the first phrase found in the feedback is reported as matched_pattern.
CORRECTION_INDICATORS: Tuple[str, ...] = (
    "instead of",
    "you could say",
    "you can say",
    "should be",
    "should say",
    "correct form",
    "correct way",
    "better to say",
    "more common to say",
    "more natural to say",
    "sounds more natural",
    "it would be",
    "would be:",
    "small correction",
    "minor correction",
    "little correction",
    "let's work on",
    "let me help",
    "a few things to note",
    "things to note",
    "past tense",
    "present tense",
    "we use",
    "you need to use",
    "we need to use",
    "need a verb",
    "missing verb",
    "missing a verb",
    "use the right verb",
    '"was" vs',
    '"is" vs',
    'vs. "',
    "**was**",
    "**had**",
    "**went**",
    "**is**",
    "**are**",
)

_OPEN_QUOTE = "[\"“]"
_CLOSE_QUOTE = "[\"”]"
_QUOTED = "[^\"“”]"


def _strip_markup(text: str) -> str:
    return text.replace("**", "").strip()


def _first_group(match: re.Match) -> str:
    return _strip_markup(next((g for g in match.groups() if g), ""))


@dataclass(frozen=True)
class ExtractionRule:
    """Regex plus the function that turns its match into a corrected fragment."""
    name: str
    pattern: re.Pattern
    extract: Callable[[re.Match], str] = _first_group
    find_all: bool = False

    def apply(self, text: str) -> str:
        if self.find_all:
            spans = [_strip_markup(m.group(1)) for m in self.pattern.finditer(text)]
            spans = [s for s in spans if s]
            return f"Use: {', '.join(spans)}" if spans else ""
        match = self.pattern.search(text)
        return self.extract(match) if match else ""


EXTRACTION_RULES: Tuple[ExtractionRule, ...] = (
    ExtractionRule(
        "more_common_to_say",
        re.compile(
            rf"(?:more common to say|would be more common)[:\s]*{_OPEN_QUOTE}({_QUOTED}+){_CLOSE_QUOTE}",
            re.IGNORECASE,
        ),
    ),
    ExtractionRule(
        "it_would_be",
        re.compile(
            rf"(?:it would be|would be)[:\s]*{_OPEN_QUOTE}({_QUOTED}+){_CLOSE_QUOTE}",
            re.IGNORECASE,
        ),
    ),
    ExtractionRule("bold_spans", re.compile(r"\*\*([^*]+)\*\*"), find_all=True),
    ExtractionRule(
        "first_person_sentence",
        re.compile(rf"{_OPEN_QUOTE}(I\b{_QUOTED}*[.!?]){_CLOSE_QUOTE}"),
    ),
    ExtractionRule(
        "you_could_say",
        re.compile(rf"you could say\s*{_OPEN_QUOTE}({_QUOTED}+){_CLOSE_QUOTE}", re.IGNORECASE),
    ),
    ExtractionRule(
        "quoted_verb_clause",
        re.compile(
            rf"{_OPEN_QUOTE}({_QUOTED}*\b(?:made|making|went|goes|is|are|was|were)\b{_QUOTED}*){_CLOSE_QUOTE}",
            re.IGNORECASE,
        ),
    ),
    ExtractionRule(
        "it_was_or_is",
        re.compile(rf"{_OPEN_QUOTE}({_QUOTED}*\bIt (?:was|is)\b{_QUOTED}*){_CLOSE_QUOTE}", re.IGNORECASE),
    ),
    ExtractionRule(
        "bulleted_quote",
        re.compile(rf"[*\-•]\s*{_OPEN_QUOTE}({_QUOTED}+){_CLOSE_QUOTE}"),
    ),
    ExtractionRule(
        "should_be_or_say",
        re.compile(rf"should (?:be|say)\s*{_OPEN_QUOTE}?([^\"“”.,!?]+)", re.IGNORECASE),
    ),
)

# Base form -> simple past. Verbs whose past equals the base (put, read, let...)
# are left out: they cannot be told apart by text alone.
VERB_TENSE_PAIRS: Tuple[Tuple[str, str], ...] = (
    ("cook", "cooked"), ("make", "made"), ("go", "went"), ("do", "did"),
    ("have", "had"), ("is", "was"), ("are", "were"), ("eat", "ate"),
    ("drink", "drank"), ("see", "saw"), ("come", "came"), ("take", "took"),
    ("get", "got"), ("buy", "bought"), ("think", "thought"), ("say", "said"),
    ("tell", "told"), ("give", "gave"), ("find", "found"), ("know", "knew"),
    ("run", "ran"), ("write", "wrote"), ("speak", "spoke"), ("meet", "met"),
    ("sit", "sat"), ("stand", "stood"), ("hear", "heard"), ("sleep", "slept"),
    ("wake", "woke"), ("begin", "began"), ("break", "broke"), ("bring", "brought"),
    ("build", "built"), ("catch", "caught"), ("choose", "chose"), ("draw", "drew"),
    ("drive", "drove"), ("fall", "fell"), ("feel", "felt"), ("fly", "flew"),
    ("forget", "forgot"), ("grow", "grew"), ("hang", "hung"), ("hold", "held"),
    ("keep", "kept"), ("leave", "left"), ("lend", "lent"), ("lie", "lay"),
    ("lose", "lost"), ("pay", "paid"), ("ride", "rode"), ("ring", "rang"),
    ("rise", "rose"), ("sell", "sold"), ("send", "sent"), ("shine", "shone"),
    ("show", "showed"), ("sing", "sang"), ("sink", "sank"), ("spend", "spent"),
    ("steal", "stole"), ("swim", "swam"), ("swing", "swung"), ("teach", "taught"),
    ("throw", "threw"), ("understand", "understood"), ("wear", "wore"), ("win", "won"),
)

# (word the learner used, word the correction uses)
WORD_CHOICE_PAIRS: Tuple[Tuple[str, str], ...] = (
    ("did", "made"),
    ("did", "had"),
    ("make", "do"),
    ("do", "make"),
    ("say", "tell"),
    ("tell", "say"),
    ("see", "watch"),
    ("watch", "see"),
    ("hear", "listen"),
    ("listen", "hear"),
    ("big", "large"),
    ("small", "little"),
    ("fast", "quick"),
)

MISSING_VERB_PHRASES = (
    "need a verb",
    "missing verb",
    "missing a verb",
    "use the right verb",
    "we need to use",
)
MISSING_VERB_PATTERN_MARKERS = ("need to use", "verb", "missing", "right verb")

TENSE_PHRASES = (
    "past tense",
    "present tense",
    "future tense",
    '"was" vs',
    '"is" vs',
    'we use "was"',
    'we use "had"',
    "already happened",
    "since the",
    "because it already",
)
TENSE_PATTERN_MARKERS = ("tense", "**had**", "**was**", "**went**")

NATURALNESS_PHRASES = (
    "more natural",
    "sounds better",
    "smoother",
    "more idiomatic",
)

# Category names the AI collaborator tends to use, mapped onto the taxonomy.
CATEGORY_ALIASES = {
    "verb_tense": MistakeCategory.TENSE_VERB,
    "tense": MistakeCategory.TENSE_VERB,
    "verb_form": MistakeCategory.TENSE_VERB,
    "agreement": MistakeCategory.TENSE_VERB,
    "grammar_tense_verb": MistakeCategory.TENSE_VERB,
    "sentence_structure": MistakeCategory.SENTENCE_STRUCTURE,
    "grammar_sentence_structure": MistakeCategory.SENTENCE_STRUCTURE,
    "word_order": MistakeCategory.SENTENCE_STRUCTURE,
    "pronoun_reference": MistakeCategory.SENTENCE_STRUCTURE,
    "vocabulary": MistakeCategory.WORD_CHOICE,
    "word_choice": MistakeCategory.WORD_CHOICE,
    "vocabulary_word_choice": MistakeCategory.WORD_CHOICE,
    "article": MistakeCategory.ARTICLE_DETERMINER,
    "articles": MistakeCategory.ARTICLE_DETERMINER,
    "article_determiner": MistakeCategory.ARTICLE_DETERMINER,
    "prepositions_articles": MistakeCategory.ARTICLE_DETERMINER,
    "preposition": MistakeCategory.PREPOSITION,
    "prepositions": MistakeCategory.PREPOSITION,
    "fluency": MistakeCategory.FLUENCY_NATURALNESS,
    "naturalness": MistakeCategory.FLUENCY_NATURALNESS,
    "fluency_naturalness": MistakeCategory.FLUENCY_NATURALNESS,
}

_SEVERITIES = {"minor", "medium", "major"}


def normalize_category(raw: Optional[str]) -> Optional[MistakeCategory]:
    """Map a free-form AI category label onto the taxonomy, or None if unknown."""
    if not raw:
        return None
    key = re.sub(r"[\s\-/]+", "_", raw.strip().lower())
    try:
        return MistakeCategory(key)
    except ValueError:
        return CATEGORY_ALIASES.get(key)


def _has_word(text: str, word: str) -> bool:
    return re.search(rf"\b{re.escape(word)}\b", text) is not None


@dataclass(frozen=True)
class CategoryEvidence:
    """Lower-cased inputs the category rules look at."""
    feedback: str
    matched_pattern: str
    original: str
    corrected: str


def _mentions_missing_verb(ev: CategoryEvidence) -> bool:
    return any(m in ev.matched_pattern for m in MISSING_VERB_PATTERN_MARKERS) or any(
        p in ev.feedback for p in MISSING_VERB_PHRASES
    )


def _verb_tense_changed(original: str, corrected: str) -> bool:
    for base, past in VERB_TENSE_PAIRS:
        if not _has_word(original, base):
            continue
        if _has_word(corrected, past) and not _has_word(original, past):
            return True
        if _has_word(corrected, f"{base}ed"):
            return True
    return False


def _mentions_tense(ev: CategoryEvidence) -> bool:
    if any(m in ev.matched_pattern for m in TENSE_PATTERN_MARKERS):
        return True
    if any(p in ev.feedback for p in TENSE_PHRASES):
        return True
    return _verb_tense_changed(ev.original, ev.corrected)


def _word_substituted(ev: CategoryEvidence) -> bool:
    return any(
        _has_word(ev.original, wrong) and _has_word(ev.corrected, right)
        for wrong, right in WORD_CHOICE_PAIRS
    )


def _mentions_article(ev: CategoryEvidence) -> bool:
    return "article" in ev.feedback


def _mentions_preposition(ev: CategoryEvidence) -> bool:
    return "preposition" in ev.feedback


def _mentions_naturalness(ev: CategoryEvidence) -> bool:
    return any(p in ev.feedback for p in NATURALNESS_PHRASES)


CATEGORY_RULES: Tuple[Tuple[MistakeCategory, Callable[[CategoryEvidence], bool], Optional[str]], ...] = (
    (MistakeCategory.SENTENCE_STRUCTURE, _mentions_missing_verb, "Grammar error: Missing verb"),
    (MistakeCategory.TENSE_VERB, _mentions_tense, None),
    (MistakeCategory.WORD_CHOICE, _word_substituted, None),
    (MistakeCategory.ARTICLE_DETERMINER, _mentions_article, None),
    (MistakeCategory.PREPOSITION, _mentions_preposition, None),
    (MistakeCategory.FLUENCY_NATURALNESS, _mentions_naturalness, None),
)


class TurnClassifier:
    """Decides whether an AI response contains a correction and classifies it."""

    def __init__(
        self,
        indicators: Sequence[str] = CORRECTION_INDICATORS,
        extraction_rules: Sequence[ExtractionRule] = EXTRACTION_RULES,
    ):
        self.indicators = tuple(indicators)
        self.extraction_rules = tuple(extraction_rules)

    def detect_correction(self, feedback_text: str) -> Optional[str]:
        """Return the first correction indicator found in the feedback, if any."""
        lowered = (feedback_text or "").lower()
        for phrase in self.indicators:
            if phrase.lower() in lowered:
                return phrase
        return None

    def extract_correction(self, feedback_text: str) -> Tuple[str, Optional[str]]:
        """
        Run the extraction cascade over the feedback text.

        Returns:
            (corrected_fragment, rule_name); ("", None) when no rule yields text
        """
        for rule in self.extraction_rules:
            fragment = rule.apply(feedback_text or "")
            if fragment:
                return fragment, rule.name
        return "", None

    def assign_category(
        self,
        feedback_text: str,
        matched_pattern: Optional[str],
        original: str,
        corrected: str,
    ) -> Tuple[MistakeCategory, str]:
        """Return (category, short feedback) for a detected correction."""
        evidence = CategoryEvidence(
            feedback=(feedback_text or "").lower(),
            matched_pattern=(matched_pattern or "").lower(),
            original=(original or "").lower(),
            corrected=(corrected or "").lower(),
        )
        for category, predicate, feedback in CATEGORY_RULES:
            if predicate(evidence):
                return category, feedback or category.default_feedback
        return MistakeCategory.SENTENCE_STRUCTURE, MistakeCategory.SENTENCE_STRUCTURE.default_feedback

    def classify(
        self,
        user_text: str,
        ai_feedback_text: str,
        structured_mistakes: Optional[Sequence[StructuredMistake]] = None,
        structured_verdict: Optional[str] = None,
        grammar_category: Optional[str] = None,
    ) -> TurnVerdict:
        """
        Classify one turn.

        Structured mistakes win when every entry is complete. Otherwise a
        correction phrase in the prose overrides whatever verdict the AI
        reported for itself. grammar_category is the category the AI gave
        for the whole reply; it covers mistakes that carry none of their own.
        """
        structured = list(structured_mistakes or [])
        matched_pattern = self.detect_correction(ai_feedback_text)

        if structured and all(m.is_complete for m in structured):
            return self._from_structured(
                user_text, ai_feedback_text, structured, matched_pattern, grammar_category
            )

        if structured:
            logger.info("Structured mistakes incomplete, falling back to pattern detection")

        if matched_pattern:
            if structured_verdict == Verdict.CORRECT.value:
                logger.info(
                    f"AI reported a correct sentence but feedback contains correction: {matched_pattern!r}"
                )
            return self._from_pattern(user_text, ai_feedback_text, matched_pattern)

        return TurnVerdict(
            verdict=Verdict.CORRECT,
            feedback=NO_MISTAKES_FEEDBACK,
            tone=FeedbackTone.SUCCESS,
            source="none",
        )

    def _from_structured(
        self,
        user_text: str,
        feedback_text: str,
        structured: List[StructuredMistake],
        matched_pattern: Optional[str],
        grammar_category: Optional[str] = None,
    ) -> TurnVerdict:
        reply_category = normalize_category(grammar_category)
        mistakes: List[Mistake] = []
        for entry in structured:
            original = entry.original_text.strip()
            corrected = entry.corrected_text.strip()
            category = normalize_category(entry.category) or reply_category
            if category is None:
                category, _ = self.assign_category(feedback_text, matched_pattern, original, corrected)
            severity = (entry.severity or "medium").lower()
            mistakes.append(
                Mistake(
                    category=category,
                    original_text=original,
                    corrected_text=corrected,
                    explanation=entry.explanation or f'Corrected: "{corrected}"',
                    severity=severity if severity in _SEVERITIES else "medium",
                )
            )

        dominant = self._dominant_category(mistakes)
        tone = FeedbackTone.INFO if all(not m.category.is_penalized for m in mistakes) else FeedbackTone.WARNING
        logger.info(f"Using structured mistake data: {len(mistakes)} mistake(s), dominant={dominant.value}")
        return TurnVerdict(
            verdict=Verdict.HAS_ERRORS,
            mistakes=mistakes,
            feedback=dominant.default_feedback,
            tone=tone,
            category=dominant,
            source="structured",
            matched_pattern=matched_pattern,
        )

    def _from_pattern(self, user_text: str, feedback_text: str, matched_pattern: str) -> TurnVerdict:
        corrected, rule_name = self.extract_correction(feedback_text)
        reason_code = None
        if not corrected:
            reason_code = REASON_FRAGMENT_UNRECOVERABLE
            logger.warning(
                f"Correction detected ({matched_pattern!r}) but no fragment could be extracted: "
                f"{feedback_text[:200]!r}"
            )

        category, short_feedback = self.assign_category(feedback_text, matched_pattern, user_text, corrected)
        original = (user_text or "").strip()
        if corrected:
            explanation = f'Use "{corrected}" instead of "{original}"'
        else:
            explanation = "Check the AI response for the correct form"

        mistake = Mistake(
            category=category,
            original_text=original,
            corrected_text=corrected or EXTRACTION_PLACEHOLDER,
            explanation=explanation,
            severity="medium",
        )
        logger.info(
            f"Extracted correction via {rule_name or 'placeholder'}: {original!r} -> {corrected!r} "
            f"({category.value})"
        )
        return TurnVerdict(
            verdict=Verdict.HAS_ERRORS,
            mistakes=[mistake],
            feedback=short_feedback,
            tone=FeedbackTone.WARNING if category.is_penalized else FeedbackTone.INFO,
            category=category,
            source="pattern",
            matched_pattern=matched_pattern,
            extraction_rule=rule_name,
            reason_code=reason_code,
        )

    @staticmethod
    def _dominant_category(mistakes: Sequence[Mistake]) -> MistakeCategory:
        """Most frequent category; ties go to the one seen first."""
        counts = Counter(m.category for m in mistakes)
        best = max(counts.values())
        return next(m.category for m in mistakes if counts[m.category] == best)
