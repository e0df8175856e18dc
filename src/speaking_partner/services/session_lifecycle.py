"""Session lifecycle: start, per-turn processing and end of practice sessions."""

import asyncio
import logging
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from .context_builder import build_conversation_context
from .conversation_partner import ConversationPartner, LLMConversationPartner
from .error_recovery import ErrorRecoveryContext
from .report_generator import ReportGenerator
from .score_tracker import ScoreTracker
from .storage import Storage, StorageError
from .topic_resolver import TopicResolver, initial_greeting
from .turn_classifier import TurnClassifier
from ..config import settings
from ..models.schemas import (
    FeedbackTone,
    ResolvedTopic,
    ScoreState,
    Session,
    SessionReport,
    SessionStatus,
    Turn,
    TurnResult,
    TurnVerdict,
    UserSessionStatus,
    Verdict,
    utc_now,
)

logger = logging.getLogger(__name__)


FALLBACK_FEEDBACK = "Feedback unavailable for this turn"


class SessionError(Exception):
    """Base class for session lifecycle errors."""
    pass


class NoActiveSessionError(SessionError):
    """Raised when a turn targets a session that is unknown or already ended."""
    pass


class SessionNotFoundError(SessionError):
    pass


class InvalidUtteranceError(SessionError):
    """Raised for empty or over-long utterances."""
    pass


@dataclass
class _LiveSession:
    session: Session
    resolved: ResolvedTopic
    tracker: ScoreTracker = field(default_factory=ScoreTracker)
    history: List[str] = field(default_factory=list)


class SessionLifecycle:
    """
    Owns every active session and its score counters.

    A user has at most one active session. All mutations for a user happen
    under that user's lock, so turns of one user are processed one at a time in
    arrival order while different users proceed concurrently.
    """

    def __init__(
        self,
        partner: Optional[ConversationPartner] = None,
        storage: Optional[Storage] = None,
        topic_resolver: Optional[TopicResolver] = None,
        classifier: Optional[TurnClassifier] = None,
        report_generator: Optional[ReportGenerator] = None,
        ai_timeout: Optional[float] = None,
        ended_cache_size: Optional[int] = None,
    ):
        """
        Initialize the lifecycle.

        Args:
            partner: AI conversation partner (LLM-backed if None)
            storage: Persistence collaborator (file storage under settings.sessions_dir if None)
            topic_resolver: Topic/language resolver (settings-driven catalog if None)
            classifier: Turn classifier
            report_generator: Final report generator
            ai_timeout: Seconds to wait for the partner before falling back
            ended_cache_size: Ended sessions kept in memory before falling back to storage
        """
        self.partner = partner or LLMConversationPartner()
        self.storage = storage or Storage(settings.sessions_dir)
        self.topic_resolver = topic_resolver or TopicResolver.from_settings()
        self.classifier = classifier or TurnClassifier()
        self.report_generator = report_generator or ReportGenerator()
        self.ai_timeout = ai_timeout if ai_timeout is not None else settings.ai_timeout_seconds
        self.ended_cache_size = (
            ended_cache_size if ended_cache_size is not None else settings.ended_session_cache_size
        )

        self._live: Dict[str, _LiveSession] = {}
        self._active_by_user: Dict[str, str] = {}
        # Most recently ended sessions, oldest first
        self._ended: "OrderedDict[str, Session]" = OrderedDict()
        self._reports: "OrderedDict[str, SessionReport]" = OrderedDict()

        # User-level locks to prevent interleaved turn processing
        self._user_locks: Dict[str, asyncio.Lock] = {}

    def _get_user_lock(self, user_id: str) -> asyncio.Lock:
        if user_id not in self._user_locks:
            self._user_locks[user_id] = asyncio.Lock()
        return self._user_locks[user_id]

    def _persist(self, action: str, func: Callable, *args) -> None:
        """Run a storage call; failures are logged and the in-memory session goes on."""
        try:
            func(*args)
        except Exception as e:
            logger.error(f"Persistence failed ({action}): {e}")

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    async def start_session(self, user_id: str, topic_id: str) -> str:
        """
        Start a new session for a user.

        A session the user still has open is ended first, with its report
        generated as if end_session had been called.

        Raises:
            UnknownTopicError: If the topic cannot be resolved
        """
        resolved = self.topic_resolver.resolve(topic_id, user_id)

        async with self._get_user_lock(user_id):
            previous_id = self._active_by_user.get(user_id)
            if previous_id and previous_id in self._live:
                logger.info(f"User {user_id} started a new session; ending {previous_id}")
                self._finish(self._live[previous_id])

            target_language = resolved.language.target_language
            session = Session(
                session_id=str(uuid.uuid4()),
                user_id=user_id,
                topic_id=resolved.topic.topic_id,
                target_language=target_language,
                initial_greeting=initial_greeting(target_language, resolved.topic.name),
            )
            session.status = SessionStatus.ACTIVE

            self._live[session.session_id] = _LiveSession(session=session, resolved=resolved)
            self._active_by_user[user_id] = session.session_id
            self._persist("create_session", self.storage.create_session, session)

        logger.info(
            f"Session {session.session_id} started for user {user_id}: topic={resolved.topic.name!r} "
            f"language={target_language} ({resolved.language.language_code})"
        )
        return session.session_id

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    def _require_live(self, session_id: str) -> _LiveSession:
        live = self._live.get(session_id)
        if live is None or not live.session.is_active:
            raise NoActiveSessionError(f"No active session: {session_id}")
        return live

    @staticmethod
    def _validate_utterance(text: str) -> str:
        if text is None or not text.strip():
            raise InvalidUtteranceError("Utterance is empty")
        if len(text) > settings.max_input_length:
            raise InvalidUtteranceError(
                f"Utterance exceeds the maximum length of {settings.max_input_length} characters"
            )
        return text.strip()

    async def submit_turn(self, session_id: str, text: str) -> TurnResult:
        """
        Process one learner utterance.

        Raises:
            NoActiveSessionError: If the session is unknown or has ended
            InvalidUtteranceError: If the utterance is empty or too long
        """
        live = self._require_live(session_id)
        utterance = self._validate_utterance(text)

        async with self._get_user_lock(live.session.user_id):
            # The session may have ended while this turn waited for the lock
            live = self._require_live(session_id)
            session = live.session
            sequence = len(session.turns) + 1

            context = build_conversation_context(
                session=session,
                topic=live.resolved.topic,
                language=live.resolved.language,
                history=live.history,
                turn_index=len(session.turns),
                proficiency_level=live.resolved.proficiency_level,
                max_history=settings.context_history_turns,
            )

            ai_fallback = False
            try:
                feedback = await asyncio.wait_for(
                    self.partner.send(utterance, context),
                    timeout=self.ai_timeout,
                )
                ai_text = feedback.feedback_text
                verdict = self.classifier.classify(
                    utterance,
                    ai_text,
                    structured_mistakes=feedback.structured_mistakes,
                    structured_verdict=feedback.structured_verdict,
                    grammar_category=feedback.grammar_category,
                )
            except Exception as e:
                recovery = ErrorRecoveryContext(
                    session_id=session_id,
                    turn_index=sequence,
                    user_text=utterance,
                    error=e,
                )
                ai_fallback = True
                ai_text = recovery.get_fallback_response()
                verdict = TurnVerdict(
                    verdict=Verdict.CORRECT,
                    feedback=FALLBACK_FEEDBACK,
                    tone=FeedbackTone.INFO,
                    source="fallback",
                )

            counted = live.tracker.record_turn(verdict)
            turn = Turn(
                sequence=sequence,
                user_text=utterance,
                ai_feedback_text=ai_text,
                verdict=verdict.verdict,
                mistakes=verdict.mistakes,
                feedback=verdict.feedback,
                tone=verdict.tone,
                category=verdict.category,
                reason_code=verdict.reason_code,
                ai_fallback=ai_fallback,
            )
            session.turns.append(turn)
            live.history.append(f"User: {utterance}")
            live.history.append(f"AI: {ai_text}")
            score = live.tracker.snapshot()

            self._persist("save_turn", self.storage.save_turn, session_id, turn)
            for mistake in turn.mistakes:
                self._persist("save_mistake", self.storage.save_mistake, session_id, mistake, sequence)

        logger.info(
            f"Session {session_id} turn {sequence}: {verdict.verdict.value} "
            f"(source={verdict.source}, pattern={verdict.matched_pattern!r}) "
            f"score={score.accuracy} [{score.incorrect_turns}/{score.total_turns} incorrect]"
        )
        return TurnResult(
            session_id=session_id,
            turn=turn,
            score=score,
            counts_as_incorrect=counted,
            matched_pattern=verdict.matched_pattern,
        )

    # ------------------------------------------------------------------
    # End
    # ------------------------------------------------------------------

    def _finish(self, live: _LiveSession) -> SessionReport:
        """End a live session. Caller holds the user's lock."""
        session = live.session
        session.status = SessionStatus.ENDED
        session.ended_at = utc_now()

        final_score = live.tracker.snapshot()
        report = self.report_generator.generate(session, final_score, list(session.turns))

        self._archive(session, report)
        del self._live[session.session_id]
        if self._active_by_user.get(session.user_id) == session.session_id:
            del self._active_by_user[session.user_id]
        live.history.clear()
        live.tracker.reset()

        self._persist(
            "complete_session",
            self.storage.complete_session,
            session.session_id,
            report.final_scores,
            report.duration_seconds,
            report,
        )
        logger.info(
            f"Session {session.session_id} ended after {report.total_turns} turns, "
            f"{report.duration_seconds}s: scores={report.final_scores}"
        )
        return report

    def _archive(self, session: Session, report: SessionReport) -> None:
        """Keep an ended session and its report in memory, evicting the oldest beyond the cache size."""
        self._reports[session.session_id] = report
        self._ended[session.session_id] = session.model_copy(update={"turns": []})
        while len(self._ended) > self.ended_cache_size:
            evicted_id, _ = self._ended.popitem(last=False)
            self._reports.pop(evicted_id, None)
            logger.debug(f"Evicted ended session {evicted_id} from memory")

    def _lookup_report(self, session_id: str) -> Optional[SessionReport]:
        report = self._reports.get(session_id)
        if report is not None:
            return report
        try:
            return self.storage.load_report(session_id)
        except StorageError as e:
            logger.warning(f"Could not load report for {session_id}: {e}")
            return None

    async def end_session(self, session_id: str) -> SessionReport:
        """
        End a session and return its report.

        Ending an already ended session returns the stored report unchanged.

        Raises:
            NoActiveSessionError: If the session was never started
        """
        live = self._live.get(session_id)
        if live is None:
            report = self._lookup_report(session_id)
            if report is not None:
                logger.info(f"Session {session_id} already ended; returning stored report")
                return report
            raise NoActiveSessionError(f"No active session: {session_id}")

        async with self._get_user_lock(live.session.user_id):
            if session_id not in self._live:
                # Ended while this call waited for the lock
                report = self._lookup_report(session_id)
                if report is None:
                    raise NoActiveSessionError(f"No active session: {session_id}")
                return report
            return self._finish(live)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_session(self, session_id: str) -> Session:
        if session_id in self._live:
            return self._live[session_id].session
        if session_id in self._ended:
            return self._ended[session_id]
        try:
            record = self.storage.load_session_record(session_id)
        except StorageError:
            raise SessionNotFoundError(f"Session {session_id} not found")
        if record.get("status") != SessionStatus.ENDED.value:
            # Left active by an earlier process; nothing in memory can continue it
            raise SessionNotFoundError(f"Session {session_id} not found")
        return Session(**{k: v for k, v in record.items() if k in Session.model_fields})

    def get_score(self, session_id: str) -> ScoreState:
        return self._require_live(session_id).tracker.snapshot()

    def get_report(self, session_id: str) -> Optional[SessionReport]:
        return self._lookup_report(session_id)

    def get_status(self, user_id: str) -> UserSessionStatus:
        session_id = self._active_by_user.get(user_id)
        live = self._live.get(session_id) if session_id else None
        if live is None:
            return UserSessionStatus(user_id=user_id, status=SessionStatus.IDLE)

        return UserSessionStatus(
            user_id=user_id,
            status=live.session.status,
            session_id=live.session.session_id,
            topic_id=live.session.topic_id,
            target_language=live.session.target_language,
            turn_count=len(live.session.turns),
            current_score=live.tracker.current_score(),
        )
