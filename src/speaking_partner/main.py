"""FastAPI application for the speaking partner service."""

import logging
import os
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from .config import settings
from .models.schemas import (
    FeedbackTone,
    Mistake,
    MistakeCategory,
    SessionReport,
    SessionStatus,
    TopicInfo,
    UserSessionStatus,
    Verdict,
)
from .services.session_lifecycle import (
    InvalidUtteranceError,
    NoActiveSessionError,
    SessionLifecycle,
    SessionNotFoundError,
)
from .services.storage import Storage
from .services.topic_resolver import TopicCatalogError, UnknownTopicError, language_code

# Configure logging
_log_fmt = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
logging.basicConfig(level=logging.INFO, format=_log_fmt)

# Optionally mirror all logs to a file
_log_file = os.getenv("LOG_FILE", "").strip()
if _log_file:
    try:
        Path(_log_file).parent.mkdir(parents=True, exist_ok=True)
        _fh = logging.FileHandler(_log_file, encoding="utf-8")
        _fh.setFormatter(logging.Formatter(_log_fmt))
        _fh.setLevel(logging.DEBUG)
        logging.getLogger().addHandler(_fh)
    except OSError as _log_err:
        print(f"[speaking-partner] WARNING: could not open log file {_log_file!r}: {_log_err}", flush=True)

logger = logging.getLogger(__name__)

app = FastAPI(
    title="AI Speaking Partner",
    description="Conversation practice with grammar-correction tracking",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============================================================================
# Request / response models
# ============================================================================

class StartSessionRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    topic_id: str = Field(..., min_length=1)


class StartSessionResponse(BaseModel):
    session_id: str
    topic: TopicInfo
    target_language: str
    language_code: str
    initial_greeting: str


class ChatRequest(BaseModel):
    text: str


class ChatResponse(BaseModel):
    session_id: str
    turn: int
    response: str
    verdict: Verdict
    feedback: str
    tone: FeedbackTone
    category: Optional[MistakeCategory] = None
    category_display: Optional[str] = None
    mistakes: List[Mistake] = Field(default_factory=list)
    counts_as_incorrect: bool
    ai_fallback: bool
    matched_pattern: Optional[str] = None
    current_score: int
    total_turns: int
    incorrect_turns: int


class SessionStateResponse(BaseModel):
    session_id: str
    user_id: str
    topic_id: str
    target_language: str
    status: SessionStatus
    started_at: datetime
    ended_at: Optional[datetime] = None
    turn_count: int
    current_score: Optional[int] = None


class SessionListItem(BaseModel):
    session_id: str
    user_id: Optional[str] = None
    topic_id: Optional[str] = None
    status: Optional[str] = None
    started_at: Optional[str] = None
    ended_at: Optional[str] = None
    last_updated: str


class SessionListResponse(BaseModel):
    sessions: List[SessionListItem]


class TopicListResponse(BaseModel):
    topics: List[TopicInfo]


# ============================================================================
# Lifecycle wiring
# ============================================================================

_lifecycle: Optional[SessionLifecycle] = None


def _build_lifecycle() -> SessionLifecycle:
    return SessionLifecycle(storage=Storage(settings.sessions_dir))


def _get_lifecycle() -> SessionLifecycle:
    global _lifecycle
    if _lifecycle is None:
        _lifecycle = _build_lifecycle()
    return _lifecycle


# ============================================================================
# Endpoints
# ============================================================================

@app.post("/api/session/start", response_model=StartSessionResponse)
async def start_session(request: StartSessionRequest):
    """
    Start a practice session for a user on a topic.

    Any session the user still has open is ended first.
    """
    try:
        lifecycle = _get_lifecycle()
        session_id = await lifecycle.start_session(request.user_id, request.topic_id)
        session = lifecycle.get_session(session_id)
        topic = lifecycle.topic_resolver.get_topic(session.topic_id)

        return StartSessionResponse(
            session_id=session_id,
            topic=topic,
            target_language=session.target_language,
            language_code=language_code(session.target_language),
            initial_greeting=session.initial_greeting,
        )

    except UnknownTopicError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except TopicCatalogError as e:
        logger.error(f"Topic catalog unavailable: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@app.post("/api/session/{session_id}/chat", response_model=ChatResponse)
async def chat(session_id: str, request: ChatRequest):
    """Submit one utterance and get the AI reply with its correction verdict."""
    try:
        result = await _get_lifecycle().submit_turn(session_id, request.text)
    except NoActiveSessionError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except InvalidUtteranceError as e:
        raise HTTPException(status_code=400, detail=str(e))

    turn = result.turn
    return ChatResponse(
        session_id=session_id,
        turn=turn.sequence,
        response=turn.ai_feedback_text,
        verdict=turn.verdict,
        feedback=turn.feedback,
        tone=turn.tone,
        category=turn.category,
        category_display=turn.category.display_name if turn.category else None,
        mistakes=turn.mistakes,
        counts_as_incorrect=result.counts_as_incorrect,
        ai_fallback=turn.ai_fallback,
        matched_pattern=result.matched_pattern,
        current_score=result.current_score,
        total_turns=result.score.total_turns,
        incorrect_turns=result.score.incorrect_turns,
    )


@app.post("/api/session/{session_id}/end", response_model=SessionReport)
async def end_session(session_id: str):
    """End a session and return the final report. Repeated calls return the same report."""
    try:
        return await _get_lifecycle().end_session(session_id)
    except NoActiveSessionError as e:
        raise HTTPException(status_code=404, detail=str(e))


@app.get("/api/session/{session_id}", response_model=SessionStateResponse)
async def get_session_state(session_id: str):
    lifecycle = _get_lifecycle()
    try:
        session = lifecycle.get_session(session_id)
    except SessionNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

    if session.is_active:
        turn_count = len(session.turns)
        score = lifecycle.get_score(session_id).accuracy
    else:
        # Ended sessions keep no turns in memory; the report has the totals
        report = lifecycle.get_report(session_id)
        turn_count = report.total_turns if report else 0
        score = report.grammar_score if report else None

    return SessionStateResponse(
        session_id=session.session_id,
        user_id=session.user_id,
        topic_id=session.topic_id,
        target_language=session.target_language,
        status=session.status,
        started_at=session.started_at,
        ended_at=session.ended_at,
        turn_count=turn_count,
        current_score=score,
    )


@app.get("/api/users/{user_id}/session", response_model=UserSessionStatus)
async def get_user_session(user_id: str):
    """Whether the user has an active session."""
    return _get_lifecycle().get_status(user_id)


@app.get("/api/sessions", response_model=SessionListResponse)
async def list_sessions(user_id: Optional[str] = None):
    """Stored sessions, most recently updated first."""
    sessions_data = _get_lifecycle().storage.list_sessions(user_id=user_id)
    return SessionListResponse(
        sessions=[
            SessionListItem(
                session_id=s["session_id"],
                user_id=s["user_id"],
                topic_id=s["topic_id"],
                status=s["status"],
                started_at=s["started_at"],
                ended_at=s["ended_at"],
                last_updated=datetime.fromtimestamp(s["last_updated"]).isoformat(),
            )
            for s in sessions_data
        ]
    )


@app.get("/api/topics", response_model=TopicListResponse)
async def list_topics():
    return TopicListResponse(topics=_get_lifecycle().topic_resolver.list_topics())


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=settings.host, port=settings.port)
