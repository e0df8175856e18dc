from fastapi.testclient import TestClient

import speaking_partner.main as partner_main
from speaking_partner.models.schemas import AIFeedback
from speaking_partner.services.conversation_partner import ConversationPartner
from speaking_partner.services.session_lifecycle import SessionLifecycle
from speaking_partner.services.storage import Storage
from speaking_partner.services.topic_resolver import TopicResolver


class FakePartner(ConversationPartner):
    def __init__(self, replies):
        self.replies = list(replies)

    async def send(self, utterance, context):
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return AIFeedback(feedback_text=reply)


def _install_lifecycle(monkeypatch, tmp_path, replies=()):
    lifecycle = SessionLifecycle(
        partner=FakePartner(replies),
        storage=Storage(base_dir=str(tmp_path / "sessions")),
        topic_resolver=TopicResolver(),
    )
    monkeypatch.setattr(partner_main, "_lifecycle", lifecycle)
    return lifecycle


def test_health():
    with TestClient(partner_main.app) as client:
        response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


def test_full_session_flow(monkeypatch, tmp_path):
    _install_lifecycle(
        monkeypatch,
        tmp_path,
        replies=[
            "Hi there! How are you?",
            'Nice! You could say "I went to the cinema yesterday."',
            RuntimeError("connection error"),
        ],
    )

    with TestClient(partner_main.app) as client:
        start = client.post("/api/session/start", json={"user_id": "alice", "topic_id": "6"})
        assert start.status_code == 200
        started = start.json()
        session_id = started["session_id"]
        assert started["target_language"] == "English"
        assert started["language_code"] == "en-US"
        assert "Movies and Entertainment" in started["initial_greeting"]

        first = client.post(f"/api/session/{session_id}/chat", json={"text": "Hello"}).json()
        second = client.post(
            f"/api/session/{session_id}/chat", json={"text": "Yesterday I go to the cinema"}
        ).json()
        third = client.post(f"/api/session/{session_id}/chat", json={"text": "It was great"}).json()

        status = client.get("/api/users/alice/session").json()
        state = client.get(f"/api/session/{session_id}").json()
        end = client.post(f"/api/session/{session_id}/end")
        end_again = client.post(f"/api/session/{session_id}/end")
        after = client.post(f"/api/session/{session_id}/chat", json={"text": "Hello?"})
        listed = client.get("/api/sessions", params={"user_id": "alice"}).json()

    assert first["verdict"] == "correct"
    assert first["current_score"] == 100

    assert second["verdict"] == "has_errors"
    assert second["category"] == "grammar_tense_verb"
    assert second["category_display"] == "Grammar: Tense & Verb Forms"
    assert second["counts_as_incorrect"] is True
    assert second["current_score"] == 50

    assert third["ai_fallback"] is True
    assert third["verdict"] == "correct"
    assert third["total_turns"] == 3
    assert third["incorrect_turns"] == 1
    assert third["current_score"] == 67

    assert status["status"] == "active"
    assert status["turn_count"] == 3
    assert state["status"] == "active"
    assert state["current_score"] == 67

    assert end.status_code == 200
    report = end.json()
    assert report["total_turns"] == 3
    assert report["incorrect_turns"] == 1
    assert report["grammar_score"] == 67
    assert report["category_breakdown"] == {"grammar_tense_verb": 1}
    assert end_again.json()["generated_at"] == report["generated_at"]

    assert after.status_code == 400
    assert listed["sessions"][0]["session_id"] == session_id
    assert listed["sessions"][0]["status"] == "ended"


def test_start_unknown_topic_returns_404(monkeypatch, tmp_path):
    _install_lifecycle(monkeypatch, tmp_path)

    with TestClient(partner_main.app) as client:
        response = client.post("/api/session/start", json={"user_id": "alice", "topic_id": "nope"})

    assert response.status_code == 404


def test_chat_without_session_and_empty_text(monkeypatch, tmp_path):
    _install_lifecycle(monkeypatch, tmp_path, replies=["ok"])

    with TestClient(partner_main.app) as client:
        missing = client.post("/api/session/missing/chat", json={"text": "Hello"})
        session_id = client.post(
            "/api/session/start", json={"user_id": "bob", "topic_id": "1"}
        ).json()["session_id"]
        empty = client.post(f"/api/session/{session_id}/chat", json={"text": "  "})
        unknown_end = client.post("/api/session/missing/end")
        unknown_state = client.get("/api/session/missing")

    assert missing.status_code == 400
    assert empty.status_code == 400
    assert unknown_end.status_code == 404
    assert unknown_state.status_code == 404


def test_idle_user_status_and_topics(monkeypatch, tmp_path):
    _install_lifecycle(monkeypatch, tmp_path)

    with TestClient(partner_main.app) as client:
        status = client.get("/api/users/nobody/session").json()
        topics = client.get("/api/topics").json()["topics"]

    assert status["status"] == "idle"
    assert status["session_id"] is None
    assert len(topics) == 8
    assert topics[0]["sample_questions"]
