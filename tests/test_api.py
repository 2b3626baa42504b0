"""Tests for the HTTP surface."""

import json
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from config import Settings
from core.conversation.context import InMemoryConversationStorage
from core.container import build_runtime
from core.scheduling import VirtualScheduler
from main import create_app

from conftest import ScriptedBackend, knowledge_entries


@pytest.fixture
def runtime():
    return build_runtime(
        Settings(),
        storage=InMemoryConversationStorage(knowledge=knowledge_entries()),
        backend=ScriptedBackend(),
        scheduler=VirtualScheduler(),
    )


@pytest.fixture
def client(runtime):
    with TestClient(create_app(runtime)) as test_client:
        yield test_client


def start_conversation(client, message="你好"):
    response = client.post("/api/ai/conversation", json={"user_id": "user-1", "message": message})
    assert response.status_code == 200
    return response.json()["data"]


class TestConversationEndpoints:
    """Test conversation processing over HTTP."""

    def test_process_conversation(self, client):
        response = client.post("/api/ai/conversation", json={"user_id": "user-1", "message": "你好"})

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["data"]["intent"] == "greeting"
        assert body["data"]["session_id"]

    def test_empty_message_is_rejected(self, client):
        response = client.post("/api/ai/conversation", json={"user_id": "user-1", "message": ""})

        assert response.status_code == 400
        body = response.json()
        assert body["success"] is False
        assert "Message cannot be empty" in body["data"]

    def test_malformed_body_is_rejected(self, client):
        response = client.post("/api/ai/conversation", json={"message": "你好"})

        assert response.status_code == 400
        assert response.json()["success"] is False

    def test_stream(self, client):
        response = client.post("/api/ai/conversation/stream", json={"user_id": "user-1", "message": "随便聊聊"})

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/x-ndjson")
        events = [json.loads(line) for line in response.text.splitlines() if line]
        assert [e["type"] for e in events] == ["delta", "delta", "delta", "result"]
        assert events[-1]["data"]["response"] == "好的，我来帮你。"

    def test_stream_validation(self, client):
        response = client.post("/api/ai/conversation/stream", json={"user_id": "bad id!", "message": "hi"})

        assert response.status_code == 400


class TestSessionEndpoints:
    """Test session management over HTTP."""

    def test_create_and_get_session(self, client):
        created = client.post("/api/ai/session", json={"user_id": "user-1", "options": {"temperature": 0.3}})

        assert created.status_code == 200
        session_id = created.json()["data"]["session_id"]

        fetched = client.get(f"/api/ai/session/{session_id}")
        assert fetched.status_code == 200
        data = fetched.json()["data"]
        assert data["status"] == "active"
        assert data["metadata"]["temperature"] == 0.3
        assert data["dialogue"] is None

    def test_create_session_rejects_bad_temperature(self, client):
        response = client.post("/api/ai/session", json={"user_id": "user-1", "options": {"temperature": 3}})

        assert response.status_code == 400

    def test_get_missing_session(self, client):
        response = client.get("/api/ai/session/missing")

        assert response.status_code == 404
        assert response.json() == {"success": False, "data": None, "message": "Session not found"}

    def test_user_sessions(self, client):
        start_conversation(client)
        start_conversation(client)

        response = client.get("/api/ai/sessions/user-1")

        assert len(response.json()["data"]) == 2

    def test_terminate(self, client):
        session_id = start_conversation(client)["session_id"]

        assert client.delete(f"/api/ai/session/{session_id}").status_code == 200
        assert client.get(f"/api/ai/session/{session_id}").status_code == 404
        assert client.delete(f"/api/ai/session/{session_id}").status_code == 404

    def test_interrupt_and_resume(self, client):
        session_id = start_conversation(client)["session_id"]

        interrupted = client.post(f"/api/ai/session/{session_id}/interrupt", json={"reason": "user_stop"})
        assert interrupted.json()["data"] == {"interrupted": True}

        resumed = client.post(f"/api/ai/session/{session_id}/resume")
        assert resumed.status_code == 200
        assert resumed.json()["data"]["response"]

    def test_interrupt_missing_session(self, client):
        response = client.post("/api/ai/session/missing/interrupt", json={})

        assert response.status_code == 404

    def test_resume_missing_session(self, client):
        assert client.post("/api/ai/session/missing/resume").status_code == 404


class TestUnderstandingEndpoints:
    """Test intent and knowledge endpoints."""

    def test_intent(self, client):
        response = client.post("/api/ai/intent", json={"text": "谢谢"})

        assert response.json()["data"]["intent"] == "thanks"

    def test_intent_rejects_empty_text(self, client):
        assert client.post("/api/ai/intent", json={"text": " "}).status_code == 400

    def test_knowledge_search(self, client):
        response = client.post("/api/ai/knowledge/search", json={"query": "reset password"})

        data = response.json()["data"]
        assert data["results"][0]["id"] == "kb-reset"
        assert data["suggestions"] == ["reset", "password"]


class TestSystemEndpoints:
    """Test health and statistics."""

    def test_health(self, client):
        response = client.get("/api/ai/health")

        assert response.status_code == 200
        assert response.json()["data"]["status"] == "healthy"

    def test_unhealthy_returns_503(self, client, runtime):
        runtime.backend.healthy = False
        runtime.health_monitor.probes["storage"] = lambda: False

        response = client.get("/api/ai/health")

        assert response.status_code == 503
        assert response.json()["data"]["status"] == "unhealthy"

    def test_stats(self, client):
        start_conversation(client)

        data = client.get("/api/ai/stats").json()["data"]

        assert data["performance"]["total_requests"] == 1
        assert data["sessions"]["active_sessions"] == 1
        assert data["dialogues"]["total_dialogues"] == 1

    def test_liveness(self, client):
        assert client.get("/health").json() == {"status": "healthy"}


class TestRuntime:
    """Test runtime start and shutdown."""

    @pytest.mark.asyncio
    async def test_shutdown_drains_scheduler_before_closing(self, runtime):
        calls = []
        runtime.scheduler.drain = AsyncMock(side_effect=lambda: calls.append("drain"))
        runtime.storage.close = AsyncMock(side_effect=lambda: calls.append("storage"))

        await runtime.start()
        await runtime.shutdown()

        assert calls == ["drain", "storage"]
        assert runtime.started is False
