"""Shared fixtures: virtual clock, in-memory storage and a scripted model backend."""

import asyncio
import random
from typing import Any, AsyncIterator, Dict, List, Optional

import pytest

from core.conversation.context import InMemoryConversationStorage, SessionConfig, SessionStore
from core.conversation.orchestration import DialogueEngine
from core.conversation.pipeline import ConversationOrchestrator
from core.conversation.understanding import IntentKnowledgeEngine
from core.exceptions import ModelBackendError
from core.scheduling import VirtualScheduler
from core.services.llm_backend import ChatBackend
from models.schemas import KnowledgeEntry


DEFAULT_REPLY = "好的，我来帮你看看这个问题。"


class ScriptedBackend(ChatBackend):
    """Chat backend that replays canned replies and records every request."""

    def __init__(self, replies: Optional[List[str]] = None, error: Optional[Exception] = None,
                 chunks: Optional[List[str]] = None, healthy: bool = True):
        self.replies = list(replies or [])
        self.error = error
        self.chunks = list(chunks or ["好的，", "我来", "帮你。"])
        self.healthy = healthy
        self.requests: List[Dict[str, Any]] = []
        self.gate: Optional[asyncio.Event] = None

    async def chat(self, request: Dict[str, Any]) -> Dict[str, Any]:
        self.requests.append(request)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        reply = self.replies.pop(0) if self.replies else DEFAULT_REPLY
        return {
            "choices": [{"message": {"role": "assistant", "content": reply}}],
            "usage": {"prompt_tokens": 18, "completion_tokens": 12, "total_tokens": 30},
            "model": request.get("model", "fake-model"),
        }

    async def chat_stream(self, request: Dict[str, Any]) -> AsyncIterator[str]:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        for chunk in self.chunks:
            if self.gate is not None:
                await self.gate.wait()
            yield chunk

    async def health_check(self) -> bool:
        return self.healthy


def knowledge_entries() -> List[KnowledgeEntry]:
    return [
        KnowledgeEntry(
            id="kb-reset",
            title="How to reset password",
            content="Open settings, choose account security and follow the reset password steps. "
                    "A confirmation email is sent to the registered address.",
            category="account",
            tags=["password", "account"],
        ),
        KnowledgeEntry(
            id="kb-billing",
            title="Billing cycle",
            content="Invoices are issued on the first day of every month.",
            category="billing",
            tags=["invoice"],
        ),
    ]


@pytest.fixture
def scheduler():
    return VirtualScheduler()


@pytest.fixture
def session_config():
    return SessionConfig(
        max_idle_time=600,
        max_session_duration=3600,
        max_message_count=20,
        max_tokens=100000,
        cleanup_interval=60,
    )


@pytest.fixture
def storage():
    return InMemoryConversationStorage(knowledge=knowledge_entries())


@pytest.fixture
def session_store(storage, scheduler, session_config):
    return SessionStore(storage, scheduler, session_config)


@pytest.fixture
def intent_engine(storage):
    engine = IntentKnowledgeEngine(storage=storage)
    engine.knowledge_base.load(knowledge_entries())
    return engine


@pytest.fixture
def dialogue_engine(session_store, intent_engine):
    return DialogueEngine(session_store, intent_engine, rng=random.Random(7))


@pytest.fixture
def backend():
    return ScriptedBackend()


@pytest.fixture
def failing_backend():
    return ScriptedBackend(error=ModelBackendError("upstream unavailable", status=503))


@pytest.fixture
def orchestrator(session_store, dialogue_engine, intent_engine, backend, storage):
    return ConversationOrchestrator(session_store, dialogue_engine, intent_engine, backend, storage=storage)


@pytest.fixture
def knowledge():
    return knowledge_entries()
