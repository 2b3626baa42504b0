"""
Composition root.

build_runtime() wires every component once per process; the FastAPI lifespan
calls start() and shutdown(). Tests build their own runtime with in-memory
storage, a fake backend and a VirtualScheduler.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from core.conversation.context import (
    ConversationStorage,
    InMemoryConversationStorage,
    PostgresConversationStorage,
    SessionStore,
)
from core.conversation.orchestration import DialogueEngine
from core.conversation.pipeline import ConversationOrchestrator, HealthMonitor
from core.conversation.understanding import IntentKnowledgeEngine
from core.database import Database
from core.scheduling import AsyncioScheduler, Scheduler
from core.services.llm_backend import ChatBackend, OpenAICompatibleBackend

logger = logging.getLogger(__name__)


@dataclass
class ConversationRuntime:
    storage: ConversationStorage
    scheduler: Scheduler
    backend: ChatBackend
    session_store: SessionStore
    intent_engine: IntentKnowledgeEngine
    dialogue_engine: DialogueEngine
    orchestrator: ConversationOrchestrator
    health_monitor: HealthMonitor
    started: bool = False

    async def start(self) -> None:
        if self.started:
            return
        if isinstance(self.storage, PostgresConversationStorage):
            await self.storage.ensure_schema()
        try:
            count = await self.intent_engine.refresh_knowledge()
            logger.info(f"Knowledge base loaded with {count} entries")
        except Exception as e:
            logger.error(f"Knowledge base refresh failed: {str(e)}")
        self.session_store.start()
        self.health_monitor.start()
        self.started = True
        logger.info("Conversation runtime started")

    async def shutdown(self) -> None:
        self.health_monitor.stop()
        await self.session_store.shutdown()
        await self.scheduler.drain()
        await self.backend.close()
        await self.storage.close()
        self.started = False
        logger.info("Conversation runtime stopped")


def build_storage(settings) -> ConversationStorage:
    if settings.database_enabled:
        logger.info(f"Using Postgres storage at {settings.DB_HOST}:{settings.DB_PORT}")
        return PostgresConversationStorage(Database.from_settings(settings))
    if settings.KNOWLEDGE_SEED_PATH:
        return InMemoryConversationStorage.from_seed_file(settings.KNOWLEDGE_SEED_PATH)
    logger.info("No database configured, using in-memory storage")
    return InMemoryConversationStorage()


def build_runtime(settings, storage: Optional[ConversationStorage] = None,
                  backend: Optional[ChatBackend] = None,
                  scheduler: Optional[Scheduler] = None) -> ConversationRuntime:
    storage = storage or build_storage(settings)
    backend = backend or OpenAICompatibleBackend.from_settings(settings)
    scheduler = scheduler or AsyncioScheduler()

    session_store = SessionStore(storage, scheduler, settings.session_config())
    intent_engine = IntentKnowledgeEngine(storage=storage)
    dialogue_engine = DialogueEngine(session_store, intent_engine, settings.dialogue_config())
    orchestrator = ConversationOrchestrator(
        session_store, dialogue_engine, intent_engine, backend, storage=storage,
    )
    health_monitor = HealthMonitor(
        orchestrator, scheduler, interval=settings.HEALTH_CHECK_INTERVAL_SECONDS,
    )

    return ConversationRuntime(
        storage=storage,
        scheduler=scheduler,
        backend=backend,
        session_store=session_store,
        intent_engine=intent_engine,
        dialogue_engine=dialogue_engine,
        orchestrator=orchestrator,
        health_monitor=health_monitor,
    )
