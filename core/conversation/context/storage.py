"""
Session and analytics persistence.

Two implementations share the ConversationStorage interface: an in-memory
store used by default and in tests, and a Postgres store whose blocking
psycopg2 calls are pushed onto a small thread pool so the event loop is never
blocked.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional

from core.database import Database
from core.exceptions import StorageError
from models.schemas import IntentResult, KnowledgeEntry, QualityReport

logger = logging.getLogger(__name__)


class ConversationStorage(ABC):
    """Persistence contract used by the session store and the engines"""

    @abstractmethod
    async def save_session(self, record: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def load_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def save_quality_report(self, report: QualityReport) -> None:
        ...

    @abstractmethod
    async def record_intent(self, session_id: Optional[str], text: str, result: IntentResult) -> None:
        ...

    @abstractmethod
    async def load_knowledge_entries(self) -> List[KnowledgeEntry]:
        ...

    @abstractmethod
    async def health_check(self) -> bool:
        ...

    async def close(self) -> None:
        return None


class InMemoryConversationStorage(ConversationStorage):
    """Dict-backed storage; records are deep-copied through JSON on the way in"""

    def __init__(self, knowledge: Optional[List[KnowledgeEntry]] = None):
        self.sessions: Dict[str, Dict[str, Any]] = {}
        self.quality_reports: List[QualityReport] = []
        self.intent_log: List[Dict[str, Any]] = []
        self.knowledge: List[KnowledgeEntry] = list(knowledge or [])

    @classmethod
    def from_seed_file(cls, path: str) -> "InMemoryConversationStorage":
        """Load knowledge entries from a JSON list of {title, content, category, tags}"""
        with open(path, encoding="utf-8") as f:
            raw = json.load(f)
        entries = [KnowledgeEntry.model_validate(item) for item in raw]
        logger.info(f"Loaded {len(entries)} knowledge entries from {path}")
        return cls(knowledge=entries)

    async def save_session(self, record: Dict[str, Any]) -> None:
        self.sessions[record["id"]] = json.loads(json.dumps(record))

    async def load_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        record = self.sessions.get(session_id)
        return json.loads(json.dumps(record)) if record is not None else None

    async def save_quality_report(self, report: QualityReport) -> None:
        self.quality_reports.append(report)

    async def record_intent(self, session_id: Optional[str], text: str, result: IntentResult) -> None:
        self.intent_log.append({
            "session_id": session_id,
            "text": text,
            "intent": result.intent,
            "confidence": result.confidence,
        })

    async def load_knowledge_entries(self) -> List[KnowledgeEntry]:
        return list(self.knowledge)

    async def health_check(self) -> bool:
        return True


SCHEMA_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS chat_sessions (
        id VARCHAR(64) PRIMARY KEY,
        user_id VARCHAR(128) NOT NULL,
        status VARCHAR(16) NOT NULL,
        context JSONB NOT NULL DEFAULT '{}',
        metadata JSONB NOT NULL DEFAULT '{}',
        conversation_history JSONB NOT NULL DEFAULT '[]',
        created_at TIMESTAMPTZ NOT NULL,
        last_activity TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS knowledge_base (
        id VARCHAR(64) PRIMARY KEY,
        title TEXT NOT NULL,
        content TEXT NOT NULL,
        category VARCHAR(64) NOT NULL DEFAULT 'general',
        tags JSONB NOT NULL DEFAULT '[]',
        metadata JSONB NOT NULL DEFAULT '{}',
        is_active BOOLEAN NOT NULL DEFAULT true
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS conversation_quality (
        id SERIAL PRIMARY KEY,
        session_id VARCHAR(64) NOT NULL,
        message_id VARCHAR(64) NOT NULL,
        overall_score REAL NOT NULL,
        metrics JSONB NOT NULL,
        recommendations JSONB NOT NULL DEFAULT '[]',
        created_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS intent_recognitions (
        id SERIAL PRIMARY KEY,
        session_id VARCHAR(64),
        input_text TEXT NOT NULL,
        intent VARCHAR(64) NOT NULL,
        confidence REAL NOT NULL,
        entities JSONB NOT NULL DEFAULT '{}',
        processing_time REAL NOT NULL DEFAULT 0,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
]


class PostgresConversationStorage(ConversationStorage):
    """Postgres-backed storage built on the pooled Database helper"""

    def __init__(self, database: Database, max_workers: int = 4):
        self.db = database
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="storage")

    async def _run(self, fn, *args):
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(self._executor, fn, *args)
        except Exception as e:
            raise StorageError(str(e)) from e

    def _ensure_schema(self) -> None:
        for statement in SCHEMA_STATEMENTS:
            self.db.execute_update(statement)
        logger.info("Conversation storage schema verified")

    async def ensure_schema(self) -> None:
        await self._run(self._ensure_schema)

    async def save_session(self, record: Dict[str, Any]) -> None:
        await self._run(self.db.execute_update, """
            INSERT INTO chat_sessions
            (id, user_id, status, context, metadata, conversation_history, created_at, last_activity)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (id)
            DO UPDATE SET
                status = EXCLUDED.status,
                context = EXCLUDED.context,
                metadata = EXCLUDED.metadata,
                conversation_history = EXCLUDED.conversation_history,
                last_activity = EXCLUDED.last_activity
        """, (
            record["id"],
            record["user_id"],
            record["status"],
            json.dumps(record["context"]),
            json.dumps(record["metadata"]),
            json.dumps(record["conversation_history"]),
            record["created_at"],
            record["last_activity"],
        ))

    async def load_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        rows = await self._run(self.db.execute_query, """
            SELECT id, user_id, status, context, metadata, conversation_history
            FROM chat_sessions
            WHERE id = %s
        """, (session_id,))
        if not rows:
            return None
        return dict(rows[0])

    async def save_quality_report(self, report: QualityReport) -> None:
        await self._run(self.db.execute_update, """
            INSERT INTO conversation_quality
            (session_id, message_id, overall_score, metrics, recommendations, created_at)
            VALUES (%s, %s, %s, %s, %s, %s)
        """, (
            report.session_id,
            report.message_id,
            report.overall_score,
            report.metrics.model_dump_json(),
            json.dumps(report.recommendations, ensure_ascii=False),
            report.timestamp,
        ))

    async def record_intent(self, session_id: Optional[str], text: str, result: IntentResult) -> None:
        await self._run(self.db.execute_update, """
            INSERT INTO intent_recognitions
            (session_id, input_text, intent, confidence, entities, processing_time)
            VALUES (%s, %s, %s, %s, %s, %s)
        """, (
            session_id,
            text,
            result.intent,
            result.confidence,
            json.dumps(result.entities, ensure_ascii=False, default=str),
            result.processing_time,
        ))

    async def load_knowledge_entries(self) -> List[KnowledgeEntry]:
        rows = await self._run(self.db.execute_query, """
            SELECT id, title, content, category, tags, metadata
            FROM knowledge_base
            WHERE is_active = true
            ORDER BY title
        """)
        return [KnowledgeEntry.model_validate(dict(row)) for row in rows]

    async def health_check(self) -> bool:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, self.db.ping)

    async def close(self) -> None:
        self.db.close_all_connections()
        self._executor.shutdown(wait=False)
