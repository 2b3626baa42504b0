"""
IntentKnowledgeEngine: one entry point for recognition, knowledge lookup and
quality scoring.

The engine holds no per-session state. Every call degrades to a safe default
instead of raising, so a single weak signal can never abort a turn.
"""

import logging
import time
from typing import Any, Dict, Optional

from core.conversation.context.storage import ConversationStorage
from core.conversation.knowledge.knowledge_base import KnowledgeBase
from models.schemas import IntentResult, KnowledgeSearchResult, QualityMetrics, QualityReport
from .intent_detector import IntentDetector
from .quality_monitor import QualityMonitor

logger = logging.getLogger(__name__)


class IntentKnowledgeEngine:
    """Facade over IntentDetector, KnowledgeBase and QualityMonitor"""

    def __init__(self, detector: Optional[IntentDetector] = None,
                 knowledge_base: Optional[KnowledgeBase] = None,
                 quality_monitor: Optional[QualityMonitor] = None,
                 storage: Optional[ConversationStorage] = None):
        self.detector = detector or IntentDetector()
        self.knowledge_base = knowledge_base or KnowledgeBase(storage)
        self.quality_monitor = quality_monitor or QualityMonitor()
        self.storage = storage

    async def recognize_intent(self, text: str, context: Optional[Dict[str, Any]] = None,
                               session_id: Optional[str] = None,
                               mode: str = "fused") -> IntentResult:
        started = time.perf_counter()
        try:
            result = self.detector.detect(text, context or {}, mode=mode)
        except Exception as e:
            logger.error(f"Intent recognition error: {str(e)}", exc_info=True)
            return IntentResult.unknown(processing_time=(time.perf_counter() - started) * 1000)

        result = result.model_copy(update={"processing_time": (time.perf_counter() - started) * 1000})

        if session_id and self.storage is not None:
            try:
                await self.storage.record_intent(session_id, text, result)
            except Exception as e:
                logger.warning(f"Failed to record intent recognition for {session_id}: {str(e)}")

        return result

    async def search_knowledge(self, query: str, category: Optional[str] = None,
                               limit: int = 10, min_relevance: float = 0.3) -> KnowledgeSearchResult:
        try:
            return self.knowledge_base.search(query, category=category, limit=limit,
                                              min_relevance=min_relevance)
        except Exception as e:
            logger.error(f"Knowledge base search error: {str(e)}", exc_info=True)
            return KnowledgeSearchResult(query=query)

    async def refresh_knowledge(self) -> int:
        return await self.knowledge_base.refresh()

    def evaluate_quality(self, session_id: str, message_id: str, user_input: str, reply: str,
                         response_time: float = 0.0,
                         knowledge: Optional[KnowledgeSearchResult] = None,
                         error: bool = False,
                         context_consistency: float = 1.0,
                         overrides: Optional[Dict[str, Any]] = None) -> QualityReport:
        """Score one exchange; the caller decides whether to persist the report"""
        try:
            return self.quality_monitor.evaluate(
                session_id, message_id, user_input, reply,
                response_time=response_time,
                knowledge=knowledge,
                error=error,
                context_consistency=context_consistency,
                overrides=overrides,
            )
        except Exception as e:
            logger.error(f"Quality scoring error: {str(e)}", exc_info=True)
            return QualityReport(
                session_id=session_id,
                message_id=message_id,
                overall_score=0.0,
                metrics=QualityMetrics(response_time=response_time, error_rate=1.0),
            )

    def health_check(self) -> bool:
        try:
            return self.detector.detect("hello").intent == "greeting"
        except Exception as e:
            logger.warning(f"Intent engine health check failed: {str(e)}")
            return False
