"""
Main conversation processing pipeline.

The ConversationOrchestrator turns one raw user message into a reply:

1. validate the request and resolve (or create) the session
2. append the user message
3. run fused intent recognition and the dialogue turn concurrently
4. look up knowledge for questions and low-confidence messages
5. ask the model backend, falling back to the dialogue reply on failure
6. post-process the reply (knowledge excerpt, intent-keyed prefix)
7. append the assistant message, score quality and update counters

Requests for the same session are serialized with a per-session lock, so two
concurrent messages can never interleave their read-modify-write of a session.
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Deque, Dict, List, Optional, Set

from core.conversation.context.session_store import SessionClosed, SessionStore, estimate_tokens
from core.conversation.context.storage import ConversationStorage
from core.conversation.orchestration.dialogue_engine import DialogueEngine, TurnResult
from core.conversation.understanding.context_analyzer import ContextAnalyzer
from core.conversation.understanding.engine import IntentKnowledgeEngine
from core.events import EventChannel
from core.exceptions import ConversationValidationError
from core.services.llm_backend import ChatBackend, build_chat_request, extract_reply
from models.schemas import (
    ConversationRequest,
    ConversationResult,
    ConversationResultMetadata,
    IntentResult,
    KnowledgeSearchResult,
    MessageRole,
    Session,
    new_id,
)
from .validators import InputValidator

logger = logging.getLogger(__name__)

STYLE_PREFIXES = {
    "greeting": "😊 ",
    "farewell": "👋 ",
    "thanks": "😊 ",
    "complaint": "😔 ",
}
SESSION_ENDED_RESPONSE = "本次会话已结束，请开始新的会话。"
FALLBACK_RESPONSE = "抱歉，我遇到了一些技术问题，请稍后再试。"
KNOWLEDGE_EXCERPT_PREFIX = "\n\n根据相关信息："


@dataclass
class OrchestratorConfig:
    knowledge_confidence_threshold: float = 0.7
    knowledge_limit: int = 3
    knowledge_min_relevance: float = 0.5
    knowledge_excerpt_relevance: float = 0.8
    short_reply_length: int = 100
    min_excerpt_source_length: int = 50
    excerpt_length: int = 200
    history_window: int = 5
    max_response_samples: int = 1000
    default_max_tokens: int = 2000


@dataclass
class PerformanceMetrics:
    """Rolling request counters"""
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    backend_failures: int = 0
    interrupted_requests: int = 0
    average_response_time: float = 0.0
    response_times: Deque[float] = field(default_factory=lambda: deque(maxlen=1000))

    def record(self, elapsed_ms: float, success: bool) -> None:
        if success:
            self.successful_requests += 1
        else:
            self.failed_requests += 1
        self.response_times.append(elapsed_ms)
        self.average_response_time = sum(self.response_times) / len(self.response_times)

    @property
    def error_rate(self) -> float:
        return self.failed_requests / self.total_requests if self.total_requests else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_requests": self.total_requests,
            "successful_requests": self.successful_requests,
            "failed_requests": self.failed_requests,
            "backend_failures": self.backend_failures,
            "interrupted_requests": self.interrupted_requests,
            "average_response_time": self.average_response_time,
            "error_rate": self.error_rate,
            "samples": len(self.response_times),
        }


@dataclass
class PreparedTurn:
    """Everything gathered before the backend is asked for a reply"""
    session: Session
    message: str
    intent: IntentResult
    turn: Optional[TurnResult]
    knowledge: Optional[KnowledgeSearchResult]
    chat_request: Dict[str, Any]
    started: float

    @property
    def dialogue_reply(self) -> str:
        return self.turn.response if self.turn and self.turn.response else FALLBACK_RESPONSE


class ConversationOrchestrator:
    """
    Facade over the session store, dialogue engine, intent engine and model
    backend.

    process_conversation() only raises ConversationValidationError; every
    other failure becomes a best-effort reply with a status flag.
    """

    def __init__(self, session_store: SessionStore, dialogue_engine: DialogueEngine,
                 intent_engine: IntentKnowledgeEngine, backend: ChatBackend,
                 storage: Optional[ConversationStorage] = None,
                 config: Optional[OrchestratorConfig] = None):
        self.session_store = session_store
        self.dialogue_engine = dialogue_engine
        self.intent_engine = intent_engine
        self.backend = backend
        self.storage = storage
        self.config = config or OrchestratorConfig()

        self.metrics = PerformanceMetrics(response_times=deque(maxlen=self.config.max_response_samples))
        self._locks: Dict[str, asyncio.Lock] = {}
        self._inflight: Dict[str, Optional[asyncio.Task]] = {}
        self._interrupted: Set[str] = set()

        self.conversation_processed: EventChannel[ConversationResult] = EventChannel("conversation_processed")
        session_store.session_closed.subscribe(self._on_session_closed)

    # ------------------------------------------------------------------
    # Session plumbing
    # ------------------------------------------------------------------

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock

    def _on_session_closed(self, event: SessionClosed) -> None:
        lock = self._locks.get(event.session.id)
        if lock is not None and not lock.locked():
            self._locks.pop(event.session.id, None)

    def _discard_closed_lock(self, session_id: str) -> None:
        """Drop the lock of a session that closed while a request held it"""
        if self.session_store.get(session_id) is not None:
            return
        lock = self._locks.get(session_id)
        if lock is not None and not lock.locked():
            self._locks.pop(session_id, None)

    async def _resolve_session(self, request: ConversationRequest) -> Session:
        if request.session_id:
            session = self.session_store.get(request.session_id)
            if session is None:
                session = await self.session_store.restore(request.session_id)
            if session is not None:
                if session.user_id != request.user_id:
                    raise ConversationValidationError(["Session does not belong to this user"])
                return session

        options = request.options
        return await self.session_store.create(request.user_id, {
            "model": options.model,
            "temperature": options.temperature,
            "context": options.context,
        })

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def process_conversation(self, request: ConversationRequest) -> ConversationResult:
        errors = InputValidator.validate_request(request)
        if errors:
            raise ConversationValidationError(errors)

        started = time.perf_counter()
        self.metrics.total_requests += 1
        session_id = request.session_id or ""

        try:
            session = await self._resolve_session(request)
            session_id = session.id
            async with self._lock_for(session_id):
                prepared = await self._prepare(session, request, started)
                if isinstance(prepared, ConversationResult):
                    result = prepared
                else:
                    result = await self._generate(prepared, request)
        except ConversationValidationError:
            self.metrics.total_requests -= 1
            raise
        except Exception as e:
            elapsed = self._elapsed(started)
            logger.error(f"Conversation processing error: {str(e)}", exc_info=True,
                         extra={"session_id": session_id})
            self.metrics.record(elapsed, success=False)
            return self._failure_result(session_id, request, elapsed)
        finally:
            self._discard_closed_lock(session_id)

        self.metrics.record(result.processing_time, success=True)
        if result.interrupted:
            self.metrics.interrupted_requests += 1
        self.conversation_processed.publish(result)
        return result

    async def stream_conversation(self, request: ConversationRequest) -> AsyncIterator[Dict[str, Any]]:
        """
        Same pipeline as process_conversation, streaming the reply.

        Yields ``{"type": "delta", "content": ...}`` events and finishes with
        ``{"type": "result", "data": ConversationResult}``. Nothing is yielded
        until recognition and the dialogue turn have both completed.
        """
        errors = InputValidator.validate_request(request)
        if errors:
            raise ConversationValidationError(errors)

        started = time.perf_counter()
        self.metrics.total_requests += 1
        session_id = request.session_id or ""

        try:
            session = await self._resolve_session(request)
            session_id = session.id
            async with self._lock_for(session_id):
                prepared = await self._prepare(session, request, started)
                if isinstance(prepared, ConversationResult):
                    result = prepared
                else:
                    self._inflight[session_id] = None
                    self._interrupted.discard(session_id)
                    parts: List[str] = []
                    degraded = False
                    interrupted = False
                    try:
                        async for delta in self.backend.chat_stream(prepared.chat_request):
                            if session_id in self._interrupted:
                                interrupted = True
                                break
                            parts.append(delta)
                            yield {"type": "delta", "content": delta}
                    except Exception as e:
                        logger.warning(f"Streaming backend failed for {session_id}: {str(e)}")
                        self.metrics.backend_failures += 1
                        degraded = True
                    finally:
                        self._inflight.pop(session_id, None)
                        if session_id in self._interrupted:
                            interrupted = True
                        self._interrupted.discard(session_id)

                    if interrupted:
                        result = self._interrupted_result(prepared)
                    elif degraded and not parts:
                        fallback = prepared.dialogue_reply
                        yield {"type": "delta", "content": fallback}
                        result = await self._finalize(prepared, fallback, None, None, degraded=True)
                    else:
                        reply = "".join(parts)
                        result = await self._finalize(prepared, reply, None, None, degraded=degraded)
        except ConversationValidationError:
            self.metrics.total_requests -= 1
            raise
        except Exception as e:
            elapsed = self._elapsed(started)
            logger.error(f"Streaming conversation error: {str(e)}", exc_info=True,
                         extra={"session_id": session_id})
            self.metrics.record(elapsed, success=False)
            result = self._failure_result(session_id, request, elapsed)
            yield {"type": "delta", "content": result.response}
            yield {"type": "result", "data": result}
            return
        finally:
            self._discard_closed_lock(session_id)

        self.metrics.record(result.processing_time, success=True)
        if result.interrupted:
            self.metrics.interrupted_requests += 1
        self.conversation_processed.publish(result)
        yield {"type": "result", "data": result}

    async def interrupt(self, session_id: str, reason: str = "user_interrupt") -> bool:
        """
        Stop in-flight generation for a session and note the interruption.

        The dialogue turn already taken is kept; only the reply is dropped.
        Returns False when there is nothing to interrupt.
        """
        cancelled = False
        if session_id in self._inflight:
            self._interrupted.add(session_id)
            task = self._inflight.get(session_id)
            if task is not None and not task.done():
                task.cancel()
            cancelled = True

        recorded = await self.dialogue_engine.handle_interruption(session_id, reason)
        if cancelled or recorded:
            logger.info(f"Interrupted session {session_id}: {reason}")
        return cancelled or recorded

    async def resume(self, session_id: str) -> Optional[str]:
        return await self.dialogue_engine.resume_dialogue(session_id)

    def get_performance_stats(self) -> Dict[str, Any]:
        return self.metrics.to_dict()

    # ------------------------------------------------------------------
    # Pipeline stages
    # ------------------------------------------------------------------

    async def _prepare(self, session: Session, request: ConversationRequest, started: float):
        message = request.message

        updated = await self.session_store.add_message(session.id, MessageRole.USER, message)
        if updated is None:
            return self._terminated_result(session, started)

        recognition_context = self.dialogue_engine.recognition_context(session.id)
        intent, turn = await asyncio.gather(
            self.intent_engine.recognize_intent(
                message, context=recognition_context, session_id=session.id, mode="fused"
            ),
            self.dialogue_engine.process_turn(session.id, message),
        )

        knowledge = None
        if intent.intent == "question" or intent.confidence < self.config.knowledge_confidence_threshold:
            knowledge = await self.intent_engine.search_knowledge(
                message,
                limit=self.config.knowledge_limit,
                min_relevance=self.config.knowledge_min_relevance,
            )

        options = request.options
        chat_request = build_chat_request(
            self._history_window(updated, message),
            model=options.model or updated.metadata.model,
            temperature=options.temperature if options.temperature is not None else updated.metadata.temperature,
            max_tokens=options.max_tokens or self.config.default_max_tokens,
        )

        return PreparedTurn(
            session=updated,
            message=message,
            intent=intent,
            turn=turn,
            knowledge=knowledge,
            chat_request=chat_request,
            started=started,
        )

    def _history_window(self, session: Session, message: str) -> List[Dict[str, str]]:
        """The messages before the new one, capped, followed by the new user message"""
        previous = session.conversation_history[:-1][-self.config.history_window:]
        window = [{"role": m.role.value, "content": m.content} for m in previous]
        window.append({"role": MessageRole.USER.value, "content": message})
        return window

    async def _generate(self, prepared: PreparedTurn, request: ConversationRequest) -> ConversationResult:
        session_id = prepared.session.id
        self._interrupted.discard(session_id)
        task = asyncio.ensure_future(self.backend.chat(prepared.chat_request))
        self._inflight[session_id] = task

        try:
            response = await task
        except asyncio.CancelledError:
            if session_id not in self._interrupted:
                raise
            return self._interrupted_result(prepared)
        except Exception as e:
            logger.warning(f"Model backend failed, using dialogue reply: {str(e)}",
                           extra={"session_id": session_id})
            self.metrics.backend_failures += 1
            return await self._finalize(prepared, prepared.dialogue_reply, None, None, degraded=True)
        finally:
            self._inflight.pop(session_id, None)
            self._interrupted.discard(session_id)

        try:
            reply = extract_reply(response)
        except Exception as e:
            logger.warning(f"Unusable backend response: {str(e)}")
            reply = ""
        if not reply.strip():
            self.metrics.backend_failures += 1
            return await self._finalize(prepared, prepared.dialogue_reply, None, None, degraded=True)

        usage = response.get("usage") or {}
        tokens = usage.get("completion_tokens") or usage.get("total_tokens")
        return await self._finalize(prepared, self.post_process(reply, prepared), tokens,
                                    response.get("model"), degraded=False)

    def post_process(self, reply: str, prepared: PreparedTurn) -> str:
        knowledge = prepared.knowledge
        if knowledge and knowledge.results:
            top = knowledge.results[0]
            if (top.relevance_score > self.config.knowledge_excerpt_relevance and
                    len(reply) < self.config.short_reply_length and
                    len(top.content) > self.config.min_excerpt_source_length):
                reply = f"{reply}{KNOWLEDGE_EXCERPT_PREFIX}{top.content[:self.config.excerpt_length]}..."

        prefix = STYLE_PREFIXES.get(prepared.intent.intent)
        if prefix:
            reply = f"{prefix}{reply}"
        return reply

    async def _finalize(self, prepared: PreparedTurn, reply: str, tokens: Optional[int],
                        model: Optional[str], degraded: bool) -> ConversationResult:
        session = prepared.session
        token_count = tokens if tokens is not None else estimate_tokens(reply)

        updated = await self.session_store.add_message(
            session.id, MessageRole.ASSISTANT, reply,
            metadata={"intent": prepared.intent.intent, "degraded": degraded},
            tokens=token_count,
        )
        terminated = updated is None
        message_id = session.conversation_history[-1].id if session.conversation_history else new_id()

        elapsed = self._elapsed(prepared.started)
        dialogue_intent = prepared.turn.intent.intent if prepared.turn else None
        report = self.intent_engine.evaluate_quality(
            session.id, message_id, prepared.message, reply,
            response_time=elapsed,
            knowledge=prepared.knowledge,
            error=degraded,
            context_consistency=ContextAnalyzer.context_consistency(dialogue_intent, prepared.intent.intent),
        )
        await self._save_report(report)

        return ConversationResult(
            session_id=session.id,
            message_id=message_id,
            response=reply,
            intent=prepared.intent.intent,
            confidence=prepared.intent.confidence,
            entities=prepared.intent.entities,
            quality_score=report.overall_score,
            processing_time=self._elapsed(prepared.started),
            metadata=ConversationResultMetadata(
                model=model or session.metadata.model,
                tokens=token_count,
                context=session.context.model_dump(mode="json"),
            ),
            degraded=degraded,
            session_terminated=terminated,
        )

    async def _save_report(self, report) -> None:
        if self.storage is None:
            return
        try:
            await self.storage.save_quality_report(report)
        except Exception as e:
            logger.warning(f"Failed to save quality report for {report.session_id}: {str(e)}")

    # ------------------------------------------------------------------
    # Result builders
    # ------------------------------------------------------------------

    def _elapsed(self, started: float) -> float:
        return (time.perf_counter() - started) * 1000

    def _terminated_result(self, session: Session, started: float) -> ConversationResult:
        return ConversationResult(
            session_id=session.id,
            message_id=new_id(),
            response=SESSION_ENDED_RESPONSE,
            intent="unknown",
            confidence=0.0,
            processing_time=self._elapsed(started),
            metadata=ConversationResultMetadata(model=session.metadata.model),
            session_terminated=True,
        )

    def _interrupted_result(self, prepared: PreparedTurn) -> ConversationResult:
        return ConversationResult(
            session_id=prepared.session.id,
            message_id=new_id(),
            response="",
            intent=prepared.intent.intent,
            confidence=prepared.intent.confidence,
            entities=prepared.intent.entities,
            processing_time=self._elapsed(prepared.started),
            metadata=ConversationResultMetadata(
                model=prepared.session.metadata.model,
                context=prepared.session.context.model_dump(mode="json"),
            ),
            interrupted=True,
        )

    def _failure_result(self, session_id: str, request: ConversationRequest, elapsed: float) -> ConversationResult:
        return ConversationResult(
            session_id=session_id,
            message_id=new_id(),
            response=FALLBACK_RESPONSE,
            intent="unknown",
            confidence=0.0,
            processing_time=elapsed,
            metadata=ConversationResultMetadata(
                model=request.options.model or self.session_store.config.default_model,
            ),
            degraded=True,
        )
