"""
Conversation API.

Every endpoint answers with the ``{success, data, message}`` envelope. The
runtime is taken from ``app.state.runtime``, which main.py sets in its
lifespan and tests set directly.
"""

import json
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from core.container import ConversationRuntime
from core.conversation.pipeline import InputValidator
from core.exceptions import ConversationValidationError
from models.schemas import ConversationOptions, ConversationRequest, HealthStatus

logger = logging.getLogger(__name__)

router = APIRouter()


class SessionCreateRequest(BaseModel):
    user_id: str
    options: ConversationOptions = Field(default_factory=ConversationOptions)


class InterruptRequest(BaseModel):
    reason: str = "user_interrupt"


class IntentRequest(BaseModel):
    text: str
    context: Optional[Dict[str, Any]] = None
    session_id: Optional[str] = None


class KnowledgeSearchRequest(BaseModel):
    query: str
    category: Optional[str] = None
    limit: int = Field(default=10, ge=1, le=50)
    min_relevance: float = Field(default=0.3, ge=0.0, le=1.0)


def get_runtime(request: Request) -> ConversationRuntime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status_code=503, detail="Conversation runtime is not initialized")
    return runtime


def envelope(data: Any = None, message: str = "ok", success: bool = True) -> Dict[str, Any]:
    return {"success": success, "data": data, "message": message}


@router.post("/conversation")
async def process_conversation(body: ConversationRequest,
                               runtime: ConversationRuntime = Depends(get_runtime)):
    """Process one user message and return the reply bundle"""
    logger.info(
        "Conversation request received",
        extra={"session_id": body.session_id, "user_id": body.user_id, "message_length": len(body.message)},
    )
    try:
        result = await runtime.orchestrator.process_conversation(body)
    except ConversationValidationError as e:
        logger.warning(f"Validation error in conversation request: {str(e)}")
        raise HTTPException(status_code=400, detail=e.errors)

    return envelope(result.model_dump(mode="json"))


@router.post("/conversation/stream")
async def stream_conversation(body: ConversationRequest,
                              runtime: ConversationRuntime = Depends(get_runtime)):
    """
    Stream a reply as newline-delimited JSON.

    Each line is either ``{"type": "delta", "content": ...}`` or the closing
    ``{"type": "result", "data": {...}}``.
    """
    errors = InputValidator.validate_request(body)
    if errors:
        raise HTTPException(status_code=400, detail=errors)

    async def events():
        async for event in runtime.orchestrator.stream_conversation(body):
            if event["type"] == "result":
                event = {"type": "result", "data": event["data"].model_dump(mode="json")}
            yield json.dumps(event, ensure_ascii=False) + "\n"

    return StreamingResponse(events(), media_type="application/x-ndjson")


@router.post("/session")
async def create_session(body: SessionCreateRequest,
                         runtime: ConversationRuntime = Depends(get_runtime)):
    valid, error = InputValidator.validate_user_id(body.user_id)
    errors = [] if valid else [error]
    errors.extend(InputValidator.validate_options(body.options))
    if errors:
        raise HTTPException(status_code=400, detail=errors)

    session = await runtime.session_store.create(body.user_id, {
        "model": body.options.model,
        "temperature": body.options.temperature,
        "context": body.options.context,
    })
    return envelope(jsonable_summary(session), message="Session created")


@router.get("/session/{session_id}")
async def get_session(session_id: str, runtime: ConversationRuntime = Depends(get_runtime)):
    session = runtime.session_store.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")

    data = session.model_dump(mode="json")
    dialogue = runtime.dialogue_engine.get_dialogue(session_id)
    data["dialogue"] = dialogue.to_dict() if dialogue else None
    return envelope(data)


@router.get("/sessions/{user_id}")
async def get_user_sessions(user_id: str, runtime: ConversationRuntime = Depends(get_runtime)):
    sessions = runtime.session_store.get_user_sessions(user_id)
    return envelope([jsonable_summary(s) for s in sessions])


@router.delete("/session/{session_id}")
async def terminate_session(session_id: str, runtime: ConversationRuntime = Depends(get_runtime)):
    if not await runtime.session_store.terminate(session_id, "manual"):
        raise HTTPException(status_code=404, detail="Session not found")
    return envelope({"session_id": session_id}, message="Session terminated")


@router.post("/session/{session_id}/interrupt")
async def interrupt_session(session_id: str, body: InterruptRequest,
                            runtime: ConversationRuntime = Depends(get_runtime)):
    if runtime.session_store.get(session_id) is None:
        raise HTTPException(status_code=404, detail="Session not found")
    interrupted = await runtime.orchestrator.interrupt(session_id, body.reason)
    return envelope({"interrupted": interrupted})


@router.post("/session/{session_id}/resume")
async def resume_session(session_id: str, runtime: ConversationRuntime = Depends(get_runtime)):
    response = await runtime.orchestrator.resume(session_id)
    if response is None:
        raise HTTPException(status_code=404, detail="No dialogue for this session")
    return envelope({"response": response})


@router.post("/intent")
async def recognize_intent(body: IntentRequest, runtime: ConversationRuntime = Depends(get_runtime)):
    valid, error = InputValidator.validate_message(body.text)
    if not valid:
        raise HTTPException(status_code=400, detail=[error])
    result = await runtime.intent_engine.recognize_intent(
        body.text, context=body.context, session_id=body.session_id,
    )
    return envelope(result.model_dump(mode="json"))


@router.post("/knowledge/search")
async def search_knowledge(body: KnowledgeSearchRequest,
                           runtime: ConversationRuntime = Depends(get_runtime)):
    if not body.query.strip():
        raise HTTPException(status_code=400, detail=["Query cannot be empty"])
    result = await runtime.intent_engine.search_knowledge(
        body.query, category=body.category, limit=body.limit, min_relevance=body.min_relevance,
    )
    return envelope(result.model_dump(mode="json"))


@router.get("/health")
async def system_health(runtime: ConversationRuntime = Depends(get_runtime)):
    health = await runtime.health_monitor.check()
    payload = envelope(health.model_dump(mode="json"), message=health.status.value,
                       success=health.status != HealthStatus.UNHEALTHY)
    status_code = 503 if health.status == HealthStatus.UNHEALTHY else 200
    return JSONResponse(status_code=status_code, content=payload)


@router.get("/stats")
async def system_stats(runtime: ConversationRuntime = Depends(get_runtime)):
    return envelope({
        "performance": runtime.orchestrator.get_performance_stats(),
        "sessions": runtime.session_store.get_stats(),
        "dialogues": runtime.dialogue_engine.get_stats(),
    })


def jsonable_summary(session) -> Dict[str, Any]:
    summary = session.summary()
    summary["created_at"] = summary["created_at"].isoformat()
    summary["last_activity"] = summary["last_activity"].isoformat()
    return summary
