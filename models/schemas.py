"""Data models for the conversation orchestration engine"""
from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, List, Dict, Any
from enum import Enum
from datetime import datetime, timezone
import uuid


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class SessionStatus(str, Enum):
    """Session lifecycle states"""
    ACTIVE = "active"
    IDLE = "idle"
    EXPIRED = "expired"
    TERMINATED = "terminated"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.EXPIRED, SessionStatus.TERMINATED)


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class ConversationMessage(BaseModel):
    """A single message in a session transcript"""
    id: str = Field(default_factory=new_id)
    role: MessageRole
    content: str
    timestamp: datetime = Field(default_factory=utcnow)
    metadata: Optional[Dict[str, Any]] = None


class SessionMetadata(BaseModel):
    """Bookkeeping for a session"""
    schema_version: int = 1
    created_at: datetime = Field(default_factory=utcnow)
    last_activity: datetime = Field(default_factory=utcnow)
    message_count: int = 0
    total_tokens: int = 0
    model: str = "deepseek-chat"
    temperature: float = 0.7


class SessionContext(BaseModel):
    """
    Session-level context.

    The typed keys are the ones the engine itself writes; callers may add
    their own keys, which are kept as extras.
    """
    model_config = ConfigDict(extra="allow")

    schema_version: int = 1
    dialogue_id: Optional[str] = None
    current_state: Optional[str] = None
    interrupted: bool = False
    interruption_reason: Optional[str] = None
    last_intent: Optional[str] = None

    def merged(self, patch: Dict[str, Any]) -> "SessionContext":
        """Shallow merge, returning a new validated context"""
        return SessionContext.model_validate({**self.model_dump(), **patch})


class Session(BaseModel):
    """A bounded conversation for one user"""
    id: str = Field(default_factory=new_id)
    user_id: str
    status: SessionStatus = SessionStatus.ACTIVE
    context: SessionContext = Field(default_factory=SessionContext)
    metadata: SessionMetadata = Field(default_factory=SessionMetadata)
    conversation_history: List[ConversationMessage] = Field(default_factory=list)

    def to_record(self) -> Dict[str, Any]:
        """Shape persisted by the storage layer"""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "status": self.status.value,
            "context": self.context.model_dump(mode="json"),
            "metadata": self.metadata.model_dump(mode="json"),
            "conversation_history": [m.model_dump(mode="json") for m in self.conversation_history],
            "created_at": self.metadata.created_at.isoformat(),
            "last_activity": self.metadata.last_activity.isoformat(),
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Session":
        return cls(
            id=record["id"],
            user_id=record["user_id"],
            status=SessionStatus(record.get("status", "active")),
            context=SessionContext.model_validate(record.get("context") or {}),
            metadata=SessionMetadata.model_validate(record.get("metadata") or {}),
            conversation_history=[
                ConversationMessage.model_validate(m)
                for m in record.get("conversation_history") or []
            ],
        )

    def summary(self) -> Dict[str, Any]:
        return {
            "session_id": self.id,
            "user_id": self.user_id,
            "status": self.status.value,
            "message_count": len(self.conversation_history),
            "created_at": self.metadata.created_at,
            "last_activity": self.metadata.last_activity,
        }


class DialogueContext(BaseModel):
    """What the dialogue engine remembers about a conversation between turns"""
    schema_version: int = 1
    user_name: Optional[str] = None
    last_intent: Optional[str] = None
    last_entities: Dict[str, Any] = Field(default_factory=dict)
    last_response: Optional[str] = None
    interruption_reason: Optional[str] = None
    interrupted_at: Optional[datetime] = None


class IntentAlternative(BaseModel):
    intent: str
    confidence: float


class IntentResult(BaseModel):
    """Outcome of intent recognition"""
    intent: str
    confidence: float = Field(ge=0.0, le=1.0)
    entities: Dict[str, Any] = Field(default_factory=dict)
    slots: Dict[str, Any] = Field(default_factory=dict)
    alternatives: List[IntentAlternative] = Field(default_factory=list)
    processing_time: float = 0.0

    @classmethod
    def unknown(cls, processing_time: float = 0.0) -> "IntentResult":
        return cls(intent="unknown", confidence=0.0, processing_time=processing_time)


class KnowledgeEntry(BaseModel):
    """A static reference document eligible for retrieval"""
    id: str = Field(default_factory=new_id)
    title: str
    content: str
    category: str = "general"
    tags: List[str] = Field(default_factory=list)
    relevance_score: float = 0.0
    metadata: Dict[str, Any] = Field(default_factory=dict)


class KnowledgeSearchResult(BaseModel):
    query: str
    results: List[KnowledgeEntry] = Field(default_factory=list)
    total_results: int = 0
    search_time: float = 0.0
    suggestions: List[str] = Field(default_factory=list)


class QualityMetrics(BaseModel):
    """Per-exchange quality sub-metrics"""
    response_time: float = 0.0
    relevance_score: float = 0.0
    completeness_score: float = 0.0
    clarity_score: float = 0.0
    error_rate: float = 0.0
    context_consistency: float = 0.0
    user_satisfaction: Optional[float] = None


class QualityReport(BaseModel):
    """Post-hoc composite score for one exchange"""
    model_config = ConfigDict(frozen=True)

    session_id: str
    message_id: str
    overall_score: float
    metrics: QualityMetrics
    recommendations: List[str] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=utcnow)


class ConversationOptions(BaseModel):
    model: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    context: Optional[Dict[str, Any]] = None


class ConversationRequest(BaseModel):
    """Inbound chat request"""
    session_id: Optional[str] = None
    user_id: str
    message: str
    options: ConversationOptions = Field(default_factory=ConversationOptions)


class ConversationResultMetadata(BaseModel):
    model: str
    tokens: int = 0
    context: Dict[str, Any] = Field(default_factory=dict)


class ConversationResult(BaseModel):
    """Reply bundle returned to the caller"""
    session_id: str
    message_id: str
    response: str
    intent: str
    confidence: float
    entities: Dict[str, Any] = Field(default_factory=dict)
    quality_score: float = 0.0
    processing_time: float = 0.0
    metadata: ConversationResultMetadata
    degraded: bool = False
    session_terminated: bool = False
    interrupted: bool = False


class SystemHealth(BaseModel):
    status: HealthStatus
    services: Dict[str, bool]
    metrics: Dict[str, float] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)
