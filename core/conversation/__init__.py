"""
Core conversation handling system.

- context: sessions, timeouts and persistence
- orchestration: dialogue state machine and per-session dialogue state
- understanding: intent recognition, entity extraction and quality scoring
- knowledge: keyword-scored knowledge retrieval
- pipeline: the orchestrator and health aggregation
"""

from .context import (
    ConversationStorage,
    InMemoryConversationStorage,
    PostgresConversationStorage,
    SessionConfig,
    SessionStore,
)
from .orchestration import (
    DialogueConfig,
    DialogueEngine,
    DialogueStateMachine,
    TransitionRules,
)
from .understanding import (
    IntentDetector,
    IntentKnowledgeEngine,
    EntityExtractor,
    ContextAnalyzer,
    QualityMonitor,
)
from .knowledge import KnowledgeBase
from .pipeline import (
    ConversationOrchestrator,
    OrchestratorConfig,
    HealthMonitor,
)

__all__ = [
    # Context
    'ConversationStorage',
    'InMemoryConversationStorage',
    'PostgresConversationStorage',
    'SessionConfig',
    'SessionStore',

    # Orchestration
    'DialogueConfig',
    'DialogueEngine',
    'DialogueStateMachine',
    'TransitionRules',

    # Understanding
    'IntentDetector',
    'IntentKnowledgeEngine',
    'EntityExtractor',
    'ContextAnalyzer',
    'QualityMonitor',

    # Knowledge
    'KnowledgeBase',

    # Pipeline
    'ConversationOrchestrator',
    'OrchestratorConfig',
    'HealthMonitor',
]
