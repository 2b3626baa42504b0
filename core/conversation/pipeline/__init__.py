"""Conversation processing pipeline components"""

from .processor import (
    ConversationOrchestrator,
    OrchestratorConfig,
    PerformanceMetrics,
    PreparedTurn,
)
from .health import HealthMonitor, classify
from .validators import InputValidator

__all__ = [
    'ConversationOrchestrator',
    'OrchestratorConfig',
    'PerformanceMetrics',
    'PreparedTurn',
    'HealthMonitor',
    'classify',
    'InputValidator',
]
