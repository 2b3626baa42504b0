"""Intent understanding, knowledge lookup and quality scoring components"""

from .intent_detector import IntentDetector, IntentType, IntentPattern, StrategyResult
from .context_analyzer import ContextAnalyzer, ContextualClue
from .entity_extractor import EntityExtractor, EntityType
from .quality_monitor import QualityMonitor, QualityThresholds
from .engine import IntentKnowledgeEngine

__all__ = [
    'IntentDetector',
    'IntentType',
    'IntentPattern',
    'StrategyResult',
    'ContextAnalyzer',
    'ContextualClue',
    'EntityExtractor',
    'EntityType',
    'QualityMonitor',
    'QualityThresholds',
    'IntentKnowledgeEngine',
]
