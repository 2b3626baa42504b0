"""
Multi-signal intent detection.

Three independent strategies look at every message:

1. lexical rules: ordered keyword containment checks with fixed confidences
2. patterns: precompiled regexes per intent, best confidence wins
3. context: heuristics over the previous turn (see ContextAnalyzer)

Their votes are weighted 0.5 / 0.3 / 0.2 into a per-intent accumulator and the
highest total wins. The weights and confidences are tuning policy rather than
anything learned; they are kept as module constants so they can be swapped.
"""

import re
import logging
from typing import Dict, Any, List, Optional, Sequence, Tuple
from dataclasses import dataclass, field
from enum import Enum

from models.schemas import IntentAlternative, IntentResult
from .context_analyzer import ContextAnalyzer
from .entity_extractor import EntityExtractor

logger = logging.getLogger(__name__)


class IntentType(str, Enum):
    """All supported intent types"""
    GREETING = "greeting"
    FAREWELL = "farewell"
    HELP_REQUEST = "help_request"
    QUESTION = "question"
    THANKS = "thanks"
    COMPLAINT = "complaint"
    REQUEST = "request"
    FOLLOW_UP_QUESTION = "follow_up_question"
    GENERAL = "general"
    UNKNOWN = "unknown"


@dataclass
class IntentPattern:
    """Represents an intent pattern with metadata"""
    pattern: str
    intent_type: IntentType
    confidence: float = 0.8

    def __post_init__(self):
        self.compiled = re.compile(self.pattern, re.IGNORECASE)

    def matches(self, text: str) -> bool:
        return bool(self.compiled.search(text))


@dataclass
class StrategyResult:
    """One strategy's vote"""
    strategy: str
    intent: str
    confidence: float
    entities: Dict[str, Any] = field(default_factory=dict)
    slots: Dict[str, Any] = field(default_factory=dict)
    matched: Optional[str] = None


# Checked in order; the first intent with a keyword present wins
LEXICAL_RULES: List[Tuple[IntentType, float, List[str]]] = [
    (IntentType.GREETING, 0.9, ["你好", "hello", "hi", "嗨", "早上好", "下午好", "晚上好"]),
    (IntentType.FAREWELL, 0.9, ["再见", "bye", "goodbye", "拜拜", "晚安"]),
    (IntentType.HELP_REQUEST, 0.8, ["帮助", "help", "怎么用", "如何使用", "不会", "不懂"]),
    (IntentType.QUESTION, 0.7, ["什么", "怎么", "为什么", "如何", "？", "?", "吗"]),
    (IntentType.THANKS, 0.8, ["谢谢", "thank", "thanks", "感谢", "多谢"]),
    (IntentType.COMPLAINT, 0.7, ["不好", "不行", "错误", "问题", "bug", "故障"]),
    (IntentType.REQUEST, 0.6, ["请", "能不能", "可以", "能否", "希望", "想要"]),
]
LEXICAL_DEFAULT_CONFIDENCE = 0.5

DEFAULT_PATTERNS = [
    IntentPattern(r"^(你好|hello(?![a-z])|hi(?![a-z])|嗨)", IntentType.GREETING),
    IntentPattern(r"(早上好|下午好|晚上好)", IntentType.GREETING),
    IntentPattern(r"(再见|(?<![a-z])bye|goodbye|拜拜|晚安)$", IntentType.FAREWELL),
    IntentPattern(r"(帮助|(?<![a-z])help(?![a-z])|怎么用|如何使用|不会|不懂)", IntentType.HELP_REQUEST),
    IntentPattern(r"(什么|怎么|为什么|如何|？|\?|吗)", IntentType.QUESTION),
    IntentPattern(r"(谢谢|(?<![a-z])thanks?(?![a-z])|感谢|多谢)", IntentType.THANKS),
]

FUSION_WEIGHTS = (0.5, 0.3, 0.2)
QUESTION_WORDS = {
    "为什么": "why", "怎么": "how", "如何": "how", "什么": "what",
}
TRAILING_PUNCTUATION = "!！。.~～ "


def _contains_keyword(text: str, keyword: str) -> bool:
    # ASCII keywords must not sit inside a longer word ("hi" in "this")
    if keyword.isascii() and keyword.isalpha():
        return re.search(rf"(?<![a-z]){re.escape(keyword)}(?![a-z])", text) is not None
    return keyword in text


class IntentDetector:
    """
    Rule-based intent recognizer that fuses three signals.

    detect() never raises for ordinary text; callers that need a hard
    guarantee wrap it (see IntentKnowledgeEngine).
    """

    def __init__(self, entity_extractor: Optional[EntityExtractor] = None,
                 context_analyzer: Optional[ContextAnalyzer] = None,
                 patterns: Optional[List[IntentPattern]] = None,
                 weights: Sequence[float] = FUSION_WEIGHTS):
        self.entity_extractor = entity_extractor or EntityExtractor()
        self.context_analyzer = context_analyzer or ContextAnalyzer()
        self.patterns = list(patterns if patterns is not None else DEFAULT_PATTERNS)
        self.weights = tuple(weights)

    def detect(self, message: str, context: Optional[Dict[str, Any]] = None,
               mode: str = "fused") -> IntentResult:
        if mode == "lexical":
            return self.to_intent_result(self.rule_based(message))

        results = [
            self.rule_based(message),
            self.pattern_based(message),
            self.context_based(message, context),
        ]
        return self.fuse(results, self.weights)

    # ------------------------------------------------------------------
    # Strategies
    # ------------------------------------------------------------------

    def rule_based(self, message: str) -> StrategyResult:
        text = self._normalize(message)
        if not text:
            return StrategyResult("lexical", IntentType.GENERAL.value, LEXICAL_DEFAULT_CONFIDENCE)

        entities = self.entity_extractor.extract_entities(message)
        for intent_type, confidence, keywords in LEXICAL_RULES:
            hit = next((kw for kw in keywords if _contains_keyword(text, kw)), None)
            if hit is None:
                continue
            return StrategyResult(
                strategy="lexical",
                intent=intent_type.value,
                confidence=confidence,
                entities=entities,
                slots=self._slots_for(intent_type, text, hit),
                matched=hit,
            )

        return StrategyResult("lexical", IntentType.GENERAL.value, LEXICAL_DEFAULT_CONFIDENCE,
                              entities=entities)

    def pattern_based(self, message: str) -> StrategyResult:
        text = self._normalize(message).rstrip(TRAILING_PUNCTUATION)
        best = StrategyResult("pattern", IntentType.GENERAL.value, 0.0)
        for pattern in self.patterns:
            if pattern.confidence > best.confidence and pattern.matches(text):
                best = StrategyResult("pattern", pattern.intent_type.value, pattern.confidence,
                                      matched=pattern.pattern)
        return best

    def context_based(self, message: str, context: Optional[Dict[str, Any]]) -> StrategyResult:
        clue = self.context_analyzer.analyze_context(message, context)
        return StrategyResult(
            strategy="context",
            intent=clue.clue_type,
            confidence=clue.confidence,
            slots=dict(clue.inferred_data),
            matched=clue.evidence or None,
        )

    # ------------------------------------------------------------------
    # Fusion
    # ------------------------------------------------------------------

    @staticmethod
    def fuse(results: Sequence[StrategyResult], weights: Sequence[float] = FUSION_WEIGHTS) -> IntentResult:
        """
        Weighted vote over strategy outputs.

        Strategies with zero confidence do not vote. Entities and slots are
        merged in strategy order, so later strategies overwrite earlier ones
        on key collisions.
        """
        scores: Dict[str, float] = {}
        entities: Dict[str, Any] = {}
        slots: Dict[str, Any] = {}

        for index, result in enumerate(results):
            weight = weights[index] if index < len(weights) else 0.1
            if result.intent and result.confidence > 0:
                scores[result.intent] = scores.get(result.intent, 0.0) + result.confidence * weight
            entities.update(result.entities)
            slots.update(result.slots)

        if not scores:
            return IntentResult(intent=IntentType.GENERAL.value, confidence=LEXICAL_DEFAULT_CONFIDENCE,
                                entities=entities, slots=slots)

        ranked = sorted(scores.items(), key=lambda item: item[1], reverse=True)
        best_intent, best_score = ranked[0]
        return IntentResult(
            intent=best_intent,
            confidence=round(min(best_score, 1.0), 6),
            entities=entities,
            slots=slots,
            alternatives=[
                IntentAlternative(intent=intent, confidence=round(score, 6))
                for intent, score in ranked[1:4]
            ],
        )

    @staticmethod
    def to_intent_result(result: StrategyResult) -> IntentResult:
        return IntentResult(
            intent=result.intent,
            confidence=result.confidence,
            entities=dict(result.entities),
            slots=dict(result.slots),
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _normalize(self, message: str) -> str:
        if not message or not isinstance(message, str):
            return ""
        return re.sub(r"\s+", " ", message.lower()).strip()

    def _slots_for(self, intent_type: IntentType, text: str, hit: str) -> Dict[str, Any]:
        if intent_type == IntentType.QUESTION:
            for word, kind in QUESTION_WORDS.items():
                if word in text:
                    return {"question_type": kind}
            return {"question_type": "yes_no" if hit in ("吗",) else "open"}
        if intent_type == IntentType.REQUEST:
            return {"request_marker": hit}
        return {}
