"""
Exchange quality scoring.

Each exchange is scored on six sub-metrics which are combined with fixed
weights. Response time and error rate are inverted before weighting so that
lower is better for both; everything is clamped so the overall score stays in
[0, 1]. The weights and thresholds are policy and can be replaced through the
constructor.
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from models.schemas import KnowledgeSearchResult, QualityMetrics, QualityReport
from core.conversation.knowledge.knowledge_base import preprocess_text

logger = logging.getLogger(__name__)

DEFAULT_WEIGHTS: Dict[str, float] = {
    "response_time": 0.10,
    "relevance_score": 0.30,
    "completeness_score": 0.25,
    "clarity_score": 0.20,
    "error_rate": 0.10,
    "context_consistency": 0.05,
}


@dataclass
class QualityThresholds:
    response_time: float = 5000.0  # ms
    relevance_score: float = 0.7
    completeness_score: float = 0.8
    clarity_score: float = 0.7
    error_rate: float = 0.1


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def _tokens(text: str) -> set:
    """ASCII words plus individual CJK characters"""
    processed = preprocess_text(text)
    tokens = set(re.findall(r"[a-z0-9]{2,}", processed))
    tokens.update(re.findall(r"[\u4e00-\u9fa5]", processed))
    return tokens


class QualityMonitor:
    """Computes a QualityReport for one user/assistant exchange"""

    IDEAL_SENTENCE_LENGTH = 40
    SENTENCE_SPLIT = re.compile(r"[。！？.!?\n]+")

    def __init__(self, weights: Optional[Dict[str, float]] = None,
                 thresholds: Optional[QualityThresholds] = None):
        self.weights = dict(weights or DEFAULT_WEIGHTS)
        self.thresholds = thresholds or QualityThresholds()

    def evaluate(self, session_id: str, message_id: str, user_input: str, reply: str,
                 response_time: float = 0.0,
                 knowledge: Optional[KnowledgeSearchResult] = None,
                 error: bool = False,
                 context_consistency: float = 1.0,
                 overrides: Optional[Dict[str, Any]] = None) -> QualityReport:
        metrics = QualityMetrics(
            response_time=response_time,
            relevance_score=self.relevance(user_input, reply, knowledge),
            completeness_score=self.completeness(reply),
            clarity_score=self.clarity(reply),
            error_rate=1.0 if error else 0.0,
            context_consistency=_clamp(context_consistency),
        )
        if overrides:
            metrics = metrics.model_copy(update=overrides)

        return QualityReport(
            session_id=session_id,
            message_id=message_id,
            overall_score=self.overall_score(metrics),
            metrics=metrics,
            recommendations=self.recommendations(metrics),
        )

    def overall_score(self, metrics: QualityMetrics) -> float:
        time_score = max(0.0, 1 - metrics.response_time / self.thresholds.response_time)
        error_score = max(0.0, 1 - metrics.error_rate)

        score = (
            _clamp(time_score) * self.weights["response_time"] +
            _clamp(metrics.relevance_score) * self.weights["relevance_score"] +
            _clamp(metrics.completeness_score) * self.weights["completeness_score"] +
            _clamp(metrics.clarity_score) * self.weights["clarity_score"] +
            _clamp(error_score) * self.weights["error_rate"] +
            _clamp(metrics.context_consistency) * self.weights["context_consistency"]
        )
        return _clamp(score)

    def recommendations(self, metrics: QualityMetrics) -> List[str]:
        t = self.thresholds
        recommendations = []
        if metrics.response_time > t.response_time:
            recommendations.append("响应时间过长，建议优化模型性能或减少处理复杂度")
        if metrics.relevance_score < t.relevance_score:
            recommendations.append("回答相关性较低，建议改进意图识别和知识库匹配")
        if metrics.completeness_score < t.completeness_score:
            recommendations.append("回答不够完整，建议提供更详细的信息")
        if metrics.clarity_score < t.clarity_score:
            recommendations.append("回答不够清晰，建议简化表达方式")
        if metrics.error_rate > t.error_rate:
            recommendations.append("错误率较高，建议检查模型输出和异常处理")
        return recommendations

    # ------------------------------------------------------------------
    # Sub-metric heuristics
    # ------------------------------------------------------------------

    def relevance(self, user_input: str, reply: str,
                  knowledge: Optional[KnowledgeSearchResult] = None) -> float:
        """Share of the input's tokens echoed in the reply, raised by a strong knowledge hit"""
        input_tokens = _tokens(user_input)
        if input_tokens:
            overlap = len(input_tokens & _tokens(reply)) / len(input_tokens)
        else:
            overlap = 0.5
        best_hit = knowledge.results[0].relevance_score if knowledge and knowledge.results else 0.0
        return _clamp(max(overlap, best_hit))

    def completeness(self, reply: str) -> float:
        if not reply or not reply.strip():
            return 0.0
        return _clamp(0.5 + len(reply.strip()) / 200)

    def clarity(self, reply: str) -> float:
        sentences = [s.strip() for s in self.SENTENCE_SPLIT.split(reply or "") if s.strip()]
        if not sentences:
            return 0.0
        average = sum(len(s) for s in sentences) / len(sentences)
        if average <= self.IDEAL_SENTENCE_LENGTH:
            return 1.0
        return max(0.3, 1 - (average - self.IDEAL_SENTENCE_LENGTH) / 100)
