"""
Context analysis for understanding user messages.

Looks at what came before the current message (the previous intent and
whether there is any history at all) to produce a contextual clue that the
intent detector folds into its fused vote.
"""

import re
import logging
from typing import Dict, Any, List, Optional
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass
class ContextualClue:
    """Represents a contextual clue found in the message or context"""
    clue_type: str
    confidence: float
    evidence: str = ""
    inferred_data: Dict[str, Any] = field(default_factory=dict)


class ContextAnalyzer:
    """
    Analyzes conversation context to extract implicit information.

    Two clues are recognised:
    - a follow-up question, when the previous intent was a question and the
      message uses a continuation marker
    - a greeting, when there is no history yet and the message opens like one
    Anything else is a weak "general" clue.
    """

    FOLLOW_UP_PATTERN = re.compile(r"(还有|另外|其他|补充|(?<![a-z])(?:also|another|what about)(?![a-z]))",
                                   re.IGNORECASE)
    GREETING_PATTERN = re.compile(r"^(你好|hello(?![a-z])|hi(?![a-z])|嗨)", re.IGNORECASE)

    FOLLOW_UP_CONFIDENCE = 0.7
    GREETING_CONFIDENCE = 0.8
    DEFAULT_CONFIDENCE = 0.3

    def analyze_context(self, message: str, context: Optional[Dict[str, Any]]) -> ContextualClue:
        context = context or {}
        text = message.strip().lower()
        last_intent = context.get("last_intent")
        history = self._history(context)

        if last_intent == "question":
            match = self.FOLLOW_UP_PATTERN.search(text)
            if match:
                return ContextualClue(
                    clue_type="follow_up_question",
                    confidence=self.FOLLOW_UP_CONFIDENCE,
                    evidence=match.group(0),
                    inferred_data={"follows": last_intent},
                )

        if not history:
            match = self.GREETING_PATTERN.search(text)
            if match:
                return ContextualClue(
                    clue_type="greeting",
                    confidence=self.GREETING_CONFIDENCE,
                    evidence=match.group(0),
                )

        return ContextualClue(clue_type="general", confidence=self.DEFAULT_CONFIDENCE)

    def _history(self, context: Dict[str, Any]) -> List[Any]:
        return context.get("history") or context.get("conversation_history") or []

    @staticmethod
    def context_consistency(dialogue_intent: Optional[str], recognized_intent: str) -> float:
        """1.0 when the dialogue engine and the fused recognizer agree, 0.5 otherwise"""
        if dialogue_intent is None:
            return 1.0
        return 1.0 if dialogue_intent == recognized_intent else 0.5
