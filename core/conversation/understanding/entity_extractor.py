"""
Regex entity extraction.

Pulls time expressions, bare integers, capitalised name-like tokens and a
self-introduced user name out of a message. This is a fixed-pattern
heuristic, not a trained extractor, so results are approximate.
"""

import re
import logging
from typing import Dict, Any, List, Optional
from enum import Enum

logger = logging.getLogger(__name__)


class EntityType(str, Enum):
    """Types of entities that can be extracted"""
    TIME = "time"
    NUMBER = "number"
    NAME = "name"
    USER_NAME = "user_name"


class EntityExtractor:
    """Extracts entities from user messages with fixed patterns"""

    TIME_PATTERN = re.compile(
        r"(\d{1,2}[:：]\d{2}|\d{1,2}点|\d{1,2}时|今天|明天|昨天|现在"
        r"|(?<![a-z])(?:today|tomorrow|yesterday|tonight)(?![a-z]))",
        re.IGNORECASE,
    )
    # Integers that are not part of a clock time or a 点/时 expression
    NUMBER_PATTERN = re.compile(r"(?<![\d:：])\d+(?![\d:：点时])")
    NAME_PATTERN = re.compile(r"\b[A-Z][a-z]+(?:\s[A-Z][a-z]+)?\b")
    SELF_INTRO_PATTERNS = [
        re.compile(r"(?:我叫|我的名字是|叫我)\s*([\u4e00-\u9fa5]{2,4}|[A-Za-z]+)"),
        re.compile(r"(?:my name is|call me)\s+([A-Za-z]+)", re.IGNORECASE),
    ]

    def extract_entities(self, text: str) -> Dict[str, Any]:
        if not text:
            return {}

        entities: Dict[str, Any] = {}

        times = self._extract_time(text)
        if times:
            entities[EntityType.TIME.value] = times

        numbers = [int(n) for n in self.NUMBER_PATTERN.findall(text)]
        if numbers:
            entities[EntityType.NUMBER.value] = numbers

        user_name = self.extract_user_name(text)
        if user_name:
            entities[EntityType.USER_NAME.value] = user_name

        names = self._extract_names(text, exclude=user_name)
        if names:
            entities[EntityType.NAME.value] = names

        return entities

    def _extract_time(self, text: str) -> List[str]:
        return [match.lower() for match in self.TIME_PATTERN.findall(text)]

    def _extract_names(self, text: str, exclude: Optional[str] = None) -> List[str]:
        names = []
        for match in self.NAME_PATTERN.findall(text):
            # A capitalised first word is usually just sentence case
            if text.startswith(match) and " " not in match:
                continue
            if match != exclude and match not in names:
                names.append(match)
        return names

    def extract_user_name(self, text: str) -> Optional[str]:
        for pattern in self.SELF_INTRO_PATTERNS:
            match = pattern.search(text)
            if match:
                return match.group(1)
        return None
