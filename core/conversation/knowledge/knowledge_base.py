"""
Keyword-scored knowledge base.

Entries are loaded once from storage into a per-category cache and scored at
query time. The scoring is additive and capped:

- +0.1 for every query keyword found in title + content
- +0.3 when the title contains the whole query
- +0.2 when the content contains the whole query
- +0.15 for every entry tag that is also a query keyword

These weights are a retrieval heuristic, not a relevance model; replace
score_entry() to change the policy.
"""

import logging
import re
import time
from typing import Dict, List, Optional

from core.conversation.context.storage import ConversationStorage
from models.schemas import KnowledgeEntry, KnowledgeSearchResult

logger = logging.getLogger(__name__)

KEYWORD_HIT_SCORE = 0.1
TITLE_MATCH_SCORE = 0.3
CONTENT_MATCH_SCORE = 0.2
TAG_MATCH_SCORE = 0.15
MAX_SCORE = 1.0


def preprocess_text(text: str) -> str:
    """Lowercase, replace anything but CJK/ASCII letters/digits with spaces, collapse spaces"""
    if not text or not isinstance(text, str):
        return ""
    text = re.sub(r"[^\u4e00-\u9fa5a-zA-Z0-9\s]", " ", text.lower())
    return re.sub(r"\s+", " ", text).strip()


def extract_keywords(text: str) -> List[str]:
    """Unique space-separated words longer than one character, in first-seen order"""
    seen = []
    for word in text.split(" "):
        if len(word) > 1 and word not in seen:
            seen.append(word)
    return seen


def score_entry(entry: KnowledgeEntry, keywords: List[str], query: str) -> float:
    score = 0.0
    haystack = f"{entry.title} {entry.content}".lower()
    query = query.lower()

    for keyword in keywords:
        if keyword in haystack:
            score += KEYWORD_HIT_SCORE

    if query and query in entry.title.lower():
        score += TITLE_MATCH_SCORE

    if query and query in entry.content.lower():
        score += CONTENT_MATCH_SCORE

    for tag in entry.tags:
        if tag.lower() in keywords:
            score += TAG_MATCH_SCORE

    return min(score, MAX_SCORE)


class KnowledgeBase:
    """Read-mostly cache of knowledge entries grouped by category"""

    def __init__(self, storage: Optional[ConversationStorage] = None):
        self.storage = storage
        self._cache: Dict[str, List[KnowledgeEntry]] = {}
        self.loaded_at: Optional[float] = None

    async def refresh(self) -> int:
        """Reload every active entry from storage; the old cache stays if loading fails"""
        if self.storage is None:
            return self.size
        try:
            entries = await self.storage.load_knowledge_entries()
        except Exception as e:
            logger.error(f"Failed to load knowledge base: {str(e)}")
            return self.size

        self.load(entries)
        logger.info(f"Loaded {len(entries)} knowledge base entries")
        return len(entries)

    def load(self, entries: List[KnowledgeEntry]) -> None:
        cache: Dict[str, List[KnowledgeEntry]] = {}
        for entry in entries:
            cache.setdefault(entry.category, []).append(entry)
        self._cache = cache
        self.loaded_at = time.time()

    @property
    def size(self) -> int:
        return sum(len(entries) for entries in self._cache.values())

    @property
    def categories(self) -> List[str]:
        return sorted(self._cache)

    def _candidates(self, category: Optional[str]) -> List[KnowledgeEntry]:
        if category:
            return list(self._cache.get(category, []))
        return [entry for entries in self._cache.values() for entry in entries]

    def search(self, query: str, category: Optional[str] = None, limit: int = 10,
               min_relevance: float = 0.3) -> KnowledgeSearchResult:
        started = time.perf_counter()
        processed = preprocess_text(query)
        keywords = extract_keywords(processed)

        scored = []
        for entry in self._candidates(category):
            score = score_entry(entry, keywords, processed)
            if score >= min_relevance:
                scored.append(entry.model_copy(update={"relevance_score": score}))

        scored.sort(key=lambda e: e.relevance_score, reverse=True)
        results = scored[:max(limit, 0)]

        return KnowledgeSearchResult(
            query=query,
            results=results,
            total_results=len(results),
            search_time=(time.perf_counter() - started) * 1000,
            suggestions=keywords[:3],
        )
