"""Knowledge retrieval"""

from .knowledge_base import KnowledgeBase, extract_keywords, preprocess_text, score_entry

__all__ = [
    'KnowledgeBase',
    'extract_keywords',
    'preprocess_text',
    'score_entry',
]
