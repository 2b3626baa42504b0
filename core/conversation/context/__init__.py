"""Session lifecycle and persistence components"""

from .storage import ConversationStorage, InMemoryConversationStorage, PostgresConversationStorage
from .session_store import SessionStore, SessionConfig, SessionClosed, PersistFailure, estimate_tokens

__all__ = [
    'ConversationStorage',
    'InMemoryConversationStorage',
    'PostgresConversationStorage',
    'SessionStore',
    'SessionConfig',
    'SessionClosed',
    'PersistFailure',
    'estimate_tokens',
]
