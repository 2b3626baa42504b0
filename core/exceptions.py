"""Exception types raised across the conversation engine"""


class ConversationError(Exception):
    """Base class for engine errors"""


class ConversationValidationError(ConversationError):
    """Request rejected before any session mutation"""

    def __init__(self, errors):
        self.errors = list(errors)
        super().__init__("; ".join(self.errors))


class ModelBackendError(ConversationError):
    """The model backend was unreachable or returned an error"""

    def __init__(self, message: str, status: int = None):
        self.status = status
        super().__init__(message)


class StorageError(ConversationError):
    """Durable storage read or write failed"""
