"""
Input validators for the conversation pipeline.

Each check returns (is_valid, error_message); validate_request collects every
failure so the caller can reject a request before touching any session.
"""

import re
from typing import Any, List, Optional, Tuple

from models.schemas import ConversationOptions, ConversationRequest


class InputValidator:
    """Validates input data for the conversation pipeline"""

    MAX_MESSAGE_LENGTH = 4000
    MAX_ID_LENGTH = 128
    ID_PATTERN = re.compile(r'^[a-zA-Z0-9_.:@-]+$')
    MAX_TEMPERATURE = 2.0

    @classmethod
    def validate_message(cls, message: Any) -> Tuple[bool, Optional[str]]:
        if not isinstance(message, str):
            return False, "Message must be a string"

        if not message.strip():
            return False, "Message cannot be empty"

        if len(message) > cls.MAX_MESSAGE_LENGTH:
            return False, f"Message too long (max {cls.MAX_MESSAGE_LENGTH} characters)"

        return True, None

    @classmethod
    def _validate_id(cls, value: Any, label: str) -> Tuple[bool, Optional[str]]:
        if not isinstance(value, str):
            return False, f"{label} must be a string"

        if not value:
            return False, f"{label} cannot be empty"

        if len(value) > cls.MAX_ID_LENGTH:
            return False, f"{label} too long (max {cls.MAX_ID_LENGTH} characters)"

        if not cls.ID_PATTERN.match(value):
            return False, f"{label} contains invalid characters"

        return True, None

    @classmethod
    def validate_user_id(cls, user_id: Any) -> Tuple[bool, Optional[str]]:
        return cls._validate_id(user_id, "User ID")

    @classmethod
    def validate_session_id(cls, session_id: Any) -> Tuple[bool, Optional[str]]:
        return cls._validate_id(session_id, "Session ID")

    @classmethod
    def validate_options(cls, options: ConversationOptions) -> List[str]:
        errors = []
        if options.temperature is not None and not 0 <= options.temperature <= cls.MAX_TEMPERATURE:
            errors.append(f"Temperature must be between 0 and {cls.MAX_TEMPERATURE}")
        if options.max_tokens is not None and options.max_tokens <= 0:
            errors.append("max_tokens must be positive")
        return errors

    @classmethod
    def validate_request(cls, request: ConversationRequest) -> List[str]:
        errors = []

        valid, error = cls.validate_user_id(request.user_id)
        if not valid:
            errors.append(error)

        valid, error = cls.validate_message(request.message)
        if not valid:
            errors.append(error)

        if request.session_id is not None:
            valid, error = cls.validate_session_id(request.session_id)
            if not valid:
                errors.append(error)

        errors.extend(cls.validate_options(request.options))
        return errors
