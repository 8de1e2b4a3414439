"""
Exceptions raised at the validation and persistence boundaries.

Analysis and generation failures are never raised to callers; they are
recovered into flagged fallback data inside the analyzer and the engine.
"""

from typing import List, Optional


class AdaptiveChatError(Exception):
    """Base class for all adaptive chat errors"""


class ContextValidationError(AdaptiveChatError, ValueError):
    """Raised when a conversation context is malformed"""

    def __init__(self, message: str = "Invalid context data", errors: Optional[List[str]] = None):
        super().__init__(message)
        self.errors = errors or []


class SuggestionValidationError(AdaptiveChatError, ValueError):
    """Raised when a suggestion fails validation"""

    def __init__(self, errors: List[str]):
        super().__init__("Invalid suggestion: " + "; ".join(errors))
        self.errors = errors


class StoreError(AdaptiveChatError):
    """Raised when the key-value store cannot be read or written"""


class SessionError(AdaptiveChatError):
    """Raised inside session operations; recorded as the user's session error"""
