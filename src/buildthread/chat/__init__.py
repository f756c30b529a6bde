"""Chat surfaces the build orchestrator talks through."""

from .base import Conversation
from .indicator import TypingIndicator

__all__ = ["Conversation", "TypingIndicator"]
