"""Session journal persistence."""

from .chroma import ChromaEvent, ChromaStore, ChromaUnavailableError
from .models import (
    SESSION_ENDED,
    SESSION_REAPED,
    SESSION_STARTED,
    SessionRecord,
)

__all__ = [
    "ChromaEvent",
    "ChromaStore",
    "ChromaUnavailableError",
    "SESSION_ENDED",
    "SESSION_REAPED",
    "SESSION_STARTED",
    "SessionRecord",
]
