"""Memory module: per-user profiles, conversation history and facts."""

from .extractor import FactExtractor, parse_extraction, should_extract
from .json_store import JSONStore
from .manager import HISTORY_LIMIT, MAX_FACTS, MemoryManager
from .models import (
    ConversationTurn,
    ExtractionFailure,
    ExtractionResult,
    Fact,
    MemoryStats,
    Platform,
    Role,
    UserProfile,
    make_user_id,
)
from .store import PersistenceError, ProfileStore, SQLiteStore

__all__ = [
    "ConversationTurn",
    "ExtractionFailure",
    "ExtractionResult",
    "Fact",
    "FactExtractor",
    "HISTORY_LIMIT",
    "JSONStore",
    "MAX_FACTS",
    "MemoryManager",
    "MemoryStats",
    "PersistenceError",
    "Platform",
    "ProfileStore",
    "Role",
    "SQLiteStore",
    "UserProfile",
    "make_user_id",
    "parse_extraction",
    "should_extract",
]
