"""Chat orchestration and prompt assembly."""

from .orchestrator import FALLBACK_REPLY, ChatOrchestrator, ChatResult
from .prompt import build_system_prompt

__all__ = ["FALLBACK_REPLY", "ChatOrchestrator", "ChatResult", "build_system_prompt"]
