"""Chat orchestrator: one inbound message in, one reply out."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

from ..background import BackgroundTasks
from ..llm import CompletionService, ServiceError
from ..memory import FactExtractor, MemoryManager, Platform, Role
from ..memory.manager import HISTORY_LIMIT
from ..notify import CONVERSATIONS_CHANNEL, NotificationSink
from ..platforms import max_output_tokens, platform_name
from .prompt import build_system_prompt

if TYPE_CHECKING:
    from ..logging import JSONLLogger

logger = logging.getLogger(__name__)

FALLBACK_REPLY = "Sorry, I'm having trouble right now. Try again in a moment."


@dataclass
class ChatResult:
    """Result of handling one inbound message."""

    response: str
    success: bool
    error: str | None = None


class ChatOrchestrator:
    """Ties memory, prompt assembly and the completion service together.

    The primary completion is awaited before replying; fact extraction and
    notifications run detached and cannot affect the reply.
    """

    def __init__(
        self,
        llm: CompletionService,
        memory: MemoryManager,
        extractor: FactExtractor | None = None,
        notifier: NotificationSink | None = None,
        event_log: JSONLLogger | None = None,
        background: BackgroundTasks | None = None,
        timeout: float = 30.0,
    ) -> None:
        self.llm = llm
        self.timeout = timeout
        self.memory = memory
        self.background = background or BackgroundTasks()
        self.extractor = extractor
        self.notifier = notifier
        self.event_log = event_log

    async def handle(
        self,
        user_id: str,
        platform: Platform,
        text: str,
        display_name: str | None = None,
    ) -> ChatResult:
        """Handle an inbound message and produce the reply.

        Args:
            user_id: Opaque user id (see make_user_id).
            platform: Platform the message arrived on.
            text: The message text.
            display_name: Optional name from platform metadata.

        Returns:
            ChatResult with the reply, or the fallback reply and
            success=False when the completion failed.
        """
        platform = Platform(platform)
        start_time = time.time()
        if self.event_log:
            self.event_log.log_message(user_id, platform.value, len(text))

        profile = self.memory.ensure_profile(user_id, platform, display_name)
        recorded = self.memory.record_turn(user_id, platform, Role.USER, text)

        turns = self.memory.recent_turns(user_id, HISTORY_LIMIT)
        history = [turn.to_message() for turn in turns]
        if recorded is None:
            # Storage is degraded; still answer the current message
            history.append({"role": Role.USER.value, "content": text})

        system_prompt = build_system_prompt(profile, profile.facts, platform)

        try:
            reply = await asyncio.wait_for(
                self.llm.complete(system_prompt, history, max_output_tokens(platform)),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            return self._fail(user_id, platform, f"completion timed out after {self.timeout}s")
        except ServiceError as e:
            return self._fail(user_id, platform, str(e))

        # The user may have been purged while the completion was pending
        self.memory.record_turn(
            user_id, platform, Role.ASSISTANT, reply, create=False
        )

        if self.extractor:
            self.extractor.schedule(user_id)

        if self.notifier:
            self.background.spawn(
                self.notifier.notify(
                    CONVERSATIONS_CHANNEL,
                    f"{platform_name(platform)} · {display_name or user_id}\n"
                    f"User: {text}\nJarvis: {reply}",
                ),
                name=f"notify:{user_id}",
            )

        if self.event_log:
            self.event_log.log_reply(
                user_id,
                platform.value,
                len(reply),
                duration_ms=(time.time() - start_time) * 1000,
            )

        return ChatResult(response=reply, success=True)

    def _fail(self, user_id: str, platform: Platform, error: str) -> ChatResult:
        """Report a failed completion; no assistant turn is recorded."""
        logger.error("Completion failed for %s: %s", user_id, error)
        if self.event_log:
            self.event_log.log(
                "completion_failed",
                user_id=user_id,
                platform=platform.value,
                error=error,
            )
        return ChatResult(response=FALLBACK_REPLY, success=False, error=error)

    async def aclose(self, timeout: float | None = None) -> None:
        """Wait for detached work to finish; cancel what is left after `timeout`."""
        task_sets = [self.background]
        if self.extractor and self.extractor.background is not self.background:
            task_sets.append(self.extractor.background)

        for tasks in task_sets:
            try:
                await asyncio.wait_for(tasks.drain(), timeout)
            except asyncio.TimeoutError:
                logger.warning("Cancelling %d background task(s) at shutdown", len(tasks))
                tasks.cancel_all()
                await tasks.drain()
